"""
Gateway Credential Vault.

Stores, rotates and revokes integration/application secrets:
- Secrets are generated with `secrets` and returned exactly once
- Only a salted SHA-256 hash (for verify) and a Fernet-sealed blob (for
  outbound auth and webhook signing) are kept
- Constant-time verification
- Rotation with optional grace window for the previous secret
- Per-credential audit trail
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable
import hashlib
import hmac
import secrets
import uuid

import structlog
from cryptography.fernet import Fernet, InvalidToken

from core.config import settings
from core.errors import AlreadyRevoked, ConfigError, CredentialError, NotFound
from patterns.workflow_states import CredentialLifecycle, CredentialStatus

logger = structlog.get_logger(__name__)


class CredentialType(str, Enum):
    API_KEY = "api_key"
    OAUTH2 = "oauth2"
    BASIC = "basic"
    BEARER = "bearer"
    CERTIFICATE = "certificate"
    CUSTOM = "custom"


_TYPE_PREFIX = {
    CredentialType.API_KEY: "gwk",
    CredentialType.OAUTH2: "gwo",
    CredentialType.BASIC: "gwb",
    CredentialType.BEARER: "gwt",
    CredentialType.CERTIFICATE: "gwc",
    CredentialType.CUSTOM: "gwx",
}

PREFIX_LENGTH = 12


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def hash_secret(secret: str, salt: str) -> str:
    return hashlib.sha256(f"{salt}:{secret}".encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class Credential:
    """Stored credential. Never holds the plaintext secret."""
    owner_id: str
    type: CredentialType
    prefix: str
    secret_hash: str
    salt: str
    sealed_secret: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    owner_type: str = "integration"
    tenant_id: str = "default"
    lifecycle: CredentialLifecycle = field(default_factory=CredentialLifecycle)
    rotation_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    expires_at: datetime | None = None
    created_at: datetime = field(default_factory=_utcnow)
    rotated_at: datetime | None = None
    revoked_at: datetime | None = None
    revoke_reason: str | None = None
    # Previous secret, honoured only until grace_until
    previous_hash: str | None = None
    previous_salt: str | None = None
    grace_until: datetime | None = None

    @property
    def status(self) -> CredentialStatus:
        return self.lifecycle.current_state

    def to_dict(self) -> dict[str, Any]:
        """Public view: no hash, salt or sealed blob."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "owner_type": self.owner_type,
            "tenant_id": self.tenant_id,
            "type": self.type.value,
            "prefix": self.prefix,
            "status": self.status.value,
            "rotation_count": self.rotation_count,
            "metadata": dict(self.metadata),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat(),
            "rotated_at": self.rotated_at.isoformat() if self.rotated_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }

    def to_record(self) -> dict[str, Any]:
        """Everything the durable store needs to rebuild this credential."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "owner_type": self.owner_type,
            "tenant_id": self.tenant_id,
            "type": self.type.value,
            "prefix": self.prefix,
            "secret_hash": self.secret_hash,
            "salt": self.salt,
            "sealed_secret": self.sealed_secret,
            "status": self.status.value,
            "rotation_count": self.rotation_count,
            "metadata": dict(self.metadata),
            "expires_at": self.expires_at,
            "rotated_at": self.rotated_at,
            "revoked_at": self.revoked_at,
            "revoke_reason": self.revoke_reason,
            "previous_hash": self.previous_hash,
            "previous_salt": self.previous_salt,
            "grace_until": self.grace_until,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Credential":
        return cls(
            id=str(record["id"]),
            owner_id=record["owner_id"],
            owner_type=record.get("owner_type", "integration"),
            tenant_id=record.get("tenant_id", "default"),
            type=CredentialType(record["type"]),
            prefix=record["prefix"],
            secret_hash=record["secret_hash"],
            salt=record["salt"],
            sealed_secret=record["sealed_secret"],
            lifecycle=CredentialLifecycle(CredentialStatus(record.get("status", "active"))),
            rotation_count=record.get("rotation_count", 0),
            metadata=dict(record.get("metadata") or {}),
            expires_at=_aware(record.get("expires_at")),
            rotated_at=_aware(record.get("rotated_at")),
            revoked_at=_aware(record.get("revoked_at")),
            revoke_reason=record.get("revoke_reason"),
            previous_hash=record.get("previous_hash"),
            previous_salt=record.get("previous_salt"),
            grace_until=_aware(record.get("grace_until")),
        )


@dataclass(frozen=True)
class IssuedCredential:
    """Return type of create/rotate: the only place a plaintext secret exists."""
    credential: Credential
    secret: str

    def to_response(self) -> dict[str, Any]:
        body = self.credential.to_dict()
        body.update(self.credential.metadata)
        body["secret"] = self.secret
        return body


@dataclass
class CredentialAuditEntry:
    credential_id: str
    action: str  # create | rotate | revoke | verify | use | denied | expire
    actor: str = "system"
    success: bool = True
    reason: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "credential_id": self.credential_id,
            "action": self.action,
            "actor": self.actor,
            "success": self.success,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

class CredentialVault:
    """In-memory credential vault. The gateway service mirrors it to the database.

    All mutating methods are synchronous so that each one runs atomically on
    the event loop: rotation swaps hash and sealed blob in one step.
    """

    AUDIT_LIMIT = 10_000

    def __init__(
        self,
        encryption_key: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._fernet = Fernet(self._resolve_key(encryption_key).encode())
        self._clock = clock
        self._credentials: dict[str, Credential] = {}
        self._audit: list[CredentialAuditEntry] = []

    # --- helpers ---

    @staticmethod
    def _resolve_key(encryption_key: str | None) -> str:
        key = encryption_key or settings.encryption_key
        if key:
            return key
        if not settings.debug:
            raise ConfigError("GATEWAY_ENCRYPTION_KEY must be set outside debug mode")
        logger.warning("vault_ephemeral_key", reason="GATEWAY_ENCRYPTION_KEY unset in debug mode")
        return Fernet.generate_key().decode()

    def _record(self, credential_id: str, action: str, actor: str,
                success: bool = True, reason: str | None = None) -> None:
        self._audit.append(CredentialAuditEntry(
            credential_id=credential_id,
            action=action,
            actor=actor,
            success=success,
            reason=reason,
            timestamp=self._clock(),
        ))
        if len(self._audit) > self.AUDIT_LIMIT:
            self._audit = self._audit[-self.AUDIT_LIMIT // 2:]
        log = logger.info if success else logger.warning
        log("credential_" + action, credential_id=credential_id, actor=actor, reason=reason)

    @staticmethod
    def _generate(cred_type: CredentialType) -> str:
        return f"{_TYPE_PREFIX[cred_type]}_{secrets.token_urlsafe(32)}"

    def _seal(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode("utf-8")).decode("ascii")

    def _settle_grace(self, cred: Credential) -> None:
        """Drop the previous secret once its grace window has lapsed."""
        if cred.grace_until and self._clock() >= cred.grace_until:
            cred.previous_hash = None
            cred.previous_salt = None
            cred.grace_until = None
            if cred.status == CredentialStatus.ROTATING:
                cred.lifecycle.transition(CredentialStatus.ACTIVE)

    def _check_expiry(self, cred: Credential) -> bool:
        """Mark the credential expired if past expires_at. Returns True if expired."""
        if cred.status == CredentialStatus.EXPIRED:
            return True
        if cred.expires_at and self._clock() >= cred.expires_at:
            if cred.lifecycle.can_transition(CredentialStatus.EXPIRED):
                cred.lifecycle.transition(CredentialStatus.EXPIRED)
                self._record(cred.id, "expire", "system")
            return True
        return False

    # --- lifecycle ---

    def create(
        self,
        owner_id: str,
        cred_type: CredentialType | str,
        metadata: dict[str, Any] | None = None,
        *,
        owner_type: str = "integration",
        expires_at: datetime | None = None,
        secret: str | None = None,
        actor: str = "system",
        tenant_id: str = "default",
    ) -> IssuedCredential:
        """Create a credential. A secret is generated unless one is imported."""
        cred_type = CredentialType(cred_type)
        plaintext = secret or self._generate(cred_type)
        salt = secrets.token_hex(16)
        cred = Credential(
            owner_id=owner_id,
            owner_type=owner_type,
            tenant_id=tenant_id,
            type=cred_type,
            prefix=plaintext[:PREFIX_LENGTH],
            secret_hash=hash_secret(plaintext, salt),
            salt=salt,
            sealed_secret=self._seal(plaintext),
            metadata=dict(metadata or {}),
            expires_at=expires_at,
            created_at=self._clock(),
        )
        self._credentials[cred.id] = cred
        self._record(cred.id, "create", actor)
        return IssuedCredential(credential=cred, secret=plaintext)

    def rotate(
        self,
        credential_id: str,
        *,
        grace_seconds: float = 0,
        actor: str = "system",
    ) -> IssuedCredential:
        """Issue a new secret. The old one stops verifying immediately unless
        a grace window is requested."""
        cred = self.get(credential_id)
        self._settle_grace(cred)
        if cred.status == CredentialStatus.REVOKED:
            self._record(cred.id, "denied", actor, False, "rotate on revoked credential")
            raise CredentialError("Cannot rotate a revoked credential", cred.id)
        if cred.status == CredentialStatus.EXPIRED:
            self._record(cred.id, "denied", actor, False, "rotate on expired credential")
            raise CredentialError("Cannot rotate an expired credential", cred.id)

        plaintext = self._generate(cred.type)
        salt = secrets.token_hex(16)
        now = self._clock()

        if cred.status == CredentialStatus.ACTIVE:
            cred.lifecycle.transition(CredentialStatus.ROTATING, actor=actor)
        if grace_seconds > 0:
            cred.previous_hash, cred.previous_salt = cred.secret_hash, cred.salt
            cred.grace_until = now + timedelta(seconds=grace_seconds)
        else:
            cred.previous_hash = cred.previous_salt = cred.grace_until = None

        cred.secret_hash = hash_secret(plaintext, salt)
        cred.salt = salt
        cred.sealed_secret = self._seal(plaintext)
        cred.prefix = plaintext[:PREFIX_LENGTH]
        cred.rotation_count += 1
        cred.rotated_at = now

        if grace_seconds <= 0:
            cred.lifecycle.transition(CredentialStatus.ACTIVE, actor=actor)

        self._record(cred.id, "rotate", actor)
        return IssuedCredential(credential=cred, secret=plaintext)

    def revoke(self, credential_id: str, reason: str = "", actor: str = "system") -> Credential:
        cred = self.get(credential_id)
        if cred.status == CredentialStatus.REVOKED:
            raise AlreadyRevoked(credential_id)
        cred.lifecycle.transition(CredentialStatus.REVOKED, actor=actor, metadata={"reason": reason})
        cred.revoked_at = self._clock()
        cred.revoke_reason = reason or None
        cred.previous_hash = cred.previous_salt = cred.grace_until = None
        self._record(cred.id, "revoke", actor, reason=reason or None)
        return cred

    def verify(self, credential_id: str, presented: str, actor: str = "system") -> bool:
        """Constant-time check of a presented secret."""
        cred = self._credentials.get(credential_id)
        if cred is None:
            return False
        self._settle_grace(cred)
        if cred.status == CredentialStatus.REVOKED:
            self._record(cred.id, "verify", actor, False, "revoked")
            return False
        if self._check_expiry(cred):
            self._record(cred.id, "verify", actor, False, "expired")
            return False

        ok = hmac.compare_digest(hash_secret(presented, cred.salt), cred.secret_hash)
        if not ok and cred.previous_hash and cred.previous_salt:
            ok = hmac.compare_digest(
                hash_secret(presented, cred.previous_salt), cred.previous_hash
            )
        self._record(cred.id, "verify", actor, ok, None if ok else "mismatch")
        return ok

    def reveal(self, credential_id: str, actor: str = "gateway") -> str:
        """Unseal the current secret for the gateway's own outbound use
        (connector auth headers, webhook signatures). Never returned to API callers."""
        cred = self.get(credential_id)
        self._settle_grace(cred)
        if cred.status == CredentialStatus.REVOKED:
            self._record(cred.id, "denied", actor, False, "revoked")
            raise CredentialError("Credential has been revoked", cred.id)
        if self._check_expiry(cred):
            self._record(cred.id, "denied", actor, False, "expired")
            raise CredentialError("Credential has expired", cred.id)
        try:
            return self._fernet.decrypt(cred.sealed_secret.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise CredentialError("Credential cannot be unsealed with the current key", cred.id) from exc

    # --- queries ---

    def get(self, credential_id: str) -> Credential:
        cred = self._credentials.get(credential_id)
        if cred is None:
            raise NotFound("Credential", credential_id)
        return cred

    def find_by_prefix(self, prefix: str) -> Credential | None:
        for cred in self._credentials.values():
            if cred.prefix == prefix[:PREFIX_LENGTH]:
                return cred
        return None

    def list_for_owner(self, owner_id: str) -> list[Credential]:
        return [c for c in self._credentials.values() if c.owner_id == owner_id]

    def load(self, credential: Credential) -> None:
        """Hydrate a credential read back from the durable store."""
        self._credentials[credential.id] = credential

    def remove(self, credential_id: str) -> None:
        """Forget a credential that never reached the durable store."""
        self._credentials.pop(credential_id, None)

    def audit_log(self, credential_id: str | None = None, limit: int = 100) -> list[CredentialAuditEntry]:
        entries = self._audit
        if credential_id:
            entries = [e for e in entries if e.credential_id == credential_id]
        return entries[-limit:]
