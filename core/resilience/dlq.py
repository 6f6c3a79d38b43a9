"""
Gateway Dead Letter Queue: permanently failed webhook deliveries.

A delivery that exhausts its retries lands here with its payload and last
error so an operator can inspect it and redeliver (which creates a new
delivery row) or discard it.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DLQStatus(str, Enum):
    PENDING = "pending"
    REDELIVERED = "redelivered"
    DISCARDED = "discarded"


@dataclass
class DeadLetter:
    """An exhausted delivery captured in the DLQ."""
    delivery_id: str
    webhook_id: str
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    attempts: int = 0
    tenant_id: str = "default"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: DLQStatus = DLQStatus.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    redelivery_id: Optional[str] = None
    resolved_by: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "delivery_id": self.delivery_id,
            "webhook_id": self.webhook_id,
            "event_type": self.event_type,
            "error": self.error,
            "attempts": self.attempts,
            "status": self.status.value,
            "redelivery_id": self.redelivery_id,
            "resolved_by": self.resolved_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class DLQStats:
    total: int = 0
    pending: int = 0
    redelivered: int = 0
    discarded: int = 0
    oldest: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "redelivered": self.redelivered,
            "discarded": self.discarded,
            "oldest": self.oldest.isoformat() if self.oldest else None,
        }


class DeadLetterQueue:
    """In-memory DLQ keyed by delivery id. Replace backing store for production."""

    def __init__(self):
        self._letters: dict[str, DeadLetter] = {}

    def enqueue(
        self,
        delivery_id: str,
        webhook_id: str,
        event_type: str,
        payload: dict[str, Any],
        error: str,
        attempts: int,
        tenant_id: str = "default",
    ) -> DeadLetter:
        """Capture an exhausted delivery. Enqueuing the same delivery twice is a no-op."""
        existing = self._letters.get(delivery_id)
        if existing is not None:
            return existing
        letter = DeadLetter(
            delivery_id=delivery_id,
            webhook_id=webhook_id,
            event_type=event_type,
            payload=payload,
            error=error,
            attempts=attempts,
            tenant_id=tenant_id,
        )
        self._letters[delivery_id] = letter
        return letter

    def get(self, delivery_id: str) -> Optional[DeadLetter]:
        return self._letters.get(delivery_id)

    def list_pending(
        self, webhook_id: Optional[str] = None, limit: int = 50, tenant_id: Optional[str] = None
    ) -> list[DeadLetter]:
        results = [dl for dl in self._letters.values() if dl.status == DLQStatus.PENDING]
        if webhook_id:
            results = [dl for dl in results if dl.webhook_id == webhook_id]
        if tenant_id:
            results = [dl for dl in results if dl.tenant_id == tenant_id]
        results.sort(key=lambda dl: dl.created_at)
        return results[:limit]

    def mark_redelivered(self, delivery_id: str, redelivery_id: str, resolved_by: str = "") -> bool:
        letter = self._letters.get(delivery_id)
        if letter is None or letter.status != DLQStatus.PENDING:
            return False
        letter.status = DLQStatus.REDELIVERED
        letter.redelivery_id = redelivery_id
        letter.resolved_by = resolved_by or None
        letter.updated_at = _utcnow()
        return True

    def discard(self, delivery_id: str, reason: str = "") -> bool:
        letter = self._letters.get(delivery_id)
        if letter is None:
            return False
        letter.status = DLQStatus.DISCARDED
        if reason:
            letter.error = f"{letter.error} | Discarded: {reason}"
        letter.updated_at = _utcnow()
        return True

    def stats(self) -> DLQStats:
        letters = list(self._letters.values())
        return DLQStats(
            total=len(letters),
            pending=sum(1 for dl in letters if dl.status == DLQStatus.PENDING),
            redelivered=sum(1 for dl in letters if dl.status == DLQStatus.REDELIVERED),
            discarded=sum(1 for dl in letters if dl.status == DLQStatus.DISCARDED),
            oldest=min((dl.created_at for dl in letters), default=None),
        )

    def purge_resolved(self) -> int:
        """Drop redelivered and discarded entries. Returns count removed."""
        done = [k for k, dl in self._letters.items() if dl.status != DLQStatus.PENDING]
        for key in done:
            del self._letters[key]
        return len(done)
