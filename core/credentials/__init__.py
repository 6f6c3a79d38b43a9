"""
Gateway Credentials: secret storage for integrations and webhooks.

- CredentialVault: create / rotate / revoke / verify with one-time plaintext
- IssuedCredential: the only type that carries a plaintext secret
"""
from core.credentials.vault import (
    Credential,
    CredentialAuditEntry,
    CredentialType,
    CredentialVault,
    IssuedCredential,
)
from patterns.workflow_states import CredentialStatus

__all__ = [
    "Credential",
    "CredentialAuditEntry",
    "CredentialStatus",
    "CredentialType",
    "CredentialVault",
    "IssuedCredential",
]
