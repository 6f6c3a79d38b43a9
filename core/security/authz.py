"""Authorization seam for mutating gateway operations.

Identity lives outside the gateway. The HTTP layer resolves the caller id
and asks an ``Authorizer`` whether that caller may perform an action on a
resource before anything changes.
"""
from __future__ import annotations
from typing import Iterable, Optional, Protocol, runtime_checkable

import structlog

from core.errors import AuthorizationError

logger = structlog.get_logger(__name__)


@runtime_checkable
class Authorizer(Protocol):
    def is_authorized(self, caller_id: str, action: str, resource_id: Optional[str] = None) -> bool: ...

    def is_superuser(self, caller_id: str) -> bool: ...


class AllowAllAuthorizer:
    """Development default: every caller may do everything, nobody is superuser."""

    def is_authorized(self, caller_id: str, action: str, resource_id: Optional[str] = None) -> bool:
        return True

    def is_superuser(self, caller_id: str) -> bool:
        return False


class StaticAuthorizer:
    """Grants from a fixed table: caller -> allowed actions.

    ``"*"`` in a caller's action set allows every action. Actions are
    dotted names such as ``routes.create`` or ``credentials.rotate``; a
    grant of ``routes.*`` covers every ``routes.`` action.
    """

    def __init__(self, grants: dict[str, Iterable[str]], superusers: Iterable[str] = ()):
        self.grants = {caller: set(actions) for caller, actions in grants.items()}
        self.superusers = set(superusers)

    def is_authorized(self, caller_id: str, action: str, resource_id: Optional[str] = None) -> bool:
        if caller_id in self.superusers:
            return True
        allowed = self.grants.get(caller_id, set())
        if "*" in allowed or action in allowed:
            return True
        return f"{action.split('.', 1)[0]}.*" in allowed

    def is_superuser(self, caller_id: str) -> bool:
        return caller_id in self.superusers


def require(authorizer: Authorizer, caller_id: str, action: str, resource_id: Optional[str] = None) -> None:
    """Raise AuthorizationError unless the caller may perform ``action``."""
    if not authorizer.is_authorized(caller_id, action, resource_id):
        logger.warning("authorization_denied", caller_id=caller_id, action=action, resource_id=resource_id)
        raise AuthorizationError(f"Caller '{caller_id}' may not perform '{action}'")
