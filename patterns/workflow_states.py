"""Enum-based state machine pattern.

Defines lifecycle states as Python enums with explicit transition
validation. The credential vault drives its credentials through this
machine so that illegal transitions (most importantly revoked -> active)
are impossible regardless of which code path asks for them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# State definitions
# ---------------------------------------------------------------------------

class CredentialStatus(str, Enum):
    """Credential lifecycle states."""

    ACTIVE = "active"
    ROTATING = "rotating"
    EXPIRED = "expired"
    REVOKED = "revoked"


# ---------------------------------------------------------------------------
# Transition rules
# ---------------------------------------------------------------------------

# Allowed transitions: {current_state: [allowed_next_states]}
_CREDENTIAL_TRANSITIONS: dict[CredentialStatus, list[CredentialStatus]] = {
    CredentialStatus.ACTIVE: [
        CredentialStatus.ROTATING,
        CredentialStatus.EXPIRED,
        CredentialStatus.REVOKED,
    ],
    CredentialStatus.ROTATING: [
        CredentialStatus.ACTIVE,
        CredentialStatus.EXPIRED,
        CredentialStatus.REVOKED,
    ],
    CredentialStatus.EXPIRED: [CredentialStatus.REVOKED],
    CredentialStatus.REVOKED: [],  # terminal
}


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

@dataclass
class WorkflowTransition:
    """Record of a single state transition."""

    from_state: str
    to_state: str
    timestamp: datetime
    actor: str = "system"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CredentialLifecycle:
    """Tracks the status of one credential.

    Usage::

        lc = CredentialLifecycle(current_state=CredentialStatus.ACTIVE)
        lc.transition(CredentialStatus.ROTATING, actor="operator-1")
        lc.transition(CredentialStatus.ACTIVE)
    """

    current_state: CredentialStatus = CredentialStatus.ACTIVE
    history: list[WorkflowTransition] = field(default_factory=list)

    def can_transition(self, to_state: CredentialStatus) -> bool:
        """Check if a transition is allowed from the current state."""
        allowed = _CREDENTIAL_TRANSITIONS.get(self.current_state, [])
        return to_state in allowed

    def transition(
        self,
        to_state: CredentialStatus,
        actor: str = "system",
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowTransition:
        """Execute a state transition.

        Raises ValueError if the transition is not allowed.
        """
        if not self.can_transition(to_state):
            allowed = _CREDENTIAL_TRANSITIONS.get(self.current_state, [])
            allowed_names = [s.value for s in allowed]
            raise ValueError(
                f"Cannot transition from {self.current_state.value} to {to_state.value}. "
                f"Allowed: {allowed_names}"
            )

        record = WorkflowTransition(
            from_state=self.current_state.value,
            to_state=to_state.value,
            timestamp=datetime.now(timezone.utc),
            actor=actor,
            metadata=metadata or {},
        )
        self.history.append(record)
        self.current_state = to_state
        return record

    @property
    def is_terminal(self) -> bool:
        """Check if the credential can never change state again."""
        return len(_CREDENTIAL_TRANSITIONS.get(self.current_state, [])) == 0
