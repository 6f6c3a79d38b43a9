"""
Gateway Circuit Breaker: per-integration failure isolation

- closed: calls pass; consecutive failures counted
- open: calls rejected with CircuitOpenError, no network attempted
- half_open: exactly one trial call allowed; success closes, failure reopens
  with the cooldown multiplied (capped at max_cooldown_seconds)

Every method is synchronous, so each transition is atomic on the event loop
and no lock is shared between integrations.
"""
from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional
import time

import structlog

from core.errors import CircuitOpenError
from patterns.domain_config import BreakerConfig

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Breaker state for one integration."""

    def __init__(
        self,
        name: str,
        config: Optional[BreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.success_count = 0
        self.failure_count = 0
        self.last_success_at: Optional[datetime] = None
        self.last_failure_at: Optional[datetime] = None
        self._opened_at: Optional[float] = None
        self._cooldown = self.config.cooldown_seconds
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._clock() >= self._reopen_at():
            self._state = CircuitState.HALF_OPEN
            logger.info("breaker_half_open", integration_id=self.name)
        return self._state

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown

    def _reopen_at(self) -> float:
        return (self._opened_at or 0.0) + self._cooldown

    def retry_after(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._reopen_at() - self._clock())

    # --- Call gating ---

    def acquire(self) -> None:
        """Admit a call or raise CircuitOpenError. Half-open admits one trial call."""
        state = self.state
        if state == CircuitState.CLOSED:
            return
        if state == CircuitState.OPEN:
            raise CircuitOpenError(self.name, self.retry_after())
        if self._trial_in_flight:
            raise CircuitOpenError(self.name, 0.0)
        self._trial_in_flight = True

    def release(self) -> None:
        """Give back a half-open trial slot when the call never reached upstream."""
        self._trial_in_flight = False

    # --- Outcomes ---

    def record_success(self) -> None:
        was = self._state
        self._state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.success_count += 1
        self.last_success_at = datetime.now(timezone.utc)
        self._trial_in_flight = False
        self._opened_at = None
        if was == CircuitState.HALF_OPEN:
            self._cooldown = self.config.cooldown_seconds
            logger.info("breaker_closed", integration_id=self.name)

    def record_failure(self, reason: str = "") -> None:
        self.failure_count += 1
        self.last_failure_at = datetime.now(timezone.utc)

        if self.state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._cooldown = min(
                self._cooldown * self.config.backoff_multiplier,
                self.config.max_cooldown_seconds,
            )
            self._open(reason)
            return

        self.consecutive_failures += 1
        if self._state == CircuitState.CLOSED and self.consecutive_failures >= self.config.failure_threshold:
            self._open(reason)

    def _open(self, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.warning(
            "breaker_opened",
            integration_id=self.name,
            consecutive_failures=self.consecutive_failures,
            cooldown_seconds=self._cooldown,
            reason=reason,
        )

    def reset(self) -> None:
        """Operator override: close the breaker and forget backoff."""
        self._state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self._opened_at = None
        self._cooldown = self.config.cooldown_seconds
        self._trial_in_flight = False
        logger.info("breaker_reset", integration_id=self.name)

    def snapshot(self) -> dict:
        state = self.state
        return {
            "state": state.value,
            "consecutive_failures": self.consecutive_failures,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "cooldown_seconds": self._cooldown,
            "retry_after_seconds": round(self.retry_after(), 3),
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
        }
