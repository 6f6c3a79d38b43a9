"""
Gateway Idempotency Store: at most one in-flight attempt per key.

The webhook dispatcher reserves the delivery id before each attempt, so a
delivery's retries stay strictly sequential even when a scheduler tick and
a manual trigger race for it. Keys expire so a crashed attempt cannot pin
a delivery forever.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional
import hashlib
import json
import time


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class IdempotencyRecord:
    key: str
    operation: str
    status: IdempotencyStatus
    reserved_at: float
    expires_at: float
    result: Any = None


def generate_idempotency_key(operation: str, **kwargs: Any) -> str:
    """Deterministic key from operation + params."""
    data = json.dumps({"op": operation, **kwargs}, sort_keys=True, default=str)
    return hashlib.sha256(data.encode()).hexdigest()[:32]


class IdempotencyStore:
    """In-memory store. Replace backing store for production."""

    def __init__(self, default_ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl_seconds
        self._clock = clock
        self._records: dict[str, IdempotencyRecord] = {}

    def check(self, key: str) -> Optional[IdempotencyRecord]:
        record = self._records.get(key)
        if record is not None and self._clock() >= record.expires_at:
            del self._records[key]
            return None
        return record

    def reserve(self, key: str, operation: str, ttl_seconds: Optional[float] = None) -> Optional[IdempotencyRecord]:
        """Claim a key. Returns None if it is already in flight or completed."""
        if self.check(key) is not None:
            return None
        now = self._clock()
        record = IdempotencyRecord(
            key=key,
            operation=operation,
            status=IdempotencyStatus.IN_PROGRESS,
            reserved_at=now,
            expires_at=now + (ttl_seconds or self.default_ttl),
        )
        self._records[key] = record
        return record

    def complete(self, key: str, result: Any = None) -> bool:
        record = self._records.get(key)
        if record is None:
            return False
        record.status = IdempotencyStatus.COMPLETED
        record.result = result
        return True

    def release(self, key: str) -> bool:
        """Free an in-flight key so the next attempt can claim it."""
        return self._records.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._records)

    def in_flight(self) -> list[str]:
        return [k for k, r in self._records.items() if r.status == IdempotencyStatus.IN_PROGRESS]

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [k for k, r in self._records.items() if now >= r.expires_at]
        for key in expired:
            del self._records[key]
        return len(expired)
