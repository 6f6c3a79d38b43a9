"""
Gateway Resilience: fault-tolerance primitives for webhook delivery.

- DeadLetterQueue: exhausted deliveries kept for inspection and redelivery
- IdempotencyStore: one in-flight attempt per delivery
"""
from core.resilience.dlq import (
    DeadLetter,
    DeadLetterQueue,
    DLQStats,
    DLQStatus,
)
from core.resilience.idempotency import (
    IdempotencyRecord,
    IdempotencyStatus,
    IdempotencyStore,
    generate_idempotency_key,
)

__all__ = [
    # DLQ
    "DeadLetter",
    "DeadLetterQueue",
    "DLQStats",
    "DLQStatus",
    # Idempotency
    "IdempotencyRecord",
    "IdempotencyStatus",
    "IdempotencyStore",
    "generate_idempotency_key",
]
