"""Webhook payload signing and receiver-side verification.

The signature is HMAC-SHA256 over ``timestamp + body`` with the webhook
secret, sent as ``sha256=<hex>``. Receivers reject stale timestamps to
bound replay.
"""
from __future__ import annotations
from typing import Any, Optional
import hashlib
import hmac
import json
import time

ID_HEADER = "X-Webhook-ID"
EVENT_HEADER = "X-Webhook-Event"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
SIGNATURE_HEADER = "X-Webhook-Signature"
ATTEMPT_HEADER = "X-Webhook-Attempt"


def canonical_json(payload: Any) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def sign(secret: str, timestamp: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), timestamp.encode("utf-8") + body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_headers(
    secret: str,
    delivery_id: str,
    event_type: str,
    body: bytes,
    timestamp: Optional[int] = None,
    attempt: int = 1,
) -> dict[str, str]:
    ts = str(int(timestamp if timestamp is not None else time.time()))
    return {
        "Content-Type": "application/json",
        ID_HEADER: delivery_id,
        EVENT_HEADER: event_type,
        TIMESTAMP_HEADER: ts,
        SIGNATURE_HEADER: sign(secret, ts, body),
        ATTEMPT_HEADER: str(attempt),
    }


def verify_signature(
    secret: str,
    timestamp: str,
    body: bytes,
    signature: str,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> bool:
    """Receiver-side check: valid HMAC and a timestamp inside the replay window."""
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > tolerance:
        return False
    return hmac.compare_digest(sign(secret, timestamp, body), signature)
