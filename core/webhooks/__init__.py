"""
Gateway Webhooks: outbound event delivery.

- Webhook / WebhookDelivery / DomainEvent models
- HMAC-SHA256 signing and receiver-side verification
- WebhookDispatcher: fan-out, retry schedule, worker pool, DLQ hand-off
"""
from core.webhooks.dispatcher import WebhookDispatcher
from core.webhooks.models import (
    FILTER_ATTRIBUTES,
    DeliveryStatus,
    DomainEvent,
    Webhook,
    WebhookDelivery,
    WebhookStatus,
)
from core.webhooks.signing import (
    ATTEMPT_HEADER,
    EVENT_HEADER,
    ID_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    build_headers,
    canonical_json,
    sign,
    verify_signature,
)

__all__ = [
    "ATTEMPT_HEADER",
    "DeliveryStatus",
    "DomainEvent",
    "EVENT_HEADER",
    "FILTER_ATTRIBUTES",
    "ID_HEADER",
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "Webhook",
    "WebhookDelivery",
    "WebhookDispatcher",
    "WebhookStatus",
    "build_headers",
    "canonical_json",
    "sign",
    "verify_signature",
]
