"""Webhook subscriptions, deliveries and the domain events that trigger them."""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED)


FILTER_ATTRIBUTES = ("jurisdiction", "priority", "status")


@dataclass
class Webhook:
    """An externally owned endpoint subscribed to domain events.

    ``filters`` maps an event attribute (jurisdiction, priority, status) to
    the allowed values; an empty list allows everything.
    """
    url: str
    events: list[str]
    secret_credential_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str = ""
    description: str = ""
    filters: dict[str, list[Any]] = field(default_factory=dict)
    max_retries: int = 3
    backoff_base_seconds: float = 60.0
    timeout_seconds: float = 30.0
    status: WebhookStatus = WebhookStatus.ACTIVE
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_failure_reason: Optional[str] = None
    tenant_id: str = "default"
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "events": self.events,
            "filters": self.filters,
            "owner_id": self.owner_id,
            "description": self.description,
            "secret_credential_id": self.secret_credential_id,
            "max_retries": self.max_retries,
            "backoff_base_seconds": self.backoff_base_seconds,
            "timeout_seconds": self.timeout_seconds,
            "status": self.status.value,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "consecutive_failures": self.consecutive_failures,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "last_failure_reason": self.last_failure_reason,
            "tenant_id": self.tenant_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class WebhookDelivery:
    """One transmission of an event to a webhook, retried in place until terminal.

    Once delivered or failed the row is frozen; a redelivery is a new row
    pointing back through ``redelivery_of``.
    """
    webhook_id: str
    event_type: str
    payload: dict[str, Any]
    max_attempts: int
    scheduled_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_id: Optional[str] = None
    attempt_count: int = 0
    status: DeliveryStatus = DeliveryStatus.PENDING
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    response_time_ms: Optional[float] = None
    is_successful: bool = False
    delivered_at: Optional[datetime] = None
    last_error: Optional[str] = None
    redelivery_of: Optional[str] = None
    tenant_id: str = "default"
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "webhook_id": self.webhook_id,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "payload": self.payload,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "response_status": self.response_status,
            "response_body": self.response_body,
            "response_time_ms": round(self.response_time_ms, 1) if self.response_time_ms is not None else None,
            "is_successful": self.is_successful,
            "scheduled_at": self.scheduled_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "last_error": self.last_error,
            "redelivery_of": self.redelivery_of,
            "tenant_id": self.tenant_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DomainEvent:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = "default"
    occurred_at: datetime = field(default_factory=_utcnow)

    def envelope(self) -> dict[str, Any]:
        """The body every subscriber receives."""
        return {
            "id": self.id,
            "type": self.type,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.payload,
        }
