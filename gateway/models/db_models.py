"""SQLAlchemy models for the integration gateway.

Each model inherits from Base and uses TenantMixin for multi-tenant isolation.
``ref`` holds the runtime object's id (integration id, route id, transformer
name, ...); ``id`` stays the row's own UUID. Mirrored models offer:
- ``values(obj)``: column values for a runtime object
- ``to_domain()``: rebuild the runtime object when hydrating

The execution and health-check logs are append-only and read back through
``to_dict()``.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.connectors import AuthType, HealthCheckResult, HealthStatus, Integration
from core.credentials import Credential
from core.models.base import Base, TenantMixin, aware, tenant_ref_unique
from core.routing import AggregationStrategy, ExecutionRecord, Route, RouteStep
from core.transformers import Transformer, TransformerKind
from core.webhooks import DeliveryStatus, Webhook, WebhookDelivery, WebhookStatus
from patterns.domain_config import CacheConfig, RateLimitConfig, RetryPolicy


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Integrations & credentials
# ---------------------------------------------------------------------------

class IntegrationRecord(TenantMixin, Base):
    """A registered third-party service and its latest health statistics."""

    __tablename__ = "integrations"
    __table_args__ = tenant_ref_unique("integrations")

    ref: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    provider: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    base_url: Mapped[str] = mapped_column(String(500), nullable=False)
    auth_type: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    credential_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    auth_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    rate_limit: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    retry_policy: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    cache_policy: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    health_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    health_status: Mapped[str] = mapped_column(String(20), nullable=False, default="unknown")
    avg_response_time_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    uptime_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @staticmethod
    def values(integration: Integration) -> dict[str, Any]:
        limits = integration.rate_limit
        described = integration.to_dict()
        return {
            "name": integration.name,
            "category": integration.category,
            "provider": integration.provider,
            "base_url": integration.base_url,
            "auth_type": integration.auth_type.value,
            "credential_id": integration.credential_id,
            "auth_config": integration.auth_config,
            "rate_limit": {"per_minute": limits.per_minute, "per_hour": limits.per_hour, "per_day": limits.per_day},
            "retry_policy": described["retry"],
            "cache_policy": described["cache"],
            "health_path": integration.health_path,
            "enabled": integration.enabled,
            "health_status": integration.health_status.value,
            "avg_response_time_ms": integration.avg_response_time_ms,
            "error_rate": integration.error_rate,
            "uptime_percentage": integration.uptime_percentage,
            "last_checked_at": integration.last_checked_at,
        }

    def to_domain(self) -> Integration:
        return Integration(
            id=self.ref,
            name=self.name,
            base_url=self.base_url,
            category=self.category,
            provider=self.provider,
            auth_type=AuthType(self.auth_type),
            credential_id=self.credential_id,
            auth_config=dict(self.auth_config or {}),
            rate_limit=RateLimitConfig(**(self.rate_limit or {})),
            retry=RetryPolicy.from_dict(self.retry_policy),
            cache=CacheConfig(**(self.cache_policy or {})),
            health_path=self.health_path,
            enabled=self.enabled,
            tenant_id=self.tenant_id,
            health_status=HealthStatus(self.health_status),
            avg_response_time_ms=self.avg_response_time_ms,
            error_rate=self.error_rate,
            uptime_percentage=self.uptime_percentage,
            last_checked_at=aware(self.last_checked_at),
            created_at=aware(self.created_at),
        )


class CredentialRecord(TenantMixin, Base):
    """Hashed credential plus its Fernet-sealed secret. Never the plaintext."""

    __tablename__ = "credentials"
    __table_args__ = tenant_ref_unique("credentials")

    ref: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    owner_type: Mapped[str] = mapped_column(String(30), nullable=False, default="integration")
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    prefix: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    secret_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    salt: Mapped[str] = mapped_column(String(64), nullable=False)
    sealed_secret: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    rotation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rotated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    previous_salt: Mapped[str | None] = mapped_column(String(64), nullable=True)
    grace_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @staticmethod
    def values(credential: Credential) -> dict[str, Any]:
        record = credential.to_record()
        record.pop("id")
        record.pop("tenant_id")
        record["details"] = record.pop("metadata")
        return record

    def to_domain(self) -> Credential:
        credential = Credential.from_record({
            "id": self.ref,
            "tenant_id": self.tenant_id,
            "owner_id": self.owner_id,
            "owner_type": self.owner_type,
            "type": self.type,
            "prefix": self.prefix,
            "secret_hash": self.secret_hash,
            "salt": self.salt,
            "sealed_secret": self.sealed_secret,
            "status": self.status,
            "rotation_count": self.rotation_count,
            "metadata": self.details,
            "expires_at": self.expires_at,
            "rotated_at": self.rotated_at,
            "revoked_at": self.revoked_at,
            "revoke_reason": self.revoke_reason,
            "previous_hash": self.previous_hash,
            "previous_salt": self.previous_salt,
            "grace_until": self.grace_until,
        })
        credential.created_at = aware(self.created_at)
        return credential


# ---------------------------------------------------------------------------
# Routes & transformers
# ---------------------------------------------------------------------------

class RouteRecord(TenantMixin, Base):
    """A route binding; ``steps`` is stored as JSON in execution order."""

    __tablename__ = "routes"
    __table_args__ = tenant_ref_unique("routes")

    ref: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    steps: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    aggregation_strategy: Mapped[str] = mapped_column(String(20), nullable=False, default="first_success")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    conditions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    chain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timeout_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    @staticmethod
    def values(route: Route) -> dict[str, Any]:
        return {
            "name": route.name,
            "path": route.path,
            "method": route.method,
            "steps": [s.to_dict() for s in route.steps],
            "aggregation_strategy": route.aggregation_strategy.value,
            "enabled": route.enabled,
            "conditions": route.conditions,
            "chain": route.chain,
            "timeout_seconds": route.timeout_seconds,
            "version": route.version,
        }

    def to_domain(self) -> Route:
        return Route(
            id=self.ref,
            name=self.name,
            path=self.path,
            method=self.method,
            steps=[RouteStep.from_dict(s) for s in self.steps or []],
            aggregation_strategy=AggregationStrategy(self.aggregation_strategy),
            enabled=self.enabled,
            conditions=list(self.conditions or []),
            chain=self.chain,
            timeout_seconds=self.timeout_seconds,
            version=self.version,
            tenant_id=self.tenant_id,
            created_at=aware(self.created_at),
            updated_at=aware(self.updated_at),
        )


class TransformerRecord(TenantMixin, Base):
    """A user-registered transformer. Builtins are code, not rows."""

    __tablename__ = "transformers"
    __table_args__ = tenant_ref_unique("transformers")

    ref: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    input_schema: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    output_schema: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    @staticmethod
    def values(transformer: Transformer) -> dict[str, Any]:
        return {
            "kind": transformer.kind.value,
            "config": transformer.config,
            "description": transformer.description,
            "input_schema": transformer.input_schema,
            "output_schema": transformer.output_schema,
        }

    def to_domain(self) -> Transformer:
        return Transformer(
            id=self.ref,
            kind=TransformerKind(self.kind),
            config=dict(self.config or {}),
            description=self.description,
            input_schema=self.input_schema,
            output_schema=self.output_schema,
            tenant_id=self.tenant_id,
            created_at=aware(self.created_at),
        )


class RouteExecutionRecord(TenantMixin, Base):
    """Execution log entry for one production route execution."""

    __tablename__ = "route_executions"

    ref: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    route_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    route_version: Mapped[int] = mapped_column(Integer, nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    status: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_ms: Mapped[float] = mapped_column(Float, nullable=False)
    steps: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @staticmethod
    def values(record: ExecutionRecord) -> dict[str, Any]:
        return {
            "ref": record.id,
            "route_id": record.route_id,
            "route_version": record.route_version,
            "path": record.path,
            "method": record.method,
            "success": record.success,
            "status": record.status,
            "duration_ms": record.duration_ms,
            "steps": record.steps,
            "executed_at": record.executed_at,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.ref,
            "route_id": self.route_id,
            "route_version": self.route_version,
            "path": self.path,
            "method": self.method,
            "success": self.success,
            "status": self.status,
            "duration_ms": round(self.duration_ms, 1),
            "steps": self.steps,
            "executed_at": _iso(self.executed_at),
        }


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class HealthCheckRecord(TenantMixin, Base):
    """One health check outcome."""

    __tablename__ = "health_checks"

    integration_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    checked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    @staticmethod
    def values(result: HealthCheckResult) -> dict[str, Any]:
        return {
            "integration_id": result.integration_id,
            "status": result.status.value,
            "response_time_ms": result.response_time_ms,
            "status_code": result.status_code,
            "message": result.message,
            "checked_at": result.checked_at,
        }

    def to_dict(self) -> dict:
        return {
            "integrationId": self.integration_id,
            "status": self.status,
            "responseTimeMs": self.response_time_ms,
            "statusCode": self.status_code,
            "message": self.message,
            "checkedAt": _iso(self.checked_at),
        }


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

class WebhookRecord(TenantMixin, Base):
    """A webhook subscription with its delivery counters."""

    __tablename__ = "webhooks"
    __table_args__ = tenant_ref_unique("webhooks")

    ref: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    events: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    filters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, default="", index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    secret_credential_id: Mapped[str] = mapped_column(String(100), nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_base_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=60.0)
    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=30.0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    @staticmethod
    def values(webhook: Webhook) -> dict[str, Any]:
        return {
            "url": webhook.url,
            "events": webhook.events,
            "filters": webhook.filters,
            "owner_id": webhook.owner_id,
            "description": webhook.description,
            "secret_credential_id": webhook.secret_credential_id,
            "max_retries": webhook.max_retries,
            "backoff_base_seconds": webhook.backoff_base_seconds,
            "timeout_seconds": webhook.timeout_seconds,
            "status": webhook.status.value,
            "success_count": webhook.success_count,
            "failure_count": webhook.failure_count,
            "consecutive_failures": webhook.consecutive_failures,
            "last_success_at": webhook.last_success_at,
            "last_failure_at": webhook.last_failure_at,
            "last_failure_reason": webhook.last_failure_reason,
        }

    def to_domain(self) -> Webhook:
        return Webhook(
            id=self.ref,
            url=self.url,
            events=list(self.events or []),
            filters=dict(self.filters or {}),
            owner_id=self.owner_id,
            description=self.description,
            secret_credential_id=self.secret_credential_id,
            max_retries=self.max_retries,
            backoff_base_seconds=self.backoff_base_seconds,
            timeout_seconds=self.timeout_seconds,
            status=WebhookStatus(self.status),
            success_count=self.success_count,
            failure_count=self.failure_count,
            consecutive_failures=self.consecutive_failures,
            last_success_at=aware(self.last_success_at),
            last_failure_at=aware(self.last_failure_at),
            last_failure_reason=self.last_failure_reason,
            tenant_id=self.tenant_id,
            created_at=aware(self.created_at),
        )


class WebhookDeliveryRecord(TenantMixin, Base):
    """One delivery row. Frozen once delivered or failed."""

    __tablename__ = "webhook_deliveries"
    __table_args__ = tenant_ref_unique("webhook_deliveries")

    ref: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    webhook_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_successful: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    redelivery_of: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Set once the dead letter for a failed row is redelivered or discarded
    dead_letter_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    @staticmethod
    def values(delivery: WebhookDelivery) -> dict[str, Any]:
        return {
            "webhook_id": delivery.webhook_id,
            "event_type": delivery.event_type,
            "event_id": delivery.event_id,
            "payload": delivery.payload,
            "attempt_count": delivery.attempt_count,
            "max_attempts": delivery.max_attempts,
            "status": delivery.status.value,
            "response_status": delivery.response_status,
            "response_body": delivery.response_body,
            "response_time_ms": delivery.response_time_ms,
            "is_successful": delivery.is_successful,
            "scheduled_at": delivery.scheduled_at,
            "delivered_at": delivery.delivered_at,
            "last_error": delivery.last_error,
            "redelivery_of": delivery.redelivery_of,
        }

    def to_domain(self) -> WebhookDelivery:
        return WebhookDelivery(
            id=self.ref,
            webhook_id=self.webhook_id,
            event_type=self.event_type,
            event_id=self.event_id,
            payload=dict(self.payload or {}),
            attempt_count=self.attempt_count,
            max_attempts=self.max_attempts,
            status=DeliveryStatus(self.status),
            response_status=self.response_status,
            response_body=self.response_body,
            response_time_ms=self.response_time_ms,
            is_successful=self.is_successful,
            scheduled_at=aware(self.scheduled_at),
            delivered_at=aware(self.delivered_at),
            last_error=self.last_error,
            redelivery_of=self.redelivery_of,
            tenant_id=self.tenant_id,
            created_at=aware(self.created_at),
        )
