"""Gateway repositories: async database access with tenant isolation.

Extends BaseRepository with lookups by ``ref`` (the runtime object's id),
upserts used to mirror runtime state, and domain queries: unfinished deliveries,
unresolved dead letters, routes referencing an integration, health history, execution log.
"""

from typing import Any, TypeVar

from sqlalchemy import select

from gateway.models.db_models import (
    CredentialRecord,
    HealthCheckRecord,
    IntegrationRecord,
    RouteExecutionRecord,
    RouteRecord,
    TransformerRecord,
    WebhookDeliveryRecord,
    WebhookRecord,
)
from patterns.repository import BaseRepository

RefModelT = TypeVar("RefModelT", IntegrationRecord, CredentialRecord, RouteRecord,
                    TransformerRecord, WebhookRecord, WebhookDeliveryRecord)


# ---------------------------------------------------------------------------
# Ref-keyed base
# ---------------------------------------------------------------------------

class RefRepository(BaseRepository[RefModelT]):
    """Repository for tables keyed by a runtime id within a tenant."""

    async def get_by_ref(self, tenant_id: str, ref: str) -> RefModelT | None:
        stmt = select(self.model).where(self.model.tenant_id == tenant_id, self.model.ref == ref)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def save(self, tenant_id: str, ref: str, values: dict[str, Any]) -> RefModelT:
        """Insert or update the row for ``ref``."""
        row = await self.get_by_ref(tenant_id, ref)
        if row is None:
            return await self.add(tenant_id, {"ref": ref, **values})
        for key, value in values.items():
            setattr(row, key, value)
        await self.session.flush()
        return row

    async def delete_ref(self, tenant_id: str, ref: str) -> bool:
        row = await self.get_by_ref(tenant_id, ref)
        if row is None:
            return False
        await self.session.delete(row)
        await self.session.flush()
        return True


# ---------------------------------------------------------------------------
# Entity repositories
# ---------------------------------------------------------------------------

class IntegrationRepository(RefRepository[IntegrationRecord]):
    model = IntegrationRecord


class CredentialRepository(RefRepository[CredentialRecord]):
    model = CredentialRecord


class RouteRepository(RefRepository[RouteRecord]):
    model = RouteRecord

    async def using_integration(self, tenant_id: str, integration_id: str) -> list[RouteRecord]:
        """Routes with a step bound to ``integration_id`` (steps are JSON, filtered here)."""
        rows = await self.all(tenant_id)
        return [r for r in rows if any(s.get("integration_id") == integration_id for s in r.steps or [])]


class TransformerRepository(RefRepository[TransformerRecord]):
    model = TransformerRecord


class WebhookRepository(RefRepository[WebhookRecord]):
    model = WebhookRecord


class DeliveryRepository(RefRepository[WebhookDeliveryRecord]):
    model = WebhookDeliveryRecord

    async def for_webhook(self, tenant_id: str, webhook_id: str, limit: int = 50) -> list[WebhookDeliveryRecord]:
        return await self.recent(tenant_id, WebhookDeliveryRecord.created_at, limit, webhook_id=webhook_id)

    async def unfinished(self) -> list[WebhookDeliveryRecord]:
        """Every pending or retrying delivery, oldest schedule first (all tenants)."""
        stmt = (
            select(WebhookDeliveryRecord)
            .where(WebhookDeliveryRecord.status.in_(("pending", "retrying")))
            .order_by(WebhookDeliveryRecord.scheduled_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def dead_letters(self) -> list[WebhookDeliveryRecord]:
        """Failed deliveries whose dead letter is still unresolved (all tenants)."""
        stmt = (
            select(WebhookDeliveryRecord)
            .where(
                WebhookDeliveryRecord.status == "failed",
                WebhookDeliveryRecord.dead_letter_status.is_(None),
            )
            .order_by(WebhookDeliveryRecord.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def resolve_dead_letter(self, tenant_id: str, ref: str, status: str) -> bool:
        row = await self.get_by_ref(tenant_id, ref)
        if row is None:
            return False
        row.dead_letter_status = status
        await self.session.flush()
        return True


class HealthCheckRepository(BaseRepository[HealthCheckRecord]):
    model = HealthCheckRecord

    async def history(self, tenant_id: str, integration_id: str, limit: int = 50) -> list[HealthCheckRecord]:
        return await self.recent(tenant_id, HealthCheckRecord.checked_at, limit, integration_id=integration_id)


class ExecutionRepository(BaseRepository[RouteExecutionRecord]):
    model = RouteExecutionRecord

    async def for_route(self, tenant_id: str, route_id: str, limit: int = 50) -> list[RouteExecutionRecord]:
        return await self.recent(tenant_id, RouteExecutionRecord.executed_at, limit, route_id=route_id)
