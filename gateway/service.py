"""Gateway service: wires the runtime components and mirrors them to the database.

The in-memory components (vault, connector registry, transformer registry,
route engine, health monitor, webhook dispatcher) are authoritative while
the process runs. Every mutation is written through to the durable store,
and ``hydrate()`` rebuilds the runtime state from it on startup. When a
write fails, the in-memory change is undone before the error propagates.

Objects belong to the tenant that created them. Lookups by id from another
tenant raise NotFound, exactly as if the object did not exist.
"""

import copy
import inspect
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.connectors import (
    AlertRule,
    AuthType,
    ConnectorRegistry,
    HealthAlert,
    HealthCheckResult,
    HealthMonitor,
    Integration,
)
from core.credentials import Credential, CredentialAuditEntry, CredentialVault, IssuedCredential
from core.database import async_session_factory
from core.errors import ConfigError, ConflictError, NotFound
from core.resilience import DeadLetter, DLQStatus
from core.routing import ExecutionResult, Route, RouteBindingEngine
from core.transformers import Transformer, TransformerRegistry
from core.webhooks import DeliveryStatus, DomainEvent, Webhook, WebhookDelivery, WebhookDispatcher
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
from gateway.repository import (
    CredentialRepository,
    DeliveryRepository,
    ExecutionRepository,
    HealthCheckRepository,
    IntegrationRepository,
    RouteRepository,
    TransformerRepository,
    WebhookRepository,
)
from patterns.domain_config import CacheConfig, GatewayConfig, RateLimitConfig, RetryPolicy

logger = structlog.get_logger(__name__)

Write = Callable[[AsyncSession], Awaitable[Any]]


class GatewayService:
    """Facade used by the HTTP layer. One instance per application."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        vault: Optional[CredentialVault] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        webhook_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or GatewayConfig.default()
        self._session_factory = session_factory
        self.vault = vault or CredentialVault()
        self.connectors = ConnectorRegistry(self.vault, self.config.breaker, transport=transport)
        self.transformers = TransformerRegistry(max_pipeline_depth=self.config.routing.max_pipeline_depth)
        self.engine = RouteBindingEngine(self.connectors, self.transformers, self.config.routing)
        self.monitor = HealthMonitor(self.config.health, transport=transport)
        self.dispatcher = WebhookDispatcher(self.vault, self.config.webhooks, transport=webhook_transport)

        self.monitor.subscribe(self._persist_health)
        self.dispatcher.subscribe(self._persist_delivery)

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def _write_through(self, write: Write, undo: Callable[[], Any]) -> None:
        """Persist a change already applied in memory, undoing it if the write fails."""
        try:
            async with self._session() as session:
                await write(session)
        except Exception:
            logger.exception("write_through_failed")
            outcome = undo()
            if inspect.isawaitable(outcome):
                await outcome
            raise

    @staticmethod
    def _owned(obj: Any, tenant_id: str, resource: str, obj_id: str) -> Any:
        if obj.tenant_id != tenant_id:
            raise NotFound(resource, obj_id)
        return obj

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def hydrate(self) -> None:
        """Load every stored object into the runtime components."""
        async with self._session() as session:
            for row in await CredentialRepository(session).all():
                self.vault.load(row.to_domain())
            for row in await IntegrationRepository(session).all():
                integration = row.to_domain()
                self.connectors.register(integration)
                self.monitor.watch(integration)
            for row in await TransformerRepository(session).all():
                self.transformers.load(row.to_domain())
            for row in await RouteRepository(session).all():
                self.engine.load(row.to_domain())
            for row in await WebhookRepository(session).all():
                self.dispatcher.load(row.to_domain())
            deliveries = DeliveryRepository(session)
            for row in await deliveries.unfinished():
                self.dispatcher.load_delivery(row.to_domain())
            for row in await deliveries.dead_letters():
                self.dispatcher.load_dead_letter(row.to_domain())
        logger.info(
            "gateway_hydrated",
            integrations=len(self.connectors.integrations()),
            routes=len(self.engine.list()),
            webhooks=len(self.dispatcher.list()),
            dead_letters=self.dispatcher.dlq.stats().pending,
        )

    def start(self) -> None:
        self.monitor.start()
        self.dispatcher.start()

    async def aclose(self) -> None:
        await self.monitor.aclose()
        await self.dispatcher.aclose()
        await self.connectors.aclose()

    # ------------------------------------------------------------------
    # Write-through helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _save_credential(session: AsyncSession, credential: Credential) -> None:
        await CredentialRepository(session).save(
            credential.tenant_id, credential.id, CredentialRecord.values(credential)
        )

    @staticmethod
    async def _save_integration(session: AsyncSession, integration: Integration) -> None:
        await IntegrationRepository(session).save(
            integration.tenant_id, integration.id, IntegrationRecord.values(integration)
        )

    @staticmethod
    async def _save_route(session: AsyncSession, route: Route) -> None:
        await RouteRepository(session).save(route.tenant_id, route.id, RouteRecord.values(route))

    @staticmethod
    async def _save_webhook(session: AsyncSession, webhook: Webhook) -> None:
        await WebhookRepository(session).save(webhook.tenant_id, webhook.id, WebhookRecord.values(webhook))

    async def _persist_health(self, result: HealthCheckResult) -> None:
        integration = self.connectors.get(result.integration_id).integration
        async with self._session() as session:
            await HealthCheckRepository(session).add(integration.tenant_id, HealthCheckRecord.values(result))
            await self._save_integration(session, integration)

    async def _persist_delivery(self, delivery: WebhookDelivery, webhook: Webhook) -> None:
        async with self._session() as session:
            await DeliveryRepository(session).save(
                delivery.tenant_id, delivery.id, WebhookDeliveryRecord.values(delivery)
            )
            await self._save_webhook(session, webhook)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def create_credential(self, data: dict[str, Any], tenant_id: str, actor: str) -> IssuedCredential:
        issued = self.vault.create(
            data["owner_id"],
            data["type"],
            data.get("metadata"),
            owner_type=data.get("owner_type", "integration"),
            expires_at=data.get("expires_at"),
            secret=data.get("secret"),
            tenant_id=tenant_id,
            actor=actor,
        )
        credential = issued.credential
        await self._write_through(
            lambda session: self._save_credential(session, credential),
            lambda: self.vault.remove(credential.id),
        )
        return issued

    async def rotate_credential(self, credential_id: str, grace_seconds: float, tenant_id: str,
                                actor: str) -> IssuedCredential:
        previous = copy.deepcopy(self.get_credential(credential_id, tenant_id))
        issued = self.vault.rotate(credential_id, grace_seconds=grace_seconds, actor=actor)
        await self._write_through(
            lambda session: self._save_credential(session, issued.credential),
            lambda: self.vault.load(previous),
        )
        return issued

    async def revoke_credential(self, credential_id: str, reason: str, tenant_id: str, actor: str) -> Credential:
        previous = copy.deepcopy(self.get_credential(credential_id, tenant_id))
        credential = self.vault.revoke(credential_id, reason=reason, actor=actor)
        await self._write_through(
            lambda session: self._save_credential(session, credential),
            lambda: self.vault.load(previous),
        )
        return credential

    async def verify_credential(self, credential_id: str, secret: str, tenant_id: str, actor: str) -> bool:
        self.get_credential(credential_id, tenant_id)
        valid = self.vault.verify(credential_id, secret, actor=actor)
        # Verification may settle a grace window or mark the credential expired
        credential = self.vault.get(credential_id)
        async with self._session() as session:
            await self._save_credential(session, credential)
        return valid

    def get_credential(self, credential_id: str, tenant_id: str) -> Credential:
        return self._owned(self.vault.get(credential_id), tenant_id, "Credential", credential_id)

    def credential_audit(self, credential_id: str, tenant_id: str, limit: int = 100) -> list[CredentialAuditEntry]:
        self.get_credential(credential_id, tenant_id)
        return self.vault.audit_log(credential_id, limit)

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------

    def _check_auth(self, integration: Integration) -> None:
        if integration.auth_type != AuthType.NONE:
            if not integration.credential_id:
                raise ConfigError(f"auth_type '{integration.auth_type.value}' requires a credential_id")
            self.get_credential(integration.credential_id, integration.tenant_id)

    async def create_integration(self, data: dict[str, Any], tenant_id: str) -> Integration:
        integration = Integration(
            name=data["name"],
            base_url=data["base_url"],
            category=data.get("category", "general"),
            provider=data.get("provider", ""),
            auth_type=AuthType(data.get("auth_type", "none")),
            credential_id=data.get("credential_id"),
            auth_config=dict(data.get("auth_config") or {}),
            rate_limit=RateLimitConfig(**(data.get("rate_limit") or {})),
            retry=RetryPolicy.from_dict(data.get("retry")),
            cache=CacheConfig(**(data.get("cache") or {})),
            health_path=data.get("health_path"),
            enabled=data.get("enabled", True),
            tenant_id=tenant_id,
        )
        self._check_auth(integration)
        self.connectors.register(integration)
        self.monitor.watch(integration)

        async def undo() -> None:
            self.monitor.unwatch(integration.id)
            await self.connectors.remove(integration.id)

        await self._write_through(lambda session: self._save_integration(session, integration), undo)
        logger.info("integration_created", integration_id=integration.id, name=integration.name)
        return integration

    async def update_integration(self, integration_id: str, changes: dict[str, Any], tenant_id: str) -> Integration:
        current = self.get_integration(integration_id, tenant_id)
        if "auth_type" in changes:
            changes["auth_type"] = AuthType(changes["auth_type"])
        if "rate_limit" in changes:
            changes["rate_limit"] = RateLimitConfig(**(changes["rate_limit"] or {}))
        if "retry" in changes:
            changes["retry"] = RetryPolicy.from_dict(changes["retry"])
        if "cache" in changes:
            changes["cache"] = CacheConfig(**(changes["cache"] or {}))
        updated = replace(current, **changes)
        self._check_auth(updated)
        self.connectors.register(updated)
        self.monitor.watch(updated)

        def undo() -> None:
            self.connectors.register(current)
            self.monitor.watch(current)

        await self._write_through(lambda session: self._save_integration(session, updated), undo)
        logger.info("integration_updated", integration_id=integration_id, fields=sorted(changes))
        return updated

    async def delete_integration(self, integration_id: str, tenant_id: str) -> None:
        integration = self.get_integration(integration_id, tenant_id)
        async with self._session() as session:
            stored = await RouteRepository(session).using_integration(integration.tenant_id, integration_id)
            referencing = {r.id for r in self.engine.routes_using_integration(integration_id)}
            referencing.update(r.ref for r in stored)
            if referencing:
                raise ConflictError(
                    "Integration is referenced by routes",
                    details={"routes": sorted(referencing)},
                )
            await IntegrationRepository(session).delete_ref(integration.tenant_id, integration_id)
        await self.connectors.remove(integration_id)
        self.monitor.unwatch(integration_id)
        logger.info("integration_deleted", integration_id=integration_id)

    def get_integration(self, integration_id: str, tenant_id: str) -> Integration:
        integration = self.connectors.get(integration_id).integration
        return self._owned(integration, tenant_id, "integration", integration_id)

    def list_integrations(self, tenant_id: str) -> list[Integration]:
        return [i for i in self.connectors.integrations() if i.tenant_id == tenant_id]

    async def check_health(self, integration_id: str, tenant_id: str) -> HealthCheckResult:
        self.get_integration(integration_id, tenant_id)
        result = await self.monitor.check(integration_id)
        await self.monitor.notify(result)
        return result

    async def health_history(self, integration_id: str, tenant_id: str, limit: int = 50) -> list[dict]:
        self.get_integration(integration_id, tenant_id)
        async with self._session() as session:
            rows = await HealthCheckRepository(session).history(tenant_id, integration_id, limit)
        return [row.to_dict() for row in rows]

    def health_stats(self, integration_id: str, tenant_id: str) -> dict[str, Any]:
        self.get_integration(integration_id, tenant_id)
        return self.monitor.stats(integration_id)

    def connector_snapshot(self, integration_id: str, tenant_id: str) -> dict[str, Any]:
        self.get_integration(integration_id, tenant_id)
        return self.connectors.get(integration_id).snapshot()

    def reset_connector(self, integration_id: str, tenant_id: str) -> dict[str, Any]:
        self.get_integration(integration_id, tenant_id)
        connector = self.connectors.get(integration_id)
        connector.breaker.reset()
        connector.rate_limiter.reset()
        connector.cache.clear()
        return connector.snapshot()

    def add_alert_rule(self, data: dict[str, Any], tenant_id: str) -> AlertRule:
        if data.get("integration_id"):
            self.get_integration(data["integration_id"], tenant_id)
        return self.monitor.add_rule(
            data["kind"], data["threshold"], name=data.get("name", ""), integration_id=data.get("integration_id")
        )

    def alerts(self, active_only: bool = False) -> list[HealthAlert]:
        return self.monitor.alerts(active_only=active_only)

    # ------------------------------------------------------------------
    # Transformers
    # ------------------------------------------------------------------

    def get_transformer(self, transformer_id: str, tenant_id: str) -> Transformer:
        transformer = self.transformers.get(transformer_id)
        if transformer.is_builtin:
            return transformer
        return self._owned(transformer, tenant_id, "transformer", transformer_id)

    def list_transformers(self, tenant_id: str, include_builtins: bool = True) -> list[Transformer]:
        return [
            t for t in self.transformers.list(include_builtins=include_builtins)
            if t.is_builtin or t.tenant_id == tenant_id
        ]

    async def register_transformer(self, data: dict[str, Any], tenant_id: str, is_superuser: bool) -> Transformer:
        transformer = self.transformers.register(
            data["id"],
            data["kind"],
            data.get("config"),
            description=data.get("description", ""),
            input_schema=data.get("input_schema"),
            output_schema=data.get("output_schema"),
            is_superuser=is_superuser,
            tenant_id=tenant_id,
        )

        async def write(session: AsyncSession) -> None:
            await TransformerRepository(session).save(tenant_id, transformer.id, TransformerRecord.values(transformer))

        await self._write_through(
            write, lambda: self.transformers.deregister(transformer.id, is_superuser=True)
        )
        return transformer

    async def delete_transformer(self, transformer_id: str, tenant_id: str, is_superuser: bool) -> None:
        transformer = self.get_transformer(transformer_id, tenant_id)
        routes = self.engine.routes_using_transformer(transformer_id)
        if routes:
            raise ConflictError(
                "Transformer is referenced by routes",
                details={"routes": [r.id for r in routes]},
            )
        self.transformers.deregister(transformer_id, is_superuser=is_superuser)
        await self._write_through(
            lambda session: TransformerRepository(session).delete_ref(transformer.tenant_id, transformer_id),
            lambda: self.transformers.load(transformer),
        )

    def test_transformer(self, transformer_id: str, payload: Any, context: dict[str, Any], tenant_id: str) -> Any:
        self.get_transformer(transformer_id, tenant_id)
        return self.transformers.apply(transformer_id, payload, context)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def _check_steps(self, route: Route) -> None:
        """Every step must call an integration owned by the route's tenant."""
        for step in route.steps:
            if self.connectors.exists(step.integration_id):
                self.get_integration(step.integration_id, route.tenant_id)

    def get_route(self, route_id: str, tenant_id: str) -> Route:
        return self._owned(self.engine.get(route_id), tenant_id, "route", route_id)

    def list_routes(self, tenant_id: str) -> list[Route]:
        return [r for r in self.engine.list() if r.tenant_id == tenant_id]

    async def create_route(self, data: dict[str, Any], tenant_id: str) -> Route:
        route = Route.from_dict({**data, "tenant_id": tenant_id})
        self._check_steps(route)
        self.engine.register(route)
        await self._write_through(
            lambda session: self._save_route(session, route),
            lambda: self.engine.remove(route.id),
        )
        return route

    async def update_route(self, route_id: str, changes: dict[str, Any], expected_version: int,
                           tenant_id: str) -> Route:
        current = self.get_route(route_id, tenant_id)
        route = self.engine.update(route_id, changes, expected_version)
        try:
            self._check_steps(route)
        except NotFound:
            self.engine.load(current)
            raise
        await self._write_through(
            lambda session: self._save_route(session, route),
            lambda: self.engine.load(current),
        )
        return route

    async def set_route_enabled(self, route_id: str, enabled: bool, tenant_id: str) -> Route:
        previous = copy.deepcopy(self.get_route(route_id, tenant_id))
        route = self.engine.set_enabled(route_id, enabled)
        await self._write_through(
            lambda session: self._save_route(session, route),
            lambda: self.engine.load(previous),
        )
        return route

    async def delete_route(self, route_id: str, tenant_id: str) -> None:
        route = self.get_route(route_id, tenant_id)
        async with self._session() as session:
            await RouteRepository(session).delete_ref(route.tenant_id, route_id)
        self.engine.remove(route_id)

    async def test_route(self, data: dict[str, Any], sample: Any, params: dict, query: dict,
                         tenant_id: str) -> ExecutionResult:
        route = Route.from_dict({**data, "tenant_id": tenant_id})
        self._check_steps(route)
        return await self.engine.test(route, sample, params=params, query=query)

    async def execute(self, path: str, method: str, payload: Any, query: dict[str, Any],
                      tenant_id: str) -> ExecutionResult:
        result = await self.engine.execute(path, method, payload, query=query, tenant_id=tenant_id)
        if result.record is not None:
            async with self._session() as session:
                await ExecutionRepository(session).add(
                    result.record.tenant_id, RouteExecutionRecord.values(result.record)
                )
        return result

    async def executions(self, route_id: str, tenant_id: str, limit: int = 50) -> list[dict]:
        self.get_route(route_id, tenant_id)
        async with self._session() as session:
            rows = await ExecutionRepository(session).for_route(tenant_id, route_id, limit)
        return [row.to_dict() for row in rows]

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def create_webhook(self, data: dict[str, Any], tenant_id: str, owner_id: str) -> tuple[Webhook, IssuedCredential]:
        webhook, issued = self.dispatcher.create(
            data["url"],
            data["events"],
            filters=data.get("filters"),
            owner_id=owner_id,
            description=data.get("description", ""),
            max_retries=data.get("max_retries"),
            backoff_base_seconds=data.get("backoff_base_seconds"),
            timeout_seconds=data.get("timeout_seconds"),
            tenant_id=tenant_id,
            actor=owner_id,
        )

        async def write(session: AsyncSession) -> None:
            await self._save_credential(session, issued.credential)
            await self._save_webhook(session, webhook)

        def undo() -> None:
            self.dispatcher.remove(webhook.id)
            self.vault.remove(issued.credential.id)

        await self._write_through(write, undo)
        return webhook, issued

    async def _change_webhook(self, webhook_id: str, tenant_id: str, change: Callable[[], Webhook]) -> Webhook:
        previous = copy.deepcopy(self.get_webhook(webhook_id, tenant_id))
        webhook = change()
        await self._write_through(
            lambda session: self._save_webhook(session, webhook),
            lambda: self.dispatcher.load(previous),
        )
        return webhook

    async def update_webhook(self, webhook_id: str, changes: dict[str, Any], tenant_id: str) -> Webhook:
        return await self._change_webhook(webhook_id, tenant_id, lambda: self.dispatcher.update(webhook_id, **changes))

    async def pause_webhook(self, webhook_id: str, tenant_id: str) -> Webhook:
        return await self._change_webhook(webhook_id, tenant_id, lambda: self.dispatcher.pause(webhook_id))

    async def resume_webhook(self, webhook_id: str, tenant_id: str) -> Webhook:
        return await self._change_webhook(webhook_id, tenant_id, lambda: self.dispatcher.resume(webhook_id))

    def get_webhook(self, webhook_id: str, tenant_id: str) -> Webhook:
        return self._owned(self.dispatcher.get(webhook_id), tenant_id, "webhook", webhook_id)

    def list_webhooks(self, tenant_id: str) -> list[Webhook]:
        return self.dispatcher.list(tenant_id=tenant_id)

    async def deliveries(self, webhook_id: str, tenant_id: str, limit: int = 50) -> list[WebhookDelivery]:
        """Delivery history from the durable store, newest first."""
        self.get_webhook(webhook_id, tenant_id)
        async with self._session() as session:
            rows = await DeliveryRepository(session).for_webhook(tenant_id, webhook_id, limit)
        return [row.to_domain() for row in rows]

    async def emit(self, data: dict[str, Any], tenant_id: str) -> list[WebhookDelivery]:
        event = DomainEvent(
            type=data["type"],
            payload=data.get("payload") or {},
            attributes=data.get("attributes") or {},
            tenant_id=tenant_id,
        )
        if data.get("id"):
            event.id = data["id"]
        return await self.dispatcher.emit(event)

    async def redeliver(self, delivery_id: str, tenant_id: str, actor: str) -> WebhookDelivery:
        """Redeliver a finished delivery, reading it back from the store once swept from memory."""
        original = self.dispatcher.find_delivery(delivery_id)
        if original is None:
            async with self._session() as session:
                row = await DeliveryRepository(session).get_by_ref(tenant_id, delivery_id)
            if row is None:
                raise NotFound("delivery", delivery_id)
            original = row.to_domain()
        self._owned(original, tenant_id, "delivery", delivery_id)
        self.get_webhook(original.webhook_id, tenant_id)

        fresh = await self.dispatcher.redeliver(original, actor=actor)
        if original.status == DeliveryStatus.FAILED:
            async with self._session() as session:
                await DeliveryRepository(session).resolve_dead_letter(
                    tenant_id, delivery_id, DLQStatus.REDELIVERED.value
                )
        return fresh

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    def dead_letters(self, tenant_id: str, webhook_id: Optional[str] = None, limit: int = 50) -> list[DeadLetter]:
        return self.dispatcher.dead_letters(tenant_id=tenant_id, webhook_id=webhook_id, limit=limit)

    async def discard_dead_letter(self, delivery_id: str, reason: str, tenant_id: str, actor: str) -> DeadLetter:
        letter = self.dispatcher.dlq.get(delivery_id)
        if letter is None:
            raise NotFound("dead letter", delivery_id)
        self._owned(letter, tenant_id, "dead letter", delivery_id)
        if letter.status != DLQStatus.PENDING:
            raise ConflictError(f"Dead letter was already {letter.status.value}")
        async with self._session() as session:
            await DeliveryRepository(session).resolve_dead_letter(tenant_id, delivery_id, DLQStatus.DISCARDED.value)
        return self.dispatcher.discard(delivery_id, reason=reason, actor=actor)
