"""
Gateway Webhook Dispatcher: domain events -> signed, retried deliveries

- Fan-out: every active webhook whose subscription and filters match
- Time-ordered schedule (heap) drained by a pool of delivery workers
- Retries are rescheduled at scheduled_at + base * 2**(attempt - 1),
  never slept on; each delivery has at most one attempt in flight
- Terminal failure counts once toward the webhook and lands in the DLQ
- Success handling is idempotent: a delivered row is never re-counted
- Optional auto-pause once consecutive terminal failures exceed a ceiling
- A periodic sweep expires idempotency keys and evicts finished deliveries
"""
from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union
import asyncio
import heapq
import inspect
import itertools
import time

import httpx
import structlog

from core.credentials import CredentialType, CredentialVault, IssuedCredential
from core.errors import ConfigError, ConflictError, CredentialError, NotFound
from core.resilience import DeadLetter, DeadLetterQueue, DLQStatus, IdempotencyStore, generate_idempotency_key
from core.webhooks.models import (
    DeliveryStatus,
    DomainEvent,
    Webhook,
    WebhookDelivery,
    WebhookStatus,
)
from core.webhooks.signing import build_headers, canonical_json
from patterns.domain_config import WebhookPolicyConfig
from patterns.rules_engine import match_webhook_filters

logger = structlog.get_logger(__name__)

DeliveryListener = Callable[[WebhookDelivery, Webhook], Union[None, Awaitable[None]]]

_EMIT_TTL_SECONDS = 86400
_RESPONSE_BODY_LIMIT = 2000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookDispatcher:
    """Owns webhook subscriptions, the delivery schedule and the worker pool."""

    def __init__(
        self,
        vault: CredentialVault,
        policy: Optional[WebhookPolicyConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = _utcnow,
        dlq: Optional[DeadLetterQueue] = None,
        guard: Optional[IdempotencyStore] = None,
    ):
        self.vault = vault
        self.policy = policy or WebhookPolicyConfig()
        self.dlq = dlq or DeadLetterQueue()
        self.guard = guard or IdempotencyStore()
        self._clock = clock
        self._client = httpx.AsyncClient(transport=transport)

        self._webhooks: dict[str, Webhook] = {}
        self._deliveries: dict[str, WebhookDelivery] = {}
        self._schedule: list[tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._held: dict[str, set[str]] = defaultdict(set)  # paused webhook -> delivery ids
        self._listeners: list[DeliveryListener] = []
        self._next_sweep_at = clock()

        self._queue: Optional[asyncio.Queue[str]] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _validate(self, webhook: Webhook) -> None:
        if not webhook.url.startswith(("http://", "https://")):
            raise ConfigError("Webhook URL must be http(s)")
        if not webhook.events or not all(isinstance(e, str) and e for e in webhook.events):
            raise ConfigError("Webhook must subscribe to at least one event type")
        if not isinstance(webhook.filters, dict) or not all(isinstance(v, list) for v in webhook.filters.values()):
            raise ConfigError("Webhook filters must map attribute names to lists of allowed values")
        if webhook.max_retries < 1:
            raise ConfigError("max_retries must be at least 1")
        if webhook.backoff_base_seconds <= 0 or webhook.timeout_seconds <= 0:
            raise ConfigError("Backoff base and timeout must be positive")

    def create(
        self,
        url: str,
        events: list[str],
        *,
        filters: Optional[dict[str, list[Any]]] = None,
        owner_id: str = "",
        description: str = "",
        max_retries: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        tenant_id: str = "default",
        actor: str = "system",
    ) -> tuple[Webhook, IssuedCredential]:
        """Register a webhook and mint its signing secret (returned once)."""
        webhook = Webhook(
            url=url,
            events=list(events),
            secret_credential_id="",
            owner_id=owner_id,
            description=description,
            filters=dict(filters or {}),
            max_retries=max_retries if max_retries is not None else self.policy.max_retries,
            backoff_base_seconds=backoff_base_seconds or self.policy.backoff_base_seconds,
            timeout_seconds=timeout_seconds or self.policy.timeout_seconds,
            tenant_id=tenant_id,
        )
        self._validate(webhook)
        issued = self.vault.create(
            webhook.id,
            CredentialType.CUSTOM,
            {"purpose": "webhook_signing"},
            owner_type="webhook",
            tenant_id=tenant_id,
            actor=actor,
        )
        webhook.secret_credential_id = issued.credential.id
        self._webhooks[webhook.id] = webhook
        logger.info("webhook_registered", webhook_id=webhook.id, events=webhook.events)
        return webhook, issued

    def load(self, webhook: Webhook) -> None:
        self._webhooks[webhook.id] = webhook

    def update(self, webhook_id: str, **changes: Any) -> Webhook:
        current = self.get(webhook_id)
        allowed = {"url", "events", "filters", "description", "max_retries", "backoff_base_seconds", "timeout_seconds"}
        unknown = set(changes) - allowed
        if unknown:
            raise ConfigError(f"Cannot update fields: {sorted(unknown)}")
        candidate = replace(current, **{k: v for k, v in changes.items() if v is not None})
        self._validate(candidate)
        for key in allowed:
            setattr(current, key, getattr(candidate, key))
        logger.info("webhook_updated", webhook_id=webhook_id, fields=sorted(changes))
        return current

    def get(self, webhook_id: str) -> Webhook:
        webhook = self._webhooks.get(webhook_id)
        if webhook is None:
            raise NotFound("webhook", webhook_id)
        return webhook

    def list(self, owner_id: Optional[str] = None, tenant_id: Optional[str] = None) -> list[Webhook]:
        hooks = list(self._webhooks.values())
        if owner_id:
            hooks = [w for w in hooks if w.owner_id == owner_id]
        if tenant_id:
            hooks = [w for w in hooks if w.tenant_id == tenant_id]
        return hooks

    def remove(self, webhook_id: str) -> None:
        self.get(webhook_id)
        del self._webhooks[webhook_id]
        self._held.pop(webhook_id, None)

    def pause(self, webhook_id: str, reason: str = "manual") -> Webhook:
        webhook = self.get(webhook_id)
        webhook.status = WebhookStatus.PAUSED
        logger.info("webhook_paused", webhook_id=webhook_id, reason=reason)
        return webhook

    def resume(self, webhook_id: str) -> Webhook:
        """Reactivate, clear the failure streak and release held deliveries."""
        webhook = self.get(webhook_id)
        webhook.status = WebhookStatus.ACTIVE
        webhook.consecutive_failures = 0
        for delivery_id in self._held.pop(webhook_id, set()):
            delivery = self._deliveries.get(delivery_id)
            if delivery is not None and not delivery.status.is_terminal:
                self._push(delivery)
        logger.info("webhook_resumed", webhook_id=webhook_id)
        return webhook

    def subscribe(self, listener: DeliveryListener) -> None:
        """Called after every delivery change (sync or async), e.g. to persist it."""
        self._listeners.append(listener)

    async def _notify(self, delivery: WebhookDelivery, webhook: Webhook) -> None:
        for listener in self._listeners:
            outcome = listener(delivery, webhook)
            if inspect.isawaitable(outcome):
                await outcome

    # ------------------------------------------------------------------
    # Events and scheduling
    # ------------------------------------------------------------------

    async def emit(self, event: DomainEvent) -> list[WebhookDelivery]:
        """Schedule a delivery for every matching webhook. Re-emitting an event id is a no-op."""
        scheduled = []
        for webhook in list(self._webhooks.values()):
            if webhook.status != WebhookStatus.ACTIVE or webhook.tenant_id != event.tenant_id:
                continue
            match = match_webhook_filters(event.type, event.attributes, webhook.events, webhook.filters)
            if not match.all_passed:
                continue
            key = generate_idempotency_key("emit", webhook_id=webhook.id, event_id=event.id)
            if self.guard.reserve(key, "emit", ttl_seconds=_EMIT_TTL_SECONDS) is None:
                continue
            self.guard.complete(key)

            delivery = WebhookDelivery(
                webhook_id=webhook.id,
                event_type=event.type,
                event_id=event.id,
                payload=event.envelope(),
                max_attempts=webhook.max_retries,
                scheduled_at=self._clock(),
                tenant_id=webhook.tenant_id,
            )
            self._deliveries[delivery.id] = delivery
            self._push(delivery)
            scheduled.append(delivery)
            await self._notify(delivery, webhook)

        logger.info("event_emitted", event_type=event.type, event_id=event.id, deliveries=len(scheduled))
        return scheduled

    def load_delivery(self, delivery: WebhookDelivery) -> None:
        self._deliveries[delivery.id] = delivery
        if not delivery.status.is_terminal:
            self._push(delivery)

    def _push(self, delivery: WebhookDelivery) -> None:
        heapq.heappush(self._schedule, (delivery.scheduled_at, next(self._seq), delivery.id))
        if self._wakeup is not None:
            self._wakeup.set()

    def due(self, now: Optional[datetime] = None) -> list[str]:
        """Pop every delivery scheduled at or before ``now``."""
        now = now or self._clock()
        ready = []
        while self._schedule and self._schedule[0][0] <= now:
            scheduled_at, _, delivery_id = heapq.heappop(self._schedule)
            delivery = self._deliveries.get(delivery_id)
            # Skip rows that finished or were rescheduled since this entry was pushed
            if delivery is None or delivery.status.is_terminal or delivery.scheduled_at != scheduled_at:
                continue
            ready.append(delivery_id)
        return ready

    def next_due_at(self) -> Optional[datetime]:
        return self._schedule[0][0] if self._schedule else None

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def deliver(self, delivery_id: str) -> WebhookDelivery:
        """Make one attempt. Terminal or in-flight deliveries are left untouched."""
        delivery = self.get_delivery(delivery_id)
        if delivery.status.is_terminal:
            return delivery

        webhook = self._webhooks.get(delivery.webhook_id)
        if webhook is None:
            raise NotFound("webhook", delivery.webhook_id)
        if webhook.status != WebhookStatus.ACTIVE:
            self._held[webhook.id].add(delivery.id)
            return delivery

        if self.guard.reserve(delivery.id, "deliver", ttl_seconds=webhook.timeout_seconds * 2) is None:
            return delivery
        try:
            await self._attempt(webhook, delivery)
        finally:
            self.guard.release(delivery.id)
        await self._notify(delivery, webhook)
        return delivery

    async def _attempt(self, webhook: Webhook, delivery: WebhookDelivery) -> None:
        delivery.attempt_count += 1
        now = self._clock()
        try:
            secret = self.vault.reveal(webhook.secret_credential_id, actor=f"webhook:{webhook.id}")
        except (CredentialError, NotFound) as exc:
            self._record_failure(webhook, delivery, f"Signing secret unavailable: {exc}")
            return

        body = canonical_json(delivery.payload)
        headers = build_headers(
            secret, delivery.id, delivery.event_type, body,
            timestamp=int(now.timestamp()), attempt=delivery.attempt_count,
        )
        start = time.perf_counter()
        try:
            response = await self._client.post(webhook.url, content=body, headers=headers,
                                               timeout=webhook.timeout_seconds)
        except httpx.TimeoutException:
            delivery.response_time_ms = (time.perf_counter() - start) * 1000
            self._record_failure(webhook, delivery, f"Timed out after {webhook.timeout_seconds:.0f}s")
            return
        except httpx.HTTPError as exc:
            delivery.response_time_ms = (time.perf_counter() - start) * 1000
            self._record_failure(webhook, delivery, f"{type(exc).__name__}: {exc}")
            return

        delivery.response_time_ms = (time.perf_counter() - start) * 1000
        delivery.response_status = response.status_code
        delivery.response_body = response.text[:_RESPONSE_BODY_LIMIT]
        if 200 <= response.status_code < 300:
            self.record_success(webhook, delivery)
        else:
            self._record_failure(webhook, delivery, f"HTTP {response.status_code}")

    def record_success(self, webhook: Webhook, delivery: WebhookDelivery) -> None:
        """Apply a 2xx outcome. A delivery already marked successful is not counted again."""
        if delivery.is_successful:
            return
        now = self._clock()
        delivery.is_successful = True
        delivery.status = DeliveryStatus.DELIVERED
        delivery.delivered_at = now
        delivery.last_error = None
        webhook.success_count += 1
        webhook.consecutive_failures = 0
        webhook.last_success_at = now
        logger.info("delivery_succeeded", webhook_id=webhook.id, delivery_id=delivery.id,
                    attempt=delivery.attempt_count)

    def _record_failure(self, webhook: Webhook, delivery: WebhookDelivery, reason: str) -> None:
        delivery.last_error = reason
        if delivery.attempt_count < delivery.max_attempts:
            delay = webhook.backoff_base_seconds * (2 ** (delivery.attempt_count - 1))
            delivery.scheduled_at = delivery.scheduled_at + timedelta(seconds=delay)
            delivery.status = DeliveryStatus.RETRYING
            self._push(delivery)
            logger.info("delivery_retry_scheduled", webhook_id=webhook.id, delivery_id=delivery.id,
                        attempt=delivery.attempt_count, retry_at=delivery.scheduled_at.isoformat(), reason=reason)
            return

        now = self._clock()
        delivery.status = DeliveryStatus.FAILED
        webhook.failure_count += 1
        webhook.consecutive_failures += 1
        webhook.last_failure_at = now
        webhook.last_failure_reason = reason
        self.dlq.enqueue(
            delivery.id, webhook.id, delivery.event_type, delivery.payload,
            error=reason, attempts=delivery.attempt_count, tenant_id=delivery.tenant_id,
        )
        logger.warning("delivery_failed", webhook_id=webhook.id, delivery_id=delivery.id,
                       attempts=delivery.attempt_count, reason=reason)

        ceiling = self.policy.auto_pause_after
        if ceiling is not None and webhook.consecutive_failures > ceiling:
            self.pause(webhook.id, reason=f"{webhook.consecutive_failures} consecutive failures")

    async def run_due(self, now: Optional[datetime] = None) -> list[WebhookDelivery]:
        """Attempt everything that is due, at most ``policy.workers`` at a time."""
        semaphore = asyncio.Semaphore(self.policy.workers)

        async def one(delivery_id: str) -> WebhookDelivery:
            async with semaphore:
                return await self.deliver(delivery_id)

        return list(await asyncio.gather(*(one(d) for d in self.due(now))))

    async def redeliver(self, delivery: Union[str, WebhookDelivery], actor: str = "system") -> WebhookDelivery:
        """Schedule a fresh copy of a finished delivery; the original row is untouched.

        ``delivery`` is an id or, for rows already swept from memory, the row itself.
        """
        original = delivery if isinstance(delivery, WebhookDelivery) else self.get_delivery(delivery)
        if not original.status.is_terminal:
            raise ConflictError("Delivery is still pending; wait for it to finish")
        webhook = self.get(original.webhook_id)
        fresh = WebhookDelivery(
            webhook_id=webhook.id,
            event_type=original.event_type,
            event_id=original.event_id,
            payload=original.payload,
            max_attempts=webhook.max_retries,
            scheduled_at=self._clock(),
            redelivery_of=original.id,
            tenant_id=original.tenant_id,
        )
        self._deliveries[fresh.id] = fresh
        self._push(fresh)
        self.dlq.mark_redelivered(original.id, fresh.id, resolved_by=actor)
        logger.info("delivery_redelivered", webhook_id=webhook.id, delivery_id=original.id, new_delivery_id=fresh.id)
        await self._notify(fresh, webhook)
        return fresh

    def get_delivery(self, delivery_id: str) -> WebhookDelivery:
        delivery = self._deliveries.get(delivery_id)
        if delivery is None:
            raise NotFound("delivery", delivery_id)
        return delivery

    def find_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        return self._deliveries.get(delivery_id)

    def deliveries(self, webhook_id: Optional[str] = None, limit: int = 50) -> list[WebhookDelivery]:
        rows = [d for d in self._deliveries.values() if webhook_id is None or d.webhook_id == webhook_id]
        rows.sort(key=lambda d: d.created_at, reverse=True)
        return rows[:limit]

    # ------------------------------------------------------------------
    # Dead letters and housekeeping
    # ------------------------------------------------------------------

    def load_dead_letter(self, delivery: WebhookDelivery) -> DeadLetter:
        """Re-enqueue a stored terminal failure that has not been resolved yet."""
        return self.dlq.enqueue(
            delivery.id, delivery.webhook_id, delivery.event_type, delivery.payload,
            error=delivery.last_error or "", attempts=delivery.attempt_count, tenant_id=delivery.tenant_id,
        )

    def dead_letters(self, tenant_id: Optional[str] = None, webhook_id: Optional[str] = None,
                     limit: int = 50) -> list[DeadLetter]:
        return self.dlq.list_pending(webhook_id=webhook_id, limit=limit, tenant_id=tenant_id)

    def discard(self, delivery_id: str, reason: str = "", actor: str = "system") -> DeadLetter:
        """Give up on a dead letter. Only pending letters can be discarded."""
        letter = self.dlq.get(delivery_id)
        if letter is None:
            raise NotFound("dead letter", delivery_id)
        if letter.status != DLQStatus.PENDING:
            raise ConflictError(f"Dead letter was already {letter.status.value}")
        self.dlq.discard(delivery_id, reason=reason)
        letter.resolved_by = actor
        logger.info("dead_letter_discarded", webhook_id=letter.webhook_id, delivery_id=delivery_id, reason=reason)
        return letter

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Expire idempotency keys and drop finished deliveries past the retention window.

        Returns the number of deliveries evicted. Evicted rows stay in the
        durable store and in the DLQ.
        """
        now = now or self._clock()
        self.guard.cleanup_expired()
        cutoff = now - timedelta(seconds=self.policy.retention_seconds)
        stale = [
            d.id for d in self._deliveries.values()
            if d.status.is_terminal and (d.delivered_at or d.scheduled_at) <= cutoff
        ]
        for delivery_id in stale:
            del self._deliveries[delivery_id]
        if stale:
            logger.debug("deliveries_swept", count=len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    async def _scheduler(self) -> None:
        assert self._queue is not None and self._wakeup is not None
        while True:
            self._wakeup.clear()
            now = self._clock()
            for delivery_id in self.due(now):
                self._queue.put_nowait(delivery_id)
            if now >= self._next_sweep_at:
                self.sweep(now)
                self._next_sweep_at = now + timedelta(seconds=self.policy.sweep_interval_seconds)
            timeout = self.policy.sweep_interval_seconds
            next_at = self.next_due_at()
            if next_at is not None:
                timeout = min(timeout, max(0.0, (next_at - now).total_seconds()))
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    async def _worker(self, number: int) -> None:
        assert self._queue is not None
        while True:
            delivery_id = await self._queue.get()
            try:
                await self.deliver(delivery_id)
            except Exception:
                logger.exception("delivery_worker_error", worker=number, delivery_id=delivery_id)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        """Start the scheduler and ``policy.workers`` delivery workers. Idempotent."""
        if self._tasks:
            return
        self._queue = asyncio.Queue()
        self._wakeup = asyncio.Event()
        self._tasks = [asyncio.create_task(self._scheduler(), name="webhook-scheduler")]
        self._tasks += [
            asyncio.create_task(self._worker(i), name=f"webhook-worker-{i}")
            for i in range(self.policy.workers)
        ]
        logger.info("webhook_dispatcher_started", workers=self.policy.workers)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
        self._wakeup = None
        logger.info("webhook_dispatcher_stopped")

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def aclose(self) -> None:
        await self.stop()
        await self._client.aclose()
