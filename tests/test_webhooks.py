"""Test webhook signing, fan-out, retries, dead letters and redelivery."""
import asyncio
import json

import httpx
import pytest

from core.errors import ConfigError, ConflictError, NotFound
from core.resilience import DLQStatus, IdempotencyStore
from core.webhooks import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    DeliveryStatus,
    DomainEvent,
    WebhookDispatcher,
    WebhookStatus,
    build_headers,
    canonical_json,
    sign,
    verify_signature,
)
from patterns.domain_config import WebhookPolicyConfig


class Receiver:
    """Webhook endpoint that answers with a scripted sequence of statuses."""

    def __init__(self, *statuses):
        self.statuses = list(statuses) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request):
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, text="ok" if status < 300 else "nope")


def make_dispatcher(vault, date_clock, receiver, **policy):
    policy.setdefault("max_retries", 3)
    policy.setdefault("backoff_base_seconds", 60)
    return WebhookDispatcher(
        vault,
        WebhookPolicyConfig(**policy),
        transport=httpx.MockTransport(receiver),
        clock=date_clock,
    )


def case_event(**attributes):
    return DomainEvent(type="case.created", payload={"case_id": "K-1"}, attributes=attributes)


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------

def test_canonical_json_is_key_order_independent():
    assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1}) == b'{"a":[1,2],"b":1}'


def test_signature_round_trip_and_replay_window():
    body = canonical_json({"x": 1})
    headers = build_headers("s3cret", "d-1", "case.created", body, timestamp=1_700_000_000, attempt=2)

    assert headers["X-Webhook-Attempt"] == "2"
    assert headers[SIGNATURE_HEADER] == sign("s3cret", "1700000000", body)
    assert verify_signature("s3cret", "1700000000", body, headers[SIGNATURE_HEADER], now=1_700_000_100)
    assert not verify_signature("s3cret", "1700000000", body, headers[SIGNATURE_HEADER], now=1_700_000_301)
    assert not verify_signature("other", "1700000000", body, headers[SIGNATURE_HEADER], now=1_700_000_000)
    assert not verify_signature("s3cret", "1700000000", b"{}", headers[SIGNATURE_HEADER], now=1_700_000_000)
    assert not verify_signature("s3cret", "soon", body, headers[SIGNATURE_HEADER])


# ---------------------------------------------------------------------------
# Subscriptions and fan-out
# ---------------------------------------------------------------------------

def test_create_issues_signing_secret_once(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver())
    webhook, issued = dispatcher.create("https://hooks.example.com/in", ["case.created"])

    assert webhook.secret_credential_id == issued.credential.id
    assert issued.credential.owner_type == "webhook"
    assert "secret" not in webhook.to_dict()
    assert vault.verify(issued.credential.id, issued.secret)


@pytest.mark.parametrize("kwargs", [
    {"url": "ftp://x", "events": ["a"]},
    {"url": "https://x", "events": []},
    {"url": "https://x", "events": ["a"], "filters": {"priority": "high"}},
    {"url": "https://x", "events": ["a"], "max_retries": 0},
])
def test_create_validation(vault, date_clock, kwargs):
    dispatcher = make_dispatcher(vault, date_clock, Receiver())
    with pytest.raises(ConfigError):
        dispatcher.create(**kwargs)


def test_update_rejects_unknown_fields(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver())
    webhook, _ = dispatcher.create("https://hooks.example.com", ["case.created"])

    updated = dispatcher.update(webhook.id, events=["case.closed"], max_retries=5)
    assert (updated.events, updated.max_retries) == (["case.closed"], 5)
    with pytest.raises(ConfigError):
        dispatcher.update(webhook.id, status="active")
    with pytest.raises(ConfigError):
        dispatcher.update(webhook.id, url="not-a-url")
    with pytest.raises(NotFound):
        dispatcher.get("ghost")


@pytest.mark.asyncio
async def test_emit_matches_subscription_and_filters(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver())
    all_cases, _ = dispatcher.create("https://a.example.com", ["case.created"])
    j1_only, _ = dispatcher.create("https://b.example.com", ["case.created"], filters={"jurisdiction": ["J1"]})
    dispatcher.create("https://c.example.com", ["case.closed"])

    j2 = await dispatcher.emit(case_event(jurisdiction="J2"))
    j1 = await dispatcher.emit(case_event(jurisdiction="J1", priority="high"))

    assert [d.webhook_id for d in j2] == [all_cases.id]
    assert {d.webhook_id for d in j1} == {all_cases.id, j1_only.id}
    assert j1[0].payload["data"] == {"case_id": "K-1"}
    assert j1[0].status == DeliveryStatus.PENDING


@pytest.mark.asyncio
async def test_emit_skips_other_tenants_and_duplicate_events(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver())
    dispatcher.create("https://a.example.com", ["case.created"], tenant_id="acme")
    event = DomainEvent(type="case.created", tenant_id="acme")

    assert len(await dispatcher.emit(event)) == 1
    assert await dispatcher.emit(event) == []
    assert await dispatcher.emit(DomainEvent(type="case.created")) == []


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_successful_delivery_is_signed(vault, date_clock):
    receiver = Receiver(200)
    dispatcher = make_dispatcher(vault, date_clock, receiver)
    webhook, issued = dispatcher.create("https://hooks.example.com/in", ["case.created"])
    [delivery] = await dispatcher.emit(case_event())

    await dispatcher.run_due()

    request = receiver.requests[0]
    timestamp = request.headers[TIMESTAMP_HEADER]
    assert timestamp == str(int(date_clock.now.timestamp()))
    assert verify_signature(issued.secret, timestamp, request.content, request.headers[SIGNATURE_HEADER],
                            now=float(timestamp))
    assert request.headers["X-Webhook-ID"] == delivery.id
    assert json.loads(request.content)["type"] == "case.created"
    assert delivery.status == DeliveryStatus.DELIVERED
    assert delivery.is_successful
    assert delivery.response_status == 200
    assert webhook.success_count == 1
    assert webhook.last_success_at == date_clock.now


@pytest.mark.asyncio
async def test_retry_schedule_then_terminal_failure(vault, date_clock):
    receiver = Receiver(500)
    dispatcher = make_dispatcher(vault, date_clock, receiver)
    webhook, _ = dispatcher.create("https://hooks.example.com", ["case.created"])
    [delivery] = await dispatcher.emit(case_event())
    start = delivery.scheduled_at

    await dispatcher.run_due()
    assert delivery.status == DeliveryStatus.RETRYING
    assert (delivery.scheduled_at - start).total_seconds() == 60

    date_clock.advance(30)
    assert await dispatcher.run_due() == []

    date_clock.advance(30)
    await dispatcher.run_due()
    assert delivery.attempt_count == 2
    assert (delivery.scheduled_at - start).total_seconds() == 180

    date_clock.advance(120)
    await dispatcher.run_due()
    assert delivery.status == DeliveryStatus.FAILED
    assert delivery.attempt_count == 3
    assert [r.headers["X-Webhook-Attempt"] for r in receiver.requests] == ["1", "2", "3"]
    assert webhook.failure_count == 1
    assert webhook.consecutive_failures == 1
    assert webhook.last_failure_reason == "HTTP 500"
    assert dispatcher.dlq.get(delivery.id).attempts == 3

    # terminal rows are never attempted again
    await dispatcher.deliver(delivery.id)
    assert len(receiver.requests) == 3


@pytest.mark.asyncio
async def test_network_error_is_a_failed_attempt(vault, date_clock):
    def refuse(request):
        raise httpx.ConnectError("refused")

    dispatcher = make_dispatcher(vault, date_clock, refuse, max_retries=1)
    webhook, _ = dispatcher.create("https://hooks.example.com", ["case.created"])
    [delivery] = await dispatcher.emit(case_event())

    await dispatcher.run_due()

    assert delivery.status == DeliveryStatus.FAILED
    assert delivery.last_error.startswith("ConnectError")
    assert webhook.consecutive_failures == 1


@pytest.mark.asyncio
async def test_success_resets_streak_and_is_counted_once(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver(500, 200), max_retries=1)
    webhook, _ = dispatcher.create("https://hooks.example.com", ["case.created"])
    await dispatcher.emit(case_event())
    await dispatcher.run_due()
    assert webhook.consecutive_failures == 1

    [delivery] = await dispatcher.emit(case_event())
    await dispatcher.run_due()
    dispatcher.record_success(webhook, delivery)

    assert webhook.consecutive_failures == 0
    assert webhook.success_count == 1


@pytest.mark.asyncio
async def test_one_attempt_in_flight_per_delivery(vault, date_clock):
    receiver = Receiver()
    dispatcher = make_dispatcher(vault, date_clock, receiver)
    dispatcher.create("https://hooks.example.com", ["case.created"])
    [delivery] = await dispatcher.emit(case_event())
    dispatcher.guard.reserve(delivery.id, "deliver")

    await dispatcher.deliver(delivery.id)

    assert delivery.attempt_count == 0
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_revoked_signing_secret_fails_without_sending(vault, date_clock):
    receiver = Receiver()
    dispatcher = make_dispatcher(vault, date_clock, receiver, max_retries=1)
    webhook, issued = dispatcher.create("https://hooks.example.com", ["case.created"])
    vault.revoke(issued.credential.id)
    [delivery] = await dispatcher.emit(case_event())

    await dispatcher.run_due()

    assert delivery.status == DeliveryStatus.FAILED
    assert delivery.last_error.startswith("Signing secret unavailable")
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_auto_pause_after_ceiling(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver(500), max_retries=1, auto_pause_after=1)
    webhook, _ = dispatcher.create("https://hooks.example.com", ["case.created"])

    for _ in range(2):
        await dispatcher.emit(case_event())
        await dispatcher.run_due()

    assert webhook.consecutive_failures == 2
    assert webhook.status == WebhookStatus.PAUSED
    assert await dispatcher.emit(case_event()) == []


@pytest.mark.asyncio
async def test_paused_webhook_holds_deliveries_until_resumed(vault, date_clock):
    receiver = Receiver()
    dispatcher = make_dispatcher(vault, date_clock, receiver)
    webhook, _ = dispatcher.create("https://hooks.example.com", ["case.created"])
    [delivery] = await dispatcher.emit(case_event())
    dispatcher.pause(webhook.id)

    await dispatcher.run_due()
    assert delivery.status == DeliveryStatus.PENDING
    assert receiver.requests == []

    dispatcher.resume(webhook.id)
    await dispatcher.run_due()
    assert delivery.status == DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_redeliver_creates_new_row(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver(500, 200), max_retries=1)
    dispatcher.create("https://hooks.example.com", ["case.created"])
    [failed] = await dispatcher.emit(case_event())
    await dispatcher.run_due()

    fresh = await dispatcher.redeliver(failed.id, actor="ops")
    with pytest.raises(ConflictError):
        await dispatcher.redeliver(fresh.id)
    await dispatcher.run_due()

    assert failed.status == DeliveryStatus.FAILED
    assert failed.attempt_count == 1
    assert fresh.redelivery_of == failed.id
    assert fresh.status == DeliveryStatus.DELIVERED
    letter = dispatcher.dlq.get(failed.id)
    assert (letter.status, letter.redelivery_id, letter.resolved_by) == (DLQStatus.REDELIVERED, fresh.id, "ops")
    assert dispatcher.deliveries()[0] is fresh


@pytest.mark.asyncio
async def test_listeners_see_every_change(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver())
    seen = []

    async def record(delivery, webhook):
        seen.append(delivery.status)

    dispatcher.subscribe(record)
    dispatcher.create("https://hooks.example.com", ["case.created"])
    await dispatcher.emit(case_event())
    await dispatcher.run_due()

    assert seen == [DeliveryStatus.PENDING, DeliveryStatus.DELIVERED]


@pytest.mark.asyncio
async def test_worker_pool_drains_schedule(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver(), workers=2)
    dispatcher.create("https://hooks.example.com", ["case.created"])
    dispatcher.start()
    try:
        deliveries = await dispatcher.emit(case_event()) + await dispatcher.emit(case_event())
        for _ in range(100):
            if all(d.status == DeliveryStatus.DELIVERED for d in deliveries):
                break
            await asyncio.sleep(0.01)
        assert all(d.status == DeliveryStatus.DELIVERED for d in deliveries)
        assert dispatcher.running
    finally:
        await dispatcher.aclose()
    assert not dispatcher.running


# ---------------------------------------------------------------------------
# Dead letters and housekeeping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_discard_resolves_dead_letter_once(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver(500), max_retries=1)
    dispatcher.create("https://hooks.example.com", ["case.created"])
    [failed] = await dispatcher.emit(case_event())
    await dispatcher.run_due()
    assert [dl.delivery_id for dl in dispatcher.dead_letters()] == [failed.id]

    letter = dispatcher.discard(failed.id, reason="endpoint retired", actor="ops")

    assert (letter.status, letter.resolved_by) == (DLQStatus.DISCARDED, "ops")
    assert dispatcher.dead_letters() == []
    with pytest.raises(ConflictError):
        dispatcher.discard(failed.id)
    with pytest.raises(NotFound):
        dispatcher.discard("missing")


@pytest.mark.asyncio
async def test_dead_letters_are_listed_per_tenant(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver(500), max_retries=1)
    dispatcher.create("https://hooks.example.com", ["case.created"], tenant_id="acme")
    await dispatcher.emit(DomainEvent(type="case.created", tenant_id="acme"))
    await dispatcher.run_due()

    assert len(dispatcher.dead_letters(tenant_id="acme")) == 1
    assert dispatcher.dead_letters(tenant_id="default") == []


@pytest.mark.asyncio
async def test_sweep_evicts_finished_deliveries_and_expired_keys(vault, date_clock, clock):
    guard = IdempotencyStore(clock=clock)
    dispatcher = WebhookDispatcher(
        vault,
        WebhookPolicyConfig(max_retries=1, retention_seconds=60),
        transport=httpx.MockTransport(Receiver(500, 200)),
        clock=date_clock,
        guard=guard,
    )
    dispatcher.create("https://hooks.example.com", ["case.created"])
    [failed] = await dispatcher.emit(case_event())
    await dispatcher.run_due()
    assert len(guard) == 1

    assert dispatcher.sweep() == 0
    date_clock.advance(61)
    clock.advance(86401)
    assert dispatcher.sweep() == 1
    assert dispatcher.find_delivery(failed.id) is None
    assert len(guard) == 0
    with pytest.raises(NotFound):
        await dispatcher.redeliver(failed.id)

    # a row read back from storage can still be redelivered
    fresh = await dispatcher.redeliver(failed, actor="ops")
    await dispatcher.run_due()
    assert fresh.status == DeliveryStatus.DELIVERED
    assert dispatcher.dlq.get(failed.id).status == DLQStatus.REDELIVERED


@pytest.mark.asyncio
async def test_scheduler_sweeps_in_the_background(vault, date_clock):
    dispatcher = make_dispatcher(vault, date_clock, Receiver(500), max_retries=1, retention_seconds=0)
    dispatcher.create("https://hooks.example.com", ["case.created"])
    [failed] = await dispatcher.emit(case_event())
    await dispatcher.run_due()
    assert dispatcher.find_delivery(failed.id) is failed

    dispatcher.start()
    try:
        for _ in range(5):
            await asyncio.sleep(0)
    finally:
        await dispatcher.stop()

    assert dispatcher.find_delivery(failed.id) is None
    assert [dl.delivery_id for dl in dispatcher.dead_letters()] == [failed.id]


def test_signature_covers_timestamp_then_body_without_separator():
    import hashlib
    import hmac

    body = canonical_json({"x": 1})
    expected = hmac.new(b"s3cret", b"1700000000" + body, hashlib.sha256).hexdigest()
    assert sign("s3cret", "1700000000", body) == f"sha256={expected}"
