"""Test route execution: strategies, chaining, conditions, deadlines, validation."""
import asyncio
import json

import httpx
import pytest

from core.connectors import ConnectorRegistry, Integration
from core.errors import ConfigError, ConflictError, NotFound
from core.routing import RouteBindingEngine
from core.transformers import TransformerRegistry
from patterns.domain_config import BreakerConfig, RoutingConfig


class Upstreams:
    """Routes mock requests to per-host handlers and records them."""

    def __init__(self):
        self.handlers = {}
        self.calls: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        outcome = self.handlers[request.url.host](request)
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        return outcome

    def hosts(self):
        return [r.url.host for r in self.calls]


def reply(status=200, body=None):
    return lambda request: httpx.Response(status, json=body if body is not None else {})


async def hang(request):
    await asyncio.Event().wait()


@pytest.fixture
def upstreams():
    ups = Upstreams()
    ups.handlers["crm.test"] = reply(body={"id": "c-1", "name": "Ana"})
    ups.handlers["billing.test"] = reply(body={"plan": "pro"})
    return ups


@pytest.fixture
def engine(vault, upstreams):
    connectors = ConnectorRegistry(
        vault=vault,
        breaker_config=BreakerConfig(failure_threshold=1, cooldown_seconds=60),
        transport=httpx.MockTransport(upstreams),
    )
    connectors.register(Integration(id="crm", name="CRM", base_url="https://crm.test"))
    connectors.register(Integration(id="billing", name="Billing", base_url="https://billing.test"))
    return RouteBindingEngine(connectors, TransformerRegistry(), RoutingConfig(overall_timeout_seconds=5))


def steps(*ids, **extra):
    return [{"integrationId": i, "path": "/", **extra} for i in ids]


@pytest.mark.asyncio
async def test_first_success_falls_through_failures(engine, upstreams):
    upstreams.handlers["crm.test"] = reply(500)
    engine.register({"path": "/customer", "steps": steps("crm", "billing")})

    result = await engine.execute("/customer", "GET")

    assert result.success
    assert result.status == 200
    assert result.data == {"plan": "pro"}
    assert result.errors[0]["integrationId"] == "crm"
    assert result.metadata["integrationCallCount"] == 2


@pytest.mark.asyncio
async def test_first_success_stops_at_first_success(engine, upstreams):
    engine.register({"path": "/customer", "steps": steps("crm", "billing")})

    result = await engine.execute("/customer", "GET")

    assert result.data == {"id": "c-1", "name": "Ana"}
    assert upstreams.hosts() == ["crm.test"]


@pytest.mark.asyncio
async def test_crashing_template_fails_only_its_step(engine, upstreams):
    engine.transformers.register("ratio", "template_render", {
        "template": '{"r": {{ payload.a / payload.b }}}'
    })
    engine.register({
        "path": "/ratio",
        "method": "POST",
        "steps": [
            {"integrationId": "crm", "path": "/", "method": "POST", "requestTransformer": "ratio"},
            {"integrationId": "billing", "path": "/", "method": "POST"},
        ],
    })

    result = await engine.execute("/ratio", "POST", {"a": 1, "b": 0})

    assert result.success
    assert result.data == {"plan": "pro"}
    assert result.errors[0]["integrationId"] == "crm"
    assert result.errors[0]["code"] == "TRANSFORM_ERROR"
    assert upstreams.hosts() == ["billing.test"]


@pytest.mark.asyncio
async def test_unexpected_step_error_is_captured(engine, upstreams):
    def broken(request):
        raise RuntimeError("adapter bug")

    upstreams.handlers["crm.test"] = broken
    engine.register({"path": "/customer", "steps": steps("crm", "billing")})

    result = await engine.execute("/customer", "GET")

    assert result.status == 200
    assert result.data == {"plan": "pro"}
    assert result.errors[0]["code"] == "INTERNAL_ERROR"


@pytest.mark.asyncio
async def test_merge_and_partial_status(engine, upstreams):
    engine.register({"path": "/profile", "aggregationStrategy": "merge", "steps": steps("crm", "billing")})

    full = await engine.execute("/profile", "GET")
    upstreams.handlers["billing.test"] = reply(503)
    partial = await engine.execute("/profile", "GET")

    assert (full.status, full.data) == (200, {"id": "c-1", "name": "Ana", "plan": "pro"})
    assert partial.status == 207
    assert partial.success
    assert partial.data == {"id": "c-1", "name": "Ana"}
    assert partial.errors[0]["code"] == "UPSTREAM_ERROR"


@pytest.mark.asyncio
async def test_all_failed_is_502(engine, upstreams):
    upstreams.handlers["crm.test"] = reply(500)
    upstreams.handlers["billing.test"] = reply(500)
    engine.register({"path": "/profile", "aggregationStrategy": "all", "steps": steps("crm", "billing")})

    result = await engine.execute("/profile", "GET")

    assert result.status == 502
    assert not result.success
    assert [s["success"] for s in result.data] == [False, False]


@pytest.mark.asyncio
async def test_chain_passes_previous_output(engine, upstreams):
    def invoice(request):
        body = json.loads(request.content)
        return httpx.Response(201, json={"invoice": "inv-1", "customer": body["customer"]})

    upstreams.handlers["billing.test"] = invoice
    engine.transformers.register("link", "field_map", {
        "mappings": [{"source": "@previous.id", "target": "customer"}]
    })
    engine.register({
        "path": "/orders",
        "method": "POST",
        "chain": True,
        "aggregationStrategy": "merge",
        "steps": [
            {"integrationId": "crm", "path": "/contacts", "method": "POST"},
            {"integrationId": "billing", "path": "/invoices/{customer}", "method": "POST", "requestTransformer": "link"},
        ],
    })

    result = await engine.execute("/orders", "POST", {"amount": 5})

    assert result.status == 200
    assert result.data == {"id": "c-1", "name": "Ana", "invoice": "inv-1", "customer": "c-1"}
    assert upstreams.calls[1].url.path == "/invoices/c-1"


@pytest.mark.asyncio
async def test_path_params_reach_upstream(engine, upstreams):
    engine.register({"path": "/customers/{id}", "steps": [{"integrationId": "crm", "path": "/contacts/{id}"}]})

    await engine.execute("/customers/a b", "GET")

    assert upstreams.calls[0].url.raw_path.startswith(b"/contacts/a%20b")


@pytest.mark.asyncio
async def test_unresolvable_placeholder_fails_step(engine, upstreams):
    engine.register({"path": "/x", "steps": [{"integrationId": "crm", "path": "/contacts/{missing}"}]})

    result = await engine.execute("/x", "GET")

    assert result.status == 502
    assert result.errors[0]["code"] == "TRANSFORM_ERROR"
    assert upstreams.calls == []


@pytest.mark.asyncio
async def test_conditions_not_met_skip_all_calls(engine, upstreams):
    engine.register({
        "path": "/vip",
        "method": "POST",
        "conditions": [{"field": "tier", "operator": "eq", "value": "gold"}],
        "steps": steps("crm"),
    })

    result = await engine.execute("/vip", "POST", {"tier": "silver"})

    assert result.status == 204
    assert result.success
    assert result.metadata["integrationCallCount"] == 0
    assert result.metadata["conditionsNotMet"]
    assert upstreams.calls == []


@pytest.mark.asyncio
async def test_unbound_and_disabled_routes_are_404(engine):
    route = engine.register({"path": "/customer", "steps": steps("crm")})
    engine.set_enabled(route.id, False)

    assert (await engine.execute("/nothing", "GET")).status == 404
    disabled = await engine.execute("/customer", "GET")
    assert disabled.status == 404
    assert "disabled" in disabled.errors[0]["message"]


@pytest.mark.asyncio
async def test_race_returns_first_success_and_cancels_losers(engine, upstreams):
    upstreams.handlers["crm.test"] = hang
    engine.register({"path": "/fast", "aggregationStrategy": "race", "steps": steps("crm", "billing")})

    result = await engine.execute("/fast", "GET")
    await asyncio.sleep(0)

    assert result.status == 200
    assert result.data == {"plan": "pro"}
    loser = result.steps[0]
    assert loser.error_code == "CANCELLED"
    assert loser.error == "Cancelled: lost race"
    assert loser.called
    assert result.metadata["integrationCallCount"] == 2


@pytest.mark.asyncio
async def test_overall_deadline(engine, upstreams):
    upstreams.handlers["crm.test"] = hang
    engine.register({
        "path": "/slow",
        "aggregationStrategy": "merge",
        "timeoutSeconds": 0.05,
        "steps": steps("crm", "billing"),
    })

    result = await engine.execute("/slow", "GET")

    assert result.status == 504
    assert result.data == {"plan": "pro"}
    assert any(e["code"] == "UPSTREAM_TIMEOUT" for e in result.errors)
    assert result.steps[0].error_code == "CANCELLED"


@pytest.mark.asyncio
async def test_deadline_with_no_success_is_504(engine, upstreams):
    upstreams.handlers["crm.test"] = hang
    engine.register({"path": "/slow", "timeoutSeconds": 0.05, "steps": steps("crm")})

    result = await engine.execute("/slow", "GET")

    assert result.status == 504
    assert not result.success


@pytest.mark.asyncio
async def test_concurrent_steps_respect_concurrency_cap(vault, upstreams):
    in_flight = 0
    peak = 0

    async def slow(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        try:
            await asyncio.Event().wait()
        finally:
            in_flight -= 1

    connectors = ConnectorRegistry(vault=vault, transport=httpx.MockTransport(upstreams))
    for name in ("a", "b", "c", "d"):
        upstreams.handlers[f"{name}.test"] = slow
        connectors.register(Integration(id=name, name=name, base_url=f"https://{name}.test"))
    engine = RouteBindingEngine(connectors, TransformerRegistry(),
                                RoutingConfig(overall_timeout_seconds=5, max_concurrency=2))
    engine.register({
        "path": "/fanout",
        "aggregationStrategy": "all",
        "timeoutSeconds": 0.1,
        "steps": steps("a", "b", "c", "d"),
    })

    result = await engine.execute("/fanout", "GET")

    assert result.status == 504
    assert peak == 2
    assert len(upstreams.calls) == 2
    assert in_flight == 0


@pytest.mark.asyncio
async def test_response_transform_failure_isolated_to_step(engine, upstreams):
    engine.transformers.register("needs_data", "jsonpath_extract", {"path": "data", "required": True})
    engine.register({
        "path": "/profile",
        "aggregationStrategy": "merge",
        "steps": [
            {"integrationId": "crm", "path": "/", "responseTransformer": "needs_data"},
            {"integrationId": "billing", "path": "/"},
        ],
    })

    result = await engine.execute("/profile", "GET")

    assert result.status == 207
    assert result.errors[0]["code"] == "TRANSFORM_ERROR"
    assert result.data == {"plan": "pro"}


@pytest.mark.asyncio
async def test_open_breaker_is_not_a_call(engine, upstreams):
    upstreams.handlers["crm.test"] = reply(500)
    engine.register({"path": "/c", "steps": steps("crm")})

    await engine.execute("/c", "GET")
    result = await engine.execute("/c", "GET")

    assert result.errors[0]["code"] == "CIRCUIT_OPEN"
    assert result.metadata["integrationCallCount"] == 0
    assert len(upstreams.calls) == 1


def test_validation_rejects_bad_config(engine):
    with pytest.raises(ConfigError):
        engine.register({"path": "/a", "steps": steps("ghost")})
    with pytest.raises(ConfigError):
        engine.register({"path": "/a", "steps": [{"integrationId": "crm", "responseTransformer": "ghost"}]})
    with pytest.raises(ConfigError):
        engine.register({"path": "/a", "chain": True, "aggregationStrategy": "race", "steps": steps("crm")})
    with pytest.raises(ConfigError):
        engine.register({"path": "/a", "method": "TRACE", "steps": steps("crm")})
    with pytest.raises(ConfigError):
        engine.register({"path": "/a", "conditions": [{"field": "x", "operator": "near"}], "steps": steps("crm")})
    with pytest.raises(ConfigError):
        engine.register({"path": "/a", "steps": []})
    assert engine.list() == []


def test_duplicates_and_ambiguity(engine):
    engine.register({"id": "r1", "path": "/users/{id}", "steps": steps("crm")})
    with pytest.raises(ConflictError):
        engine.register({"id": "r1", "path": "/other", "steps": steps("crm")})
    with pytest.raises(ConfigError):
        engine.register({"path": "/users/{uid}", "steps": steps("crm")})


def test_versioned_update(engine):
    route = engine.register({"path": "/users", "steps": steps("crm")})

    updated = engine.update(route.id, {"aggregation_strategy": "merge"}, expected_version=1)
    assert updated.version == 2
    assert engine.get(route.id).aggregation_strategy.value == "merge"

    with pytest.raises(ConflictError):
        engine.update(route.id, {"name": "stale"}, expected_version=1)
    with pytest.raises(NotFound):
        engine.update("ghost", {}, expected_version=1)


@pytest.mark.asyncio
async def test_dry_run_is_not_logged(engine, upstreams):
    tested = await engine.test({"path": "/preview", "steps": steps("crm")}, {"q": 1})
    assert tested.metadata["test"] is True
    assert tested.status == 200
    assert engine.executions() == []
    assert engine.list() == []

    route = engine.register({"path": "/live", "steps": steps("crm")})
    result = await engine.execute("/live", "GET")
    assert engine.executions(route.id)[0] is result.record
