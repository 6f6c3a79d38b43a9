"""Test the HTTP surface end to end over an in-memory database."""
import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.main import create_app
from api.middleware import tenant_from_host
from core.credentials import CredentialStatus
from core.database import init_db
from core.errors import NotFound
from core.security import StaticAuthorizer
from gateway.service import GatewayService

API = "/api/gateway"


def crm_upstream(request: httpx.Request) -> httpx.Response:
    if request.url.path.startswith("/contacts/"):
        return httpx.Response(200, json={"data": {"id": request.url.path.rsplit("/", 1)[-1], "tier": "gold"}})
    return httpx.Response(200, json={"ok": True})


class Hooks:
    def __init__(self, status: int = 204):
        self.status = status
        self.received: list[httpx.Request] = []

    def __call__(self, request):
        self.received.append(request)
        return httpx.Response(self.status)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class CommitFails(AsyncSession):
    """A session whose commits never reach the database."""

    async def commit(self):
        raise RuntimeError("database unavailable")


@pytest.fixture
def hooks():
    return Hooks()


def build_service(session_factory, hooks):
    return GatewayService(
        session_factory=session_factory,
        transport=httpx.MockTransport(crm_upstream),
        webhook_transport=httpx.MockTransport(hooks),
    )


@pytest_asyncio.fixture
async def service(session_factory, hooks):
    gateway = build_service(session_factory, hooks)
    yield gateway
    await gateway.aclose()


def client_for(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest_asyncio.fixture
async def client(service):
    async with client_for(create_app(gateway=service, run_background=False)) as ac:
        yield ac


async def make_integration(client, **extra):
    body = {"name": "CRM", "base_url": "https://crm.example.com", **extra}
    response = await client.post(f"{API}/integrations", json=body)
    assert response.status_code == 201, response.text
    return response.json()


async def make_route(client, integration_id, **extra):
    body = {
        "path": "/customers/{id}",
        "steps": [{"integrationId": integration_id, "path": "/contacts/{id}", "responseTransformer": "extract_data"}],
        **extra,
    }
    response = await client.post(f"{API}/routes", json=body)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_health_and_request_id(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-1"})
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Request-ID"] == "req-1"


@pytest.mark.asyncio
async def test_credential_secret_returned_once(client):
    created = await client.post(f"{API}/credentials", json={"owner_id": "crm", "type": "bearer"})
    assert created.status_code == 201
    body = created.json()
    secret = body["secret"]

    fetched = (await client.get(f"{API}/credentials/{body['id']}")).json()
    assert "secret" not in fetched
    assert fetched["status"] == "active"

    verify = await client.post(f"{API}/credentials/{body['id']}/verify", json={"secret": secret})
    assert verify.json() == {"valid": True}

    rotated = (await client.post(f"{API}/credentials/{body['id']}/rotate", json={})).json()
    assert rotated["secret"] != secret
    assert rotated["rotation_count"] == 1

    revoked = await client.post(f"{API}/credentials/{body['id']}/revoke", json={"reason": "leaked"})
    assert revoked.json()["status"] == "revoked"
    again = await client.post(f"{API}/credentials/{body['id']}/revoke", json={})
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "ALREADY_REVOKED"

    audit = (await client.get(f"{API}/credentials/{body['id']}/audit")).json()["data"]
    assert [e["action"] for e in audit][:2] == ["create", "verify"]


@pytest.mark.asyncio
async def test_integration_crud_and_connector_state(client):
    integration = await make_integration(client, rate_limit={"per_minute": 10})

    listed = (await client.get(f"{API}/integrations")).json()
    assert listed["total"] == 1
    patched = await client.patch(f"{API}/integrations/{integration['id']}", json={"category": "crm"})
    assert patched.json()["category"] == "crm"

    state = (await client.get(f"{API}/integrations/{integration['id']}/connector")).json()
    assert state["breaker"]["state"] == "closed"
    assert state["rate_limit"]["limits"]["per_minute"] == 10

    health = await client.post(f"{API}/integrations/{integration['id']}/health")
    assert health.json()["status"] in ("healthy", "degraded")
    history = (await client.get(f"{API}/integrations/{integration['id']}/health/history")).json()
    assert len(history["data"]) == 1

    assert (await client.delete(f"{API}/integrations/{integration['id']}")).status_code == 204
    missing = await client.get(f"{API}/integrations/{integration['id']}")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_auth_type_requires_credential(client):
    response = await client.post(
        f"{API}/integrations", json={"name": "CRM", "base_url": "https://crm.example.com", "auth_type": "bearer"}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "CONFIG_ERROR"


@pytest.mark.asyncio
async def test_validation_error_envelope(client):
    response = await client.post(f"{API}/integrations", json={"name": "CRM", "base_url": "ftp://nope"})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_execute_route_and_log(client):
    integration = await make_integration(client)
    route = await make_route(client, integration["id"])

    response = await client.get(f"{API}/execute/customers/42")
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"id": "42", "tier": "gold"}
    assert body["metadata"]["integrationCallCount"] == 1

    executions = (await client.get(f"{API}/routes/{route['id']}/executions")).json()["data"]
    assert len(executions) == 1
    assert executions[0]["status"] == 200

    unbound = await client.get(f"{API}/execute/nothing/here")
    assert unbound.status_code == 404
    assert unbound.json()["errors"][0]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_condition_skip_is_sent_as_200(client):
    integration = await make_integration(client)
    await client.post(f"{API}/routes", json={
        "path": "/vip",
        "method": "POST",
        "conditions": [{"field": "tier", "operator": "eq", "value": "gold"}],
        "steps": [{"integrationId": integration["id"], "path": "/"}],
    })

    response = await client.post(f"{API}/execute/vip", json={"tier": "bronze"})

    assert response.status_code == 200
    assert response.json()["status"] == 204
    assert response.json()["data"] is None


@pytest.mark.asyncio
async def test_invalid_json_body_is_config_error(client):
    response = await client.post(f"{API}/execute/x", content=b"{not json")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_route_versioning_and_conflicts(client):
    integration = await make_integration(client)
    route = await make_route(client, integration["id"])

    updated = await client.put(f"{API}/routes/{route['id']}", json={"expectedVersion": 1, "name": "lookup"})
    assert updated.json()["version"] == 2
    stale = await client.put(f"{API}/routes/{route['id']}", json={"expectedVersion": 1, "name": "again"})
    assert stale.status_code == 409

    ambiguous = await client.post(f"{API}/routes", json={
        "path": "/customers/{key}", "steps": [{"integrationId": integration["id"]}],
    })
    assert ambiguous.status_code == 400

    in_use = await client.delete(f"{API}/integrations/{integration['id']}")
    assert in_use.status_code == 409
    assert route["id"] in in_use.json()["error"]["details"]["routes"]

    disabled = await client.post(f"{API}/routes/{route['id']}/disable")
    assert disabled.json()["enabled"] is False
    assert (await client.get(f"{API}/execute/customers/1")).status_code == 404


@pytest.mark.asyncio
async def test_route_dry_run(client):
    integration = await make_integration(client)
    response = await client.post(f"{API}/routes/test", json={
        "route": {"path": "/preview/{id}", "steps": [{"integrationId": integration["id"], "path": "/contacts/{id}"}]},
        "params": {"id": "7"},
    })
    body = response.json()
    assert body["metadata"]["test"] is True
    assert body["data"]["data"]["id"] == "7"
    assert (await client.get(f"{API}/routes")).json()["total"] == 0


@pytest.mark.asyncio
async def test_transformers(client):
    created = await client.post(f"{API}/transformers", json={
        "id": "shout", "kind": "format", "config": {"format": "uppercase", "field": "name"},
    })
    assert created.status_code == 201

    tested = await client.post(f"{API}/transformers/shout/test", json={"payload": {"name": "ana"}})
    assert tested.json() == {"output": {"name": "ANA"}}

    bad = await client.post(f"{API}/transformers", json={"id": "bad", "kind": "format", "config": {"format": "rot13"}})
    assert bad.status_code == 400

    builtin = await client.delete(f"{API}/transformers/identity")
    assert builtin.status_code == 403
    assert (await client.delete(f"{API}/transformers/shout")).status_code == 204


@pytest.mark.asyncio
async def test_webhook_lifecycle(client, service, hooks):
    created = await client.post(f"{API}/webhooks", json={
        "url": "https://hooks.example.com/in", "events": ["case.created"], "filters": {"priority": ["high"]},
    })
    assert created.status_code == 201
    webhook = created.json()
    assert webhook["secret"]

    low = await client.post(f"{API}/events", json={"type": "case.created", "attributes": {"priority": "low"}})
    assert low.json()["scheduled"] == 0
    emitted = await client.post(f"{API}/events", json={
        "type": "case.created", "id": "evt-1", "attributes": {"priority": "high"}, "payload": {"case": 1},
    })
    assert emitted.status_code == 202
    assert emitted.json()["scheduled"] == 1
    duplicate = await client.post(f"{API}/events", json={"type": "case.created", "id": "evt-1",
                                                         "attributes": {"priority": "high"}})
    assert duplicate.json()["scheduled"] == 0

    await service.dispatcher.run_due()

    assert len(hooks.received) == 1
    deliveries = (await client.get(f"{API}/webhooks/{webhook['id']}/deliveries")).json()["data"]
    assert deliveries[0]["status"] == "delivered"
    stored = (await client.get(f"{API}/webhooks/{webhook['id']}")).json()
    assert stored["success_count"] == 1

    paused = await client.post(f"{API}/webhooks/{webhook['id']}/pause")
    assert paused.json()["status"] == "paused"
    pending = await client.post(f"{API}/deliveries/{deliveries[0]['id']}/redeliver")
    assert pending.status_code == 202
    assert pending.json()["redelivery_of"] == deliveries[0]["id"]


@pytest.mark.asyncio
async def test_authorizer_denies_mutations(service):
    authorizer = StaticAuthorizer({"ops": ["integrations.*"]})
    async with client_for(create_app(gateway=service, authorizer=authorizer, run_background=False)) as client:
        denied = await client.post(f"{API}/routes", json={"path": "/x", "steps": [{"integrationId": "a"}]},
                                   headers={"X-Caller-ID": "ops"})
        allowed = await client.post(f"{API}/integrations", json={"name": "A", "base_url": "https://a.example.com"},
                                    headers={"X-Caller-ID": "ops"})

    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "AUTHORIZATION_ERROR"
    assert allowed.status_code == 201


@pytest.mark.asyncio
async def test_state_survives_restart(client, session_factory, hooks):
    integration = await make_integration(client)
    await make_route(client, integration["id"])
    await client.post(f"{API}/webhooks", json={"url": "https://hooks.example.com", "events": ["case.created"]})

    restarted = build_service(session_factory, hooks)
    try:
        await restarted.hydrate()
        assert [i.id for i in restarted.list_integrations("default")] == [integration["id"]]
        assert len(restarted.list_webhooks("default")) == 1
        result = await restarted.execute("/customers/9", "GET", None, {}, "default")
        assert result.data == {"id": "9", "tier": "gold"}
    finally:
        await restarted.aclose()


ACME = {"X-Tenant-ID": "acme"}


@pytest.mark.asyncio
async def test_revoked_credential_stays_revoked_after_restart(client, session_factory, hooks):
    created = (await client.post(f"{API}/credentials", json={"owner_id": "crm", "type": "bearer"},
                                 headers=ACME)).json()
    secret = created["secret"]

    foreign = await client.post(f"{API}/credentials/{created['id']}/verify", json={"secret": secret})
    assert foreign.status_code == 404
    revoked = await client.post(f"{API}/credentials/{created['id']}/revoke", json={"reason": "leaked"},
                                headers=ACME)
    assert revoked.json()["status"] == "revoked"

    restarted = build_service(session_factory, hooks)
    try:
        await restarted.hydrate()
        credential = restarted.get_credential(created["id"], "acme")
        assert credential.status == CredentialStatus.REVOKED
        assert not restarted.vault.verify(created["id"], secret)
        with pytest.raises(NotFound):
            restarted.get_credential(created["id"], "default")
    finally:
        await restarted.aclose()


@pytest.mark.asyncio
async def test_objects_are_invisible_to_other_tenants(client):
    integration = (await client.post(f"{API}/integrations", json={
        "name": "CRM", "base_url": "https://crm.example.com",
    }, headers=ACME)).json()
    route = await client.post(f"{API}/routes", json={
        "path": "/customers/{id}",
        "steps": [{"integrationId": integration["id"], "path": "/contacts/{id}"}],
    }, headers=ACME)
    assert route.status_code == 201
    webhook = (await client.post(f"{API}/webhooks", json={
        "url": "https://hooks.example.com", "events": ["case.created"],
    }, headers=ACME)).json()

    assert (await client.get(f"{API}/integrations/{integration['id']}")).status_code == 404
    assert (await client.delete(f"{API}/integrations/{integration['id']}")).status_code == 404
    assert (await client.get(f"{API}/routes/{route.json()['id']}")).status_code == 404
    assert (await client.get(f"{API}/webhooks/{webhook['id']}")).status_code == 404
    assert (await client.post(f"{API}/webhooks/{webhook['id']}/pause")).status_code == 404
    assert (await client.get(f"{API}/execute/customers/1")).status_code == 404
    borrowed = await client.post(f"{API}/routes", json={
        "path": "/borrowed", "steps": [{"integrationId": integration["id"]}],
    })
    assert borrowed.status_code == 404

    own = await client.get(f"{API}/execute/customers/1", headers=ACME)
    assert own.status_code == 200


@pytest.mark.asyncio
async def test_failed_write_leaves_memory_unchanged(service, engine):
    issued = await service.create_credential({"owner_id": "crm", "type": "bearer"}, "default", "ops")
    credential_id = issued.credential.id
    service._session_factory = async_sessionmaker(engine, class_=CommitFails, expire_on_commit=False)

    with pytest.raises(RuntimeError):
        await service.revoke_credential(credential_id, "leaked", "default", "ops")
    with pytest.raises(RuntimeError):
        await service.rotate_credential(credential_id, 0, "default", "ops")
    with pytest.raises(RuntimeError):
        await service.create_integration({"name": "CRM", "base_url": "https://crm.example.com"}, "default")

    credential = service.get_credential(credential_id, "default")
    assert credential.status == CredentialStatus.ACTIVE
    assert credential.rotation_count == 0
    assert service.vault.verify(credential_id, issued.secret)
    assert service.list_integrations("default") == []


@pytest.mark.asyncio
async def test_dead_letters_survive_restart_until_discarded(session_factory):
    failing = Hooks(status=500)
    service = build_service(session_factory, failing)
    try:
        async with client_for(create_app(gateway=service, run_background=False)) as client:
            await client.post(f"{API}/webhooks", json={
                "url": "https://hooks.example.com", "events": ["case.created"], "max_retries": 1,
            })
            await client.post(f"{API}/events", json={"type": "case.created"})
            await service.dispatcher.run_due()

            letters = (await client.get(f"{API}/deliveries/dead-letters")).json()
            assert letters["total"] == 1
            delivery_id = letters["data"][0]["delivery_id"]
            assert (await client.get(f"{API}/deliveries/dead-letters", headers=ACME)).json()["total"] == 0
    finally:
        await service.aclose()

    restarted = build_service(session_factory, failing)
    try:
        await restarted.hydrate()
        assert [dl.delivery_id for dl in restarted.dead_letters("default")] == [delivery_id]
        async with client_for(create_app(gateway=restarted, run_background=False)) as client:
            discarded = await client.post(f"{API}/deliveries/{delivery_id}/discard", json={"reason": "retired"})
            assert discarded.json()["status"] == "discarded"
            again = await client.post(f"{API}/deliveries/{delivery_id}/discard", json={})
            assert again.status_code == 409
    finally:
        await restarted.aclose()

    final = build_service(session_factory, failing)
    try:
        await final.hydrate()
        assert final.dead_letters("default") == []
    finally:
        await final.aclose()


def test_tenant_from_host_ignores_ports_and_addresses():
    assert tenant_from_host("acme.gateway.example.com:8443") == "acme"
    assert tenant_from_host("127.0.0.1:8000") is None
    assert tenant_from_host("10.0.0.5") is None
    assert tenant_from_host("[::1]:8000") is None
    assert tenant_from_host("localhost:8000") is None


@pytest.mark.asyncio
async def test_ip_host_uses_default_tenant(client):
    created = await client.post(f"{API}/integrations", json={"name": "A", "base_url": "https://a.example.com"},
                                headers={"Host": "127.0.0.1:8000"})
    assert created.json()["tenant_id"] == "default"


@pytest.mark.asyncio
async def test_ref_is_unique_per_tenant_only(session_factory):
    from sqlalchemy import select
    from sqlalchemy.exc import IntegrityError
    from gateway.models.db_models import IntegrationRecord

    def row(tenant):
        return IntegrationRecord(tenant_id=tenant, ref="crm", name="CRM", base_url="https://crm.example.com")

    async with session_factory() as session:
        session.add_all([row("default"), row("acme")])
        await session.commit()
        tenants = await session.scalars(select(IntegrationRecord.tenant_id).where(IntegrationRecord.ref == "crm"))
        assert sorted(tenants) == ["acme", "default"]

    async with session_factory() as session:
        session.add(row("acme"))
        with pytest.raises(IntegrityError):
            await session.commit()
