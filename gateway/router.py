"""Gateway API router.

Exposes the integration gateway under /api/gateway:
- Integrations, health checks and connector state
- Credentials (secrets returned exactly once, on create and rotate)
- Transformers, routes, dry runs and the execution endpoint
- Webhooks, domain events, redelivery and dead letters

Every mutating endpoint asks the configured Authorizer first; the caller id
comes from the X-Caller-ID header via the request middleware.
"""

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.middleware import get_current_caller, get_current_tenant
from core.errors import ConfigError
from core.security import Authorizer, require
from gateway.models.schemas import (
    AlertRuleCreate,
    CredentialCreate,
    CredentialRevoke,
    CredentialRotate,
    CredentialVerify,
    DeadLetterDiscard,
    EventEmit,
    IntegrationCreate,
    IntegrationUpdate,
    RouteCreate,
    RouteTest,
    RouteUpdate,
    TransformerCreate,
    TransformerTest,
    WebhookCreate,
    WebhookUpdate,
)
from gateway.service import GatewayService

router = APIRouter()


# ============================================================================
# Dependencies
# ============================================================================

def get_gateway(request: Request) -> GatewayService:
    return request.app.state.gateway


def get_authorizer(request: Request) -> Authorizer:
    return request.app.state.authorizer


class Guard:
    """Per-request authorization helper bound to the current caller."""

    def __init__(self, authorizer: Authorizer = Depends(get_authorizer)):
        self.authorizer = authorizer
        self.caller_id = get_current_caller()

    def __call__(self, action: str, resource_id: Optional[str] = None) -> str:
        require(self.authorizer, self.caller_id, action, resource_id)
        return self.caller_id

    @property
    def is_superuser(self) -> bool:
        return self.authorizer.is_superuser(self.caller_id)


# ============================================================================
# Integrations
# ============================================================================

@router.post("/integrations", status_code=201)
async def create_integration(
    request: IntegrationCreate,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("integrations.create")
    integration = await gateway.create_integration(request.model_dump(mode="json"), get_current_tenant())
    return integration.to_dict()


@router.get("/integrations")
async def list_integrations(gateway: GatewayService = Depends(get_gateway)):
    items = [i.to_dict() for i in gateway.list_integrations(get_current_tenant())]
    return {"data": items, "total": len(items)}


@router.get("/integrations/{integration_id}")
async def get_integration(integration_id: str, gateway: GatewayService = Depends(get_gateway)):
    return gateway.get_integration(integration_id, get_current_tenant()).to_dict()


@router.patch("/integrations/{integration_id}")
async def update_integration(
    integration_id: str,
    request: IntegrationUpdate,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("integrations.update", integration_id)
    changes = request.model_dump(mode="json", exclude_unset=True)
    integration = await gateway.update_integration(integration_id, changes, get_current_tenant())
    return integration.to_dict()


@router.delete("/integrations/{integration_id}", status_code=204)
async def delete_integration(
    integration_id: str,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("integrations.delete", integration_id)
    await gateway.delete_integration(integration_id, get_current_tenant())


@router.post("/integrations/{integration_id}/health")
async def check_integration_health(
    integration_id: str,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("integrations.health", integration_id)
    result = await gateway.check_health(integration_id, get_current_tenant())
    return result.to_dict()


@router.get("/integrations/{integration_id}/health/history")
async def health_history(
    integration_id: str,
    limit: int = Query(50, ge=1, le=500),
    gateway: GatewayService = Depends(get_gateway),
):
    tenant_id = get_current_tenant()
    history = await gateway.health_history(integration_id, tenant_id, limit)
    return {"data": history, "stats": gateway.health_stats(integration_id, tenant_id)}


@router.get("/integrations/{integration_id}/connector")
async def connector_state(integration_id: str, gateway: GatewayService = Depends(get_gateway)):
    return gateway.connector_snapshot(integration_id, get_current_tenant())


@router.post("/integrations/{integration_id}/connector/reset")
async def reset_connector(
    integration_id: str,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("integrations.reset", integration_id)
    return gateway.reset_connector(integration_id, get_current_tenant())


@router.post("/alerts/rules", status_code=201)
async def create_alert_rule(
    request: AlertRuleCreate,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("alerts.create")
    return gateway.add_alert_rule(request.model_dump(mode="json"), get_current_tenant()).to_dict()


@router.get("/alerts")
async def list_alerts(active: bool = False, gateway: GatewayService = Depends(get_gateway)):
    return {"data": [a.to_dict() for a in gateway.alerts(active_only=active)]}


# ============================================================================
# Credentials
# ============================================================================

@router.post("/credentials", status_code=201)
async def create_credential(
    request: CredentialCreate,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    caller = guard("credentials.create", request.owner_id)
    issued = await gateway.create_credential(request.model_dump(), get_current_tenant(), caller)
    return issued.to_response()


@router.get("/credentials/{credential_id}")
async def get_credential(credential_id: str, gateway: GatewayService = Depends(get_gateway)):
    return gateway.get_credential(credential_id, get_current_tenant()).to_dict()


@router.get("/credentials/{credential_id}/audit")
async def credential_audit(
    credential_id: str,
    limit: int = Query(100, ge=1, le=1000),
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("credentials.audit", credential_id)
    return {"data": [e.to_dict() for e in gateway.credential_audit(credential_id, get_current_tenant(), limit)]}


@router.post("/credentials/{credential_id}/rotate")
async def rotate_credential(
    credential_id: str,
    request: CredentialRotate,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    caller = guard("credentials.rotate", credential_id)
    issued = await gateway.rotate_credential(credential_id, request.grace_seconds, get_current_tenant(), caller)
    return issued.to_response()


@router.post("/credentials/{credential_id}/revoke")
async def revoke_credential(
    credential_id: str,
    request: CredentialRevoke,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    caller = guard("credentials.revoke", credential_id)
    credential = await gateway.revoke_credential(credential_id, request.reason, get_current_tenant(), caller)
    return credential.to_dict()


@router.post("/credentials/{credential_id}/verify")
async def verify_credential(
    credential_id: str,
    request: CredentialVerify,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    caller = guard("credentials.verify", credential_id)
    valid = await gateway.verify_credential(credential_id, request.secret, get_current_tenant(), caller)
    return {"valid": valid}


# ============================================================================
# Transformers
# ============================================================================

@router.post("/transformers", status_code=201)
async def create_transformer(
    request: TransformerCreate,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("transformers.create", request.id)
    transformer = await gateway.register_transformer(
        request.model_dump(mode="json"), get_current_tenant(), guard.is_superuser
    )
    return transformer.to_dict()


@router.get("/transformers")
async def list_transformers(
    include_builtins: bool = True,
    gateway: GatewayService = Depends(get_gateway),
):
    items = [t.to_dict() for t in gateway.list_transformers(get_current_tenant(), include_builtins=include_builtins)]
    return {"data": items, "total": len(items)}


@router.delete("/transformers/{transformer_id}", status_code=204)
async def delete_transformer(
    transformer_id: str,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("transformers.delete", transformer_id)
    await gateway.delete_transformer(transformer_id, get_current_tenant(), guard.is_superuser)


@router.post("/transformers/{transformer_id}/test")
async def test_transformer(
    transformer_id: str,
    request: TransformerTest,
    gateway: GatewayService = Depends(get_gateway),
):
    return {"output": gateway.test_transformer(transformer_id, request.payload, request.context, get_current_tenant())}


# ============================================================================
# Routes
# ============================================================================

@router.post("/routes", status_code=201)
async def create_route(
    request: RouteCreate,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("routes.create", request.id)
    route = await gateway.create_route(request.model_dump(mode="json", exclude_none=True), get_current_tenant())
    return route.to_dict()


@router.get("/routes")
async def list_routes(gateway: GatewayService = Depends(get_gateway)):
    items = [r.to_dict() for r in gateway.list_routes(get_current_tenant())]
    return {"data": items, "total": len(items)}


@router.post("/routes/test")
async def test_route(
    request: RouteTest,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("routes.test")
    result = await gateway.test_route(
        request.route.model_dump(mode="json", exclude_none=True), request.sample, request.params, request.query,
        get_current_tenant(),
    )
    return result.to_dict()


@router.get("/routes/{route_id}")
async def get_route(route_id: str, gateway: GatewayService = Depends(get_gateway)):
    return gateway.get_route(route_id, get_current_tenant()).to_dict()


@router.put("/routes/{route_id}")
async def update_route(
    route_id: str,
    request: RouteUpdate,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("routes.update", route_id)
    changes = request.model_dump(mode="json", exclude_unset=True)
    expected = changes.pop("expected_version")
    route = await gateway.update_route(route_id, changes, expected, get_current_tenant())
    return route.to_dict()


@router.post("/routes/{route_id}/enable")
async def enable_route(route_id: str, gateway: GatewayService = Depends(get_gateway), guard: Guard = Depends()):
    guard("routes.update", route_id)
    return (await gateway.set_route_enabled(route_id, True, get_current_tenant())).to_dict()


@router.post("/routes/{route_id}/disable")
async def disable_route(route_id: str, gateway: GatewayService = Depends(get_gateway), guard: Guard = Depends()):
    guard("routes.update", route_id)
    return (await gateway.set_route_enabled(route_id, False, get_current_tenant())).to_dict()


@router.delete("/routes/{route_id}", status_code=204)
async def delete_route(route_id: str, gateway: GatewayService = Depends(get_gateway), guard: Guard = Depends()):
    guard("routes.delete", route_id)
    await gateway.delete_route(route_id, get_current_tenant())


@router.get("/routes/{route_id}/executions")
async def route_executions(
    route_id: str,
    limit: int = Query(50, ge=1, le=500),
    gateway: GatewayService = Depends(get_gateway),
):
    return {"data": await gateway.executions(route_id, get_current_tenant(), limit)}


# ============================================================================
# Execution
# ============================================================================

async def _read_payload(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        raise ConfigError("Request body must be JSON") from None


@router.api_route("/execute/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def execute_route(
    path: str,
    request: Request,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    """Run the route bound to METHOD /path. The HTTP status mirrors the result's
    status, except a condition-skip (204) which is sent as 200 with its body."""
    guard("routes.execute", path)
    payload = await _read_payload(request)
    result = await gateway.execute(
        "/" + path, request.method, payload, dict(request.query_params), get_current_tenant()
    )
    status = 200 if result.status == 204 else result.status
    return JSONResponse(status_code=status, content=result.to_dict())


# ============================================================================
# Webhooks & events
# ============================================================================

@router.post("/webhooks", status_code=201)
async def create_webhook(
    request: WebhookCreate,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    caller = guard("webhooks.create")
    webhook, issued = await gateway.create_webhook(request.model_dump(mode="json"), get_current_tenant(), caller)
    body = webhook.to_dict()
    body["secret"] = issued.secret
    return body


@router.get("/webhooks")
async def list_webhooks(gateway: GatewayService = Depends(get_gateway)):
    items = [w.to_dict() for w in gateway.list_webhooks(get_current_tenant())]
    return {"data": items, "total": len(items)}


@router.get("/webhooks/{webhook_id}")
async def get_webhook(webhook_id: str, gateway: GatewayService = Depends(get_gateway)):
    return gateway.get_webhook(webhook_id, get_current_tenant()).to_dict()


@router.patch("/webhooks/{webhook_id}")
async def update_webhook(
    webhook_id: str,
    request: WebhookUpdate,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("webhooks.update", webhook_id)
    changes = request.model_dump(mode="json", exclude_unset=True)
    return (await gateway.update_webhook(webhook_id, changes, get_current_tenant())).to_dict()


@router.post("/webhooks/{webhook_id}/pause")
async def pause_webhook(webhook_id: str, gateway: GatewayService = Depends(get_gateway), guard: Guard = Depends()):
    guard("webhooks.update", webhook_id)
    return (await gateway.pause_webhook(webhook_id, get_current_tenant())).to_dict()


@router.post("/webhooks/{webhook_id}/resume")
async def resume_webhook(webhook_id: str, gateway: GatewayService = Depends(get_gateway), guard: Guard = Depends()):
    guard("webhooks.update", webhook_id)
    return (await gateway.resume_webhook(webhook_id, get_current_tenant())).to_dict()


@router.get("/webhooks/{webhook_id}/deliveries")
async def webhook_deliveries(
    webhook_id: str,
    limit: int = Query(50, ge=1, le=500),
    gateway: GatewayService = Depends(get_gateway),
):
    return {"data": [d.to_dict() for d in await gateway.deliveries(webhook_id, get_current_tenant(), limit)]}


@router.post("/events", status_code=202)
async def emit_event(
    request: EventEmit,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    guard("events.emit")
    deliveries = await gateway.emit(request.model_dump(mode="json"), get_current_tenant())
    return {"scheduled": len(deliveries), "deliveries": [d.id for d in deliveries]}


@router.post("/deliveries/{delivery_id}/redeliver", status_code=202)
async def redeliver(
    delivery_id: str,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    caller = guard("deliveries.redeliver", delivery_id)
    delivery = await gateway.redeliver(delivery_id, get_current_tenant(), caller)
    return delivery.to_dict()


@router.get("/deliveries/dead-letters")
async def list_dead_letters(
    webhook_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    gateway: GatewayService = Depends(get_gateway),
):
    letters = gateway.dead_letters(get_current_tenant(), webhook_id=webhook_id, limit=limit)
    return {"data": [dl.to_dict() for dl in letters], "total": len(letters)}


@router.post("/deliveries/{delivery_id}/discard")
async def discard_dead_letter(
    delivery_id: str,
    request: DeadLetterDiscard,
    gateway: GatewayService = Depends(get_gateway),
    guard: Guard = Depends(),
):
    caller = guard("deliveries.discard", delivery_id)
    letter = await gateway.discard_dead_letter(delivery_id, request.reason, get_current_tenant(), caller)
    return letter.to_dict()
