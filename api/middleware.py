"""Request context middleware using ContextVar.

Extracts the tenant (X-Tenant-ID header, falling back to subdomain
detection), the caller (X-Caller-ID) and a request id (X-Request-ID or a
fresh one). They are stored in ContextVars so any downstream code can read
them without explicit parameter passing, and bound into structlog so every
log line of the request carries them.
"""

import ipaddress
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from core.logging_config import bind_request_context, clear_request_context

# ---------------------------------------------------------------------------
# Context variables
# ---------------------------------------------------------------------------

_current_tenant: ContextVar[str] = ContextVar("current_tenant", default="default")
_current_caller: ContextVar[str] = ContextVar("current_caller", default="anonymous")
_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)


def get_current_tenant() -> str:
    """Return the tenant ID for the current request."""
    return _current_tenant.get()


def get_current_caller() -> str:
    """Return the caller id resolved from X-Caller-ID."""
    return _current_caller.get()


def get_request_id() -> str | None:
    return _request_id.get()


def tenant_from_host(host: str) -> str | None:
    """First subdomain label of a host header, ignoring the port and IP literals."""
    if not host or host.startswith("["):
        return None
    hostname = host.split(":", 1)[0]
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        parts = hostname.split(".")
        return parts[0] if len(parts) > 2 else None
    return None


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class RequestContextMiddleware(BaseHTTPMiddleware):
    """Resolve tenant, caller and request id for the duration of a request.

    Tenant priority:
    1. X-Tenant-ID header (explicit)
    2. First subdomain segment (e.g., acme.gateway.example.com -> "acme");
       IP addresses never name a tenant
    3. Falls back to "default"
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        tenant_id = (
            request.headers.get("X-Tenant-ID")
            or tenant_from_host(request.headers.get("host", ""))
            or "default"
        )
        caller_id = request.headers.get("X-Caller-ID") or "anonymous"
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

        tokens = (
            _current_tenant.set(tenant_id),
            _current_caller.set(caller_id),
            _request_id.set(request_id),
        )
        bind_request_context(request_id, caller_id=caller_id, tenant_id=tenant_id)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            clear_request_context()
            _request_id.reset(tokens[2])
            _current_caller.reset(tokens[1])
            _current_tenant.reset(tokens[0])
