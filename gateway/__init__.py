"""Integration gateway service layer.

Wires the core components into one application:
- SQLAlchemy models with TenantMixin, one table per runtime object
- Ref-keyed async repositories used to mirror runtime state
- GatewayService facade (hydrate on startup, write-through on change)
- FastAPI router mounted under /api/gateway
"""
