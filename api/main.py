"""Integration Gateway API: FastAPI entry point.

Registers middleware, exception handlers, the gateway router and the
lifecycle hooks that hydrate runtime state and start the background
health monitor and webhook delivery workers.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.errors import register_exception_handlers
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.database import close_db, init_db
from core.logging_config import configure_logging
from core.security import AllowAllAuthorizer, Authorizer
from gateway.router import router as gateway_router
from gateway.service import GatewayService
from patterns.domain_config import GatewayConfig

VERSION = "0.1.0"

logger = structlog.get_logger(__name__)


def create_app(
    gateway: Optional[GatewayService] = None,
    authorizer: Optional[Authorizer] = None,
    run_background: bool = True,
) -> FastAPI:
    """Build the application. Tests pass their own service and authorizer."""

    # -----------------------------------------------------------------------
    # Lifespan
    # -----------------------------------------------------------------------

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, settings.log_json)
        service: GatewayService = app.state.gateway
        if gateway is None:
            await init_db()
        await service.hydrate()
        if run_background:
            service.start()
        logger.info("gateway_started", version=VERSION)
        yield
        await service.aclose()
        if gateway is None:
            await close_db()
        logger.info("gateway_stopped")

    # -----------------------------------------------------------------------
    # App
    # -----------------------------------------------------------------------

    app = FastAPI(
        title="Integration Gateway",
        description="Connectors, route bindings, transformers and signed webhooks for third-party integrations",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.gateway = gateway or GatewayService(GatewayConfig.from_settings(settings))
    app.state.authorizer = authorizer or AllowAllAuthorizer()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    register_exception_handlers(app)

    app.include_router(gateway_router, prefix="/api/gateway", tags=["Gateway"])

    # -----------------------------------------------------------------------
    # Health & root
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": VERSION}

    @app.get("/")
    async def root():
        return {"name": "Integration Gateway", "version": VERSION, "docs": "/docs"}

    return app


app = create_app()
