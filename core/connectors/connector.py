"""
Gateway Connector: the live network side of one Integration

Every outbound call goes through the same pipeline:
Circuit Breaker -> Rate Limit -> Auth (from the vault) -> httpx -> outcome

- Breaker rejections make no network call and are not counted as failures
- Rate-limit and credential rejections never touch breaker statistics
- Upstream 5xx, timeouts and transport errors count toward the breaker
- Idempotent methods retry with exponential backoff and jitter when the
  integration has a retry policy; each attempt is a separate breaker call
- Successful GETs are cached per integration when a cache TTL is set
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
import asyncio
import base64
import copy
import random
import time

import httpx
import structlog

from core.connectors.cache import ResponseCache, cache_key
from core.connectors.circuit_breaker import CircuitBreaker, CircuitState
from core.connectors.models import AuthType, Integration
from core.connectors.rate_limiter import FixedWindowRateLimiter
from core.credentials import CredentialVault
from core.errors import (
    CircuitOpenError,
    CredentialError,
    NotFound,
    RateLimitExceeded,
    UpstreamError,
    UpstreamTimeout,
)
from patterns.domain_config import BreakerConfig

logger = structlog.get_logger(__name__)

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


# ---------------------------------------------------------------------------
# Request / Response envelope
# ---------------------------------------------------------------------------

@dataclass
class ConnectorRequest:
    """Standardized outbound request."""
    method: str = "GET"
    path: str = "/"
    params: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 10.0


@dataclass
class ConnectorResponse:
    """Standardized inbound response."""
    status_code: int
    data: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    latency_ms: float = 0.0
    integration_id: str = ""
    cached: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400


@dataclass
class ConnectorStats:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0  # breaker, rate limit, credential
    retries: int = 0
    total_latency_ms: float = 0.0
    last_error: Optional[str] = None
    last_called_at: Optional[datetime] = None

    @property
    def avg_latency_ms(self) -> float:
        done = self.successful_calls + self.failed_calls
        return self.total_latency_ms / done if done else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "rejected_calls": self.rejected_calls,
            "retries": self.retries,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "last_error": self.last_error,
            "last_called_at": self.last_called_at.isoformat() if self.last_called_at else None,
        }


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    if "json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


# ---------------------------------------------------------------------------
# Connector
# ---------------------------------------------------------------------------

class Connector:
    """Breaker + rate limiter + authenticated HTTP client for one integration."""

    def __init__(
        self,
        integration: Integration,
        vault: Optional[CredentialVault] = None,
        breaker_config: Optional[BreakerConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.integration = integration
        self.vault = vault
        self.breaker = CircuitBreaker(integration.id, breaker_config, clock=clock)
        self.rate_limiter = FixedWindowRateLimiter(integration.id, integration.rate_limit, clock=wall_clock)
        self.cache = ResponseCache(integration.cache, clock=clock)
        self.stats = ConnectorStats()
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._rand = rand
        self._client = httpx.AsyncClient(base_url=integration.base_url, transport=transport)

    @property
    def id(self) -> str:
        return self.integration.id

    def rebind(self, integration: Integration) -> None:
        """Swap in edited integration settings, keeping breaker state and stats. Cached responses are dropped."""
        if integration.rate_limit != self.integration.rate_limit:
            self.rate_limiter = FixedWindowRateLimiter(
                integration.id, integration.rate_limit, clock=self._wall_clock
            )
        self.integration = integration
        self._client.base_url = integration.base_url
        self.cache = ResponseCache(integration.cache, clock=self._clock)

    # --- Auth headers ---

    def auth_headers(self) -> dict[str, str]:
        """Resolve the integration's credential and build headers for its auth type."""
        integration = self.integration
        if integration.auth_type == AuthType.NONE:
            return {}
        if not integration.credential_id or self.vault is None:
            raise CredentialError(f"Integration '{integration.id}' has no credential configured")

        try:
            secret = self.vault.reveal(integration.credential_id, actor=f"connector:{integration.id}")
        except NotFound:
            raise CredentialError("Credential not found", integration.credential_id) from None
        cfg = integration.auth_config

        if integration.auth_type == AuthType.API_KEY:
            header = cfg.get("header", "X-API-Key")
            prefix = cfg.get("prefix", "")
            return {header: f"{prefix} {secret}".strip()}

        if integration.auth_type in (AuthType.BEARER, AuthType.OAUTH2):
            return {"Authorization": f"Bearer {secret}"}

        if integration.auth_type == AuthType.BASIC:
            username = cfg.get("username")
            raw = f"{username}:{secret}" if username else secret
            return {"Authorization": f"Basic {base64.b64encode(raw.encode()).decode()}"}

        if integration.auth_type == AuthType.CUSTOM:
            return {k: str(v).replace("{secret}", secret) for k, v in cfg.get("headers", {}).items()}

        return {}

    # --- Core request ---

    async def call(self, request: ConnectorRequest) -> ConnectorResponse:
        """Execute one upstream call through the full connector pipeline.

        GET responses are served from the cache when it is enabled. Idempotent
        methods are retried on network errors and retryable statuses; every
        attempt goes through the breaker and the rate limiter again.
        """
        method = request.method.upper()
        params = dict(request.params)
        if method == "GET" and isinstance(request.body, dict):
            params.update({k: v for k, v in request.body.items() if not isinstance(v, (dict, list))})

        key = cache_key(method, request.path, params) if method == "GET" and self.cache.enabled else None
        if key is not None:
            hit = self.cache.get(key)
            if hit is not None:
                return replace(hit, data=copy.deepcopy(hit.data), latency_ms=0.0, cached=True)

        policy = self.integration.retry
        attempts = max(1, policy.max_attempts) if method in IDEMPOTENT_METHODS else 1
        attempt = 1
        while True:
            try:
                response = await self._attempt(request, method, params)
                break
            except UpstreamError as exc:
                if attempt >= attempts or not (exc.upstream_status is None or exc.upstream_status in policy.retry_on_status):
                    raise
                delay = policy.delay(attempt, self._rand())
                self.stats.retries += 1
                logger.info("connector_retry", integration_id=self.id, attempt=attempt,
                            status=exc.upstream_status, delay_seconds=round(delay, 2))
                await self._sleep(delay)
                attempt += 1

        if key is not None:
            self.cache.set(key, replace(response, data=copy.deepcopy(response.data)))
        elif method not in ("GET", "HEAD", "OPTIONS"):
            self.cache.clear()
        return response

    async def _attempt(self, request: ConnectorRequest, method: str, params: dict[str, Any]) -> ConnectorResponse:
        self.stats.total_calls += 1
        self.stats.last_called_at = datetime.now(timezone.utc)

        try:
            self.breaker.acquire()
        except CircuitOpenError:
            self.stats.rejected_calls += 1
            raise

        try:
            self.rate_limiter.acquire()
            headers = {**self.auth_headers(), **request.headers}
        except (RateLimitExceeded, CredentialError) as exc:
            self.breaker.release()
            self.stats.rejected_calls += 1
            self.stats.last_error = exc.message
            logger.info("connector_rejected", integration_id=self.id, code=exc.code)
            raise

        send_body = method not in ("GET", "HEAD", "DELETE") and request.body is not None

        start = self._clock()
        try:
            response = await self._client.request(
                method,
                request.path,
                params=params or None,
                json=request.body if send_body else None,
                headers=headers,
                timeout=request.timeout,
            )
        except httpx.TimeoutException:
            self._failed(start, f"timeout after {request.timeout}s")
            raise UpstreamTimeout(self.id, request.timeout) from None
        except httpx.HTTPError as exc:
            self._failed(start, f"{type(exc).__name__}: {exc}")
            raise UpstreamError(self.id, f"Connection to upstream failed: {type(exc).__name__}") from exc
        except asyncio.CancelledError:
            self.breaker.release()
            raise

        latency = (self._clock() - start) * 1000
        if response.status_code >= 500:
            self._failed(start, f"HTTP {response.status_code}")
            raise UpstreamError(self.id, f"Upstream returned HTTP {response.status_code}", response.status_code)

        # 4xx means the upstream is alive; the breaker only tracks upstream health
        self.breaker.record_success()
        self.stats.total_latency_ms += latency
        if response.status_code >= 400:
            self.stats.failed_calls += 1
            self.stats.last_error = f"HTTP {response.status_code}"
            raise UpstreamError(self.id, f"Upstream returned HTTP {response.status_code}", response.status_code)

        self.stats.successful_calls += 1
        logger.debug("connector_call", integration_id=self.id, status=response.status_code, latency_ms=round(latency, 1))
        return ConnectorResponse(
            status_code=response.status_code,
            data=_parse_body(response),
            headers=dict(response.headers),
            latency_ms=latency,
            integration_id=self.id,
        )

    def _failed(self, start: float, reason: str) -> None:
        self.stats.failed_calls += 1
        self.stats.total_latency_ms += (self._clock() - start) * 1000
        self.stats.last_error = reason
        self.breaker.record_failure(reason)
        logger.warning("connector_call_failed", integration_id=self.id, reason=reason,
                       consecutive_failures=self.breaker.consecutive_failures)

    # --- Introspection ---

    def snapshot(self) -> dict[str, Any]:
        return {
            "integration_id": self.id,
            "breaker": self.breaker.snapshot(),
            "rate_limit": self.rate_limiter.snapshot(),
            "cache": self.cache.snapshot(),
            "stats": self.stats.to_dict(),
        }

    @property
    def is_open(self) -> bool:
        return self.breaker.state == CircuitState.OPEN

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ConnectorRegistry:
    """One Connector per integration id; state is never shared between them."""

    def __init__(
        self,
        vault: Optional[CredentialVault] = None,
        breaker_config: Optional[BreakerConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.vault = vault
        self.breaker_config = breaker_config or BreakerConfig()
        self.transport = transport
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._connectors: dict[str, Connector] = {}

    def register(self, integration: Integration) -> Connector:
        """Create the connector for a new integration, or rebind an existing one.

        Rebinding keeps breaker state and counters so that editing an
        integration never hides an outage.
        """
        existing = self._connectors.get(integration.id)
        if existing is not None:
            existing.rebind(integration)
            return existing
        connector = Connector(
            integration,
            vault=self.vault,
            breaker_config=self.breaker_config,
            transport=self.transport,
            clock=self._clock,
            wall_clock=self._wall_clock,
            sleep=self._sleep,
        )
        self._connectors[integration.id] = connector
        logger.info("connector_registered", integration_id=integration.id, base_url=integration.base_url)
        return connector

    def get(self, integration_id: str) -> Connector:
        connector = self._connectors.get(integration_id)
        if connector is None:
            raise NotFound("integration", integration_id)
        return connector

    def exists(self, integration_id: str) -> bool:
        return integration_id in self._connectors

    def __contains__(self, integration_id: object) -> bool:
        return integration_id in self._connectors

    def integrations(self) -> list[Integration]:
        return [c.integration for c in self._connectors.values()]

    async def remove(self, integration_id: str) -> None:
        connector = self._connectors.pop(integration_id, None)
        if connector is not None:
            await connector.aclose()

    def snapshot(self) -> dict[str, dict]:
        return {iid: c.snapshot() for iid, c in self._connectors.items()}

    async def aclose(self) -> None:
        for connector in list(self._connectors.values()):
            await connector.aclose()
        self._connectors.clear()
