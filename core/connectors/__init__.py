"""
Gateway Connectors: live per-integration network state.

- Connector / ConnectorRegistry: breaker + rate limit + auth + httpx
- CircuitBreaker: closed / open / half_open with capped exponential cooldown
- FixedWindowRateLimiter: per-minute/hour/day budgets
- ResponseCache: LRU with TTL for GET responses
- HealthMonitor: health checks, rolling stats, alert rules
"""
from core.connectors.cache import CacheStats, ResponseCache, cache_key
from core.connectors.circuit_breaker import CircuitBreaker, CircuitState
from core.connectors.connector import (
    Connector,
    ConnectorRegistry,
    ConnectorRequest,
    ConnectorResponse,
    ConnectorStats,
)
from core.connectors.health import (
    AlertRule,
    AlertRuleKind,
    HealthAlert,
    HealthCheckResult,
    HealthMonitor,
    classify,
)
from core.connectors.models import AuthType, HealthStatus, Integration
from core.connectors.rate_limiter import FixedWindowRateLimiter

__all__ = [
    "AlertRule",
    "AlertRuleKind",
    "AuthType",
    "CacheStats",
    "CircuitBreaker",
    "CircuitState",
    "Connector",
    "ConnectorRegistry",
    "ConnectorRequest",
    "ConnectorResponse",
    "ConnectorStats",
    "FixedWindowRateLimiter",
    "HealthAlert",
    "HealthCheckResult",
    "HealthMonitor",
    "HealthStatus",
    "Integration",
    "ResponseCache",
    "cache_key",
    "classify",
]
