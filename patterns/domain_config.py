"""Dataclass-based domain configuration pattern.

The gateway defines its thresholds, limits, and retry policies as frozen
dataclasses. This gives you:
- Type safety (IDE autocompletion, mypy checking)
- Default values (sensible out-of-the-box)
- Immutability (frozen=True prevents accidental mutation)
- Easy overrides (from environment settings or per-integration config)
"""

from dataclasses import dataclass, field, replace

from core.config import Settings


# ---------------------------------------------------------------------------
# Nested config sections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BreakerConfig:
    """Circuit breaker thresholds."""

    failure_threshold: int = 5
    cooldown_seconds: float = 30.0
    max_cooldown_seconds: float = 300.0
    backoff_multiplier: float = 2.0


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed-window call budgets. None means unlimited."""

    per_minute: int | None = None
    per_hour: int | None = None
    per_day: int | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """Per-integration retries for idempotent calls. One attempt disables retrying."""

    max_attempts: int = 1
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retry_on_status: tuple[int, ...] = (429, 500, 502, 503, 504)

    @classmethod
    def from_dict(cls, data: dict | None) -> "RetryPolicy":
        data = dict(data or {})
        if "retry_on_status" in data:
            data["retry_on_status"] = tuple(data["retry_on_status"])
        return cls(**data)

    def delay(self, attempt: int, rand: float = 0.0) -> float:
        """Wait before retry number ``attempt`` (1-based). ``rand`` in [0, 1) adds up to 50% jitter."""
        delay = min(self.base_delay_seconds * self.backoff_multiplier ** (attempt - 1), self.max_delay_seconds)
        if self.jitter:
            delay += delay * rand * 0.5
        return delay


@dataclass(frozen=True)
class CacheConfig:
    """GET response cache. A zero TTL disables caching."""

    ttl_seconds: float = 0.0
    max_entries: int = 1000


@dataclass(frozen=True)
class HealthConfig:
    """Health check settings."""

    interval_seconds: float = 60.0
    timeout_seconds: float = 10.0
    fast_threshold_ms: float = 500.0
    history_size: int = 100
    health_path: str | None = None  # None -> HEAD on the base URL


@dataclass(frozen=True)
class WebhookPolicyConfig:
    """Default retry policy for new webhooks."""

    max_retries: int = 3
    backoff_base_seconds: float = 60.0
    timeout_seconds: float = 30.0
    auto_pause_after: int | None = None  # pause once consecutive failures exceed this; None disables
    workers: int = 4
    retention_seconds: float = 3600.0  # finished deliveries stay in memory this long
    sweep_interval_seconds: float = 60.0


@dataclass(frozen=True)
class RoutingConfig:
    """Route execution limits."""

    overall_timeout_seconds: float = 30.0
    step_timeout_seconds: float = 10.0
    max_concurrency: int = 4
    max_pipeline_depth: int = 5


# ---------------------------------------------------------------------------
# Top-level domain config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GatewayConfig:
    """Complete configuration for the integration gateway.

    Usage::

        config = GatewayConfig.default()
        breaker = CircuitBreaker(config.breaker)
    """

    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    webhooks: WebhookPolicyConfig = field(default_factory=WebhookPolicyConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)

    @classmethod
    def default(cls) -> "GatewayConfig":
        """Create config with all defaults."""
        return cls()

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayConfig":
        """Create config from environment-backed settings.

        Example: GATEWAY_BREAKER_FAILURE_THRESHOLD=3
        """
        base = cls()
        return replace(
            base,
            breaker=replace(
                base.breaker,
                failure_threshold=settings.breaker_failure_threshold,
                cooldown_seconds=settings.breaker_cooldown_seconds,
                max_cooldown_seconds=settings.breaker_max_cooldown_seconds,
            ),
            health=replace(
                base.health,
                interval_seconds=settings.health_interval_seconds,
                timeout_seconds=settings.health_timeout_seconds,
                fast_threshold_ms=settings.health_fast_threshold_ms,
            ),
            webhooks=replace(
                base.webhooks,
                max_retries=settings.webhook_max_retries,
                backoff_base_seconds=settings.webhook_backoff_base_seconds,
                timeout_seconds=settings.webhook_timeout_seconds,
                auto_pause_after=settings.webhook_auto_pause_after,
                workers=settings.delivery_workers,
            ),
            routing=replace(
                base.routing,
                overall_timeout_seconds=settings.route_timeout_seconds,
                max_concurrency=settings.route_concurrency,
            ),
        )
