"""Integration runtime model shared by connectors and the health monitor."""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid

from patterns.domain_config import CacheConfig, RateLimitConfig, RetryPolicy


class AuthType(str, Enum):
    NONE = "none"
    API_KEY = "api_key"
    BEARER = "bearer"
    BASIC = "basic"
    OAUTH2 = "oauth2"
    CUSTOM = "custom"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class Integration:
    """A registered third-party service.

    ``auth_config`` carries non-secret auth parameters: the api-key header
    name and prefix, the basic-auth username, or custom header templates
    where ``{secret}`` is replaced with the revealed credential.
    """
    name: str
    base_url: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    category: str = "general"
    provider: str = ""
    auth_type: AuthType = AuthType.NONE
    credential_id: Optional[str] = None
    auth_config: dict[str, Any] = field(default_factory=dict)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    cache: CacheConfig = field(default_factory=CacheConfig)
    health_path: Optional[str] = None
    enabled: bool = True
    tenant_id: str = "default"

    # Mutated by the health monitor
    health_status: HealthStatus = HealthStatus.UNKNOWN
    avg_response_time_ms: float = 0.0
    error_rate: float = 0.0
    uptime_percentage: float = 100.0
    last_checked_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "provider": self.provider,
            "base_url": self.base_url,
            "auth_type": self.auth_type.value,
            "credential_id": self.credential_id,
            "auth_config": self.auth_config,
            "rate_limit": {
                "per_minute": self.rate_limit.per_minute,
                "per_hour": self.rate_limit.per_hour,
                "per_day": self.rate_limit.per_day,
            },
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "base_delay_seconds": self.retry.base_delay_seconds,
                "max_delay_seconds": self.retry.max_delay_seconds,
                "backoff_multiplier": self.retry.backoff_multiplier,
                "jitter": self.retry.jitter,
                "retry_on_status": list(self.retry.retry_on_status),
            },
            "cache": {"ttl_seconds": self.cache.ttl_seconds, "max_entries": self.cache.max_entries},
            "health_path": self.health_path,
            "enabled": self.enabled,
            "tenant_id": self.tenant_id,
            "health_status": self.health_status.value,
            "avg_response_time_ms": round(self.avg_response_time_ms, 1),
            "error_rate": round(self.error_rate, 4),
            "uptime_percentage": round(self.uptime_percentage, 2),
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "created_at": self.created_at.isoformat(),
        }
