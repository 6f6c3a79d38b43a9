"""Route configuration and execution result types."""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid

from core.errors import ConfigError

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "ANY")


class AggregationStrategy(str, Enum):
    FIRST_SUCCESS = "first_success"
    MERGE = "merge"
    ALL = "all"
    RACE = "race"


def _pick(data: dict, snake: str, camel: str, default: Any = None) -> Any:
    """Config arrives in either naming style."""
    if snake in data:
        return data[snake]
    return data.get(camel, default)


@dataclass
class RouteStep:
    integration_id: str
    path: str = "/"
    method: str = "GET"
    request_transformer: Optional[str] = None
    response_transformer: Optional[str] = None
    timeout_seconds: Optional[float] = None
    name: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "integration_id": self.integration_id,
            "path": self.path,
            "method": self.method,
            "request_transformer": self.request_transformer,
            "response_transformer": self.response_transformer,
            "timeout_seconds": self.timeout_seconds,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RouteStep":
        integration_id = _pick(data, "integration_id", "integrationId")
        if not integration_id:
            raise ConfigError("Every step needs an integration id")
        return cls(
            integration_id=str(integration_id),
            path=data.get("path") or "/",
            method=str(data.get("method") or "GET").upper(),
            request_transformer=_pick(data, "request_transformer", "requestTransformer"),
            response_transformer=_pick(data, "response_transformer", "responseTransformer"),
            timeout_seconds=_pick(data, "timeout_seconds", "timeoutSeconds"),
            name=data.get("name"),
        )


@dataclass
class Route:
    """A binding from an inbound path + method to integration calls.

    ``chain`` runs steps in order even for concurrent strategies so each
    step can consume the previous step's output.
    """
    path: str
    method: str
    steps: list[RouteStep]
    aggregation_strategy: AggregationStrategy = AggregationStrategy.FIRST_SUCCESS
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    enabled: bool = True
    conditions: list[dict[str, Any]] = field(default_factory=list)
    chain: bool = False
    timeout_seconds: Optional[float] = None
    version: int = 1
    tenant_id: str = "default"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "method": self.method,
            "steps": [s.to_dict() for s in self.steps],
            "aggregation_strategy": self.aggregation_strategy.value,
            "enabled": self.enabled,
            "conditions": self.conditions,
            "chain": self.chain,
            "timeout_seconds": self.timeout_seconds,
            "version": self.version,
            "tenant_id": self.tenant_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Route":
        """Build from a binding config; raises ConfigError on malformed input."""
        strategy = _pick(data, "aggregation_strategy", "aggregationStrategy", "first_success")
        try:
            strategy = AggregationStrategy(strategy)
        except ValueError:
            raise ConfigError(
                f"Unknown aggregation strategy '{strategy}'",
                details={"allowed": [s.value for s in AggregationStrategy]},
            ) from None
        steps = data.get("steps")
        if not isinstance(steps, list):
            raise ConfigError("Route 'steps' must be a list")
        kwargs: dict[str, Any] = {}
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        return cls(
            path=str(data.get("path") or ""),
            method=str(data.get("method") or "GET").upper(),
            steps=[RouteStep.from_dict(s) for s in steps],
            aggregation_strategy=strategy,
            name=data.get("name") or "",
            enabled=data.get("enabled", True),
            conditions=list(data.get("conditions") or []),
            chain=bool(data.get("chain", False)),
            timeout_seconds=_pick(data, "timeout_seconds", "timeoutSeconds"),
            version=int(data.get("version", 1)),
            tenant_id=data.get("tenant_id", "default"),
            **kwargs,
        )


# ---------------------------------------------------------------------------
# Execution results
# ---------------------------------------------------------------------------

@dataclass
class StepResult:
    index: int
    integration_id: str
    success: bool
    data: Any = None
    error_code: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    duration_ms: float = 0.0
    called: bool = False  # reached the connector

    def error_entry(self) -> dict[str, Any]:
        return {
            "step": self.index,
            "integrationId": self.integration_id,
            "code": self.error_code,
            "message": self.error,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.index,
            "integrationId": self.integration_id,
            "success": self.success,
            "data": self.data,
            "error": self.error_entry() if not self.success else None,
        }


@dataclass
class ExecutionResult:
    success: bool
    status: int
    data: Any = None
    errors: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    route_id: Optional[str] = None
    steps: list[StepResult] = field(default_factory=list)
    record: Optional["ExecutionRecord"] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "data": self.data,
            "errors": self.errors,
            "metadata": self.metadata,
        }


@dataclass
class ExecutionRecord:
    """One production execution, as kept in the execution log."""
    route_id: str
    route_version: int
    path: str
    method: str
    success: bool
    status: int
    duration_ms: float
    steps: list[dict[str, Any]] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = "default"
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "route_id": self.route_id,
            "route_version": self.route_version,
            "path": self.path,
            "method": self.method,
            "success": self.success,
            "status": self.status,
            "duration_ms": round(self.duration_ms, 1),
            "steps": self.steps,
            "tenant_id": self.tenant_id,
            "executed_at": self.executed_at.isoformat(),
        }
