"""
Gateway Health Monitor: scheduled and on-demand checks per integration

- Check: HEAD on the base URL, or GET on the configured health path
- Classification: healthy (2xx and fast), degraded (slow 2xx or 4xx),
  unhealthy (timeout, connection failure, 5xx)
- Bounded history per integration feeds rolling latency, error rate, uptime
- Threshold alert rules, deduplicated per (integration, rule) until cleared

The monitor never touches circuit breakers: it only reports.
"""
from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union
import asyncio
import inspect
import time
import uuid

import httpx
import structlog

from core.connectors.models import HealthStatus, Integration
from core.errors import ConfigError, NotFound
from patterns.domain_config import HealthConfig

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Check results
# ---------------------------------------------------------------------------

@dataclass
class HealthCheckResult:
    integration_id: str
    status: HealthStatus
    response_time_ms: Optional[float]
    message: str
    status_code: Optional[int] = None
    checked_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "integrationId": self.integration_id,
            "status": self.status.value,
            "responseTimeMs": round(self.response_time_ms, 1) if self.response_time_ms is not None else None,
            "statusCode": self.status_code,
            "message": self.message,
            "checkedAt": self.checked_at.isoformat(),
        }


def classify(status_code: Optional[int], response_time_ms: Optional[float], fast_threshold_ms: float) -> HealthStatus:
    """Map one check outcome to a health classification.

    ``status_code`` is None when the check timed out or could not connect.
    """
    if status_code is None or status_code >= 500:
        return HealthStatus.UNHEALTHY
    if 200 <= status_code < 300:
        if response_time_ms is not None and response_time_ms < fast_threshold_ms:
            return HealthStatus.HEALTHY
        return HealthStatus.DEGRADED
    return HealthStatus.DEGRADED


# ---------------------------------------------------------------------------
# Alert rules
# ---------------------------------------------------------------------------

class AlertRuleKind(str, Enum):
    ERROR_RATE_ABOVE = "error_rate_above"
    AVG_LATENCY_ABOVE = "avg_latency_above"
    UPTIME_BELOW = "uptime_below"
    STATUS_IS = "status_is"


@dataclass
class AlertRule:
    kind: AlertRuleKind
    threshold: Union[float, str]
    name: str = ""
    integration_id: Optional[str] = None  # None applies to every integration
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enabled: bool = True

    def evaluate(self, integration: Integration) -> tuple[bool, Any]:
        if self.kind == AlertRuleKind.ERROR_RATE_ABOVE:
            return integration.error_rate > float(self.threshold), integration.error_rate
        if self.kind == AlertRuleKind.AVG_LATENCY_ABOVE:
            return integration.avg_response_time_ms > float(self.threshold), integration.avg_response_time_ms
        if self.kind == AlertRuleKind.UPTIME_BELOW:
            return integration.uptime_percentage < float(self.threshold), integration.uptime_percentage
        return integration.health_status.value == str(self.threshold), integration.health_status.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name or self.kind.value,
            "kind": self.kind.value,
            "threshold": self.threshold,
            "integration_id": self.integration_id,
            "enabled": self.enabled,
        }


@dataclass
class HealthAlert:
    rule_id: str
    integration_id: str
    message: str
    value: Any
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    triggered_at: datetime = field(default_factory=_utcnow)
    cleared_at: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.cleared_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "integration_id": self.integration_id,
            "message": self.message,
            "value": self.value,
            "active": self.active,
            "triggered_at": self.triggered_at.isoformat(),
            "cleared_at": self.cleared_at.isoformat() if self.cleared_at else None,
        }


ResultListener = Callable[[HealthCheckResult], Union[None, Awaitable[None]]]


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class HealthMonitor:
    """Checks integrations and keeps their rolling health statistics."""

    def __init__(
        self,
        config: Optional[HealthConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.config = config or HealthConfig()
        self._clock = clock
        self._client = httpx.AsyncClient(transport=transport)
        self._integrations: dict[str, Integration] = {}
        self._history: dict[str, deque[HealthCheckResult]] = {}
        self._rules: dict[str, AlertRule] = {}
        self._alerts: list[HealthAlert] = []
        self._listeners: list[ResultListener] = []
        self._task: Optional[asyncio.Task] = None

    # --- Registration ---

    def watch(self, integration: Integration) -> None:
        self._integrations[integration.id] = integration
        self._history.setdefault(integration.id, deque(maxlen=self.config.history_size))

    def unwatch(self, integration_id: str) -> None:
        self._integrations.pop(integration_id, None)
        self._history.pop(integration_id, None)

    def subscribe(self, listener: ResultListener) -> None:
        """Called with every check result (sync or async), e.g. to persist it."""
        self._listeners.append(listener)

    # --- Probing ---

    def _check_url(self, integration: Integration) -> tuple[str, str]:
        path = integration.health_path or self.config.health_path
        base = integration.base_url.rstrip("/")
        if path:
            return "GET", f"{base}/{path.lstrip('/')}"
        return "HEAD", base or "/"

    async def check(self, integration_id: str) -> HealthCheckResult:
        """Check one integration now and record the outcome."""
        integration = self._integrations.get(integration_id)
        if integration is None:
            raise NotFound("integration", integration_id)

        method, url = self._check_url(integration)
        start = self._clock()
        status_code: Optional[int] = None
        try:
            response = await self._client.request(method, url, timeout=self.config.timeout_seconds)
            status_code = response.status_code
            elapsed = (self._clock() - start) * 1000
            message = f"HTTP {status_code}"
        except httpx.TimeoutException:
            elapsed = None
            message = f"Timed out after {self.config.timeout_seconds:.0f}s"
        except httpx.HTTPError as exc:
            elapsed = None
            message = f"Connection failed: {type(exc).__name__}"

        status = classify(status_code, elapsed, self.config.fast_threshold_ms)
        if status == HealthStatus.DEGRADED and status_code is not None and status_code < 300:
            message = f"Slow response ({elapsed:.0f}ms)"

        result = HealthCheckResult(
            integration_id=integration_id,
            status=status,
            response_time_ms=elapsed,
            message=message,
            status_code=status_code,
        )
        self._record(integration, result)
        return result

    async def check_all(self) -> list[HealthCheckResult]:
        ids = [i.id for i in self._integrations.values() if i.enabled]
        results = await asyncio.gather(*(self.check(iid) for iid in ids), return_exceptions=True)
        out = []
        for iid, res in zip(ids, results):
            if isinstance(res, BaseException):
                logger.error("health_check_error", integration_id=iid, error=str(res))
                continue
            out.append(res)
        return out

    def _record(self, integration: Integration, result: HealthCheckResult) -> None:
        history = self._history.setdefault(integration.id, deque(maxlen=self.config.history_size))
        history.append(result)

        timed = [r.response_time_ms for r in history if r.response_time_ms is not None]
        unhealthy = sum(1 for r in history if r.status == HealthStatus.UNHEALTHY)
        integration.health_status = result.status
        integration.avg_response_time_ms = sum(timed) / len(timed) if timed else 0.0
        integration.error_rate = unhealthy / len(history)
        integration.uptime_percentage = (len(history) - unhealthy) / len(history) * 100
        integration.last_checked_at = result.checked_at

        log = logger.info if result.status == HealthStatus.HEALTHY else logger.warning
        log(
            "health_checked",
            integration_id=integration.id,
            status=result.status.value,
            response_time_ms=result.response_time_ms,
        )
        self._evaluate_rules(integration)

    async def notify(self, result: HealthCheckResult) -> None:
        for listener in self._listeners:
            outcome = listener(result)
            if inspect.isawaitable(outcome):
                await outcome

    async def run_once(self) -> list[HealthCheckResult]:
        """One scheduled sweep: check everything and notify listeners."""
        results = await self.check_all()
        for result in results:
            await self.notify(result)
        return results

    # --- Statistics ---

    def history(self, integration_id: str, limit: Optional[int] = None) -> list[HealthCheckResult]:
        entries = list(self._history.get(integration_id, ()))
        entries.reverse()
        return entries[:limit] if limit else entries

    def stats(self, integration_id: str) -> dict[str, Any]:
        integration = self._integrations.get(integration_id)
        if integration is None:
            raise NotFound("integration", integration_id)
        return {
            "integration_id": integration_id,
            "status": integration.health_status.value,
            "avg_response_time_ms": round(integration.avg_response_time_ms, 1),
            "error_rate": round(integration.error_rate, 4),
            "uptime_percentage": round(integration.uptime_percentage, 2),
            "checks": len(self._history.get(integration_id, ())),
        }

    # --- Alerting ---

    def add_rule(
        self,
        kind: str | AlertRuleKind,
        threshold: float | str,
        *,
        name: str = "",
        integration_id: Optional[str] = None,
    ) -> AlertRule:
        try:
            rule_kind = AlertRuleKind(kind)
        except ValueError:
            raise ConfigError(f"Unknown alert rule kind '{kind}'") from None
        if rule_kind == AlertRuleKind.STATUS_IS:
            try:
                HealthStatus(threshold)
            except ValueError:
                raise ConfigError(f"Unknown health status '{threshold}'") from None
        else:
            try:
                threshold = float(threshold)
            except (TypeError, ValueError):
                raise ConfigError("Alert threshold must be numeric") from None
        rule = AlertRule(kind=rule_kind, threshold=threshold, name=name, integration_id=integration_id)
        self._rules[rule.id] = rule
        return rule

    def remove_rule(self, rule_id: str) -> None:
        if self._rules.pop(rule_id, None) is None:
            raise NotFound("alert rule", rule_id)
        for alert in self._alerts:
            if alert.rule_id == rule_id and alert.active:
                alert.cleared_at = _utcnow()

    def rules(self) -> list[AlertRule]:
        return list(self._rules.values())

    def alerts(self, active_only: bool = False) -> list[HealthAlert]:
        return [a for a in self._alerts if a.active or not active_only]

    def _active_alert(self, rule_id: str, integration_id: str) -> Optional[HealthAlert]:
        for alert in self._alerts:
            if alert.active and alert.rule_id == rule_id and alert.integration_id == integration_id:
                return alert
        return None

    def _evaluate_rules(self, integration: Integration) -> None:
        for rule in self._rules.values():
            if not rule.enabled or rule.integration_id not in (None, integration.id):
                continue
            fired, value = rule.evaluate(integration)
            current = self._active_alert(rule.id, integration.id)
            if fired and current is None:
                alert = HealthAlert(
                    rule_id=rule.id,
                    integration_id=integration.id,
                    message=f"{integration.name}: {rule.kind.value} {rule.threshold} (value={value})",
                    value=value,
                )
                self._alerts.append(alert)
                logger.warning("health_alert_triggered", integration_id=integration.id, rule=rule.kind.value, value=value)
            elif not fired and current is not None:
                current.cleared_at = _utcnow()
                logger.info("health_alert_cleared", integration_id=integration.id, rule=rule.kind.value)

    # --- Scheduling ---

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("health_sweep_failed")
            await asyncio.sleep(self.config.interval_seconds)

    def start(self) -> None:
        """Start periodic probing as a background task. Idempotent."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="health-monitor")
            logger.info("health_monitor_started", interval_seconds=self.config.interval_seconds)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("health_monitor_stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def aclose(self) -> None:
        await self.stop()
        await self._client.aclose()
