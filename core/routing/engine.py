"""
Gateway Route Binding Engine: inbound request -> integration calls -> one result

Resolution → Conditions → Steps (request transform → connector → response
transform) → Aggregation → ExecutionResult

- first_success (and chained routes) run steps in order; first_success stops
  at the first step whose call and transform succeed
- merge / all run steps concurrently up to the per-route concurrency cap
- race returns the first successful completion and cancels the rest
- An overall deadline bounds every execution; unfinished steps are cancelled
- Step failures are captured into the result; only ConfigError propagates
"""
from __future__ import annotations
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import quote
import asyncio
import re
import time

import structlog

from core.connectors import ConnectorRegistry, ConnectorRequest
from core.errors import (
    CircuitOpenError,
    ConfigError,
    ConflictError,
    CredentialError,
    GatewayError,
    NotFound,
    RateLimitExceeded,
    TransformError,
)
from core.paths import get_path
from core.routing.aggregation import aggregate
from core.routing.matcher import RouteTable
from core.routing.models import (
    HTTP_METHODS,
    AggregationStrategy,
    ExecutionRecord,
    ExecutionResult,
    Route,
    RouteStep,
    StepResult,
)
from core.transformers import TransformerRegistry
from patterns.domain_config import RoutingConfig
from patterns.rules_engine import OPERATORS, evaluate_conditions

logger = structlog.get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.]*)\}")

# Rejections decided locally, before any network traffic
_NO_CALL = (CircuitOpenError, RateLimitExceeded, CredentialError)


def _reap(task: asyncio.Task) -> None:
    """Collect the outcome of a cancelled race loser once it finishes."""
    if not task.cancelled() and task.exception() is not None:
        logger.debug("race_loser_failed", error=str(task.exception()))


class RouteBindingEngine:
    """Executes data-driven routes against registered connectors."""

    def __init__(
        self,
        connectors: ConnectorRegistry,
        transformers: TransformerRegistry,
        config: Optional[RoutingConfig] = None,
        clock: Callable[[], float] = time.perf_counter,
        log_size: int = 1000,
    ):
        self.connectors = connectors
        self.transformers = transformers
        self.config = config or RoutingConfig()
        self._clock = clock
        self.table = RouteTable()
        self._log: deque[ExecutionRecord] = deque(maxlen=log_size)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def validate(self, route: Route, *, check_ambiguity: bool = True) -> None:
        """Reject invalid or ambiguous configuration before it can serve traffic."""
        if route.method not in HTTP_METHODS:
            raise ConfigError(f"Unsupported method '{route.method}'", details={"allowed": list(HTTP_METHODS)})
        if not route.steps:
            raise ConfigError("A route needs at least one step")
        if route.chain and route.aggregation_strategy == AggregationStrategy.RACE:
            raise ConfigError("Chained steps cannot race")
        if route.timeout_seconds is not None and route.timeout_seconds <= 0:
            raise ConfigError("Route timeout must be positive")

        for condition in route.conditions:
            if not isinstance(condition, dict) or not isinstance(condition.get("field"), str):
                raise ConfigError("Each condition needs a 'field'")
            if condition.get("operator", "eq") not in OPERATORS:
                raise ConfigError(
                    f"Unknown condition operator '{condition.get('operator')}'",
                    details={"allowed": list(OPERATORS)},
                )

        for index, step in enumerate(route.steps):
            if step.integration_id not in self.connectors:
                raise ConfigError(
                    f"Step {index} references unknown integration '{step.integration_id}'",
                    details={"step": index},
                )
            if step.method not in HTTP_METHODS or step.method == "ANY":
                raise ConfigError(f"Step {index} has unsupported method '{step.method}'")
            for ref in (step.request_transformer, step.response_transformer):
                if ref and not self.transformers.exists(ref):
                    raise ConfigError(
                        f"Step {index} references unknown transformer '{ref}'",
                        details={"step": index},
                    )
            if step.timeout_seconds is not None and step.timeout_seconds <= 0:
                raise ConfigError(f"Step {index} timeout must be positive")

        if check_ambiguity:
            self.table.check(route)
        else:
            # Still compile the pattern so malformed paths fail here
            RouteTable().check(route)

    @staticmethod
    def _coerce(route: Route | dict) -> Route:
        return route if isinstance(route, Route) else Route.from_dict(route)

    def register(self, route: Route | dict) -> Route:
        route = self._coerce(route)
        if self.table.get(route.id) is not None:
            raise ConflictError(f"Route '{route.id}' already exists")
        self.validate(route)
        self.table.add(route)
        logger.info("route_registered", route_id=route.id, method=route.method, path=route.path,
                    strategy=route.aggregation_strategy.value)
        return route

    def load(self, route: Route) -> None:
        """Hydrate a stored route. Stored config was validated when it was saved."""
        self.table.add(route)

    def update(self, route_id: str, changes: dict[str, Any], expected_version: int) -> Route:
        """Versioned update: the caller must hold the current version."""
        current = self.get(route_id)
        if expected_version != current.version:
            raise ConflictError(
                "Route was modified concurrently",
                details={"expected_version": expected_version, "current_version": current.version},
            )
        merged = {**current.to_dict(), **changes}
        merged.update(id=current.id, version=current.version + 1, tenant_id=current.tenant_id)
        candidate = Route.from_dict(merged)
        candidate.created_at = current.created_at
        self.validate(candidate)
        self.table.add(candidate)
        logger.info("route_updated", route_id=route_id, version=candidate.version)
        return candidate

    def set_enabled(self, route_id: str, enabled: bool) -> Route:
        route = self.get(route_id)
        route.enabled = enabled
        route.updated_at = datetime.now(timezone.utc)
        logger.info("route_enabled" if enabled else "route_disabled", route_id=route_id)
        return route

    def remove(self, route_id: str) -> Route:
        route = self.table.remove(route_id)
        if route is None:
            raise NotFound("route", route_id)
        logger.info("route_removed", route_id=route_id)
        return route

    def get(self, route_id: str) -> Route:
        route = self.table.get(route_id)
        if route is None:
            raise NotFound("route", route_id)
        return route

    def list(self) -> list[Route]:
        return self.table.routes()

    def routes_using_integration(self, integration_id: str) -> list[Route]:
        return [r for r in self.table.routes() if any(s.integration_id == integration_id for s in r.steps)]

    def routes_using_transformer(self, transformer_id: str) -> list[Route]:
        return [
            r for r in self.table.routes()
            if any(transformer_id in (s.request_transformer, s.response_transformer) for s in r.steps)
        ]

    def executions(self, route_id: Optional[str] = None, limit: int = 50) -> list[ExecutionRecord]:
        records = [r for r in reversed(self._log) if route_id is None or r.route_id == route_id]
        return records[:limit]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        path: str,
        method: str,
        payload: Any = None,
        *,
        query: Optional[dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Resolve and run the route bound to ``method path``.

        With ``tenant_id`` set, routes owned by other tenants are treated as unbound.
        """
        start = self._clock()
        match = self.table.resolve(path, method)
        if match is not None and tenant_id is not None and match.route.tenant_id != tenant_id:
            match = None
        if match is None or not match.route.enabled:
            reason = "No route bound" if match is None else "Route is disabled"
            logger.info("route_not_found", path=path, method=method, reason=reason)
            return ExecutionResult(
                success=False,
                status=404,
                errors=[{"step": None, "code": "NOT_FOUND", "message": f"{reason} for {method.upper()} {path}"}],
                metadata={"durationMs": round((self._clock() - start) * 1000, 1), "integrationCallCount": 0},
            )

        route = match.route
        result = await self._run(route, payload, match.params, query or {})
        record = ExecutionRecord(
            route_id=route.id,
            route_version=route.version,
            path=path,
            method=method.upper(),
            success=result.success,
            status=result.status,
            duration_ms=result.metadata["durationMs"],
            steps=result.metadata["integrationCalls"],
            tenant_id=route.tenant_id,
        )
        self._log.append(record)
        result.record = record
        logger.info(
            "route_executed",
            route_id=route.id,
            status=result.status,
            duration_ms=result.metadata["durationMs"],
            calls=result.metadata["integrationCallCount"],
        )
        return result

    async def test(
        self,
        route: Route | dict,
        sample: Any = None,
        *,
        params: Optional[dict[str, str]] = None,
        query: Optional[dict[str, Any]] = None,
    ) -> ExecutionResult:
        """Dry run: the same pipeline on sample data, never logged as traffic."""
        route = self._coerce(route)
        self.validate(route, check_ambiguity=False)
        result = await self._run(route, sample, params or {}, query or {})
        result.metadata["test"] = True
        logger.info("route_tested", route_id=route.id, status=result.status)
        return result

    async def _run(self, route: Route, payload: Any, params: dict, query: dict) -> ExecutionResult:
        start = self._clock()
        payload = {} if payload is None else payload
        context: dict[str, Any] = {
            "request": payload,
            "params": params,
            "query": query,
            "previous": None,
            "steps": [],
        }
        strategy = route.aggregation_strategy

        if route.conditions:
            check = evaluate_conditions(payload if isinstance(payload, dict) else {}, route.conditions)
            if not check.all_passed:
                return self._result(route, start, [], None, 204, timed_out=False,
                                    skipped=[r.message for r in check.failed])

        timeout = route.timeout_seconds or self.config.overall_timeout_seconds
        if strategy == AggregationStrategy.RACE:
            results, ordered, timed_out = await self._run_race(route, payload, context, timeout)
        elif strategy == AggregationStrategy.FIRST_SUCCESS or route.chain:
            results, timed_out = await self._run_sequential(
                route, payload, context, timeout, stop_on_success=strategy == AggregationStrategy.FIRST_SUCCESS
            )
            ordered = results
        else:
            results, timed_out = await self._run_concurrent(route, payload, context, timeout)
            ordered = results

        data, status = aggregate(strategy, ordered)
        if timed_out and status != 200:
            status = 504
        return self._result(route, start, results, data, status, timed_out=timed_out)

    def _result(
        self,
        route: Route,
        start: float,
        results: list[StepResult],
        data: Any,
        status: int,
        *,
        timed_out: bool,
        skipped: Optional[list[str]] = None,
    ) -> ExecutionResult:
        errors = [r.error_entry() for r in results if not r.success]
        if timed_out:
            timeout = route.timeout_seconds or self.config.overall_timeout_seconds
            errors.append({"step": None, "code": "UPSTREAM_TIMEOUT", "message": f"Route timed out after {timeout}s"})
        metadata: dict[str, Any] = {
            "durationMs": round((self._clock() - start) * 1000, 1),
            "integrationCallCount": sum(1 for r in results if r.called),
            "aggregationStrategy": route.aggregation_strategy.value,
            "integrationCalls": [
                {
                    "step": r.index,
                    "integrationId": r.integration_id,
                    "success": r.success,
                    "statusCode": r.status_code,
                    "durationMs": round(r.duration_ms, 1),
                }
                for r in results
            ],
            "routeId": route.id,
            "routeVersion": route.version,
        }
        if skipped is not None:
            metadata["conditionsNotMet"] = skipped
        return ExecutionResult(
            success=status in (200, 204, 207),
            status=status,
            data=data,
            errors=errors,
            metadata=metadata,
            route_id=route.id,
            steps=results,
        )

    # --- Strategies ---

    async def _run_sequential(
        self, route: Route, payload: Any, context: dict, timeout: float, *, stop_on_success: bool
    ) -> tuple[list[StepResult], bool]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        results: list[StepResult] = []
        for index, step in enumerate(route.steps):
            remaining = deadline - loop.time()
            if remaining <= 0:
                return results, True
            try:
                result = await asyncio.wait_for(self._call_step(index, step, payload, context), remaining)
            except asyncio.TimeoutError:
                results.append(self._cancelled(index, step, "Cancelled: route deadline exceeded"))
                return results, True
            results.append(result)
            if result.success:
                context["previous"] = result.data
                context["steps"].append(result.data)
                if stop_on_success:
                    break
        return results, False

    async def _run_concurrent(
        self, route: Route, payload: Any, context: dict, timeout: float
    ) -> tuple[list[StepResult], bool]:
        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        tasks = {
            asyncio.create_task(self._guarded(semaphore, index, step, payload, context)): (index, step)
            for index, step in enumerate(route.steps)
        }
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for task, (index, step) in tasks.items():
            if task in done:
                results.append(task.result())
            else:
                results.append(self._cancelled(index, step, "Cancelled: route deadline exceeded"))
        results.sort(key=lambda r: r.index)
        return results, bool(pending)

    async def _run_race(
        self, route: Route, payload: Any, context: dict, timeout: float
    ) -> tuple[list[StepResult], list[StepResult], bool]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        tasks = {
            asyncio.create_task(self._guarded(semaphore, index, step, payload, context)): (index, step)
            for index, step in enumerate(route.steps)
        }
        pending = set(tasks)
        completed: list[StepResult] = []
        winner: Optional[StepResult] = None
        while pending and winner is None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=lambda t: tasks[t][0]):
                result = task.result()
                completed.append(result)
                if result.success and winner is None:
                    winner = result

        # Best-effort cancellation: losers are not awaited, only reaped.
        for task in pending:
            task.cancel()
            task.add_done_callback(_reap)

        reason = "Cancelled: lost race" if winner else "Cancelled: route deadline exceeded"
        losers = [self._cancelled(tasks[t][0], tasks[t][1], reason) for t in pending]
        results = sorted(completed + losers, key=lambda r: r.index)
        return results, completed, winner is None and bool(pending)

    # --- Single step ---

    async def _guarded(
        self, semaphore: asyncio.Semaphore, index: int, step: RouteStep, payload: Any, context: dict
    ) -> StepResult:
        async with semaphore:
            return await self._call_step(index, step, payload, context)

    async def _call_step(self, index: int, step: RouteStep, payload: Any, context: dict) -> StepResult:
        started = self._clock()
        result = StepResult(index=index, integration_id=step.integration_id, success=False)
        try:
            body = payload
            if step.request_transformer:
                body = self.transformers.apply(step.request_transformer, payload, context)
            connector = self.connectors.get(step.integration_id)
            request = ConnectorRequest(
                method=step.method,
                path=self._render_path(step.path, context, body),
                body=body if body != {} else None,
                timeout=step.timeout_seconds or self.config.step_timeout_seconds,
            )
            result.called = True
            response = await connector.call(request)
            result.status_code = response.status_code
            data = response.data
            if step.response_transformer:
                data = self.transformers.apply(step.response_transformer, data, context)
            result.data = data
            result.success = True
        except ConfigError:
            raise
        except GatewayError as exc:
            if isinstance(exc, _NO_CALL):
                result.called = False
            result.error_code = exc.code
            result.error = exc.message
            result.status_code = getattr(exc, "upstream_status", None)
            logger.info("route_step_failed", integration_id=step.integration_id, step=index, code=exc.code)
        except Exception as exc:
            result.error_code = "INTERNAL_ERROR"
            result.error = str(exc) or type(exc).__name__
            logger.exception("route_step_crashed", integration_id=step.integration_id, step=index)
        finally:
            result.duration_ms = (self._clock() - started) * 1000
        return result

    @staticmethod
    def _render_path(template: str, context: dict, body: Any) -> str:
        def substitute(match: re.Match) -> str:
            name = match.group(1)
            value = context["params"].get(name)
            if value is None:
                value = get_path(body, name) if isinstance(body, dict) else None
            if value is None:
                value = get_path(context["request"], name) if isinstance(context["request"], dict) else None
            if value is None:
                raise TransformError("path", f"no value for '{{{name}}}' in '{template}'")
            return quote(str(value), safe="")

        return _PLACEHOLDER.sub(substitute, template)

    @staticmethod
    def _cancelled(index: int, step: RouteStep, message: str) -> StepResult:
        return StepResult(
            index=index,
            integration_id=step.integration_id,
            success=False,
            error_code="CANCELLED",
            error=message,
            called=True,
        )
