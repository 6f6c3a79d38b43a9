"""
Gateway Routing: data-driven bindings from inbound paths to integration calls.

- RouteBindingEngine: execute / test with conditions, chaining, deadlines
- RouteTable: most-specific path matching, ambiguity rejected at registration
- Aggregation: merge / all / first_success / race as pure functions
"""
from core.routing.aggregation import AGGREGATORS, aggregate, deep_merge
from core.routing.engine import RouteBindingEngine
from core.routing.matcher import PathPattern, RouteMatch, RouteTable
from core.routing.models import (
    AggregationStrategy,
    ExecutionRecord,
    ExecutionResult,
    Route,
    RouteStep,
    StepResult,
)

__all__ = [
    "AGGREGATORS",
    "AggregationStrategy",
    "ExecutionRecord",
    "ExecutionResult",
    "PathPattern",
    "Route",
    "RouteBindingEngine",
    "RouteMatch",
    "RouteStep",
    "RouteTable",
    "StepResult",
    "aggregate",
    "deep_merge",
]
