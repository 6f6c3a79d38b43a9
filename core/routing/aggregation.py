"""Aggregation strategies: independent pure functions over step results.

Each function receives the step results in the order that matters for it
(declaration order, or completion order for ``race``) and returns the
aggregated payload plus an HTTP-like status.
"""
from __future__ import annotations
from typing import Any, Callable
import copy

from core.routing.models import AggregationStrategy, StepResult

OK, PARTIAL, ALL_FAILED = 200, 207, 502


def deep_merge(base: Any, update: Any) -> Any:
    """Recursively merge dicts; on any other collision ``update`` wins."""
    if isinstance(base, dict) and isinstance(update, dict):
        merged = dict(base)
        for key, value in update.items():
            merged[key] = deep_merge(merged[key], value) if key in merged else copy.deepcopy(value)
        return merged
    return copy.deepcopy(update)


def merge(results: list[StepResult]) -> tuple[Any, int]:
    successes = [r for r in results if r.success]
    data: Any = {}
    for result in successes:
        data = deep_merge(data, result.data if result.data is not None else {})
    return data if successes else None, _partial_status(results)


def collect_all(results: list[StepResult]) -> tuple[Any, int]:
    return [r.to_dict() for r in results], _partial_status(results)


def first_success(results: list[StepResult]) -> tuple[Any, int]:
    for result in results:
        if result.success:
            return result.data, OK
    return None, ALL_FAILED


def race(results: list[StepResult]) -> tuple[Any, int]:
    # Same selection as first_success; the engine passes completion order.
    return first_success(results)


def _partial_status(results: list[StepResult]) -> int:
    ok = sum(1 for r in results if r.success)
    if results and ok == len(results):
        return OK
    return PARTIAL if ok else ALL_FAILED


AGGREGATORS: dict[AggregationStrategy, Callable[[list[StepResult]], tuple[Any, int]]] = {
    AggregationStrategy.MERGE: merge,
    AggregationStrategy.ALL: collect_all,
    AggregationStrategy.FIRST_SUCCESS: first_success,
    AggregationStrategy.RACE: race,
}


def aggregate(strategy: AggregationStrategy, results: list[StepResult]) -> tuple[Any, int]:
    return AGGREGATORS[strategy](results)
