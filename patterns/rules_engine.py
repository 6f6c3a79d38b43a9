"""Pure-function rules engine pattern.

Rules are stateless functions: (entity, context) -> RuleResult.
No database, no side effects, no network calls. This makes them:
- Trivially testable (pure input/output)
- Composable (chain multiple rules)
- Auditable (deterministic, explainable)

The gateway uses two rule families: route conditions evaluated against
an inbound payload, and webhook subscription filters evaluated against a
domain event.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable

from core.paths import get_path


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class RuleResult:
    """Outcome of a single rule evaluation."""

    passed: bool
    rule_name: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleSetResult:
    """Aggregate outcome of multiple rules."""

    all_passed: bool
    results: list[RuleResult]
    failed: list[RuleResult] = field(default_factory=list)

    def __post_init__(self):
        self.failed = [r for r in self.results if not r.passed]
        self.all_passed = len(self.failed) == 0


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

OPERATORS = ("eq", "ne", "gt", "lt", "contains", "exists", "in")


def _compare(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "eq":
        return actual == expected
    if operator == "ne":
        return actual != expected
    if operator in ("gt", "lt"):
        try:
            a, e = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return a > e if operator == "gt" else a < e
    if operator == "contains":
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, dict)):
            return expected in actual
        return str(expected) in str(actual)
    if operator == "exists":
        return actual is not None
    if operator == "in":
        return isinstance(expected, (list, tuple, set)) and actual in expected
    return False


def check_condition(payload: dict, condition: dict) -> RuleResult:
    """Evaluate ``{field, operator, value}`` against a payload.

    Unknown operators never pass; they are rejected when a route is
    registered, so reaching one here means the config bypassed validation.
    """
    field_path = condition.get("field", "")
    operator = condition.get("operator", "eq")
    expected = condition.get("value")
    actual = get_path(payload, field_path)
    passed = _compare(operator, actual, expected)

    return RuleResult(
        passed=passed,
        rule_name=f"condition:{field_path}",
        message=(
            f"{field_path} {operator} {expected!r}"
            if passed
            else f"{field_path}={actual!r} does not satisfy {operator} {expected!r}"
        ),
        details={"field": field_path, "operator": operator, "actual": actual},
    )


def evaluate_conditions(payload: dict, conditions: Iterable[dict]) -> RuleSetResult:
    """All conditions must hold."""
    return evaluate_rules(*(check_condition(payload, c) for c in conditions))


# ---------------------------------------------------------------------------
# Webhook filters
# ---------------------------------------------------------------------------

def check_event_subscription(subscribed: Iterable[str], event_type: str) -> RuleResult:
    """A webhook receives an event only if it subscribed to that type."""
    subscribed = list(subscribed)
    passed = event_type in subscribed
    return RuleResult(
        passed=passed,
        rule_name="event_subscription",
        message=f"Subscribed to {event_type}" if passed else f"Not subscribed to {event_type}",
        details={"event_type": event_type},
    )


def check_attribute_filter(name: str, allowed: Iterable[Any], value: Any) -> RuleResult:
    """An empty allow-list matches everything; otherwise the value must be listed."""
    allowed = list(allowed)
    if not allowed:
        return RuleResult(True, f"filter:{name}", f"No {name} filter")

    if isinstance(value, (list, tuple, set)):
        passed = any(v in allowed for v in value)
    else:
        passed = value in allowed
    return RuleResult(
        passed=passed,
        rule_name=f"filter:{name}",
        message=f"{name} matches" if passed else f"{name}={value!r} not in filter",
        details={"allowed": allowed, "value": value},
    )


def match_webhook_filters(
    event_type: str,
    attributes: dict[str, Any],
    events: Iterable[str],
    filters: dict[str, list[Any]],
) -> RuleSetResult:
    """Evaluate a webhook's subscription and attribute filters for one event.

    Example::

        result = match_webhook_filters(
            "case.created",
            {"jurisdiction": "J1", "priority": "high"},
            events=["case.created"],
            filters={"jurisdiction": ["J1"], "priority": []},
        )
        result.all_passed  # True
    """
    rules = [check_event_subscription(events, event_type)]
    for name, allowed in filters.items():
        rules.append(check_attribute_filter(name, allowed, attributes.get(name)))
    return evaluate_rules(*rules)


# ---------------------------------------------------------------------------
# Rule composition
# ---------------------------------------------------------------------------

def evaluate_rules(*rules: RuleResult) -> RuleSetResult:
    """Compose multiple rule results into a single aggregate."""
    return RuleSetResult(
        all_passed=all(r.passed for r in rules),
        results=list(rules),
    )
