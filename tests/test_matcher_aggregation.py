"""Test route path matching and the aggregation strategies."""
import pytest

from core.errors import ConfigError
from core.routing import AggregationStrategy, PathPattern, Route, RouteStep, RouteTable, StepResult, aggregate, deep_merge


def route(path, method="GET", **kwargs):
    return Route(path=path, method=method, steps=[RouteStep("crm")], **kwargs)


def ok(index, data):
    return StepResult(index=index, integration_id=f"i{index}", success=True, data=data)


def failed(index):
    return StepResult(index=index, integration_id=f"i{index}", success=False, error_code="UPSTREAM_ERROR", error="HTTP 500")


def test_pattern_captures_params():
    pattern = PathPattern.compile("/customers/{id}/orders/{order_id}")
    assert pattern.match("/customers/42/orders/7") == {"id": "42", "order_id": "7"}
    assert pattern.match("/customers/42/orders") is None
    assert pattern.match("/customers/42/orders/7/items") is None


def test_catch_all_captures_remainder():
    pattern = PathPattern.compile("/files/*")
    assert pattern.match("/files/a/b.txt") == {"*": "a/b.txt"}
    assert pattern.match("/files") == {"*": ""}


@pytest.mark.parametrize("bad", ["users", "/a/*/b", "/a/{id}/{id}", "/a/b{c}"])
def test_invalid_patterns(bad):
    with pytest.raises(ConfigError):
        PathPattern.compile(bad)


def test_most_specific_route_wins():
    table = RouteTable()
    by_id = route("/users/{id}", id="param")
    me = route("/users/me", id="literal")
    rest = route("/users/*", id="catch")
    for r in (rest, by_id, me):
        table.add(r)

    assert table.resolve("/users/me", "GET").route.id == "literal"
    assert table.resolve("/users/9", "get").route.id == "param"
    assert table.resolve("/users/9/roles", "GET").route.id == "catch"
    assert table.resolve("/users/9", "POST") is None


def test_exact_method_beats_any():
    table = RouteTable()
    table.add(route("/ping", "ANY", id="any"))
    table.add(route("/ping", "POST", id="post"))
    assert table.resolve("/ping", "POST").route.id == "post"
    assert table.resolve("/ping", "DELETE").route.id == "any"


def test_ambiguous_routes_rejected():
    table = RouteTable()
    table.add(route("/users/{id}"))
    with pytest.raises(ConfigError):
        table.add(route("/users/{uid}"))
    table.add(route("/users/{uid}", "DELETE"))
    assert len(table) == 2


def test_readding_same_route_is_not_ambiguous():
    table = RouteTable()
    original = route("/users/{id}", id="r1")
    table.add(original)
    table.add(route("/users/{key}", id="r1"))
    assert table.resolve("/users/1", "GET").params == {"key": "1"}


def test_deep_merge():
    merged = deep_merge({"a": {"x": 1, "y": 1}, "b": 1}, {"a": {"y": 2}, "c": [1]})
    assert merged == {"a": {"x": 1, "y": 2}, "b": 1, "c": [1]}


def test_merge_strategy_statuses():
    data, status = aggregate(AggregationStrategy.MERGE, [ok(0, {"a": 1}), ok(1, {"b": 2})])
    assert (data, status) == ({"a": 1, "b": 2}, 200)

    data, status = aggregate(AggregationStrategy.MERGE, [ok(0, {"a": 1}), failed(1)])
    assert (data, status) == ({"a": 1}, 207)

    data, status = aggregate(AggregationStrategy.MERGE, [failed(0), failed(1)])
    assert (data, status) == (None, 502)


def test_all_strategy_keeps_every_step():
    data, status = aggregate(AggregationStrategy.ALL, [ok(0, 1), failed(1)])
    assert status == 207
    assert data[0] == {"step": 0, "integrationId": "i0", "success": True, "data": 1, "error": None}
    assert data[1]["error"]["code"] == "UPSTREAM_ERROR"


def test_first_success_and_race_pick_first_ok():
    results = [failed(0), ok(1, "b"), ok(2, "c")]
    assert aggregate(AggregationStrategy.FIRST_SUCCESS, results) == ("b", 200)
    assert aggregate(AggregationStrategy.RACE, results) == ("b", 200)
    assert aggregate(AggregationStrategy.FIRST_SUCCESS, [failed(0)]) == (None, 502)


def test_route_from_dict_accepts_camel_case():
    parsed = Route.from_dict({
        "path": "/x",
        "method": "post",
        "aggregationStrategy": "merge",
        "steps": [{"integrationId": "crm", "responseTransformer": "extract_data"}],
    })
    assert parsed.method == "POST"
    assert parsed.aggregation_strategy == AggregationStrategy.MERGE
    assert parsed.steps[0].response_transformer == "extract_data"
    with pytest.raises(ConfigError):
        Route.from_dict({"path": "/x", "steps": [], "aggregationStrategy": "fastest"})
