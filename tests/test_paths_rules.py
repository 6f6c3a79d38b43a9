"""Test dot-path access and the rules engine (conditions + webhook filters)."""
import pytest

from core.paths import PathSyntaxError, get_path, parse_path, set_path
from patterns.rules_engine import OPERATORS, check_condition, evaluate_conditions, match_webhook_filters


def test_parse_path_segments():
    assert parse_path("$.items[0].id") == ["items", 0, "id"]
    assert parse_path("a.b") == ["a", "b"]
    assert parse_path("$.results[*].name") == ["results", "*", "name"]
    assert parse_path("$") == []


def test_parse_path_rejects_garbage():
    with pytest.raises(PathSyntaxError):
        parse_path("a[x]")


def test_get_path_missing_returns_default():
    data = {"a": {"b": [1, 2]}}
    assert get_path(data, "a.b[1]") == 2
    assert get_path(data, "a.b[5]") is None
    assert get_path(data, "a.c", default="x") == "x"
    assert get_path(data, "a.b.c") is None


def test_get_path_wildcard_fans_out():
    data = {"results": [{"name": "a"}, {"other": 1}, {"name": "c"}]}
    assert get_path(data, "$.results[*].name") == ["a", "c"]


def test_set_path_creates_intermediate_dicts():
    data = {}
    set_path(data, "customer.address.city", "Lisbon")
    assert data == {"customer": {"address": {"city": "Lisbon"}}}


def test_set_path_rejects_root_and_index_targets():
    with pytest.raises(PathSyntaxError):
        set_path({}, "$", 1)
    with pytest.raises(PathSyntaxError):
        set_path({"a": [1]}, "a[0]", 2)


def test_condition_operators():
    payload = {"priority": 3, "tags": ["urgent"], "status": "open", "region": "EU"}
    assert check_condition(payload, {"field": "priority", "operator": "gt", "value": 2}).passed
    assert check_condition(payload, {"field": "priority", "operator": "lt", "value": 2}).passed is False
    assert check_condition(payload, {"field": "tags", "operator": "contains", "value": "urgent"}).passed
    assert check_condition(payload, {"field": "status", "operator": "ne", "value": "closed"}).passed
    assert check_condition(payload, {"field": "region", "operator": "in", "value": ["EU", "US"]}).passed
    assert check_condition(payload, {"field": "missing", "operator": "exists"}).passed is False


def test_evaluate_conditions_reports_failures():
    result = evaluate_conditions({"a": 1}, [
        {"field": "a", "operator": "eq", "value": 1},
        {"field": "b", "operator": "exists"},
    ])
    assert not result.all_passed
    assert [r.rule_name for r in result.failed] == ["condition:b"]


def test_webhook_filter_requires_subscription():
    result = match_webhook_filters("case.closed", {}, ["case.created"], {})
    assert not result.all_passed


def test_webhook_filter_empty_allow_list_matches_everything():
    result = match_webhook_filters(
        "case.created", {"jurisdiction": "J2"}, ["case.created"], {"jurisdiction": []}
    )
    assert result.all_passed


def test_webhook_filter_attribute_mismatch():
    result = match_webhook_filters(
        "case.created",
        {"jurisdiction": "J2", "priority": "high"},
        ["case.created"],
        {"jurisdiction": ["J1"], "priority": ["high"]},
    )
    assert not result.all_passed
    assert result.failed[0].rule_name == "filter:jurisdiction"


def test_operator_table_is_closed():
    assert OPERATORS == ("eq", "ne", "gt", "lt", "contains", "exists", "in")
    assert not check_condition({"n": 5}, {"field": "n", "operator": "gte", "value": 5}).passed
