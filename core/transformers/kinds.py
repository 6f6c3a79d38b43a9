"""
Transform kinds: the closed set of payload transforms the gateway knows.

Each kind is a pair of pure functions:
- validate(config) -> None, raising ValueError on bad config (registration time)
- apply(payload, config, context) -> payload (request time)

Configuration is data only. Nothing here evaluates stored strings as code:
paths are parsed by `paths.parse_path`, templates render in Jinja2's
sandbox, conditions go through the rules engine.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable
import copy
import json

from jinja2 import StrictUndefined, TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment

from core.paths import PathSyntaxError, get_path, parse_path, set_path
from patterns.rules_engine import OPERATORS, evaluate_conditions


class TransformerKind(str, Enum):
    IDENTITY = "identity"
    FIELD_MAP = "field_map"
    JSONPATH_EXTRACT = "jsonpath_extract"
    TEMPLATE_RENDER = "template_render"
    LOOKUP = "lookup"
    FORMAT = "format"
    FILTER = "filter"
    PICK = "pick"
    OMIT = "omit"
    CUSTOM = "custom"  # pipeline of other registered transformers


# ---------------------------------------------------------------------------
# Value formats
# ---------------------------------------------------------------------------

def _to_number(v: Any) -> int | float:
    if isinstance(v, bool):
        return int(v)
    if isinstance(v, (int, float)):
        return v
    text = str(v).strip()
    return int(text) if text.lstrip("-").isdigit() else float(text)


def _to_bool(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(v)


FORMATS: dict[str, Callable[[Any], Any]] = {
    "uppercase": lambda v: str(v).upper() if v is not None else "",
    "lowercase": lambda v: str(v).lower() if v is not None else "",
    "trim": lambda v: str(v).strip() if v is not None else "",
    "string": lambda v: str(v) if v is not None else "",
    "number": _to_number,
    "boolean": _to_bool,
    "date": lambda v: datetime.fromisoformat(str(v).replace("Z", "+00:00")).isoformat(),
    "date_short": lambda v: str(v)[:10] if v else "",
    "json": lambda v: json.dumps(v, sort_keys=True, default=str),
    "list_from_csv": lambda v: [s.strip() for s in str(v).split(",")] if v else [],
}


def _canonical(v: Any) -> str:
    return json.dumps(v, sort_keys=True, default=str)


def _flatten(v: Any) -> Any:
    if not isinstance(v, list):
        return v
    return [x for item in v for x in (item if isinstance(item, list) else [item])]


def _sort(v: Any) -> Any:
    if not isinstance(v, list):
        return v
    try:
        return sorted(v)
    except TypeError:
        return sorted(v, key=_canonical)


def _unique(v: Any) -> Any:
    if not isinstance(v, list):
        return v
    seen: set[str] = set()
    out = []
    for item in v:
        key = _canonical(item)
        if key not in seen:
            seen.add(key)
            out.append(item)
    return out


POST_OPS: dict[str, Callable[[Any], Any]] = {
    "first": lambda v: v[0] if isinstance(v, list) and v else None,
    "last": lambda v: v[-1] if isinstance(v, list) and v else None,
    "length": lambda v: len(v) if isinstance(v, (list, dict, str)) else 0,
    "flatten": _flatten,
    "sort": _sort,
    "unique": _unique,
}


def _resolve(source: str, payload: Any, context: dict[str, Any]) -> Any:
    """``@previous.id`` reads from the execution context, anything else from the payload."""
    if source.startswith("@"):
        return get_path(context, source[1:])
    return get_path(payload, source)


def _check_path(path: Any, what: str) -> None:
    if not isinstance(path, str):
        raise ValueError(f"{what} must be a string path")
    try:
        parse_path(path.lstrip("@"))
    except PathSyntaxError as exc:
        raise ValueError(str(exc)) from exc


# ---------------------------------------------------------------------------
# identity
# ---------------------------------------------------------------------------

def _validate_identity(config: dict) -> None:
    return None


def _apply_identity(payload: Any, config: dict, context: dict) -> Any:
    return copy.deepcopy(payload)


# ---------------------------------------------------------------------------
# field_map
# ---------------------------------------------------------------------------

def _validate_field_map(config: dict) -> None:
    mappings = config.get("mappings")
    if not isinstance(mappings, list) or not mappings:
        raise ValueError("field_map requires a non-empty 'mappings' list")
    for m in mappings:
        if not isinstance(m, dict) or "source" not in m or "target" not in m:
            raise ValueError("each mapping needs 'source' and 'target'")
        _check_path(m["source"], "source")
        _check_path(m["target"], "target")
        if not parse_path(m["target"]):
            raise ValueError("mapping target cannot be the root path")
        if m.get("format") and m["format"] not in FORMATS:
            raise ValueError(f"unknown format '{m['format']}'")


def _apply_field_map(payload: Any, config: dict, context: dict) -> Any:
    result: dict[str, Any] = copy.deepcopy(payload) if config.get("keep_unmapped") and isinstance(payload, dict) else {}
    for m in config["mappings"]:
        value = _resolve(m["source"], payload, context)
        if value is None:
            if m.get("required"):
                raise ValueError(f"required field '{m['source']}' is missing")
            value = m.get("default")
        elif m.get("format"):
            value = FORMATS[m["format"]](value)
        if value is not None or "default" in m:
            set_path(result, m["target"], value)
    return result


# ---------------------------------------------------------------------------
# jsonpath_extract
# ---------------------------------------------------------------------------

def _validate_jsonpath(config: dict) -> None:
    _check_path(config.get("path"), "path")
    op = config.get("op")
    if op and op not in POST_OPS:
        raise ValueError(f"unknown op '{op}'")


def _apply_jsonpath(payload: Any, config: dict, context: dict) -> Any:
    value = _resolve(config["path"], payload, context)
    if config.get("op"):
        value = POST_OPS[config["op"]](value)
    if value is None:
        if config.get("required"):
            raise ValueError(f"path '{config['path']}' matched nothing")
        value = config.get("default")
    value = copy.deepcopy(value)
    if config.get("target"):
        return {config["target"]: value}
    return value


# ---------------------------------------------------------------------------
# template_render
# ---------------------------------------------------------------------------

_env = SandboxedEnvironment(autoescape=False)
_strict_env = SandboxedEnvironment(autoescape=False, undefined=StrictUndefined)
_env.filters["tojson"] = _strict_env.filters["tojson"] = lambda v: json.dumps(v, default=str)


def _validate_template(config: dict) -> None:
    template = config.get("template")
    if not isinstance(template, str) or not template:
        raise ValueError("template_render requires a 'template' string")
    if config.get("output", "json") not in ("json", "text"):
        raise ValueError("output must be 'json' or 'text'")
    try:
        _env.parse(template)
    except TemplateSyntaxError as exc:
        raise ValueError(f"template syntax error: {exc.message}") from exc


def _apply_template(payload: Any, config: dict, context: dict) -> Any:
    env = _strict_env if config.get("strict") else _env
    rendered = env.from_string(config["template"]).render(
        payload=payload, **{k: v for k, v in context.items() if k != "payload"}
    )
    if config.get("output", "json") == "text":
        return rendered
    try:
        return json.loads(rendered)
    except json.JSONDecodeError as exc:
        raise ValueError(f"template did not render valid JSON: {exc.msg}") from exc


# ---------------------------------------------------------------------------
# lookup / format
# ---------------------------------------------------------------------------

def _validate_lookup(config: dict) -> None:
    _check_path(config.get("field"), "field")
    if not isinstance(config.get("table"), dict):
        raise ValueError("lookup requires a 'table' object")


def _apply_lookup(payload: Any, config: dict, context: dict) -> Any:
    result = copy.deepcopy(payload) if isinstance(payload, dict) else {}
    value = get_path(payload, config["field"])
    mapped = config["table"].get(str(value), config.get("default", value))
    set_path(result, config.get("target") or config["field"], mapped)
    return result


def _validate_format(config: dict) -> None:
    if config.get("format") not in FORMATS:
        raise ValueError(f"unknown format '{config.get('format')}'")
    if config.get("field") is not None:
        _check_path(config["field"], "field")


def _apply_format(payload: Any, config: dict, context: dict) -> Any:
    fmt = FORMATS[config["format"]]
    if config.get("field") is None:
        return fmt(payload)
    result = copy.deepcopy(payload)
    if not isinstance(result, dict):
        raise ValueError("format with 'field' needs an object payload")
    value = get_path(result, config["field"])
    if value is not None:
        set_path(result, config["field"], fmt(value))
    return result


# ---------------------------------------------------------------------------
# filter / pick / omit
# ---------------------------------------------------------------------------

def _validate_filter(config: dict) -> None:
    conditions = config.get("conditions")
    if not isinstance(conditions, list) or not conditions:
        raise ValueError("filter requires a non-empty 'conditions' list")
    for c in conditions:
        if c.get("operator", "eq") not in OPERATORS:
            raise ValueError(f"unknown operator '{c.get('operator')}'")
    if config.get("path"):
        _check_path(config["path"], "path")


def _apply_filter(payload: Any, config: dict, context: dict) -> Any:
    path = config.get("path")
    items = get_path(payload, path) if path else payload
    if not isinstance(items, list):
        raise ValueError("filter target is not a list")
    kept = [
        copy.deepcopy(item) for item in items
        if isinstance(item, dict) and evaluate_conditions(item, config["conditions"]).all_passed
    ]
    if not path or not parse_path(path):
        return kept
    result = copy.deepcopy(payload)
    set_path(result, path, kept)
    return result


def _validate_fields(config: dict) -> None:
    fields = config.get("fields")
    if not isinstance(fields, list) or not all(isinstance(f, str) for f in fields):
        raise ValueError("'fields' must be a list of strings")


def _apply_pick(payload: Any, config: dict, context: dict) -> Any:
    if not isinstance(payload, dict):
        raise ValueError("pick needs an object payload")
    return {k: copy.deepcopy(payload[k]) for k in config["fields"] if k in payload}


def _apply_omit(payload: Any, config: dict, context: dict) -> Any:
    if not isinstance(payload, dict):
        raise ValueError("omit needs an object payload")
    return {k: copy.deepcopy(v) for k, v in payload.items() if k not in config["fields"]}


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KindSpec:
    validate: Callable[[dict], None]
    apply: Callable[[Any, dict, dict], Any]


KINDS: dict[TransformerKind, KindSpec] = {
    TransformerKind.IDENTITY: KindSpec(_validate_identity, _apply_identity),
    TransformerKind.FIELD_MAP: KindSpec(_validate_field_map, _apply_field_map),
    TransformerKind.JSONPATH_EXTRACT: KindSpec(_validate_jsonpath, _apply_jsonpath),
    TransformerKind.TEMPLATE_RENDER: KindSpec(_validate_template, _apply_template),
    TransformerKind.LOOKUP: KindSpec(_validate_lookup, _apply_lookup),
    TransformerKind.FORMAT: KindSpec(_validate_format, _apply_format),
    TransformerKind.FILTER: KindSpec(_validate_filter, _apply_filter),
    TransformerKind.PICK: KindSpec(_validate_fields, _apply_pick),
    TransformerKind.OMIT: KindSpec(_validate_fields, _apply_omit),
}
