"""Dot-path access into JSON-like payloads.

Paths look like ``case.location.city``, ``items[0].id`` or, for
extraction, ``$.results[*].name``. Only dict keys and list indexes are
followed; attribute access and calls are never performed.
"""
from __future__ import annotations

import re
from typing import Any

_SEGMENT = re.compile(r"([^.\[\]]+)|\[(\d+|\*)\]")

WILDCARD = "*"


class PathSyntaxError(ValueError):
    pass


def parse_path(path: str) -> list[str | int]:
    """Split a path into keys, integer indexes and ``*`` wildcards."""
    text = path.strip()
    if text.startswith("$"):
        text = text[1:]
    if text.startswith("."):
        text = text[1:]
    if not text:
        return []

    parts: list[str | int] = []
    pos = 0
    while pos < len(text):
        if text[pos] == ".":
            pos += 1
            continue
        match = _SEGMENT.match(text, pos)
        if not match:
            raise PathSyntaxError(f"Invalid path segment at {pos} in '{path}'")
        key, index = match.groups()
        if key is not None:
            parts.append(key)
        elif index == WILDCARD:
            parts.append(WILDCARD)
        else:
            parts.append(int(index))
        pos = match.end()
    return parts


def get_path(data: Any, path: str | list[str | int], default: Any = None) -> Any:
    """Read a value; missing keys and out-of-range indexes yield ``default``.

    A ``[*]`` segment fans out over a list and returns a list of the
    remaining path applied to each element (missing elements are dropped).
    """
    parts = parse_path(path) if isinstance(path, str) else path
    current = data
    for i, part in enumerate(parts):
        if part == WILDCARD:
            if not isinstance(current, list):
                return default
            rest = parts[i + 1:]
            values = [get_path(item, rest, _MISSING) for item in current]
            return [v for v in values if v is not _MISSING]
        if isinstance(part, int):
            if not isinstance(current, list) or part >= len(current):
                return default
            current = current[part]
        else:
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
    return current


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Write a value, creating intermediate dicts. Indexes are not created."""
    parts = parse_path(path)
    if not parts:
        raise PathSyntaxError("Cannot assign to the root path")
    current: Any = data
    for part in parts[:-1]:
        if isinstance(part, int):
            if not isinstance(current, list) or part >= len(current):
                raise PathSyntaxError(f"Index {part} out of range in '{path}'")
            current = current[part]
            continue
        if part == WILDCARD:
            raise PathSyntaxError(f"Wildcard not allowed in target path '{path}'")
        if not isinstance(current, dict):
            raise PathSyntaxError(f"Cannot descend into non-object at '{part}' in '{path}'")
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    last = parts[-1]
    if isinstance(last, int) or last == WILDCARD:
        raise PathSyntaxError(f"Target path must end in a key: '{path}'")
    current[last] = value


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


_MISSING = _Missing()
