"""
Path matching for route resolution.

Patterns are ``/`` separated segments: literals, ``{param}`` captures,
and an optional trailing ``*`` catch-all. The most specific match wins,
compared segment by segment (literal > param > catch-all), and an exact
method beats ``ANY``. Two routes for the same method with the same shape
would tie on every path they both match, so they are rejected when the
second one is registered.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import re

from core.errors import ConfigError
from core.routing.models import Route

_PARAM = re.compile(r"^\{([A-Za-z_][A-Za-z0-9_]*)\}$")

LITERAL, PARAM, CATCH_ALL = 3, 2, 1


def _split(path: str) -> list[str]:
    return [s for s in path.strip().split("/") if s]


@dataclass(frozen=True)
class PathPattern:
    raw: str
    segments: tuple[str, ...]
    kinds: tuple[int, ...]

    @classmethod
    def compile(cls, pattern: str) -> "PathPattern":
        if not pattern or not pattern.startswith("/"):
            raise ConfigError(f"Route path must start with '/': '{pattern}'")
        parts = _split(pattern)
        kinds = []
        names = set()
        for i, part in enumerate(parts):
            if part == "*":
                if i != len(parts) - 1:
                    raise ConfigError(f"'*' is only allowed as the last segment: '{pattern}'")
                kinds.append(CATCH_ALL)
                continue
            m = _PARAM.match(part)
            if m:
                if m.group(1) in names:
                    raise ConfigError(f"Duplicate parameter '{m.group(1)}' in '{pattern}'")
                names.add(m.group(1))
                kinds.append(PARAM)
            elif "{" in part or "}" in part or "*" in part:
                raise ConfigError(f"Invalid path segment '{part}' in '{pattern}'")
            else:
                kinds.append(LITERAL)
        return cls(raw=pattern, segments=tuple(parts), kinds=tuple(kinds))

    @property
    def shape(self) -> tuple[str, ...]:
        return tuple(
            seg if kind == LITERAL else ("{}" if kind == PARAM else "*")
            for seg, kind in zip(self.segments, self.kinds)
        )

    @property
    def rank(self) -> tuple[int, ...]:
        # an exact end outranks a catch-all that matches the empty remainder
        if self.kinds and self.kinds[-1] == CATCH_ALL:
            return self.kinds
        return self.kinds + (LITERAL,)

    def match(self, path: str) -> Optional[dict[str, str]]:
        parts = _split(path)
        params: dict[str, str] = {}
        for i, (seg, kind) in enumerate(zip(self.segments, self.kinds)):
            if kind == CATCH_ALL:
                params["*"] = "/".join(parts[i:])
                return params
            if i >= len(parts):
                return None
            if kind == LITERAL and parts[i] != seg:
                return None
            if kind == PARAM:
                params[seg[1:-1]] = parts[i]
        if len(parts) != len(self.segments):
            return None
        return params


@dataclass
class RouteMatch:
    route: Route
    params: dict[str, str]


class RouteTable:
    """Registered routes indexed for resolution."""

    def __init__(self):
        self._routes: dict[str, tuple[Route, PathPattern]] = {}

    def check(self, route: Route) -> PathPattern:
        """Compile the route's pattern and reject ambiguity with any other route."""
        pattern = PathPattern.compile(route.path)
        for other_id, (other, other_pattern) in self._routes.items():
            if other_id == route.id:
                continue
            if other.method == route.method and other_pattern.shape == pattern.shape:
                raise ConfigError(
                    f"Route {route.method} {route.path} is ambiguous with {other.method} {other.path}",
                    details={"conflicts_with": other_id},
                )
        return pattern

    def add(self, route: Route) -> None:
        self._routes[route.id] = (route, self.check(route))

    def remove(self, route_id: str) -> Optional[Route]:
        entry = self._routes.pop(route_id, None)
        return entry[0] if entry else None

    def get(self, route_id: str) -> Optional[Route]:
        entry = self._routes.get(route_id)
        return entry[0] if entry else None

    def routes(self) -> list[Route]:
        return [route for route, _ in self._routes.values()]

    def resolve(self, path: str, method: str) -> Optional[RouteMatch]:
        method = method.upper()
        best: Optional[tuple[tuple, RouteMatch]] = None
        for route, pattern in self._routes.values():
            if route.method not in (method, "ANY"):
                continue
            params = pattern.match(path)
            if params is None:
                continue
            score = (pattern.rank, route.method != "ANY")
            if best is None or score > best[0]:
                best = (score, RouteMatch(route, params))
        return best[1] if best else None

    def __len__(self) -> int:
        return len(self._routes)
