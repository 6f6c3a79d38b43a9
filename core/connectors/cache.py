"""
Gateway Response Cache: per-integration LRU with TTL for GET responses

Keys are ``METHOD:path?sorted-params``; the least recently used entry is
evicted once ``max_entries`` is reached, and expired entries are dropped
on read.
"""
from __future__ import annotations
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlencode
import time

from patterns.domain_config import CacheConfig


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0

    def to_dict(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": round(self.hits / total, 4) if total else 0.0,
        }


def cache_key(method: str, path: str, params: Optional[dict[str, Any]] = None) -> str:
    query = urlencode(sorted((params or {}).items()), doseq=True)
    return f"{method.upper()}:{path}?{query}" if query else f"{method.upper()}:{path}"


class ResponseCache:
    """LRU cache of upstream responses. Disabled when the TTL is zero."""

    def __init__(self, config: Optional[CacheConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or CacheConfig()
        self.stats = CacheStats()
        self._clock = clock
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()

    @property
    def enabled(self) -> bool:
        return self.config.ttl_seconds > 0 and self.config.max_entries > 0

    def get(self, key: str) -> Any:
        """Return the cached value or None, counting a hit or a miss."""
        entry = self._entries.get(key)
        if entry is not None:
            value, expires_at = entry
            if self._clock() < expires_at:
                self._entries.move_to_end(key)
                self.stats.hits += 1
                return value
            del self._entries[key]
        self.stats.misses += 1
        return None

    def set(self, key: str, value: Any) -> None:
        if not self.enabled:
            return
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.config.max_entries:
            self._entries.popitem(last=False)
            self.stats.evictions += 1
        self._entries[key] = (value, self._clock() + self.config.ttl_seconds)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def snapshot(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "size": len(self._entries),
            "ttl_seconds": self.config.ttl_seconds,
            "max_entries": self.config.max_entries,
            **self.stats.to_dict(),
        }
