"""Fixed-window rate limiting for per-minute/hour/day call budgets."""
from __future__ import annotations
from typing import Callable, Optional
import time

from core.errors import RateLimitExceeded
from patterns.domain_config import RateLimitConfig

WINDOWS: dict[str, int] = {"minute": 60, "hour": 3600, "day": 86400}


class FixedWindowRateLimiter:
    """Counters aligned to wall-clock window boundaries.

    A call is admitted only if every configured window has budget left;
    then all windows are charged together, so a rejection never leaves a
    partial charge behind.
    """

    def __init__(
        self,
        name: str,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._counters: dict[str, tuple[float, int]] = {}
        self.rejected = 0

    def _limits(self) -> dict[str, int]:
        limits = {
            "minute": self.config.per_minute,
            "hour": self.config.per_hour,
            "day": self.config.per_day,
        }
        return {w: n for w, n in limits.items() if n is not None}

    def _window(self, window: str, now: float) -> tuple[float, int]:
        size = WINDOWS[window]
        start = now - (now % size)
        current_start, count = self._counters.get(window, (start, 0))
        if current_start != start:
            return start, 0
        return start, count

    def acquire(self) -> None:
        """Charge one call or raise RateLimitExceeded."""
        now = self._clock()
        windows = {w: self._window(w, now) for w in self._limits()}
        for window, limit in self._limits().items():
            start, count = windows[window]
            if count >= limit:
                self.rejected += 1
                raise RateLimitExceeded(self.name, window, start + WINDOWS[window] - now)
        for window, (start, count) in windows.items():
            self._counters[window] = (start, count + 1)

    def remaining(self) -> dict[str, Optional[int]]:
        now = self._clock()
        out: dict[str, Optional[int]] = {w: None for w in WINDOWS}
        for window, limit in self._limits().items():
            _, count = self._window(window, now)
            out[window] = max(0, limit - count)
        return out

    def reset(self) -> None:
        self._counters.clear()

    def snapshot(self) -> dict:
        return {
            "limits": {
                "per_minute": self.config.per_minute,
                "per_hour": self.config.per_hour,
                "per_day": self.config.per_day,
            },
            "remaining": self.remaining(),
            "rejected": self.rejected,
        }
