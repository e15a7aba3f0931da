"""In-process fixed-window rate limiting per user and endpoint."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from crm_hygiene.core.config import get_settings

MINUTE = 60.0
HOUR = 60 * MINUTE
DAY = 24 * HOUR


class RateLimitExceeded(RuntimeError):
    def __init__(self, window: str, limit: int, reset_at: float) -> None:
        super().__init__(f"Rate limit exceeded ({window})")
        self.window = window
        self.limit = limit
        self.remaining = 0
        self.reset_at = reset_at


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Counts requests in per-minute, per-hour and per-day windows.

    Counters live in this process only, so limits are per instance.
    """

    def __init__(
        self,
        per_minute: int,
        per_hour: int,
        per_day: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._limits: Tuple[Tuple[str, int, float], ...] = (
            ("per-minute", per_minute, MINUTE),
            ("per-hour", per_hour, HOUR),
            ("per-day", per_day, DAY),
        )
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, endpoint: str, user_id: str) -> None:
        """Count one request; raise RateLimitExceeded if any window is full.

        A rejected request is not counted against any window.
        """
        with self._lock:
            now = self._clock()
            self._evict(now)
            windows = []
            for name, limit, length in self._limits:
                key = f"{endpoint}:{user_id}:{name}"
                window = self._windows.get(key)
                if window is None or window.reset_at <= now:
                    window = _Window(count=0, reset_at=now + length)
                elif window.count >= limit:
                    raise RateLimitExceeded(name, limit, window.reset_at)
                windows.append((key, window))
            for key, window in windows:
                window.count += 1
                self._windows[key] = window

    def _evict(self, now: float) -> None:
        if len(self._windows) < 10000:
            return
        for key in [key for key, window in self._windows.items() if window.reset_at <= now]:
            del self._windows[key]


_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        settings = get_settings()
        _limiter = RateLimiter(settings.rate_limit_per_minute, settings.rate_limit_per_hour, settings.rate_limit_per_day)
    return _limiter
