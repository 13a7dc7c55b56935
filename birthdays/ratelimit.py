"""In-memory fixed-window rate limiting for the greeting endpoints."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict


@dataclass
class _Window:
    started_at: float
    count: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0

    def headers(self) -> Dict[str, str]:
        headers = {"X-RateLimit-Remaining": str(max(0, self.remaining))}
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """Allow at most ``limit`` hits per client within each ``window`` seconds."""

    def __init__(
        self,
        limit: int,
        window: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("Rate limit must allow at least one request")
        if window <= 0:
            raise ValueError("Rate limit window must be positive")
        self._limit = limit
        self._window = window
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            self._purge(now)
            window = self._windows.get(key)
            if window is None or now - window.started_at >= self._window:
                window = _Window(started_at=now, count=0)
                self._windows[key] = window

            if window.count >= self._limit:
                retry_after = math.ceil(window.started_at + self._window - now)
                return RateLimitDecision(allowed=False, remaining=0, retry_after=max(1, retry_after))

            window.count += 1
            return RateLimitDecision(allowed=True, remaining=self._limit - window.count)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _purge(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now - window.started_at >= self._window]
        for key in expired:
            self._windows.pop(key, None)


__all__ = ["RateLimitDecision", "RateLimiter"]
