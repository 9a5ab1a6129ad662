"""Sliding window rate limiter -- zero external dependencies."""
from __future__ import annotations

import time
from collections import deque


class SlidingWindowRateLimiter:
    """Allow at most `limit` hits per key inside any `window` seconds.

    Uses collections.deque for O(1) append and efficient cleanup.
    Thread-safe within single asyncio event loop (no locks needed).
    """

    def __init__(self, limit: int, window: float, enabled: bool = True, clock=time.monotonic) -> None:
        self._limit = limit
        self._window = window
        self._enabled = enabled and limit > 0
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    def check(self, key: str) -> tuple[bool, float]:
        """Record a hit for `key` if allowed.

        Returns (allowed, retry_after_seconds). retry_after is 0 when allowed.
        """
        if not self._enabled or not key:
            return True, 0.0

        now = self._clock()
        dq = self._windows.get(key)
        if dq is None:
            dq = self._windows[key] = deque()
        # Purge expired entries
        cutoff = now - self._window
        while dq and dq[0] <= cutoff:
            dq.popleft()
        if len(dq) >= self._limit:
            return False, max(dq[0] + self._window - now, 0.0)
        dq.append(now)
        return True, 0.0

    def reset(self, key: str = "") -> None:
        """Reset counters for a specific key or all."""
        if key:
            self._windows.pop(key, None)
        else:
            self._windows.clear()

    def prune(self) -> None:
        """Drop keys whose window has fully expired."""
        cutoff = self._clock() - self._window
        for key in [k for k, dq in self._windows.items() if not dq or dq[-1] <= cutoff]:
            del self._windows[key]

    def stats(self) -> dict[str, int]:
        return {"tracked_keys": len(self._windows)}
