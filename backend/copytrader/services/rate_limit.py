"""Per-user sliding-window rate limiting for trade actions."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from collections.abc import Callable

from copytrader.errors import RateLimitError


class SlidingWindowRateLimiter:
    """Allow at most *limit* actions per key in any *window_seconds* span."""

    def __init__(
        self,
        limit: int = 60,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def try_consume(self, key: str) -> int | None:
        """Record one action for *key*.

        Returns None when allowed, otherwise the whole seconds until the
        oldest action in the window expires (at least 1).
        """
        with self._lock:
            now = self._clock()
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self._window:
                hits.popleft()
            if len(hits) >= self._limit:
                return max(1, math.ceil(hits[0] + self._window - now))
            hits.append(now)
            return None

    def check(self, key: str) -> None:
        """Consume one action for *key* or raise RateLimitError."""
        retry_after = self.try_consume(key)
        if retry_after is not None:
            raise RateLimitError(
                "Too many trade actions. Please slow down.", retry_after=retry_after
            )
