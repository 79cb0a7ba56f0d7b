"""In-process cache of each follower's follow list.

Entries expire after a TTL and the least recently used entry is evicted once
the cache is full. Writers must call :meth:`FollowCache.invalidate` for every
follower whose entitlements they change, before returning.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from typing import Any


class FollowCache:
    """Thread-safe TTL + LRU cache keyed by follower id."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, tuple[Any, ...]]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, follower_id: str) -> tuple[Any, ...] | None:
        """Return the cached follows, or None on a miss or expired entry."""
        with self._lock:
            hit = self._entries.get(follower_id)
            if hit is None:
                return None
            expires_at, follows = hit
            if self._clock() >= expires_at:
                del self._entries[follower_id]
                return None
            self._entries.move_to_end(follower_id)
            return follows

    def set(self, follower_id: str, follows: Iterable[Any]) -> None:
        with self._lock:
            self._entries[follower_id] = (self._clock() + self._ttl, tuple(follows))
            self._entries.move_to_end(follower_id)
            while len(self._entries) > self._max:
                self._entries.popitem(last=False)

    def invalidate(self, follower_id: str) -> None:
        with self._lock:
            self._entries.pop(follower_id, None)

    def invalidate_many(self, follower_ids: Iterable[str]) -> None:
        with self._lock:
            for follower_id in follower_ids:
                self._entries.pop(follower_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
