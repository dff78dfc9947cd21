"""Capacity- and TTL-bounded in-memory cache.

Used by the strategy monitor to avoid recomputing the same indicator series
for several strategies within one cycle. Entries expire after ``ttl``
seconds; when the cache is full, expired entries are dropped first and then
the oldest insertions.

Not safe for concurrent access from multiple threads. The monitor only
touches it from its own asyncio task.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Bounded cache with per-entry expiry.

    Args:
        capacity: Maximum number of live entries
        ttl: Entry lifetime in seconds
        clock: Time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        capacity: int = 512,
        ttl: float = 55.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.ttl = ttl
        self._clock = clock
        # key -> (expires_at, value), in insertion order
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return value

    def set(self, key: K, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.capacity:
            self._evict()
        self._entries[key] = (self._clock() + self.ttl, value)

    def get_or_compute(self, key: K, compute: Callable[[], V]) -> V:
        """Return the cached value, computing and storing it on a miss."""
        value = self.get(key)
        if value is None:
            value = compute()
            self.set(key, value)
        return value

    def purge_expired(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries")
        return len(expired)

    def _evict(self) -> None:
        if self.purge_expired():
            return
        # Still full: drop the oldest insertion
        self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]
