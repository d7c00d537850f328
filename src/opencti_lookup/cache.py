"""TTL cache of marking definitions.

Markings change rarely, so they are fetched once and kept for a day. The
lookup path only ever reads the cache: a miss or an expired entry yields
``None`` and the caller proceeds with no markings. Refreshing is owned by
``MarkingRefresher``, a background task started by the server.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

MARKING_TTL_SECONDS = 24 * 60 * 60
_MARKINGS_KEY = "markings"


@dataclass
class CacheEntry(Generic[T]):
    """A cached value with timestamp."""
    value: T
    timestamp: float


class TTLCache(Generic[T]):
    """Thread-safe TTL-based cache with size limit.

    Features:
    - Automatic expiration based on TTL
    - Maximum size with LRU eviction
    - Monotonic time (immune to clock adjustments)
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int = 1000,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self.name = name
        self._clock = clock

        self._cache: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self._lock = Lock()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> tuple[bool, Optional[T]]:
        """Get value from cache.

        Returns:
            (True, value) on a hit, (False, None) on a miss or expiry
        """
        with self._lock:
            if key not in self._cache:
                self._misses += 1
                return (False, None)

            entry = self._cache[key]
            if self._clock() - entry.timestamp > self.ttl:
                self._misses += 1
                return (False, None)

            self._cache.move_to_end(key)
            self._hits += 1
            return (True, entry.value)

    def set(self, key: str, value: T) -> None:
        """Store value in cache."""
        with self._lock:
            while len(self._cache) >= self.max_size and key not in self._cache:
                oldest_key = next(iter(self._cache))
                del self._cache[oldest_key]
                self._evictions += 1

            self._cache[key] = CacheEntry(value=value, timestamp=self._clock())
            self._cache.move_to_end(key)

    def invalidate(self, key: str) -> bool:
        """Remove specific entry from cache."""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    def clear(self) -> int:
        """Clear all entries. Returns number cleared."""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            hit_rate = self._hits / total if total > 0 else 0.0

            return {
                "name": self.name,
                "size": len(self._cache),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(hit_rate, 3),
                "evictions": self._evictions,
                "ttl_seconds": self.ttl,
            }


class MarkingCache:
    """Read-only view of the marking definitions for the lookup path."""

    def __init__(
        self,
        ttl_seconds: float = MARKING_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TTLCache[list[dict[str, Any]]] = TTLCache(
            ttl_seconds, max_size=1, name="markings", clock=clock
        )

    def get(self) -> list[dict[str, Any]] | None:
        """Current markings, or None when never loaded or expired."""
        found, value = self._cache.get(_MARKINGS_KEY)
        return value if found else None

    def put(self, markings: list[dict[str, Any]]) -> None:
        self._cache.set(_MARKINGS_KEY, list(markings))

    def clear(self) -> None:
        self._cache.clear()

    def get_stats(self) -> dict[str, Any]:
        return self._cache.get_stats()


class MarkingRefresher:
    """Background task that reloads ``MarkingCache`` on a fixed interval.

    A failed refresh is logged and leaves the previous contents in place
    until they expire; lookups carry on with whatever the cache holds.
    """

    def __init__(
        self,
        cache: MarkingCache,
        load: Callable[[], Awaitable[list[dict[str, Any]]]],
        interval_seconds: float = MARKING_TTL_SECONDS / 2,
    ) -> None:
        self.cache = cache
        self._load = load
        self.interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    async def refresh_once(self) -> bool:
        """Load markings into the cache. Returns True on success."""
        try:
            markings = await self._load()
        except Exception as e:
            logger.warning(
                "Marking refresh failed",
                extra={"error_type": type(e).__name__},
            )
            return False
        self.cache.put(markings)
        logger.info("Marking cache refreshed", extra={"count": len(markings)})
        return True

    async def _run(self) -> None:
        while True:
            await self.refresh_once()
            await asyncio.sleep(self.interval)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the refresh loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="marking-refresh")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
