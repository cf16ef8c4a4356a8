"""
Read-through cache with bounded staleness.

A cached value is served until it is ``ttl_seconds`` old, after which the
next ``get`` reloads it through the loader. The clock is injected so
staleness can be tested without sleeping. Each call site owns its own
instance; there is no module-level cache.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    """Single cache entry with the time it was loaded."""

    value: V
    loaded_at: float

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return (now - self.loaded_at) >= ttl_seconds


class ReadThroughCache(Generic[V]):
    """
    Keyed read-through cache.

    Usage:
        cache = ReadThroughCache(lambda key: store.list(), ttl_seconds=30)
        roles = cache.get("all")
        cache.invalidate()
    """

    def __init__(
        self,
        loader: Callable[[Hashable], V],
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be non-negative")
        self.loader = loader
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[Hashable, CacheEntry[V]] = {}
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> V:
        with self._lock:
            now = self.clock()
            entry = self._entries.get(key)
            if entry is not None and not entry.is_expired(now, self.ttl_seconds):
                self.hits += 1
                return entry.value

            self.misses += 1
            value = self.loader(key)
            self._entries[key] = CacheEntry(value=value, loaded_at=now)
            logger.debug("Cache reload: key=%s ttl=%.1fs", key, self.ttl_seconds)
            return value

    def invalidate(self, key: Hashable | None = None) -> None:
        """Drop one key, or everything when ``key`` is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}
