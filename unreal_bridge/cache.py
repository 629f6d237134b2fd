"""
TTL caches for editor state.

Plugin status, engine version and console-object lookups rarely change while
the editor is running, so the bridge keeps them for a few minutes instead of
re-querying on every call. Each cache has its own TTL and an injected clock so
expiry can be tested without sleeping.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]

_MISSING = object()


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """Cached value and the time it was observed."""
    value: V
    observed_at: float


class TTLCache(Generic[K, V]):
    """
    Mapping with a per-cache time-to-live.

    Expired entries are treated as absent on read and dropped; ``sweep``
    removes the rest in bulk.
    """

    def __init__(self, name: str, ttl: float, clock: Optional[Clock] = None):
        self.name = name
        self.ttl = ttl
        self._clock = clock or time.monotonic
        self._entries: Dict[K, CacheEntry[V]] = {}
        self.hits = 0
        self.misses = 0

    def _is_fresh(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.observed_at < self.ttl

    def get(self, key: K, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return default
        if not self._is_fresh(entry, self._clock()):
            del self._entries[key]
            self.misses += 1
            return default
        self.hits += 1
        return entry.value

    def get_entry(self, key: K) -> Optional[CacheEntry[V]]:
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry, self._clock()):
            return entry
        return None

    def set(self, key: K, value: V) -> None:
        self._entries[key] = CacheEntry(value, self._clock())

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def missing(self, keys) -> list:
        """Keys from ``keys`` that have no fresh entry, in order."""
        return [key for key in keys if self.get(key, _MISSING) is _MISSING]

    def sweep(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not self._is_fresh(entry, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Cleaned {len(expired)} expired {self.name} cache entries")
        return len(expired)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and self._is_fresh(entry, self._clock())

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._entries))

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "ttl": self.ttl,
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
        }


class BridgeCaches:
    """The caches owned by one bridge instance, plus their sweep timer."""

    def __init__(
        self,
        plugin_ttl: float = 300.0,
        engine_version_ttl: float = 300.0,
        console_ttl: float = 300.0,
        clock: Optional[Clock] = None
    ):
        self.plugin_status: TTLCache[str, bool] = TTLCache("plugin status", plugin_ttl, clock)
        self.engine_version: TTLCache[str, Any] = TTLCache("engine version", engine_version_ttl, clock)
        self.console_objects: TTLCache[str, Any] = TTLCache("console object", console_ttl, clock)
        self._sweeper_task: Optional[asyncio.Task] = None

    @property
    def caches(self) -> tuple:
        return (self.plugin_status, self.engine_version, self.console_objects)

    def sweep(self) -> int:
        return sum(cache.sweep() for cache in self.caches)

    def clear(self) -> None:
        for cache in self.caches:
            cache.clear()

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper_task is not None and not self._sweeper_task.done()

    def start_sweeper(self, interval: Optional[float] = None) -> None:
        """Start the periodic sweep; defaults to the console cache TTL."""
        if self.sweeper_running:
            return
        interval = interval or self.console_objects.ttl
        self._sweeper_task = asyncio.create_task(self._sweep_loop(interval))

    async def stop_sweeper(self) -> None:
        task = self._sweeper_task
        self._sweeper_task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def get_stats(self) -> dict:
        return {cache.name: cache.get_stats() for cache in self.caches}
