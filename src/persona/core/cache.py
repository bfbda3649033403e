"""
TTL cache with prefix invalidation

One cache abstraction for the memory subsystem. Entries expire after their
TTL and are evicted lazily on lookup, explicitly by key prefix, or in a sweep
when the cache reaches max_entries (oldest insertion goes first if the sweep
frees nothing).
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

import structlog

logger = structlog.get_logger()

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """A cached value and the monotonic time after which it is stale"""
    key: str
    value: V
    expiry: float


class TTLCache(Generic[V]):
    """
    Keyed map of CacheEntry guarded by a single mutation lock.

    Args:
        default_ttl: Seconds an entry stays fresh when set() is not given a ttl
        clock: Monotonic time source (injectable for tests)
        name: Label used in log events
        max_entries: Size bound; None for unbounded
    """

    def __init__(self,
                 default_ttl: float = 60.0,
                 clock: Callable[[], float] = time.monotonic,
                 name: str = "cache",
                 max_entries: Optional[int] = 1024):
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")
        if max_entries is not None and max_entries < 1:
            raise ValueError(f"max_entries must be at least 1, got {max_entries}")

        self.default_ttl = default_ttl
        self.name = name
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}
        self._lock = threading.Lock()

        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[V]:
        """Return the fresh value for key, or None (expired entries are evicted)"""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            if entry.expiry <= self._clock():
                del self._entries[key]
                self.misses += 1
                logger.debug("cache.expired", cache=self.name, key=key)
                return None

            self.hits += 1
            return entry.value

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")

        with self._lock:
            now = self._clock()
            self._entries.pop(key, None)
            if self.max_entries is not None and len(self._entries) >= self.max_entries:
                self._make_room(now)
            self._entries[key] = CacheEntry(key=key, value=value, expiry=now + ttl)

    def _make_room(self, now: float) -> None:
        """Caller holds the lock"""
        expired = [k for k, entry in self._entries.items() if entry.expiry <= now]
        for k in expired:
            del self._entries[k]

        evicted = 0
        while len(self._entries) >= self.max_entries:
            del self._entries[next(iter(self._entries))]
            evicted += 1

        self.evictions += len(expired) + evicted
        logger.debug("cache.swept", cache=self.name, expired=len(expired), evicted=evicted)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix; returns the count removed"""
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]

        if doomed:
            logger.debug("cache.invalidated", cache=self.name, prefix=prefix, removed=len(doomed))
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._entries)
        total = self.hits + self.misses
        return {
            "name": self.name,
            "size": size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": round(self.hits / total, 3) if total else 0.0,
        }
