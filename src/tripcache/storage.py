"""
Storage backend for caching.

Provides InMemCache (in-memory, tagged, TTL-bound) and the CacheStorage protocol.
Higher layers (AdvancedCache, WarmupScheduler) only talk to the protocol.
"""

from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, Protocol, TypeVar

V = TypeVar("V")


# ============================================================================
# Cache Entry - Internal data structure
# ============================================================================


@dataclass
class CacheEntry(Generic[V]):
    """Cache entry with TTL and tag support."""

    value: V
    fresh_until: float  # Unix timestamp, inf = never expires
    created_at: float
    tags: frozenset[str] = field(default_factory=frozenset)

    def is_fresh(self, now: float | None = None) -> bool:
        """Check if entry is still fresh."""
        return (time.time() if now is None else now) < self.fresh_until

    def age(self, now: float | None = None) -> float:
        """Get age of entry in seconds."""
        return (time.time() if now is None else now) - self.created_at


# ============================================================================
# Storage Protocol - Common interface for all backends
# ============================================================================


class CacheStorage(Protocol[V]):
    """
    Protocol for cache storage backends.

    AdvancedCache accepts any object implementing these methods, so a
    custom backend can be swapped in without touching the caching logic.
    """

    def get(self, key: str, default: Any = None) -> V | Any:
        """Get value by key. Returns default if not found or expired."""
        ...

    def get_entry(self, key: str) -> CacheEntry[V] | None:
        """Get the raw fresh entry, or None."""
        ...

    def set(
        self, key: str, value: V, ttl: float | None = None, tags: Iterable[str] = ()
    ) -> None:
        """Set value with TTL in seconds. ttl=None means no expiration."""
        ...

    def delete(self, key: str) -> bool:
        """Delete key from cache. Returns True if something was removed."""
        ...

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        ...

    def set_if_not_exists(self, key: str, value: V, ttl: float | None = None) -> bool:
        """Atomic set if not exists. Returns True if set, False if already exists."""
        ...

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Remove every entry sharing a tag with `tags`. Returns removed count."""
        ...

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns removed count."""
        ...

    def __len__(self) -> int: ...


def validate_cache_storage(cache: Any) -> bool:
    """
    Validate that an object implements the CacheStorage protocol.
    Useful for debugging custom cache implementations.

    Returns:
        True if valid, False otherwise
    """
    required_methods = [
        "get",
        "get_entry",
        "set",
        "delete",
        "exists",
        "set_if_not_exists",
        "invalidate_by_tags",
        "cleanup_expired",
        "__len__",
    ]
    return all(
        hasattr(cache, method) and callable(getattr(cache, method))
        for method in required_methods
    )


# ============================================================================
# InMemCache - In-memory storage with TTL and tags
# ============================================================================


class InMemCache(Generic[V]):
    """
    Thread-safe in-memory cache with TTL, tags and optional LRU bound.

    Expired entries are evicted lazily on read, or by cleanup_expired().
    When max_size is set and a write overflows it, the least recently
    used 10% of entries (at least one) are dropped.

    Attributes:
        _data: internal entry map, ordered by recency of use
        _lock: re-entrant lock to protect concurrent access
    """

    EVICTION_FRACTION = 0.1

    def __init__(
        self,
        max_size: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if max_size is not None and max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._clock = clock
        self._data: OrderedDict[str, CacheEntry[V]] = OrderedDict()
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> V | Any:
        """Return value if key still fresh, otherwise drop it."""
        entry = self.get_entry(key)
        return default if entry is None else entry.value

    def get_entry(self, key: str) -> CacheEntry[V] | None:
        """Get the raw entry if fresh; expired entries are removed."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None

            if not entry.is_fresh(self._clock()):
                del self._data[key]
                return None

            self._data.move_to_end(key)
            return entry

    def set(
        self, key: str, value: V, ttl: float | None = None, tags: Iterable[str] = ()
    ) -> None:
        """Store value for ttl seconds (None=forever, 0=already expired)."""
        if ttl is not None and ttl < 0:
            raise ValueError("ttl must be non-negative")
        now = self._clock()
        fresh_until = math.inf if ttl is None else now + ttl

        entry = CacheEntry(
            value=value, fresh_until=fresh_until, created_at=now, tags=frozenset(tags)
        )
        self.set_entry(key, entry)

    def set_entry(self, key: str, entry: CacheEntry[V]) -> None:
        """Set raw entry."""
        with self._lock:
            self._data[key] = entry
            self._data.move_to_end(key)
            self._enforce_max_size()

    def delete(self, key: str) -> bool:
        """Delete key from cache."""
        with self._lock:
            return self._data.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        return self.get_entry(key) is not None

    def set_if_not_exists(self, key: str, value: V, ttl: float | None = None) -> bool:
        """Atomic set if not exists. Returns True if set, False if exists."""
        with self._lock:
            if self.get_entry(key) is not None:
                return False
            self.set(key, value, ttl)
            return True

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Remove entries whose tag set intersects `tags`."""
        wanted = frozenset(tags)
        if not wanted:
            return 0
        with self._lock:
            doomed = [key for key, entry in self._data.items() if entry.tags & wanted]
            for key in doomed:
                del self._data[key]
            return len(doomed)

    def clear(self) -> None:
        """Clear all cached data."""
        with self._lock:
            self._data.clear()

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns count of removed entries."""
        with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._data.items() if not entry.is_fresh(now)
            ]
            for key in expired_keys:
                del self._data[key]
            return len(expired_keys)

    def keys(self) -> list[str]:
        """Keys currently held, including expired ones not yet evicted."""
        with self._lock:
            return list(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _enforce_max_size(self) -> None:
        if self.max_size is None or len(self._data) <= self.max_size:
            return
        overflow = len(self._data) - self.max_size
        to_remove = max(overflow, int(len(self._data) * self.EVICTION_FRACTION), 1)
        for _ in range(min(to_remove, len(self._data))):
            self._data.popitem(last=False)

    @property
    def lock(self):
        """Get the internal lock (for advanced usage)."""
        return self._lock
