"""
AdvancedCache: the tagged, strategy-driven cache the UI reads through.

Combines a CacheStorage backend, the StrategyRegistry, hit/miss analytics
and a WarmupScheduler. get_or_set() does not collapse concurrent misses;
compose it with RequestOptimizer for that.
"""

from __future__ import annotations

import logging
import pickle
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar

from .compression import compress_value, decompress_value
from .storage import CacheEntry, CacheStorage, InMemCache, validate_cache_storage
from .strategies import DEFAULT_STRATEGY, CacheStrategy, StrategyRegistry
from .utils import call_fetcher
from .warmup import WarmupJob, WarmupReport, WarmupScheduler

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass(frozen=True)
class CacheAnalytics:
    hit_count: int
    miss_count: int
    hit_rate: float
    entry_count: int
    total_requests: int
    warmups: int
    compression_savings: int


class AdvancedCache(Generic[V]):
    """
    Strategy-driven cache service.

    Example:
        cache = AdvancedCache()
        trip = await cache.get_or_set("trip:42", fetch_trip, "dynamic")
        cache.invalidate_by_tags(["dynamic"])
    """

    def __init__(
        self,
        storage: CacheStorage | None = None,
        strategies: StrategyRegistry | None = None,
        max_size: int | None = None,
        **warmup_options: float,
    ):
        """
        Args:
            storage: backend implementing CacheStorage (defaults to InMemCache)
            strategies: strategy registry (defaults to the built-in strategies)
            max_size: LRU bound for the default InMemCache
            warmup_options: interval overrides passed to WarmupScheduler
        """
        self.storage = storage if storage is not None else InMemCache(max_size=max_size)
        if not validate_cache_storage(self.storage):
            raise TypeError(f"{type(self.storage).__name__} is not a CacheStorage")
        self.strategies = strategies if strategies is not None else StrategyRegistry()
        self.warmup = WarmupScheduler(self, **warmup_options)

        self._hits = 0
        self._misses = 0
        self._warmups = 0
        self._compression_savings = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _lookup(self, key: str) -> CacheEntry | None:
        entry = self.storage.get_entry(key)
        if entry is None:
            self._misses += 1
            logger.debug(f"Cache MISS: {key}")
        else:
            self._hits += 1
            logger.debug(f"Cache HIT: {key}")
        return entry

    def get(self, key: str, default: Any = None) -> V | Any:
        """Return the cached value, or `default` when missing or expired."""
        entry = self._lookup(key)
        if entry is None:
            return default
        return decompress_value(entry.value)

    def contains(self, key: str) -> bool:
        """Membership check that does not touch the hit/miss counters."""
        return self.storage.exists(key)

    async def get_or_set(
        self,
        key: str,
        fetcher: Callable[[], V | Awaitable[V]],
        strategy: str = DEFAULT_STRATEGY,
        ttl: float | None = None,
        tags: Iterable[str] = (),
    ) -> V:
        """
        Return the cached value, calling `fetcher` on a miss.

        A fetcher error propagates unchanged and nothing is cached. Falsy
        values (None, 0, []) are legitimate hits.
        """
        entry = self._lookup(key)
        if entry is not None:
            return decompress_value(entry.value)

        value = await call_fetcher(fetcher)
        self.set(key, value, strategy, ttl=ttl, tags=tags)
        return value

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(
        self,
        key: str,
        value: V,
        strategy: str = DEFAULT_STRATEGY,
        ttl: float | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Store `value` with the strategy's TTL and tags (plus any extra tags)."""
        resolved = self.strategies.get(strategy)
        stored: Any = value
        if resolved.compress:
            try:
                compressed = compress_value(value)
            except (pickle.PicklingError, TypeError, AttributeError) as e:
                logger.debug(f"Storing {key} uncompressed: {e}")
            else:
                self._compression_savings += compressed.savings
                stored = compressed

        self.storage.set(
            key,
            stored,
            resolved.ttl if ttl is None else ttl,
            resolved.tags | frozenset(tags),
        )

    def delete(self, key: str) -> bool:
        return self.storage.delete(key)

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        tags = list(tags)
        removed = self.storage.invalidate_by_tags(tags)
        logger.debug(f"Invalidated {removed} entries for tags {tags}")
        return removed

    def cleanup_expired(self) -> int:
        removed = self.storage.cleanup_expired()
        if removed:
            logger.debug(f"Cleaned up {removed} expired entries")
        return removed

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def add_strategy(self, name: str, strategy: CacheStrategy) -> None:
        self.strategies.add_strategy(name, strategy)

    def get_strategies(self) -> dict[str, CacheStrategy]:
        return self.strategies.as_dict()

    # ------------------------------------------------------------------
    # Warmup
    # ------------------------------------------------------------------

    def add_warmup_job(self, job: WarmupJob) -> None:
        self.warmup.add_warmup_job(job)

    async def warmup_cache(self, keys: Iterable[str] | None = None) -> WarmupReport:
        return await self.warmup.warmup_cache(keys)

    def record_warmup(self) -> None:
        self._warmups += 1

    def start(self) -> None:
        """Start periodic warmup and cleanup (needs a running event loop)."""
        self.warmup.start()

    def shutdown(self) -> None:
        self.warmup.shutdown()

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def get_analytics(self) -> CacheAnalytics:
        total = self._hits + self._misses
        return CacheAnalytics(
            hit_count=self._hits,
            miss_count=self._misses,
            hit_rate=self._hits / total if total else 0.0,
            entry_count=len(self.storage),
            total_requests=total,
            warmups=self._warmups,
            compression_savings=self._compression_savings,
        )
