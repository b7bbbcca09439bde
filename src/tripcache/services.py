"""
Wiring for the three services.

Each application (or test) builds its own CacheServices with
create_services(); nothing here is a module-level singleton.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from .cache import AdvancedCache
from .feed import ChangeFeed
from .optimizer import BatchConfig, RequestOptimizer
from .realtime import RealtimeConfig, RealtimeThrottler, Subscription
from .strategies import DEFAULT_STRATEGY, StrategyRegistry
from .transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class CacheServices:
    cache: AdvancedCache
    optimizer: RequestOptimizer
    realtime: RealtimeThrottler

    async def cached_request(
        self,
        key: str,
        endpoint: str,
        strategy: str = DEFAULT_STRATEGY,
        tags: Iterable[str] = (),
        **request_options: Any,
    ) -> Any:
        """Read through the cache; a miss becomes an optimized request."""
        return await self.cache.get_or_set(
            key,
            lambda: self.optimizer.optimized_request(endpoint, **request_options),
            strategy,
            tags=tags,
        )

    async def invalidate_on_change(
        self, config: RealtimeConfig, tags: Iterable[str]
    ) -> Subscription:
        """Invalidate `tags` every time the channel for `config` delivers."""
        tags = list(tags)

        def invalidate(_payload: Any) -> None:
            self.cache.invalidate_by_tags(tags)

        return await self.realtime.subscribe(config, invalidate)

    def start(self) -> None:
        """Start periodic warmup and cleanup (needs a running event loop)."""
        self.cache.start()

    async def close(self) -> None:
        self.cache.shutdown()
        await self.optimizer.close()
        await self.realtime.close()
        logger.info("Cache services closed")

    async def __aenter__(self) -> CacheServices:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def create_services(
    transport: Transport,
    feed: ChangeFeed,
    batch_config: BatchConfig | None = None,
    strategies: StrategyRegistry | None = None,
    max_cache_size: int | None = None,
    max_reconnect_attempts: int = 3,
) -> CacheServices:
    return CacheServices(
        cache=AdvancedCache(strategies=strategies, max_size=max_cache_size),
        optimizer=RequestOptimizer(transport, batch_config),
        realtime=RealtimeThrottler(feed, max_reconnect_attempts=max_reconnect_attempts),
    )
