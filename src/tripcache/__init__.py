"""
Client-side data layer: tagged TTL cache, request coalescing, realtime throttling.

Expose the cache, warmup scheduler, request optimizer and realtime throttler
under `tripcache`.
"""

from .cache import AdvancedCache, CacheAnalytics
from .errors import (
    ChannelError,
    QueueClearedError,
    RequestError,
    RetriableError,
    RetriesExhaustedError,
    TerminalError,
    TripCacheError,
    classify_status,
)
from .feed import ChangeEvent, ChangeFeed, EventType, InMemoryChangeFeed
from .optimizer import BatchConfig, OptimizerStats, RequestOptimizer
from .priority import Priority
from .realtime import (
    ChannelStatus,
    ConnectionHealth,
    RealtimeConfig,
    RealtimeThrottler,
    Subscription,
)
from .services import CacheServices, create_services
from .storage import CacheEntry, CacheStorage, InMemCache, validate_cache_storage
from .strategies import CacheStrategy, StrategyRegistry
from .transport import HttpTransport, Transport
from .warmup import WarmupJob, WarmupReport, WarmupScheduler

__all__ = [
    "AdvancedCache",
    "CacheAnalytics",
    "InMemCache",
    "CacheEntry",
    "CacheStorage",
    "validate_cache_storage",
    "CacheStrategy",
    "StrategyRegistry",
    "WarmupJob",
    "WarmupReport",
    "WarmupScheduler",
    "Priority",
    "RequestOptimizer",
    "BatchConfig",
    "OptimizerStats",
    "Transport",
    "HttpTransport",
    "ChangeFeed",
    "ChangeEvent",
    "EventType",
    "InMemoryChangeFeed",
    "RealtimeThrottler",
    "RealtimeConfig",
    "ChannelStatus",
    "ConnectionHealth",
    "Subscription",
    "CacheServices",
    "create_services",
    "TripCacheError",
    "RequestError",
    "RetriableError",
    "TerminalError",
    "RetriesExhaustedError",
    "QueueClearedError",
    "ChannelError",
    "classify_status",
]
