"""
Named cache strategies.

A strategy bundles the TTL, tags and warmup eligibility that a call site
would otherwise repeat on every write. Lookups of unknown names fall back
to the "default" strategy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY = "default"

MINUTE = 60.0
HOUR = 60 * MINUTE


@dataclass(frozen=True)
class CacheStrategy:
    """
    Caching policy.

    Attributes:
        name: registry key
        ttl: time-to-live in seconds (0 = expires on write, math.inf = never)
        warmup_eligible: whether warmup jobs may write under this strategy
        compress: store values pickled + zlib-compressed
        tags: tags attached to every entry written under this strategy
        max_size: advisory upper bound on entries for this strategy
    """

    name: str
    ttl: float
    warmup_eligible: bool = False
    compress: bool = False
    tags: frozenset[str] = field(default_factory=frozenset)
    max_size: int | None = None

    def __post_init__(self):
        if self.ttl < 0:
            raise ValueError(f"Strategy {self.name!r}: ttl must be non-negative")
        # Accept any iterable of tags, store them frozen
        object.__setattr__(self, "tags", frozenset(self.tags))


BUILTIN_STRATEGIES = (
    CacheStrategy(DEFAULT_STRATEGY, ttl=30 * MINUTE),
    CacheStrategy(
        "static",
        ttl=24 * HOUR,
        warmup_eligible=True,
        compress=True,
        tags=frozenset({"static"}),
        max_size=1000,
    ),
    CacheStrategy(
        "user", ttl=30 * MINUTE, compress=True, tags=frozenset({"user"}), max_size=500
    ),
    CacheStrategy("dynamic", ttl=5 * MINUTE, tags=frozenset({"dynamic"}), max_size=200),
    CacheStrategy(
        "search",
        ttl=15 * MINUTE,
        compress=True,
        tags=frozenset({"search"}),
        max_size=300,
    ),
)


class StrategyRegistry:
    """Mapping of strategy name to CacheStrategy with a default fallback."""

    def __init__(self, strategies=BUILTIN_STRATEGIES):
        self._strategies: dict[str, CacheStrategy] = {}
        for strategy in strategies:
            self.add(strategy)
        if DEFAULT_STRATEGY not in self._strategies:
            self.add(BUILTIN_STRATEGIES[0])

    def add(self, strategy: CacheStrategy) -> None:
        """Register or replace a strategy under its own name."""
        self._strategies[strategy.name] = strategy

    def add_strategy(self, name: str, strategy: CacheStrategy) -> None:
        """Register a strategy under `name` (renaming it if needed)."""
        if strategy.name != name:
            strategy = replace(strategy, name=name)
        self.add(strategy)

    def get(self, name: str | None) -> CacheStrategy:
        strategy = self._strategies.get(name or DEFAULT_STRATEGY)
        if strategy is None:
            logger.debug(f"Unknown cache strategy {name!r}, using {DEFAULT_STRATEGY!r}")
            return self._strategies[DEFAULT_STRATEGY]
        return strategy

    def names(self) -> list[str]:
        return list(self._strategies)

    def as_dict(self) -> dict[str, CacheStrategy]:
        return dict(self._strategies)

    def __contains__(self, name: object) -> bool:
        return name in self._strategies

    def __len__(self) -> int:
        return len(self._strategies)
