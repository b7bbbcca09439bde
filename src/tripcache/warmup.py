"""
Cache warmup: pre-populate known-hot keys before anybody asks for them.

Jobs are queued with a priority and executed high -> medium -> low. A
failing job is logged and skipped; it never aborts its siblings.
Periodic execution runs on APScheduler's AsyncIOScheduler.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .priority import Priority
from .utils import call_fetcher

if TYPE_CHECKING:
    from .cache import AdvancedCache

logger = logging.getLogger(__name__)

HIGH_PRIORITY_INTERVAL = 5 * 60.0
FULL_WARMUP_INTERVAL = 30 * 60.0
CLEANUP_INTERVAL = 60.0


@dataclass
class WarmupJob:
    """
    A pre-registered fetch used to populate the cache ahead of demand.

    Attributes:
        key: cache key the result is stored under
        fetcher: zero-argument producer, sync or async
        priority: execution tier
        strategy: cache strategy to write under (must be warmup-eligible)
        recurring: keep the job queued after it runs instead of consuming it
    """

    key: str
    fetcher: Callable[[], Any]
    priority: Priority = Priority.MEDIUM
    strategy: str = "static"
    recurring: bool = False

    def __post_init__(self):
        self.priority = Priority.coerce(self.priority)


@dataclass
class WarmupReport:
    """Outcome of one warmup_cache() pass."""

    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class WarmupScheduler:
    """
    Queue of warmup jobs bound to one AdvancedCache.

    Two jobs with the same key are never both queued: the last one
    enqueued replaces the earlier one.
    """

    def __init__(
        self,
        cache: AdvancedCache,
        high_priority_interval: float = HIGH_PRIORITY_INTERVAL,
        full_interval: float = FULL_WARMUP_INTERVAL,
        cleanup_interval: float = CLEANUP_INTERVAL,
    ):
        self.cache = cache
        self.high_priority_interval = high_priority_interval
        self.full_interval = full_interval
        self.cleanup_interval = cleanup_interval
        self._jobs: OrderedDict[str, WarmupJob] = OrderedDict()
        self._scheduler: AsyncIOScheduler | None = None

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def add_warmup_job(self, job: WarmupJob) -> None:
        strategy = self.cache.strategies.get(job.strategy)
        if not strategy.warmup_eligible:
            raise ValueError(
                f"Warmup job {job.key!r}: strategy {strategy.name!r} "
                "is not warmup-eligible"
            )
        if self._jobs.pop(job.key, None) is not None:
            logger.debug(f"Replacing queued warmup job for {job.key}")
        self._jobs[job.key] = job

    def remove_warmup_job(self, key: str) -> bool:
        return self._jobs.pop(key, None) is not None

    @property
    def jobs(self) -> list[WarmupJob]:
        """Queued jobs in submission order."""
        return list(self._jobs.values())

    def _take(self, keys: set[str] | None) -> list[WarmupJob]:
        selected = [
            job for key, job in self._jobs.items() if keys is None or key in keys
        ]
        for job in selected:
            del self._jobs[job.key]
        # sorted() is stable, so submission order holds within a tier
        return sorted(selected, key=lambda job: job.priority.rank)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def warmup_cache(self, keys: Iterable[str] | None = None) -> WarmupReport:
        """
        Run queued jobs (optionally only those for `keys`) in priority order.

        Jobs are taken off the queue before the first fetch is awaited, so
        two overlapping passes never run the same job twice.
        """
        jobs = self._take(None if keys is None else set(keys))
        report = WarmupReport()

        for job in jobs:
            try:
                value = await call_fetcher(job.fetcher)
            except Exception as e:
                logger.warning(f"Cache warmup failed for {job.key}: {e}")
                report.failed[job.key] = e
            else:
                self.cache.set(job.key, value, job.strategy)
                self.cache.record_warmup()
                report.succeeded.append(job.key)
            finally:
                if job.recurring:
                    # A newer submission for the same key takes precedence
                    self._jobs.setdefault(job.key, job)

        if jobs:
            logger.info(
                f"Cache warmup finished: {len(report.succeeded)} ok, "
                f"{len(report.failed)} failed"
            )
        return report

    async def warmup_high_priority(self) -> WarmupReport:
        keys = [key for key, job in self._jobs.items() if job.priority is Priority.HIGH]
        if not keys:
            return WarmupReport()
        return await self.warmup_cache(keys)

    # ------------------------------------------------------------------
    # Periodic scheduling
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        """
        Start periodic warmup and expired-entry cleanup.

        Must be called from a running event loop.
        """
        if self._scheduler is not None:
            return

        scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        scheduler.add_job(
            self.warmup_high_priority,
            trigger=IntervalTrigger(seconds=self.high_priority_interval),
            id="warmup:high",
            replace_existing=True,
        )
        scheduler.add_job(
            self.warmup_cache,
            trigger=IntervalTrigger(seconds=self.full_interval),
            id="warmup:full",
            replace_existing=True,
        )
        scheduler.add_job(
            self.cache.cleanup_expired,
            trigger=IntervalTrigger(seconds=self.cleanup_interval),
            id="cache:cleanup",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Warmup scheduler started")

    def shutdown(self, wait: bool = False) -> None:
        """Stop periodic jobs. Queued jobs stay queued."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Warmup scheduler stopped")
