"""
Request optimizer: deduplication, batching and retry for outbound calls.

optimized_request() composes the three layers:

    dedup (one in-flight call per key)
      -> retry (bounded exponential backoff, RetriableError only)
        -> batch (per endpoint/method, flushed when full or on timeout)
          -> transport
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import (
    QueueClearedError,
    RetriableError,
    RetriesExhaustedError,
    TerminalError,
)
from .transport import Transport
from .utils import canonical_json

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BatchConfig:
    """
    Attributes:
        max_batch_size: items per transport call; a full queue flushes at once
        batch_timeout: seconds the first queued item waits for company
        max_retries: extra attempts after the first failure
        retry_delay: base backoff in seconds (doubles per attempt)
        max_retry_delay: backoff cap in seconds
    """

    max_batch_size: int = 10
    batch_timeout: float = 0.05
    max_retries: int = 2
    retry_delay: float = 0.5
    max_retry_delay: float = 30.0

    def __post_init__(self):
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if self.batch_timeout < 0 or self.retry_delay < 0 or self.max_retry_delay < 0:
            raise ValueError("timeouts and delays must be non-negative")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")


@dataclass(frozen=True)
class OptimizerStats:
    active_requests: int
    batched_count: int
    deduped_count: int
    retried_count: int
    total_requests: int
    failed_requests: int
    pending_requests: int
    active_queues: int


@dataclass
class _BatchItem:
    data: Any
    priority: int
    future: asyncio.Future


@dataclass
class _BatchQueue:
    items: list[_BatchItem] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None


class RequestOptimizer:
    """
    Coalesces outbound requests in front of a Transport.

    Example:
        optimizer = RequestOptimizer(HttpTransport(client))
        results = await asyncio.gather(
            *(optimizer.optimized_request("/search", data={"q": "paris"}) for _ in range(3))
        )  # one network call
    """

    def __init__(
        self,
        transport: Transport,
        config: BatchConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.config = config if config is not None else BatchConfig()
        self._sleep = sleep

        self._queues: dict[tuple[str, str], _BatchQueue] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()

        self._active = 0
        self._total = 0
        self._batched = 0
        self._deduped = 0
        self._retried = 0
        self._failed = 0

    # ------------------------------------------------------------------
    # Combined entry point
    # ------------------------------------------------------------------

    async def optimized_request(
        self,
        endpoint: str,
        method: str = "GET",
        data: Any = None,
        priority: int = 0,
        deduplicate: bool = True,
        dedupe_key: str | None = None,
        retry: bool = True,
        max_retries: int | None = None,
    ) -> Any:
        """
        Send one logical request through dedup, retry and batching.

        Dedup applies to GETs, and to other methods only when an explicit
        dedupe_key is given.
        """
        method = method.upper()

        def send() -> Awaitable[Any]:
            return self.batch_request(endpoint, method, data, priority)

        call = partial(self.retry_request, send, max_retries) if retry else send

        if deduplicate and (method == "GET" or dedupe_key is not None):
            key = dedupe_key or self.dedupe_key_for(endpoint, method, data)
            return await self.deduplicate_request(key, call)
        return await call()

    @staticmethod
    def dedupe_key_for(endpoint: str, method: str, data: Any = None) -> str:
        return f"{method.upper()}:{endpoint}:{canonical_json(data)}"

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    async def deduplicate_request(
        self, key: str, request_fn: Callable[[], Awaitable[T]]
    ) -> T:
        """
        Attach to the in-flight call for `key`, or start it.

        Registration happens before the first await, so two callers can never
        both start a call. The entry is dropped once the call settles.
        """
        shared = self._inflight.get(key)
        if shared is not None:
            self._deduped += 1
            logger.debug(f"Deduplicated request: {key}")
        else:
            shared = asyncio.ensure_future(request_fn())
            self._inflight[key] = shared
            shared.add_done_callback(lambda fut: self._release(key, fut))
        # A cancelled caller must not cancel the call other callers share
        return await asyncio.shield(shared)

    def _release(self, key: str, fut: asyncio.Future) -> None:
        if self._inflight.get(key) is fut:
            del self._inflight[key]
        if not fut.cancelled():
            # Mark retrieved; waiting callers still get it through shield()
            fut.exception()

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def retry_request(
        self,
        request_fn: Callable[[], Awaitable[T]],
        max_retries: int | None = None,
        base_delay: float | None = None,
    ) -> T:
        """
        Run `request_fn`, retrying RetriableError with exponential backoff.

        Other errors propagate immediately. After 1 + max_retries failed
        attempts a RetriesExhaustedError is raised from the last failure.
        """
        retries = self.config.max_retries if max_retries is None else max_retries
        delay = self.config.retry_delay if base_delay is None else base_delay
        attempts = 0

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(retries + 1),
                wait=wait_exponential(multiplier=delay, max=self.config.max_retry_delay),
                retry=retry_if_exception_type(RetriableError),
                sleep=self._sleep,
                before_sleep=self._log_retry,
            ):
                with attempt:
                    attempts += 1
                    if attempts > 1:
                        self._retried += 1
                    return await request_fn()
        except RetryError as e:
            last_error = e.last_attempt.exception()
            raise RetriesExhaustedError(last_error, attempts) from last_error

        # Unreachable: the loop either returns or raises
        raise RuntimeError("Retry loop exited unexpectedly")

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Request attempt {retry_state.attempt_number} failed ({error}), "
            f"retrying in {wait:.2f}s"
        )

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    async def batch_request(
        self,
        endpoint: str,
        method: str = "GET",
        data: Any = None,
        priority: int = 0,
    ) -> Any:
        """Queue one request; it goes out with others for the same endpoint."""
        loop = asyncio.get_running_loop()
        key = (endpoint, method.upper())
        item = _BatchItem(data=data, priority=priority, future=loop.create_future())

        queue = self._queues.setdefault(key, _BatchQueue())
        queue.items.append(item)
        # Stable sort: higher priority first, arrival order within a priority
        queue.items.sort(key=lambda queued: -queued.priority)
        self._total += 1

        if len(queue.items) >= self.config.max_batch_size:
            self._flush(key)
        elif queue.timer is None:
            queue.timer = loop.call_later(self.config.batch_timeout, self._flush, key)

        return await item.future

    def _flush(self, key: tuple[str, str]) -> None:
        queue = self._queues.get(key)
        if queue is None:
            return
        if queue.timer is not None:
            queue.timer.cancel()
            queue.timer = None

        size = self.config.max_batch_size
        while queue.items:
            items, queue.items = queue.items[:size], queue.items[size:]
            self._dispatch(key, items)
            if len(queue.items) < size:
                break

        if queue.items:
            queue.timer = asyncio.get_running_loop().call_later(
                self.config.batch_timeout, self._flush, key
            )
        else:
            del self._queues[key]

    def _dispatch(self, key: tuple[str, str], items: list[_BatchItem]) -> None:
        # Callers that gave up while queued are dropped from the batch
        items = [item for item in items if not item.future.done()]
        if not items:
            return
        task = asyncio.get_running_loop().create_task(self._send_batch(key, items))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send_batch(self, key: tuple[str, str], items: list[_BatchItem]) -> None:
        endpoint, method = key
        self._active += len(items)
        if len(items) > 1:
            self._batched += len(items)
        logger.debug(f"Sending batch of {len(items)} to {method} {endpoint}")

        try:
            results = await self.transport.batch(
                endpoint, method, [item.data for item in items]
            )
        except asyncio.CancelledError:
            for item in items:
                self._reject(item, QueueClearedError("Batch cancelled", endpoint, method))
            raise
        except Exception as e:
            for item in items:
                self._reject(item, e)
            return
        finally:
            self._active -= len(items)

        if len(results) != len(items):
            error = TerminalError(
                f"Batch for {method} {endpoint} returned {len(results)} results "
                f"for {len(items)} requests",
                endpoint=endpoint,
                method=method,
            )
            for item in items:
                self._reject(item, error)
            return

        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                self._reject(item, result)
            elif not item.future.done():
                item.future.set_result(result)

    def _reject(self, item: _BatchItem, error: BaseException) -> None:
        if not item.future.done():
            self._failed += 1
            item.future.set_exception(error)

    # ------------------------------------------------------------------
    # Configuration and lifecycle
    # ------------------------------------------------------------------

    def update_batch_config(self, **changes: Any) -> BatchConfig:
        """Apply changes to future batches; queued timers keep their deadline."""
        self.config = replace(self.config, **changes)
        logger.info(f"Batch config updated: {self.config}")
        return self.config

    def clear_queues(self) -> int:
        """Reject every queued (not yet sent) request. Returns how many."""
        cleared = 0
        for (endpoint, method), queue in self._queues.items():
            if queue.timer is not None:
                queue.timer.cancel()
            for item in queue.items:
                if not item.future.done():
                    item.future.set_exception(
                        QueueClearedError("Queue cleared", endpoint, method)
                    )
                    cleared += 1
        self._queues.clear()
        return cleared

    async def close(self) -> None:
        """Reject queued requests and cancel batches still in flight."""
        self.clear_queues()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def get_stats(self) -> OptimizerStats:
        return OptimizerStats(
            active_requests=self._active,
            batched_count=self._batched,
            deduped_count=self._deduped,
            retried_count=self._retried,
            total_requests=self._total,
            failed_requests=self._failed,
            pending_requests=sum(len(q.items) for q in self._queues.values()),
            active_queues=len(self._queues),
        )
