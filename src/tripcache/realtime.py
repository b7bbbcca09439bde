"""
Realtime update throttler.

Sits between a ChangeFeed and UI callbacks:

- one shared, reference-counted feed channel per (table, filter)
- per-channel trailing-edge throttle: events are buffered and delivered at
  most once per throttle interval, latest payload wins
- bounded exponential-backoff reconnect; a channel that exhausts its
  attempts is marked FAILED and reported through get_connection_health()
- prioritized outbound broadcasts
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from typing import Any, AsyncIterator, Awaitable, Callable

from .compression import compress_payload, decompress_payload, is_compressed_payload
from .errors import ChannelError
from .feed import ChangeEvent, ChangeFeed, EventType
from .priority import Priority

logger = logging.getLogger(__name__)

Callback = Callable[[Any], Any]

# Throttle used when a config does not set one explicitly
PRIORITY_THROTTLE = {Priority.HIGH: 0.1, Priority.MEDIUM: 0.5, Priority.LOW: 2.0}
RATE_LIMIT_WINDOW = 60.0


class ChannelStatus(str, Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    ERROR = "error"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


DEGRADED_STATUSES = frozenset(
    {ChannelStatus.ERROR, ChannelStatus.RECONNECTING, ChannelStatus.FAILED}
)


@dataclass
class RealtimeConfig:
    """
    Subscription settings.

    Attributes:
        channel: feed channel name
        table: table to watch; None makes this a broadcast channel
        filter: row filter, e.g. "trip_id=eq.42"
        throttle: minimum seconds between deliveries (None = priority default)
        priority: HIGH channels flush sooner when throttle is not set
        compression: decode compressed broadcast payloads
        selective_fields: deliver UPDATEs only when one of these fields changed
        rate_limit: max accepted events per minute; extra events are dropped
        batch: deliver every buffered payload as a list instead of the latest
    """

    channel: str
    table: str | None = None
    filter: str | None = None
    throttle: float | None = None
    priority: Priority = Priority.MEDIUM
    compression: bool = False
    selective_fields: tuple[str, ...] | None = None
    rate_limit: int | None = None
    batch: bool = False

    def __post_init__(self):
        self.priority = Priority.coerce(self.priority)
        if self.throttle is not None and self.throttle < 0:
            raise ValueError("throttle must be non-negative")
        if self.rate_limit is not None and self.rate_limit < 1:
            raise ValueError("rate_limit must be at least 1")

    @property
    def key(self) -> str:
        """Channels are shared per (table, filter); broadcasts per name."""
        if self.table is None:
            return f"broadcast:{self.channel}"
        return f"{self.table}:{self.filter or '*'}"

    def effective_throttle(self) -> float:
        return PRIORITY_THROTTLE[self.priority] if self.throttle is None else self.throttle


@dataclass(frozen=True)
class ChannelStats:
    key: str
    channel: str
    status: ChannelStatus
    priority: Priority
    subscribers: int
    message_count: int
    dropped_count: int
    pending_updates: int
    last_update: float
    reconnect_attempts: int


@dataclass(frozen=True)
class ConnectionHealth:
    connected: bool
    latency: float
    average_latency: float
    reconnect_count: int
    last_reconnect: float
    failed_channels: list[str]
    degraded_channels: list[str]


@dataclass(frozen=True)
class RealtimeAnalytics:
    messages_received: int
    messages_delivered: int
    messages_coalesced: int
    messages_dropped: int
    messages_filtered: int
    compression_savings: int
    active_channels: int
    throttled_rate: float
    connection_health: ConnectionHealth


@dataclass
class _Subscriber:
    callback: Callback
    batch: bool


@dataclass
class _Channel:
    key: str
    config: RealtimeConfig
    status: ChannelStatus = ChannelStatus.DISCONNECTED
    handle: Any = None
    subscribers: dict[int, _Subscriber] = field(default_factory=dict)
    pending: list[Any] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None
    last_update: float = 0.0
    message_count: int = 0
    dropped_count: int = 0
    reconnect_attempts: int = 0
    subscribed_at: float = 0.0
    reconnect_task: asyncio.Task | None = None
    rate_window_end: float = 0.0
    rate_count: int = 0
    closed: bool = False


class Subscription:
    """
    Handle for one subscriber on a shared channel.

    close() is idempotent; the channel is torn down when its last
    subscriber closes. Use `async with` to release on every exit path.
    """

    def __init__(self, throttler: RealtimeThrottler, key: str, token: int):
        self._throttler = throttler
        self.key = key
        self._token = token
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def status(self) -> ChannelStatus:
        if self._closed:
            return ChannelStatus.DISCONNECTED
        return self._throttler.channel_status(self.key)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._throttler._release(self.key, self._token)

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"Subscription(key={self.key!r}, status={self.status.value})"


class RealtimeThrottler:
    """
    Throttled, shared subscriptions over a ChangeFeed.

    Example:
        throttler = RealtimeThrottler(feed)
        config = RealtimeConfig("bookings", table="bookings", throttle=1.0)
        async with throttler.subscription(config, refresh_bookings):
            ...
    """

    def __init__(
        self,
        feed: ChangeFeed,
        max_reconnect_attempts: int = 3,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        stable_window: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            max_reconnect_attempts: resubscribes tried before a channel is FAILED
            reconnect_delay: base backoff in seconds (doubles per attempt)
            max_reconnect_delay: backoff cap in seconds
            stable_window: seconds a channel must stay subscribed before its
                reconnect budget is restored (defaults to max_reconnect_delay)
            sleep: awaitable used for backoff waits
        """
        self.feed = feed
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.stable_window = (
            max_reconnect_delay if stable_window is None else stable_window
        )
        self._sleep = sleep

        self._channels: dict[str, _Channel] = {}
        self._tokens = itertools.count(1)
        self._global_throttle: float | None = None
        self._tasks: set[asyncio.Task] = set()

        self._outbox: list[tuple[int, int, str, str, Any, asyncio.Future]] = []
        self._outbox_seq = itertools.count()
        self._sender: asyncio.Task | None = None

        self._connected = False
        self._latency = 0.0
        self._average_latency = 0.0
        self._reconnect_count = 0
        self._last_reconnect = 0.0

        self._received = 0
        self._delivered = 0
        self._coalesced = 0
        self._dropped = 0
        self._filtered = 0
        self._compression_savings = 0

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    async def subscribe(self, config: RealtimeConfig, callback: Callback) -> Subscription:
        """
        Attach `callback` to the shared channel for `config`, opening it if needed.

        Never raises on channel errors: a channel that cannot be opened goes
        through the reconnect cycle and its state shows up on the handle.
        """
        key = config.key
        token = next(self._tokens)
        subscriber = _Subscriber(callback=callback, batch=config.batch)

        channel = self._channels.get(key)
        if channel is not None:
            channel.subscribers[token] = subscriber
            logger.debug(f"Reusing realtime channel {key} ({channel.status.value})")
            return Subscription(self, key, token)

        channel = _Channel(key=key, config=replace(config))
        channel.subscribers[token] = subscriber
        self._channels[key] = channel
        await self._open(channel)
        return Subscription(self, key, token)

    subscribe_optimized = subscribe

    @asynccontextmanager
    async def subscription(
        self, config: RealtimeConfig, callback: Callback
    ) -> AsyncIterator[Subscription]:
        handle = await self.subscribe(config, callback)
        try:
            yield handle
        finally:
            await handle.close()

    async def _open(self, channel: _Channel) -> None:
        channel.status = ChannelStatus.SUBSCRIBING
        try:
            handle = await self._feed_subscribe(channel)
        except ChannelError as e:
            self._on_error(channel, e)
            return

        if channel.closed:
            await self.feed.unsubscribe(handle)
            return
        channel.handle = handle
        channel.status = ChannelStatus.SUBSCRIBED
        channel.subscribed_at = time.monotonic()
        self._connected = True
        logger.info(f"Realtime channel {channel.key} subscribed")

    def _feed_subscribe(self, channel: _Channel) -> Awaitable[Any]:
        config = channel.config
        return self.feed.subscribe(
            config.channel,
            config.table,
            config.filter,
            partial(self._on_event, channel),
            partial(self._on_error, channel),
        )

    async def _release(self, key: str, token: int) -> None:
        channel = self._channels.get(key)
        if channel is None:
            return
        channel.subscribers.pop(token, None)
        if not channel.subscribers:
            await self._teardown(channel)

    async def _teardown(self, channel: _Channel) -> None:
        # Detach synchronously so nothing can reuse a channel being closed
        channel.closed = True
        if self._channels.get(channel.key) is channel:
            del self._channels[channel.key]
        if channel.timer is not None:
            channel.timer.cancel()
            channel.timer = None
        channel.pending.clear()
        task = channel.reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        handle, channel.handle = channel.handle, None
        channel.status = ChannelStatus.DISCONNECTED
        if handle is not None:
            try:
                await self.feed.unsubscribe(handle)
            except ChannelError as e:
                logger.warning(f"Failed to unsubscribe realtime channel {channel.key}: {e}")
        logger.info(f"Realtime channel {channel.key} unsubscribed")

    async def unsubscribe_all(self) -> None:
        for channel in list(self._channels.values()):
            await self._teardown(channel)

    # ------------------------------------------------------------------
    # Incoming events
    # ------------------------------------------------------------------

    def _on_event(self, channel: _Channel, event: ChangeEvent) -> None:
        if channel.closed:
            return
        self._received += 1
        channel.message_count += 1

        if self._rate_limited(channel):
            self._dropped += 1
            channel.dropped_count += 1
            return

        if channel.config.compression and is_compressed_payload(event.payload):
            event = replace(event, payload=decompress_payload(event.payload))

        fields = channel.config.selective_fields
        if fields and not self._should_process(event, fields):
            self._filtered += 1
            return

        channel.pending.append(event)
        throttle = self._throttle_for(channel)
        if throttle <= 0:
            self._flush(channel)
        elif channel.timer is None:
            channel.timer = asyncio.get_running_loop().call_later(
                throttle, self._flush, channel
            )

    def _throttle_for(self, channel: _Channel) -> float:
        if self._global_throttle is not None:
            return self._global_throttle
        return channel.config.effective_throttle()

    def _rate_limited(self, channel: _Channel) -> bool:
        limit = channel.config.rate_limit
        if limit is None:
            return False
        now = time.monotonic()
        if now >= channel.rate_window_end:
            channel.rate_window_end = now + RATE_LIMIT_WINDOW
            channel.rate_count = 0
        if channel.rate_count >= limit:
            return True
        channel.rate_count += 1
        return False

    @staticmethod
    def _should_process(event: ChangeEvent, fields: tuple[str, ...]) -> bool:
        """UPDATEs pass only when a watched field changed; other events always pass."""
        if event.event_type is not EventType.UPDATE:
            return True
        new = event.new or {}
        old = event.old or {}
        return any(new.get(name) != old.get(name) for name in fields)

    def _flush(self, channel: _Channel) -> None:
        if channel.timer is not None:
            # No-op when the handle is the one firing now
            channel.timer.cancel()
            channel.timer = None
        if channel.closed or not channel.pending:
            return
        pending, channel.pending = channel.pending, []
        channel.last_update = time.time()
        self._delivered += 1
        self._coalesced += len(pending) - 1

        for subscriber in list(channel.subscribers.values()):
            payload = list(pending) if subscriber.batch else pending[-1]
            self._invoke(channel.key, subscriber.callback, payload)

    def _invoke(self, key: str, callback: Callback, payload: Any) -> None:
        try:
            result = callback(payload)
        except Exception as e:
            logger.error(f"Realtime callback for {key} failed: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(partial(self._callback_done, key))

    def _callback_done(self, key: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Realtime callback for {key} failed: {error}", exc_info=error)

    # ------------------------------------------------------------------
    # Channel errors and reconnects
    # ------------------------------------------------------------------

    def _on_error(self, channel: _Channel, error: ChannelError) -> None:
        if channel.closed or channel.status in DEGRADED_STATUSES:
            return
        logger.warning(f"Channel error for {channel.key}: {error}, attempting reconnection")
        # The reconnect budget is restored only after stable_window of uptime
        if (
            channel.reconnect_attempts
            and time.monotonic() - channel.subscribed_at >= self.stable_window
        ):
            channel.reconnect_attempts = 0
        channel.status = ChannelStatus.ERROR
        self._connected = False
        channel.reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect(channel)
        )

    async def _reconnect(self, channel: _Channel) -> None:
        handle, channel.handle = channel.handle, None
        if handle is not None:
            try:
                await self.feed.unsubscribe(handle)
            except ChannelError as e:
                logger.debug(f"Dropping dead handle for {channel.key}: {e}")

        channel.status = ChannelStatus.RECONNECTING
        while channel.reconnect_attempts < self.max_reconnect_attempts:
            delay = min(
                self.reconnect_delay * 2**channel.reconnect_attempts,
                self.max_reconnect_delay,
            )
            channel.reconnect_attempts += 1
            self._reconnect_count += 1
            self._last_reconnect = time.time()
            await self._sleep(delay)
            if channel.closed:
                return

            try:
                handle = await self._feed_subscribe(channel)
            except ChannelError as e:
                logger.warning(
                    f"Reconnect attempt {channel.reconnect_attempts}/"
                    f"{self.max_reconnect_attempts} for {channel.key} failed: {e}"
                )
                continue

            if channel.closed:
                await self.feed.unsubscribe(handle)
                return
            channel.handle = handle
            channel.status = ChannelStatus.SUBSCRIBED
            channel.subscribed_at = time.monotonic()
            self._connected = True
            logger.info(f"Realtime channel {channel.key} reconnected")
            return

        channel.status = ChannelStatus.FAILED
        logger.error(
            f"Realtime channel {channel.key} failed after "
            f"{self.max_reconnect_attempts} reconnect attempts"
        )

    def reconnect_channel(self, key: str) -> bool:
        """Start a fresh reconnect cycle for a FAILED channel."""
        channel = self._channels.get(key)
        if channel is None or channel.status is not ChannelStatus.FAILED:
            return False
        channel.reconnect_attempts = 0
        channel.status = ChannelStatus.ERROR
        channel.reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect(channel)
        )
        return True

    def channel_status(self, key: str) -> ChannelStatus:
        channel = self._channels.get(key)
        return ChannelStatus.DISCONNECTED if channel is None else channel.status

    async def wait_reconnected(self, key: str) -> ChannelStatus:
        """Wait for a running reconnect cycle on `key` to finish."""
        channel = self._channels.get(key)
        if channel is not None and channel.reconnect_task is not None:
            await asyncio.gather(channel.reconnect_task, return_exceptions=True)
        return self.channel_status(key)

    # ------------------------------------------------------------------
    # Broadcasts
    # ------------------------------------------------------------------

    async def broadcast(
        self,
        channel: str,
        event: str,
        payload: Any,
        compress: bool = False,
        priority: Priority | str = Priority.MEDIUM,
    ) -> None:
        """
        Send an application-level message on `channel`.

        Messages queued while a send is in progress go out by priority,
        then in submission order.
        """
        priority = Priority.coerce(priority)
        if compress:
            packed = compress_payload(payload)
            self._compression_savings += max(0, packed["originalSize"] - len(packed["data"]))
            payload = packed

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        heapq.heappush(
            self._outbox,
            (priority.rank, next(self._outbox_seq), channel, event, payload, future),
        )
        if self._sender is None or self._sender.done():
            self._sender = loop.create_task(self._drain_outbox())
        await future

    broadcast_optimized = broadcast

    async def _drain_outbox(self) -> None:
        while self._outbox:
            _, _, channel, event, payload, future = heapq.heappop(self._outbox)
            if future.done():
                continue
            try:
                await self.feed.send(channel, event, payload)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_exception(ChannelError("Realtime throttler closed"))
                raise
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(None)

    # ------------------------------------------------------------------
    # Health, stats and tuning
    # ------------------------------------------------------------------

    async def check_health(self) -> ConnectionHealth:
        """Ping the feed and fold the latency into a rolling average."""
        start = time.perf_counter()
        try:
            await self.feed.ping()
        except ChannelError as e:
            self._connected = False
            logger.warning(f"Realtime health check failed: {e}")
            return self.get_connection_health()

        self._latency = time.perf_counter() - start
        if self._average_latency == 0:
            self._average_latency = self._latency
        else:
            self._average_latency = self._average_latency * 0.9 + self._latency * 0.1
        self._connected = True
        return self.get_connection_health()

    def get_connection_health(self) -> ConnectionHealth:
        channels = self._channels.values()
        return ConnectionHealth(
            connected=self._connected,
            latency=self._latency,
            average_latency=self._average_latency,
            reconnect_count=self._reconnect_count,
            last_reconnect=self._last_reconnect,
            failed_channels=[c.key for c in channels if c.status is ChannelStatus.FAILED],
            degraded_channels=[
                c.key
                for c in channels
                if c.status in (ChannelStatus.ERROR, ChannelStatus.RECONNECTING)
            ],
        )

    def get_channel_stats(self) -> list[ChannelStats]:
        return [
            ChannelStats(
                key=channel.key,
                channel=channel.config.channel,
                status=channel.status,
                priority=channel.config.priority,
                subscribers=len(channel.subscribers),
                message_count=channel.message_count,
                dropped_count=channel.dropped_count,
                pending_updates=len(channel.pending),
                last_update=channel.last_update,
                reconnect_attempts=channel.reconnect_attempts,
            )
            for channel in self._channels.values()
        ]

    def get_analytics(self) -> RealtimeAnalytics:
        throttled = self._coalesced + self._dropped
        return RealtimeAnalytics(
            messages_received=self._received,
            messages_delivered=self._delivered,
            messages_coalesced=self._coalesced,
            messages_dropped=self._dropped,
            messages_filtered=self._filtered,
            compression_savings=self._compression_savings,
            active_channels=len(self._channels),
            throttled_rate=throttled / self._received if self._received else 0.0,
            connection_health=self.get_connection_health(),
        )

    def update_channel_priority(self, key: str, priority: Priority | str) -> bool:
        channel = self._channels.get(key)
        if channel is None:
            return False
        channel.config = replace(channel.config, priority=Priority.coerce(priority))
        return True

    def set_global_throttle(self, throttle: float | None) -> None:
        """
        Override every channel's throttle (None restores per-channel values).

        Flushes already scheduled keep their original deadline.
        """
        if throttle is not None and throttle < 0:
            raise ValueError("throttle must be non-negative")
        self._global_throttle = throttle

    async def close(self) -> None:
        """Unsubscribe every channel and stop pending broadcasts and callbacks."""
        await self.unsubscribe_all()
        if self._sender is not None and not self._sender.done():
            self._sender.cancel()
        while self._outbox:
            future = heapq.heappop(self._outbox)[-1]
            if not future.done():
                future.set_exception(ChannelError("Realtime throttler closed"))
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
