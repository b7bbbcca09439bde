"""
Change-feed collaborator.

The realtime throttler consumes a publish-subscribe feed keyed by
(table, filter) for row changes, or by channel name for broadcasts.
InMemoryChangeFeed is the in-process implementation used in tests and
local development.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from .errors import ChannelError

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BROADCAST = "BROADCAST"


@dataclass(frozen=True)
class ChangeEvent:
    """One notification from the feed: a row change or a broadcast message."""

    event_type: EventType
    table: str | None = None
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    event: str | None = None
    payload: Any = None
    received_at: float = field(default_factory=time.time)


EventHandler = Callable[[ChangeEvent], None]
ErrorHandler = Callable[[ChannelError], None]


class ChangeFeed(Protocol):
    """
    Protocol for change-feed platforms.

    `on_event` and `on_error` are plain callbacks invoked on the event loop.
    `subscribe` raises ChannelError if the channel cannot be opened.
    """

    async def subscribe(
        self,
        channel: str,
        table: str | None,
        filter: str | None,
        on_event: EventHandler,
        on_error: ErrorHandler,
    ) -> Any: ...

    async def unsubscribe(self, handle: Any) -> None: ...

    async def send(self, channel: str, event: str, payload: Any) -> None: ...

    async def ping(self) -> None: ...


def filter_matches(filter: str | None, record: dict[str, Any] | None) -> bool:
    """
    Evaluate a `column=eq.value` filter against a row.

    Only equality filters are understood; anything else raises ValueError.
    """
    if not filter:
        return True
    column, sep, condition = filter.partition("=")
    op, dot, expected = condition.partition(".")
    if not sep or not dot or op != "eq":
        raise ValueError(f"Unsupported filter: {filter!r}")
    if record is None or column not in record:
        return False
    return str(record[column]) == expected


@dataclass
class FeedSubscription:
    channel: str
    table: str | None
    filter: str | None
    on_event: EventHandler
    on_error: ErrorHandler
    active: bool = True


class InMemoryChangeFeed:
    """
    In-process change feed.

    Attributes:
        fail_next_subscribes: number of upcoming subscribe() calls to reject
        ping_error: when set, ping() raises it
        subscribe_calls: total subscribe() calls seen
        sent: broadcasts passed to send(), in order
    """

    def __init__(self):
        self._subscriptions: list[FeedSubscription] = []
        self.fail_next_subscribes = 0
        self.ping_error: ChannelError | None = None
        self.subscribe_calls = 0
        self.sent: list[tuple[str, str, Any]] = []

    @property
    def subscriptions(self) -> list[FeedSubscription]:
        return [sub for sub in self._subscriptions if sub.active]

    async def subscribe(
        self,
        channel: str,
        table: str | None,
        filter: str | None,
        on_event: EventHandler,
        on_error: ErrorHandler,
    ) -> FeedSubscription:
        self.subscribe_calls += 1
        await asyncio.sleep(0)
        if self.fail_next_subscribes > 0:
            self.fail_next_subscribes -= 1
            raise ChannelError(f"Could not subscribe to {channel}", channel=channel)
        subscription = FeedSubscription(channel, table, filter, on_event, on_error)
        self._subscriptions.append(subscription)
        return subscription

    async def unsubscribe(self, handle: FeedSubscription) -> None:
        handle.active = False
        if handle in self._subscriptions:
            self._subscriptions.remove(handle)

    async def send(self, channel: str, event: str, payload: Any) -> None:
        await asyncio.sleep(0)
        self.sent.append((channel, event, payload))
        message = ChangeEvent(EventType.BROADCAST, event=event, payload=payload)
        for sub in self.subscriptions:
            if sub.table is None and sub.channel == channel:
                sub.on_event(message)

    async def ping(self) -> None:
        await asyncio.sleep(0)
        if self.ping_error is not None:
            raise self.ping_error

    def publish(
        self,
        table: str,
        event_type: EventType | str,
        new: dict[str, Any] | None = None,
        old: dict[str, Any] | None = None,
    ) -> int:
        """Deliver a row change to matching subscriptions. Returns deliveries."""
        event = ChangeEvent(EventType(event_type), table=table, new=new, old=old)
        delivered = 0
        for sub in self.subscriptions:
            if sub.table != table:
                continue
            if not filter_matches(sub.filter, new if new is not None else old):
                continue
            sub.on_event(event)
            delivered += 1
        return delivered

    def fail_channel(self, channel: str, reason: str = "channel error") -> int:
        """Simulate a transport error: drop every subscription on `channel`."""
        failed = [sub for sub in self.subscriptions if sub.channel == channel]
        for sub in failed:
            sub.active = False
            self._subscriptions.remove(sub)
            sub.on_error(ChannelError(reason, channel=channel))
        return len(failed)
