"""Small helpers shared by the cache, optimizer and realtime layers."""

from __future__ import annotations

import inspect
import json
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


async def call_fetcher(fetcher: Callable[[], T | Awaitable[T]]) -> T:
    """Call a zero-argument producer, awaiting it if it is async."""
    result = fetcher()
    if inspect.isawaitable(result):
        return await result
    return result  # type: ignore[return-value]


def canonical_json(data: Any) -> str:
    """Stable JSON rendering used to derive dedup keys."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
