"""
Error taxonomy for the cache, request optimizer, and realtime throttler.

Retriable vs terminal is decided once, at the transport boundary
(see `classify_status`), and never re-derived downstream.
"""

from __future__ import annotations


class TripCacheError(Exception):
    """Base class for every error raised by tripcache."""


# ============================================================================
# Request errors
# ============================================================================


class RequestError(TripCacheError):
    """A single outbound request failed."""

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        method: str | None = None,
        status: int | None = None,
    ):
        super().__init__(message)
        self.endpoint = endpoint
        self.method = method
        self.status = status


class RetriableError(RequestError):
    """Network failure, timeout, throttling or 5xx. Worth another attempt."""


class TerminalError(RequestError):
    """Client error (4xx) or anything else that will fail the same way again."""


class RetriesExhaustedError(TerminalError):
    """A retriable request kept failing until the retry budget ran out."""

    def __init__(self, last_error: RequestError, attempts: int):
        super().__init__(
            f"Request failed after {attempts} attempts: {last_error}",
            endpoint=last_error.endpoint,
            method=last_error.method,
            status=last_error.status,
        )
        self.last_error = last_error
        self.attempts = attempts


class QueueClearedError(TerminalError):
    """A pending batch item was dropped by clear_queues() or close()."""


# ============================================================================
# Realtime errors
# ============================================================================


class ChannelError(TripCacheError):
    """Transport-level failure of a realtime channel."""

    def __init__(self, message: str, channel: str | None = None):
        super().__init__(message)
        self.channel = channel


RETRIABLE_STATUSES = frozenset({408, 425, 429})


def classify_status(status: int) -> type[RequestError]:
    """Map an HTTP status code to the error class callers should see."""
    if status in RETRIABLE_STATUSES or status >= 500:
        return RetriableError
    return TerminalError
