"""Shared fakes for the tripcache test suite."""

import asyncio

import pytest

from tripcache import InMemoryChangeFeed


class FakeClock:
    """Manually advanced replacement for time.time()."""

    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class SleepRecorder:
    """Async sleep stand-in that records delays instead of waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeTransport:
    """
    Transport that answers through a responder function.

    A responder that raises rejects only that payload's caller.
    """

    def __init__(self, responder=None, delay=0.0):
        self.calls = []
        self.responder = responder or (
            lambda endpoint, method, data: {"endpoint": endpoint, "data": data}
        )
        self.delay = delay

    async def request(self, endpoint, method="GET", data=None):
        result = (await self.batch(endpoint, method, [data]))[0]
        if isinstance(result, BaseException):
            raise result
        return result

    async def batch(self, endpoint, method, payloads):
        self.calls.append((endpoint, method, list(payloads)))
        await asyncio.sleep(self.delay)
        results = []
        for data in payloads:
            try:
                results.append(self.responder(endpoint, method, data))
            except Exception as e:
                results.append(e)
        return results

    @property
    def request_count(self):
        return sum(len(payloads) for _, _, payloads in self.calls)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def feed():
    return InMemoryChangeFeed()
