"""
HttpTransport tests against httpx.MockTransport.
"""

import json

import httpx
import pytest

from tripcache import (
    BatchConfig,
    HttpTransport,
    RequestOptimizer,
    RetriableError,
    RetriesExhaustedError,
    TerminalError,
    classify_status,
)


def make_transport(handler):
    client = httpx.AsyncClient(
        base_url="https://api.test", transport=httpx.MockTransport(handler)
    )
    return HttpTransport(client)


class TestClassifyStatus:
    """Status classification."""

    @pytest.mark.parametrize("status", [408, 425, 429, 500, 502, 503, 504])
    def test_retriable(self, status):
        assert classify_status(status) is RetriableError

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422])
    def test_terminal(self, status):
        assert classify_status(status) is TerminalError


class TestHttpTransport:
    """Request and batch behaviour."""

    @pytest.mark.asyncio
    async def test_get_sends_params(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"trips": [1, 2]})

        transport = make_transport(handler)
        result = await transport.request("/search", "GET", {"q": "kyoto"})

        assert result == {"trips": [1, 2]}
        assert seen[0].url.path == "/search"
        assert seen[0].url.params["q"] == "kyoto"
        await transport.client.aclose()

    @pytest.mark.asyncio
    async def test_post_sends_json(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(201, json={"id": 9})

        transport = make_transport(handler)
        assert await transport.request("/wishlist", "post", {"trip": 3}) == {"id": 9}
        assert seen == [{"trip": 3}]
        await transport.client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 503])
    async def test_retriable_status(self, status):
        transport = make_transport(lambda request: httpx.Response(status))

        with pytest.raises(RetriableError) as excinfo:
            await transport.request("/trips", "GET")

        assert excinfo.value.status == status
        assert excinfo.value.endpoint == "/trips"
        await transport.client.aclose()

    @pytest.mark.asyncio
    async def test_not_found_is_terminal(self):
        transport = make_transport(lambda request: httpx.Response(404))

        with pytest.raises(TerminalError) as excinfo:
            await transport.request("/trips/404", "GET")

        assert excinfo.value.status == 404
        await transport.client.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_is_retriable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = make_transport(handler)
        with pytest.raises(RetriableError) as excinfo:
            await transport.request("/trips", "GET")

        assert isinstance(excinfo.value.__cause__, httpx.ConnectError)
        await transport.client.aclose()

    @pytest.mark.asyncio
    async def test_empty_and_text_bodies(self):
        def handler(request):
            if request.url.path == "/empty":
                return httpx.Response(204)
            return httpx.Response(200, text="pong")

        transport = make_transport(handler)
        assert await transport.request("/empty", "DELETE") is None
        assert await transport.request("/ping", "GET") == "pong"
        await transport.client.aclose()

    @pytest.mark.asyncio
    async def test_get_batch_returns_per_item_errors(self):
        def handler(request):
            trip_id = request.url.params["id"]
            if trip_id == "2":
                return httpx.Response(404)
            return httpx.Response(200, json={"id": int(trip_id)})

        transport = make_transport(handler)
        results = await transport.batch("/trips", "GET", [{"id": 1}, {"id": 2}, {"id": 3}])

        assert results[0] == {"id": 1}
        assert isinstance(results[1], TerminalError)
        assert results[2] == {"id": 3}
        await transport.client.aclose()

    @pytest.mark.asyncio
    async def test_mutation_batch_runs_in_order(self):
        order = []

        def handler(request):
            order.append(json.loads(request.content)["n"])
            return httpx.Response(200, json={"ok": True})

        transport = make_transport(handler)
        results = await transport.batch("/events", "POST", [{"n": i} for i in range(4)])

        assert order == [0, 1, 2, 3]
        assert results == [{"ok": True}] * 4
        await transport.client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_is_closed(self):
        transport = HttpTransport(base_url="https://api.test")
        await transport.aclose()
        assert transport.client.is_closed


class TestOptimizerOverHttp:
    """RequestOptimizer in front of a real HttpTransport."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self, sleep_recorder):
        responses = iter([httpx.Response(503), httpx.Response(429), httpx.Response(200, json=[1])])
        transport = make_transport(lambda request: next(responses))
        optimizer = RequestOptimizer(
            transport, BatchConfig(batch_timeout=0, retry_delay=0.25), sleep=sleep_recorder
        )

        assert await optimizer.optimized_request("/trips") == [1]
        assert sleep_recorder.delays == pytest.approx([0.25, 0.5])
        assert optimizer.get_stats().retried_count == 2
        await transport.client.aclose()

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, sleep_recorder):
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            return httpx.Response(502)

        transport = make_transport(handler)
        optimizer = RequestOptimizer(
            transport, BatchConfig(batch_timeout=0, max_retries=2), sleep=sleep_recorder
        )

        with pytest.raises(RetriesExhaustedError) as excinfo:
            await optimizer.optimized_request("/trips")

        assert calls["count"] == 3
        assert excinfo.value.status == 502
        await transport.client.aclose()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
