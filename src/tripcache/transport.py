"""
Transport boundary for the request optimizer.

This is the only place where a raw failure (exception or HTTP status) is
classified as RetriableError or TerminalError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import httpx

from .errors import RequestError, RetriableError, classify_status

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """
    Protocol for outbound transports.

    `batch` must return one item per payload, in order. An item that is an
    exception instance rejects only the caller at that position.
    """

    async def request(self, endpoint: str, method: str, data: Any = None) -> Any: ...

    async def batch(
        self, endpoint: str, method: str, payloads: list[Any]
    ) -> list[Any]: ...


class HttpTransport:
    """
    httpx-backed transport.

    GET batches go out concurrently; mutation batches run one at a time
    so the server sees them in submission order.

    Example:
        async with httpx.AsyncClient(base_url="https://api.example.com") as client:
            transport = HttpTransport(client)
            trip = await transport.request("/trips/42", "GET")
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        base_url: str = "",
        timeout: float = 10.0,
    ):
        self.client = (
            client
            if client is not None
            else httpx.AsyncClient(base_url=base_url, timeout=timeout)
        )
        self._owns_client = client is None

    async def request(self, endpoint: str, method: str = "GET", data: Any = None) -> Any:
        method = method.upper()
        kwargs: dict[str, Any] = {}
        if data is not None:
            kwargs["params" if method == "GET" else "json"] = data

        try:
            response = await self.client.request(method, endpoint, **kwargs)
        except httpx.TransportError as e:
            raise RetriableError(
                f"{method} {endpoint} failed: {e}", endpoint=endpoint, method=method
            ) from e

        if response.is_error:
            error_cls = classify_status(response.status_code)
            raise error_cls(
                f"{method} {endpoint} returned {response.status_code}",
                endpoint=endpoint,
                method=method,
                status=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def batch(self, endpoint: str, method: str, payloads: list[Any]) -> list[Any]:
        if method.upper() == "GET":
            results = await asyncio.gather(
                *(self.request(endpoint, method, payload) for payload in payloads),
                return_exceptions=True,
            )
            return list(results)

        results: list[Any] = []
        for payload in payloads:
            try:
                results.append(await self.request(endpoint, method, payload))
            except RequestError as e:
                results.append(e)
        return results

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._owns_client:
            await self.client.aclose()
