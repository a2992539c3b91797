"""Fetch functions injected into async validation and options loading.

The engine never opens connections itself. Components that talk to a server
take a ``Fetch`` callable; tests pass fakes, applications pass ``httpx_fetch``
or an ``HttpxFetch`` bound to their own ``httpx.AsyncClient``.

A fetch function either returns a ``FetchResponse`` or raises
``TransportError``. Callers treat a response whose status is not 2xx the same
way as a raised error.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from formflow.errors import TransportError

DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


@dataclass(frozen=True)
class FetchRequest:
    """An outgoing JSON request.

    Attributes:
        url: Absolute or client-relative URL
        method: HTTP method
        json: Body, encoded as JSON when not None
        headers: Extra request headers
    """
    url: str
    method: str = "GET"
    json: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FetchResponse:
    """A decoded response: status code and parsed JSON body."""
    status: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


Fetch = Callable[[FetchRequest], Awaitable[FetchResponse]]


class HttpxFetch:
    """``Fetch`` backed by an ``httpx.AsyncClient``.

    Examples:
        >>> fetch = HttpxFetch()  # doctest: +SKIP
        >>> response = await fetch(FetchRequest("https://example.com/check", "POST", {"value": 1}))  # doctest: +SKIP
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        self._owns_client = client is None

    async def __call__(self, request: FetchRequest) -> FetchResponse:
        headers = {"Accept": "application/json", **request.headers}
        try:
            response = await self._client.request(
                request.method, request.url, json=request.json, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(f"HTTP {exc.response.status_code}", status=exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Request to {request.url} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise TransportError("Response is not valid JSON", status=response.status_code) from exc
        return FetchResponse(status=response.status_code, body=body)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


async def httpx_fetch(request: FetchRequest) -> FetchResponse:
    """One-shot ``Fetch`` using a short-lived client."""
    async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
        return await HttpxFetch(client)(request)


__all__ = [
    "FetchRequest",
    "FetchResponse",
    "Fetch",
    "HttpxFetch",
    "httpx_fetch",
    "DEFAULT_TIMEOUT",
]
