"""Debounced server-side validation.

An ``AsyncValidator`` POSTs ``{"value": value}`` to a URL and expects
``{"valid": bool, "message"?: str}`` back. Calls are debounced: a call made
while an earlier one is still waiting (or in flight) supersedes it, and the
superseded call resolves to ``None`` without its result ever being used.

Async validation fails open. A transport error, a non-2xx response, a
malformed body or an exceeded ``timeout_ms`` all resolve to ``None`` (no
error) and are reported to the diagnostics sink.

Usage:
    >>> validator = create_async_validator("https://api.example.com/check-username")  # doctest: +SKIP
    >>> await validator.validate("ada")  # doctest: +SKIP
    'Username is taken'
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from jsonschema import Draft7Validator

from formflow.diagnostics import DiagnosticCode, DiagnosticSink, report
from formflow.errors import TransportError
from formflow.transport import Fetch, FetchRequest, httpx_fetch
from formflow.types import FieldValue

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DEBOUNCE_MS = 300

VALIDATION_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "valid": {"type": "boolean"},
        "message": {"type": ["string", "null"]},
    },
    "required": ["valid"],
}

_response_validator = Draft7Validator(VALIDATION_RESPONSE_SCHEMA)


class Debouncer:
    """Cancellable delayed tasks keyed by target id.

    Scheduling a task for a key cancels whatever was pending for that key
    first, whether it is still sleeping or already running.

    Examples:
        >>> async def main():
        ...     debouncer = Debouncer()
        ...     first = debouncer.schedule("email", 10, lambda: asyncio.sleep(0, "a"))
        ...     second = debouncer.schedule("email", 10, lambda: asyncio.sleep(0, "b"))
        ...     return await second
        >>> asyncio.run(main())
        'b'
    """

    def __init__(self):
        self._tasks: Dict[str, "asyncio.Task[Any]"] = {}

    def schedule(self, key: str, delay_ms: float, factory: Callable[[], Awaitable[T]]) -> "asyncio.Task[T]":
        """Run ``factory()`` after ``delay_ms`` unless superseded or cancelled.

        Must be called from a running event loop.
        """
        self.cancel(key)

        async def run() -> T:
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)
            return await factory()

        task = asyncio.ensure_future(run())
        self._tasks[key] = task
        task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return task

    def _forget(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def cancel(self, key: str) -> bool:
        """Cancel the pending task for ``key``. Returns whether one existed.

        A task never cancels itself; calling this from inside the task only
        forgets it.
        """
        task = self._tasks.pop(key, None)
        if task is None or task.done() or task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    def is_pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()


class AsyncValidator:
    """Debounced validator bound to one URL.

    Attributes:
        url: Validation endpoint
        debounce_ms: Quiet period before the request is sent
        timeout_ms: Optional ceiling on the request itself (no ceiling when None)
    """

    _KEY = "validate"

    def __init__(
        self,
        url: str,
        debounce_ms: float = DEFAULT_DEBOUNCE_MS,
        fetch: Optional[Fetch] = None,
        timeout_ms: Optional[float] = None,
        diagnostics: Optional[DiagnosticSink] = None,
    ):
        self.url = url
        self.debounce_ms = debounce_ms
        self.timeout_ms = timeout_ms
        self._fetch = fetch or httpx_fetch
        self._diagnostics = diagnostics
        self._debouncer = Debouncer()
        self._generation = 0

    async def validate(self, value: FieldValue) -> Optional[str]:
        """Validate ``value`` on the server.

        Returns:
            The server's message when invalid, otherwise None. Also None when
            this call was superseded or cancelled, or when the request failed.
        """
        self._generation += 1
        generation = self._generation
        task = self._debouncer.schedule(self._KEY, self.debounce_ms, lambda: self._request(value))
        try:
            result = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                return None
            raise
        return result if generation == self._generation else None

    def cancel(self) -> None:
        """Cancel any pending call; it resolves to None."""
        self._generation += 1
        self._debouncer.cancel(self._KEY)

    async def _request(self, value: FieldValue) -> Optional[str]:
        request = FetchRequest(
            url=self.url,
            method="POST",
            json={"value": value},
            headers={"Content-Type": "application/json"},
        )
        try:
            if self.timeout_ms is None:
                response = await self._fetch(request)
            else:
                response = await asyncio.wait_for(self._fetch(request), self.timeout_ms / 1000)
        except asyncio.TimeoutError:
            report(
                self._diagnostics,
                DiagnosticCode.ASYNC_VALIDATION_TIMEOUT,
                f"Async validation timed out after {self.timeout_ms}ms",
                url=self.url,
            )
            return None
        except TransportError as exc:
            return self._fail_open(str(exc), exc.status)
        except Exception as exc:
            logger.warning("Async validation fetch for %s raised %r", self.url, exc, exc_info=True)
            return self._fail_open(str(exc) or type(exc).__name__, None)

        if not response.ok:
            return self._fail_open("Validation request failed", response.status)

        errors = sorted(_response_validator.iter_errors(response.body), key=lambda e: list(e.path))
        if errors:
            return self._fail_open(f"Malformed validation response: {errors[0].message}", response.status)

        body = response.body
        logger.debug("Async validation %s -> %s", self.url, body)
        if body["valid"]:
            return None
        return body.get("message")

    def _fail_open(self, reason: str, status: Optional[int]) -> None:
        report(
            self._diagnostics,
            DiagnosticCode.ASYNC_VALIDATION_FAILED,
            f"Async validation error: {reason}",
            url=self.url,
            status=status,
        )
        return None


def create_async_validator(
    url: str,
    debounce_ms: float = DEFAULT_DEBOUNCE_MS,
    fetch: Optional[Fetch] = None,
    timeout_ms: Optional[float] = None,
    diagnostics: Optional[DiagnosticSink] = None,
) -> AsyncValidator:
    """Create a debounced validator for ``url``.

    Args:
        url: Endpoint receiving ``{"value": ...}``
        debounce_ms: Quiet period in milliseconds (default 300)
        fetch: Injected fetch function (``httpx_fetch`` when None)
        timeout_ms: Optional request ceiling
        diagnostics: Sink for fail-open reports

    Returns:
        AsyncValidator with ``validate`` and ``cancel``
    """
    return AsyncValidator(url, debounce_ms, fetch, timeout_ms, diagnostics)


__all__ = [
    "AsyncValidator",
    "Debouncer",
    "VALIDATION_RESPONSE_SCHEMA",
    "create_async_validator",
]
