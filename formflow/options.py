"""Async option loading for select fields, including dependent dropdowns.

A select with ``asyncOptions`` fetches its options from a URL. When the
options depend on another field, the URL's ``{value}`` placeholder is
replaced by that field's (URL-encoded) value, and nothing is fetched while
the dependency is empty.

Response bodies are mapped to ``SelectOption`` values: ``responsePath``
picks a nested list out of the body, then each item's ``valueKey`` and
``labelKey`` (default ``value``/``label``, falling back to ``id``/``name``)
become the option. Failures never raise; they surface as
``OptionsState.error``.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import quote

from formflow.async_validation import Debouncer
from formflow.drafts import now_ms
from formflow.errors import TransportError
from formflow.resolver import get_nested_value, is_empty
from formflow.schema import AsyncOptionsConfig, SelectOption
from formflow.transport import Fetch, FetchRequest, httpx_fetch
from formflow.types import FieldValue

logger = logging.getLogger(__name__)

LOAD_ERROR_MESSAGE = "Failed to load options"

# Characters encodeURIComponent leaves alone
_URI_COMPONENT_SAFE = "-_.!~*'()"


@dataclass(frozen=True)
class OptionsState:
    """Snapshot of an options loader.

    Attributes:
        options: Loaded options (empty while loading or after a failure)
        is_loading: Whether a request is in flight
        error: ``"Failed to load options"`` after a failure, else None
    """
    options: Tuple[SelectOption, ...] = ()
    is_loading: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "options": [option.to_dict() for option in self.options],
            "isLoading": self.is_loading,
            "error": self.error,
        }


def build_options_url(template: str, dependency_value: FieldValue) -> str:
    """Substitute the URL-encoded dependency value for ``{value}``.

    Examples:
        >>> build_options_url("/api/cities?country={value}", "New Zealand")
        '/api/cities?country=New%20Zealand'
    """
    if dependency_value is None:
        return template
    return template.replace("{value}", quote(str(dependency_value), safe=_URI_COMPONENT_SAFE))


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


def map_options(body: Any, config: AsyncOptionsConfig) -> List[SelectOption]:
    """Map a response body onto options; anything but a list maps to []."""
    items = get_nested_value(body, config.response_path) if config.response_path else body
    if not isinstance(items, list):
        return []

    options: List[SelectOption] = []
    for item in items:
        if isinstance(item, dict):
            value = item.get(config.value_key)
            if value is None:
                value = item.get("id")
            label = item.get(config.label_key)
            if label is None:
                label = item.get("name")
            options.append(SelectOption(label=_as_text(label), value=_as_text(value)))
        else:
            options.append(SelectOption(label=_as_text(item), value=_as_text(item)))
    return options


class OptionsLoader:
    """Loads options for one select field.

    Each ``load`` supersedes the previous one: a superseded load's request is
    cancelled, its result is discarded and the call returns None.

    Examples:
        >>> from formflow.transport import FetchResponse
        >>> async def fake_fetch(request):
        ...     return FetchResponse(200, [{"id": "wlg", "name": "Wellington"}])
        >>> loader = OptionsLoader(AsyncOptionsConfig(url="/api/cities?country={value}",
        ...                                           depends_on=("country",)), fake_fetch)
        >>> import asyncio
        >>> asyncio.run(loader.load("NZ")).options
        (SelectOption(label='Wellington', value='wlg', disabled=False),)
    """

    _KEY = "options"

    def __init__(
        self,
        config: Union[AsyncOptionsConfig, Dict[str, Any]],
        fetch: Optional[Fetch] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self.config = config if isinstance(config, AsyncOptionsConfig) else AsyncOptionsConfig.from_dict(config)
        self._fetch = fetch or httpx_fetch
        self._clock = clock
        self._state = OptionsState()
        self._debouncer = Debouncer()
        self._generation = 0
        self._cache: Dict[str, Tuple[float, Tuple[SelectOption, ...]]] = {}

    @property
    def state(self) -> OptionsState:
        return self._state

    def cancel(self) -> None:
        """Cancel an in-flight load; it resolves to None."""
        self._generation += 1
        if self._debouncer.cancel(self._KEY):
            self._state = replace(self._state, is_loading=False)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def load(self, dependency_value: FieldValue = None) -> Optional[OptionsState]:
        """Fetch options for the current dependency value.

        Args:
            dependency_value: Value of the field named in ``depends_on``

        Returns:
            The new state, or None when superseded by a later call
        """
        self._generation += 1
        generation = self._generation
        self._debouncer.cancel(self._KEY)

        if self.config.depends_on and is_empty(dependency_value):
            self._state = OptionsState()
            return self._state

        url = build_options_url(self.config.url, dependency_value if self.config.depends_on else None)
        cached = self._cache.get(url)
        if cached is not None and self._clock() - cached[0] < self.config.cache_duration:
            self._state = OptionsState(options=cached[1])
            return self._state

        self._state = OptionsState(options=self._state.options, is_loading=True)
        task = self._debouncer.schedule(self._KEY, 0, lambda: self._fetch_options(url))
        try:
            options = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                return None
            raise
        if generation != self._generation:
            return None

        if options is None:
            self._state = OptionsState(error=LOAD_ERROR_MESSAGE)
        else:
            if self.config.cache_duration > 0:
                self._cache[url] = (self._clock(), options)
            self._state = OptionsState(options=options)
        return self._state

    async def _fetch_options(self, url: str) -> Optional[Tuple[SelectOption, ...]]:
        try:
            response = await self._fetch(FetchRequest(url=url, method=self.config.method))
        except TransportError as exc:
            logger.error("Failed to fetch options from %s: %s", url, exc)
            return None
        except Exception:
            logger.exception("Failed to fetch options from %s", url)
            return None
        if not response.ok:
            logger.error("Failed to fetch options from %s: HTTP %s", url, response.status)
            return None
        return tuple(map_options(response.body, self.config))


__all__ = [
    "LOAD_ERROR_MESSAGE",
    "OptionsLoader",
    "OptionsState",
    "build_options_url",
    "map_options",
]
