"""Persisted draft records.

A draft is the shape autosave writes and restores: ``{values, timestamp,
version?}``. Timestamps are epoch milliseconds; ISO 8601 strings are accepted
when reading (naive times are taken as UTC).

The engine itself never persists anything. ``DraftStore`` describes what a
caller-provided store looks like, and ``InMemoryDraftStore`` is a reference
implementation that keeps JSON-encoded drafts under ``form_autosave_<formId>``
keys.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, Dict, Optional, Union

from dateutil import parser as date_parser
from typing_extensions import Protocol

from formflow.types import FormValues

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "form_autosave_"


def now_ms() -> float:
    """Current wall-clock time in epoch milliseconds."""
    return time.time() * 1000


def parse_timestamp(value: Union[int, float, str]) -> float:
    """Normalize a timestamp to epoch milliseconds.

    Examples:
        >>> parse_timestamp(1700000000000)
        1700000000000.0
        >>> parse_timestamp("2023-11-14T22:13:20Z")
        1700000000000.0
    """
    if isinstance(value, bool):
        raise TypeError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    parsed = date_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000


@dataclass(frozen=True)
class Draft:
    """A saved snapshot of form values.

    Attributes:
        values: The saved values
        timestamp: When the draft was written (epoch ms)
        version: Server version the draft was based on, if known
    """
    values: FormValues = field(default_factory=dict)
    timestamp: float = 0.0
    version: Optional[int] = None

    def age_ms(self, now: Optional[float] = None) -> float:
        return (now if now is not None else now_ms()) - self.timestamp

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"values": dict(self.values), "timestamp": self.timestamp}
        if self.version is not None:
            result["version"] = self.version
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Draft":
        """Parse the persisted shape.

        Raises:
            KeyError: If ``values`` or ``timestamp`` is missing
            ValueError: If the timestamp cannot be parsed
        """
        return cls(
            values=dict(data["values"]),
            timestamp=parse_timestamp(data["timestamp"]),
            version=data.get("version"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "Draft":
        return cls.from_dict(json.loads(raw))


class DraftStore(Protocol):
    """What autosave callers need from a draft store."""

    def save(self, form_id: str, values: FormValues, version: Optional[int] = None) -> Draft:
        ...

    def load(self, form_id: str) -> Optional[Draft]:
        ...

    def clear(self, form_id: str) -> None:
        ...


class InMemoryDraftStore:
    """Draft store backed by a plain dict of JSON strings.

    Examples:
        >>> store = InMemoryDraftStore()
        >>> _ = store.save("signup", {"name": "Ada"}, version=2)
        >>> store.load("signup").values
        {'name': 'Ada'}
        >>> store.has("other")
        False
    """

    def __init__(self, clock=now_ms):
        self._items: Dict[str, str] = {}
        self._clock = clock

    @staticmethod
    def key_for(form_id: str) -> str:
        return STORAGE_PREFIX + form_id

    def save(self, form_id: str, values: FormValues, version: Optional[int] = None) -> Draft:
        draft = Draft(values=dict(values), timestamp=self._clock(), version=version)
        self._items[self.key_for(form_id)] = draft.to_json()
        return draft

    def load(self, form_id: str) -> Optional[Draft]:
        """Return the stored draft, or None when absent or unreadable."""
        raw = self._items.get(self.key_for(form_id))
        if raw is None:
            return None
        try:
            return Draft.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable draft for form %s", form_id, exc_info=True)
            return None

    def clear(self, form_id: str) -> None:
        self._items.pop(self.key_for(form_id), None)

    def has(self, form_id: str) -> bool:
        return self.key_for(form_id) in self._items

    def age_ms(self, form_id: str) -> Optional[float]:
        draft = self.load(form_id)
        if draft is None:
            return None
        return draft.age_ms(self._clock())

    def clear_all(self) -> None:
        for key in [k for k in self._items if k.startswith(STORAGE_PREFIX)]:
            del self._items[key]

    def put_raw(self, form_id: str, raw: str) -> None:
        """Store an already-encoded draft (e.g. read from another storage)."""
        self._items[self.key_for(form_id)] = raw


__all__ = [
    "STORAGE_PREFIX",
    "Draft",
    "DraftStore",
    "InMemoryDraftStore",
    "now_ms",
    "parse_timestamp",
]
