"""Event stream for form state changes.

Every intent message applied by a ``FormStore`` produces a ``FormEvent``.
Events are immutable records carrying the message type and payload, so
collaborators (autosave, audit logs, UIs) can observe the form without
reaching into the reducer.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser

from formflow.types import ActionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FormEvent:
    """A single applied intent message.

    Attributes:
        event_id: Unique identifier (e.g., "evt_3f2a...")
        type: Type of the applied message
        form_id: Id of the form the message was applied to
        ts: UTC timestamp of the dispatch
        payload: The message payload in its wire shape

    Examples:
        >>> from datetime import datetime, timezone
        >>> event = FormEvent(
        ...     event_id="evt_001",
        ...     type=ActionType.SET_FIELD_VALUE,
        ...     form_id="signup",
        ...     ts=datetime(2024, 1, 1, tzinfo=timezone.utc),
        ...     payload={"fieldId": "email", "value": "ada@example.com"},
        ... )
        >>> event.to_dict()["type"]
        'SET_FIELD_VALUE'
    """
    event_id: str
    type: ActionType
    form_id: str
    ts: datetime
    payload: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if isinstance(self.type, str) and not isinstance(self.type, ActionType):
            object.__setattr__(self, "type", ActionType(self.type))

    @property
    def field_id(self) -> Optional[str]:
        """``fieldId`` of a field-scoped message, else None."""
        if not self.payload:
            return None
        return self.payload.get("fieldId")

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization.

        Returns:
            Dictionary with camelCase keys; ``ts`` as an ISO 8601 string.
        """
        result: Dict[str, Any] = {
            "eventId": self.event_id,
            "type": self.type.value,
            "formId": self.form_id,
            "ts": self.ts.isoformat(),
        }
        if self.payload is not None:
            result["payload"] = self.payload
        return result

    def to_jsonl(self) -> str:
        """Single-line JSON, suitable for appending to a JSONL log."""
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FormEvent":
        return cls(
            event_id=data["eventId"],
            type=ActionType(data["type"]),
            form_id=data["formId"],
            ts=date_parser.isoparse(data["ts"]),
            payload=data.get("payload"),
        )


EventListener = Callable[[FormEvent], None]
"""Listener callback. Called synchronously; exceptions are logged and isolated."""

Unsubscribe = Callable[[], None]


class EventEmitter:
    """Fans applied messages out to listeners keyed by message type or field.

    Delivery order for one event is: listeners on its type, listeners on its
    ``fieldId`` (any instance), then catch-all listeners. Each ``on*`` call
    hands back a callable that removes exactly that subscription.

    Examples:
        >>> emitter = EventEmitter()
        >>> stop = emitter.on_field("email", print)
        >>> emitter.listener_count()
        1
        >>> stop()
        >>> emitter.listener_count()
        0
    """

    def __init__(self):
        self._by_type: Dict[ActionType, List[EventListener]] = {}
        self._by_field: Dict[str, List[EventListener]] = {}
        self._catch_all: List[EventListener] = []

    @staticmethod
    def _subscribe(bucket: List[EventListener], listener: EventListener) -> Unsubscribe:
        bucket.append(listener)

        def unsubscribe() -> None:
            if listener in bucket:
                bucket.remove(listener)

        return unsubscribe

    def on(self, event_type: ActionType, listener: EventListener) -> Unsubscribe:
        return self._subscribe(self._by_type.setdefault(event_type, []), listener)

    def on_field(self, field_id: str, listener: EventListener) -> Unsubscribe:
        """Listen to field-scoped messages for ``field_id`` in any instance."""
        return self._subscribe(self._by_field.setdefault(field_id, []), listener)

    def on_any(self, listener: EventListener) -> Unsubscribe:
        return self._subscribe(self._catch_all, listener)

    def off(self, event_type: ActionType, listener: EventListener) -> None:
        bucket = self._by_type.get(event_type, [])
        if listener in bucket:
            bucket.remove(listener)

    def off_any(self, listener: EventListener) -> None:
        if listener in self._catch_all:
            self._catch_all.remove(listener)

    def emit(self, event: FormEvent) -> None:
        targets = list(self._by_type.get(event.type, ()))
        if event.field_id is not None:
            targets.extend(self._by_field.get(event.field_id, ()))
        targets.extend(self._catch_all)
        for listener in targets:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", event.type.value)

    def clear(self) -> None:
        self._by_type.clear()
        self._by_field.clear()
        self._catch_all.clear()

    def listener_count(self, event_type: Optional[ActionType] = None) -> int:
        """Listeners on ``event_type``, or every subscription when None."""
        if event_type is not None:
            return len(self._by_type.get(event_type, []))
        buckets = list(self._by_type.values()) + list(self._by_field.values()) + [self._catch_all]
        return sum(len(bucket) for bucket in buckets)


__all__ = [
    "FormEvent",
    "EventListener",
    "EventEmitter",
    "Unsubscribe",
]
