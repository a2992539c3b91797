"""The single owned mutable cell holding a form's state.

``FormStore.dispatch`` is the only writer. Each dispatched message is applied
through ``form_reducer`` and announced as a ``FormEvent``. A dispatch made
from inside a listener is queued and applied after the current one finishes,
so listeners always observe messages in the order they were applied.
"""

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Optional

from formflow.actions import FormAction
from formflow.diagnostics import DiagnosticSink
from formflow.events import EventEmitter, FormEvent
from formflow.reducer import form_reducer
from formflow.state import FormState, create_initial_state
from formflow.types import FormValues


class FormStore:
    """Owns the current ``FormState`` of one form session.

    Attributes:
        form_id: Id of the form, stamped on every event
        events: Emitter receiving one event per applied message

    Examples:
        >>> from formflow.actions import SetFieldValue
        >>> store = FormStore("signup", {"name": ""})
        >>> state = store.dispatch(SetFieldValue(field_id="name", value="Ada"))
        >>> store.state.values["name"]
        'Ada'
    """

    def __init__(
        self,
        form_id: str,
        initial_values: Optional[FormValues] = None,
        diagnostics: Optional[DiagnosticSink] = None,
        events: Optional[EventEmitter] = None,
    ):
        self.form_id = form_id
        self.events = events or EventEmitter()
        self._diagnostics = diagnostics
        self._state = create_initial_state(initial_values)
        self._queue: Deque[FormAction] = deque()
        self._dispatching = False

    @property
    def state(self) -> FormState:
        """Latest immutable snapshot."""
        return self._state

    def dispatch(self, action: FormAction) -> FormState:
        """Apply ``action`` and return the resulting snapshot.

        When called re-entrantly the message is queued; the returned snapshot
        is then the state as of the call, before the queued message applies.
        """
        self._queue.append(action)
        if self._dispatching:
            return self._state

        self._dispatching = True
        try:
            while self._queue:
                current = self._queue.popleft()
                next_state = form_reducer(self._state, current, self._diagnostics)
                self._state = next_state
                self.events.emit(self._event_for(current))
        finally:
            self._dispatching = False
        return self._state

    def _event_for(self, action: FormAction) -> FormEvent:
        return FormEvent(
            event_id=f"evt_{uuid.uuid4().hex[:16]}",
            type=action.type,
            form_id=self.form_id,
            ts=datetime.now(timezone.utc),
            payload=action.payload() or None,
        )


__all__ = ["FormStore"]
