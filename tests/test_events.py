"""Unit tests for form events, the event emitter and the form store.

Tests cover:
- FormEvent serialization (dict, JSONL, ISO timestamps)
- EventEmitter subscriptions, ordering and listener isolation
- FormStore dispatch, event stamping and re-entrant ordering
"""

import json
from datetime import datetime, timezone

import pytest

from formflow.actions import SetFieldTouched, SetFieldValue, SetSubmitting
from formflow.diagnostics import DiagnosticCode, DiagnosticCollector
from formflow.events import EventEmitter, FormEvent
from formflow.store import FormStore
from formflow.types import ActionType


@pytest.fixture
def event():
    return FormEvent(
        event_id="evt_001",
        type=ActionType.SET_FIELD_VALUE,
        form_id="signup",
        ts=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        payload={"fieldId": "email", "value": "ada@example.com"},
    )


class TestFormEvent:
    """Test event records."""

    def test_to_dict(self, event):
        assert event.to_dict() == {
            "eventId": "evt_001",
            "type": "SET_FIELD_VALUE",
            "formId": "signup",
            "ts": "2024-01-15T10:30:00+00:00",
            "payload": {"fieldId": "email", "value": "ada@example.com"},
        }

    def test_payload_omitted_when_none(self, event):
        bare = FormEvent("evt_002", ActionType.CLEAR_ALL_ERRORS, "signup", event.ts)
        assert "payload" not in bare.to_dict()

    def test_from_dict_parses_timestamp(self, event):
        restored = FormEvent.from_dict(event.to_dict())

        assert restored == event
        assert restored.ts.tzinfo is not None

    def test_from_dict_accepts_zulu_suffix(self, event):
        data = dict(event.to_dict(), ts="2024-01-15T10:30:00Z")
        assert FormEvent.from_dict(data).ts == event.ts

    def test_to_jsonl_is_single_line(self, event):
        line = event.to_jsonl()

        assert "\n" not in line
        assert json.loads(line)["eventId"] == "evt_001"

    def test_field_id(self, event):
        assert event.field_id == "email"
        assert FormEvent("evt_002", ActionType.RESET_FORM, "signup", event.ts).field_id is None

    def test_string_type_is_coerced(self, event):
        coerced = FormEvent("evt_003", "SET_SUBMITTING", "signup", event.ts)
        assert coerced.type is ActionType.SET_SUBMITTING


class TestEventEmitter:
    """Test subscriptions and dispatch."""

    def test_type_listeners_before_wildcards(self, event):
        emitter = EventEmitter()
        order = []
        emitter.on_any(lambda e: order.append("any"))
        emitter.on(ActionType.SET_FIELD_VALUE, lambda e: order.append("typed"))

        emitter.emit(event)
        assert order == ["typed", "any"]

    def test_other_types_are_not_delivered(self, event):
        emitter = EventEmitter()
        seen = []
        emitter.on(ActionType.SET_SUBMITTING, seen.append)

        emitter.emit(event)
        assert seen == []

    def test_off(self, event):
        emitter = EventEmitter()
        seen = []
        emitter.on(ActionType.SET_FIELD_VALUE, seen.append)
        emitter.on_any(seen.append)
        emitter.off(ActionType.SET_FIELD_VALUE, seen.append)
        emitter.off_any(seen.append)
        emitter.off(ActionType.SET_VALUES, seen.append)

        emitter.emit(event)
        assert seen == []
        assert emitter.listener_count() == 0

    def test_field_listeners_between_type_and_catch_all(self, event):
        emitter = EventEmitter()
        order = []
        emitter.on_any(lambda e: order.append("any"))
        emitter.on_field("email", lambda e: order.append("field"))
        emitter.on_field("name", lambda e: order.append("other field"))
        emitter.on(ActionType.SET_FIELD_VALUE, lambda e: order.append("typed"))

        emitter.emit(event)
        assert order == ["typed", "field", "any"]

    def test_form_level_messages_skip_field_listeners(self, event):
        emitter = EventEmitter()
        seen = []
        emitter.on_field("email", seen.append)

        emitter.emit(FormEvent("evt_002", ActionType.SET_SUBMITTING, "signup", event.ts, {"isSubmitting": True}))
        assert seen == []

    def test_unsubscribe_handle(self, event):
        emitter = EventEmitter()
        seen = []
        stop_field = emitter.on_field("email", seen.append)
        stop_any = emitter.on_any(seen.append)

        stop_field()
        stop_any()
        stop_any()

        emitter.emit(event)
        assert seen == []
        assert emitter.listener_count() == 0

    def test_listener_count_and_clear(self):
        emitter = EventEmitter()
        emitter.on(ActionType.SET_FIELD_VALUE, print)
        emitter.on(ActionType.SET_FIELD_VALUE, repr)
        emitter.on_any(print)

        assert emitter.listener_count(ActionType.SET_FIELD_VALUE) == 2
        assert emitter.listener_count() == 3

        emitter.clear()
        assert emitter.listener_count() == 0

    def test_failing_listener_is_logged_and_isolated(self, event, caplog):
        emitter = EventEmitter()
        seen = []

        def broken(e):
            raise RuntimeError("listener bug")

        emitter.on(ActionType.SET_FIELD_VALUE, broken)
        emitter.on_any(seen.append)

        with caplog.at_level("ERROR", logger="formflow.events"):
            emitter.emit(event)

        assert seen == [event]
        assert "Event listener failed for SET_FIELD_VALUE" in caplog.text


class TestFormStore:
    """Test the state cell and its events."""

    def test_dispatch_returns_new_state(self):
        store = FormStore("signup", {"name": ""})
        state = store.dispatch(SetFieldValue("name", "Ada"))

        assert state is store.state
        assert state.values["name"] == "Ada"

    def test_every_dispatch_emits_event(self):
        store = FormStore("signup")
        seen = []
        store.events.on_any(seen.append)

        store.dispatch(SetFieldValue("name", "Ada"))
        store.dispatch(SetSubmitting(True))

        assert [e.type for e in seen] == [ActionType.SET_FIELD_VALUE, ActionType.SET_SUBMITTING]
        assert seen[0].form_id == "signup"
        assert seen[0].payload == {"fieldId": "name", "value": "Ada"}
        assert seen[0].event_id.startswith("evt_")
        assert seen[0].event_id != seen[1].event_id

    def test_listener_sees_applied_state(self):
        store = FormStore("signup")
        observed = []
        store.events.on(ActionType.SET_FIELD_VALUE, lambda e: observed.append(store.state.values.get("name")))

        store.dispatch(SetFieldValue("name", "Ada"))
        assert observed == ["Ada"]

    def test_reentrant_dispatch_is_queued(self):
        store = FormStore("signup")
        order = []

        def touch_after_change(e):
            order.append(("listener", store.state.fields["name"].touched))
            store.dispatch(SetFieldTouched("name"))
            order.append(("after", store.state.fields["name"].touched))

        store.events.on(ActionType.SET_FIELD_VALUE, touch_after_change)
        store.events.on_any(lambda e: order.append(e.type))

        store.dispatch(SetFieldValue("name", "Ada"))

        assert order == [
            ("listener", False),
            ("after", False),
            ActionType.SET_FIELD_VALUE,
            ActionType.SET_FIELD_TOUCHED,
        ]
        assert store.state.fields["name"].touched is True

    def test_unknown_message_is_reported(self):
        collector = DiagnosticCollector()
        store = FormStore("signup", diagnostics=collector)
        before = store.state

        class Bogus:
            type = ActionType.SET_VALUES

            def payload(self):
                return {}

        assert store.dispatch(Bogus()) is before
        assert collector.codes() == [DiagnosticCode.UNKNOWN_ACTION]
