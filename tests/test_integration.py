"""Integration tests for FormSession.

These tests drive complete forms through the public session API:
- Conditional required fields and submission
- Sync and async field validation, including stale runs
- Repeatable sections with instance limits
- Async options for dependent selects
- Autosave, drafts and conflict resolution
- Snapshots and reset
"""

import asyncio

import pytest

from formflow import EngineConfig, FormSession, SubmitResult
from formflow.diagnostics import DiagnosticCode, DiagnosticCollector
from formflow.drafts import Draft, InMemoryDraftStore
from formflow.errors import InstanceLimitError, SchemaLoadError
from formflow.transport import FetchResponse
from formflow.types import ActionType, AutosavePhase
from formflow.validators import ValidatorRegistry


SIGNUP = {
    "id": "signup",
    "title": "Sign up",
    "sections": [
        {
            "id": "main",
            "fields": [
                {"id": "age", "type": "number",
                 "validation": [{"type": "required"}, {"type": "min", "value": 18}]},
                {"id": "guardian", "type": "text",
                 "showWhen": {"field": "age", "operator": "lessThan", "value": 18},
                 "validation": [{"type": "required"}]},
                {"id": "username", "type": "text",
                 "validation": [
                     {"type": "minLength", "value": 3},
                     {"type": "async", "value": "/api/check-username", "debounceMs": 0},
                 ]},
            ],
        },
    ],
}

HOUSEHOLD = {
    "id": "household",
    "title": "Household",
    "sections": [
        {
            "id": "members",
            "repeatable": True,
            "minInstances": 1,
            "maxInstances": 3,
            "fields": [
                {"id": "member", "type": "text", "validation": [{"type": "required"}]},
                {"id": "relation", "type": "select", "defaultValue": "other"},
            ],
        },
    ],
}


class UsernameFetch:
    """Validation endpoint that rejects 'taken' and records requests."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.requests = []

    async def __call__(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if request.json["value"] == "taken":
            return FetchResponse(200, {"valid": False, "message": "Username is taken"})
        return FetchResponse(200, {"valid": True})


class TestConditionalRequired:
    """A required field hidden by its condition never blocks submission."""

    def test_adult_submits_without_guardian(self):
        session = FormSession(SIGNUP)
        session.set_value("age", 21)
        submitted = []

        result = asyncio.run(session.submit(submitted.append))

        assert result == SubmitResult(ok=True)
        assert submitted == [{"age": 21}]
        assert session.state.submit_count == 1
        assert session.state.is_submitting is False

    def test_minor_needs_guardian(self):
        session = FormSession(SIGNUP)
        session.set_value("age", 16)

        result = asyncio.run(session.submit(lambda values: None))

        assert result.ok is False
        assert result.field_errors == {
            "age": ["Must be at least 18"],
            "guardian": ["This field is required"],
        }
        assert session.state.fields["guardian"].errors == ("This field is required",)

    def test_visibility_helpers(self):
        session = FormSession(SIGNUP)
        session.set_value("age", 30)

        assert session.visible_field_ids() == {"age", "username"}
        assert session.hidden_required_field_ids() == {"guardian"}


class TestSubmit:
    """Test the submit flow."""

    def test_invalid_submit_touches_everything_and_skips_handler(self):
        session = FormSession(SIGNUP)
        called = []

        result = asyncio.run(session.submit(called.append))

        assert result.ok is False
        assert result.field_errors == {"age": ["This field is required"]}
        assert called == []
        assert all(session.state.fields[f].touched for f in ("age", "guardian", "username"))
        assert session.state.submit_count == 0

    def test_stale_errors_are_cleared_on_failed_submit(self):
        session = FormSession(SIGNUP)
        session.set_value("age", 16)
        asyncio.run(session.submit(lambda values: None))

        session.set_value("age", None)
        asyncio.run(session.submit(lambda values: None))

        assert session.state.fields["guardian"].errors == ()
        assert session.state.fields["age"].errors == ("This field is required",)

    def test_async_handler_is_awaited(self):
        session = FormSession(SIGNUP, initial_values={"age": 40})
        seen = []

        async def handler(values):
            await asyncio.sleep(0)
            seen.append(session.state.is_submitting)

        assert asyncio.run(session.submit(handler)).ok is True
        assert seen == [True]

    def test_handler_exception_is_reported(self, caplog):
        session = FormSession(SIGNUP, initial_values={"age": 40})

        async def handler(values):
            raise RuntimeError("backend down")

        with caplog.at_level("ERROR", logger="formflow.runtime"):
            result = asyncio.run(session.submit(handler))

        assert result == SubmitResult(ok=False, error="backend down")
        assert result.to_dict() == {"ok": False, "error": "backend down"}
        assert session.state.is_submitting is False
        assert "Submit handler failed for form signup" in caplog.text

    def test_submit_events_are_emitted_in_order(self):
        session = FormSession(SIGNUP, initial_values={"age": 40})
        types = []
        session.events.on_any(lambda e: types.append(e.type))

        asyncio.run(session.submit(lambda values: None))

        assert types[-3:] == [ActionType.CLEAR_ALL_ERRORS, ActionType.SET_SUBMITTING, ActionType.SET_SUBMITTING]


class TestFieldValidation:
    """Test per-field validation through the session."""

    def test_sync_error_is_dispatched(self):
        session = FormSession(SIGNUP)
        session.set_value("age", 16)

        assert asyncio.run(session.validate_field("age")) == ["Must be at least 18"]
        assert session.state.fields["age"].errors == ("Must be at least 18",)

    def test_async_rule_runs_after_sync_rules_pass(self):
        fetch = UsernameFetch()
        session = FormSession(SIGNUP, fetch=fetch)
        session.set_value("username", "taken")

        assert asyncio.run(session.validate_field("username")) == ["Username is taken"]
        assert session.state.fields["username"].validating is False
        assert fetch.requests[0].url == "/api/check-username"

    def test_async_rule_skipped_when_sync_fails(self):
        fetch = UsernameFetch()
        session = FormSession(SIGNUP, fetch=fetch)
        session.set_value("username", "ab")

        assert asyncio.run(session.validate_field("username")) == ["Must be at least 3 characters"]
        assert fetch.requests == []

    def test_stale_run_is_discarded(self):
        fetch = UsernameFetch(delay=0.02)
        session = FormSession(SIGNUP, fetch=fetch)

        async def scenario():
            session.set_value("username", "taken")
            first = asyncio.ensure_future(session.validate_field("username"))
            await asyncio.sleep(0.005)
            session.set_value("username", "fresh")
            second = asyncio.ensure_future(session.validate_field("username"))
            return await asyncio.gather(first, second)

        first, second = asyncio.run(scenario())

        assert first is None
        assert second == []
        assert session.state.fields["username"].errors == ()

    def test_registered_async_validator(self):
        registry = ValidatorRegistry()

        async def unique(value, params, form_values):
            return "Already registered" if value in params["value"] else None

        registry.register_async("unique", unique)
        schema = {
            "id": "f", "title": "F",
            "sections": [{"id": "s", "fields": [
                {"id": "email", "type": "text",
                 "validation": [{"type": "async", "validator": "unique", "value": ["ada@example.com"]}]},
            ]}],
        }
        session = FormSession(schema, registry=registry)
        session.set_value("email", "ada@example.com")

        assert asyncio.run(session.validate_field("email")) == ["Already registered"]

    def test_async_rule_without_target_is_reported(self):
        collector = DiagnosticCollector()
        schema = {
            "id": "f", "title": "F",
            "sections": [{"id": "s", "fields": [
                {"id": "email", "type": "text", "validation": [{"type": "async", "validator": "nope"}]},
            ]}],
        }
        session = FormSession(schema, diagnostics=collector)
        session.set_value("email", "x")

        assert asyncio.run(session.validate_field("email")) == []
        assert collector.codes() == [DiagnosticCode.CUSTOM_VALIDATOR_MISSING]

    def test_async_timeout_from_config(self):
        collector = DiagnosticCollector()
        session = FormSession(
            SIGNUP,
            config=EngineConfig(async_timeout_ms=10),
            fetch=UsernameFetch(delay=0.2),
            diagnostics=collector,
        )
        session.set_value("username", "taken")

        assert asyncio.run(session.validate_field("username")) == []
        assert collector.codes() == [DiagnosticCode.ASYNC_VALIDATION_TIMEOUT]


class TestRepeatableSections:
    """Test instances through the session."""

    def test_min_instances_are_seeded_with_defaults(self):
        session = FormSession(HOUSEHOLD)

        assert len(session.state.repeatable_sections["members"]) == 1
        assert session.state.values == {"relation[0]": "other"}

    def test_add_up_to_max(self):
        session = FormSession(HOUSEHOLD)

        assert session.add_instance("members", {"member": "Grace"}) == 1
        assert session.add_instance("members") == 2
        with pytest.raises(InstanceLimitError) as exc_info:
            session.add_instance("members")

        assert exc_info.value.limit == 3
        assert session.state.values["member[1]"] == "Grace"

    def test_cannot_remove_below_min(self):
        session = FormSession(HOUSEHOLD)

        with pytest.raises(InstanceLimitError):
            session.remove_instance("members", 0)

    def test_remove_shifts_values(self):
        session = FormSession(HOUSEHOLD)
        session.set_value("member", "Ada", 0)
        session.add_instance("members", {"member": "Grace"})
        session.add_instance("members", {"member": "Linus"})

        session.remove_instance("members", 1)

        assert session.state.values["member[0]"] == "Ada"
        assert session.state.values["member[1]"] == "Linus"
        assert "member[2]" not in session.state.values

    def test_unknown_section(self):
        with pytest.raises(KeyError):
            FormSession(HOUSEHOLD).add_instance("pets")

    def test_instances_are_validated_per_key(self):
        session = FormSession(HOUSEHOLD)
        session.set_value("member", "Ada", 0)
        session.add_instance("members")

        result = asyncio.run(session.submit(lambda values: None))

        assert result.field_errors == {"member[1]": ["This field is required"]}
        assert session.state.fields["member[1]"].touched is True
        assert asyncio.run(session.validate_field("member", 1)) == ["This field is required"]

    def test_validation_in_flight_on_removed_instance_is_discarded(self):
        registry = ValidatorRegistry()

        async def available(value, params, form_values):
            if value == "slow@example.com":
                await asyncio.sleep(0.03)
            return "Address is taken" if value == "taken@example.com" else None

        registry.register_async("available", available)
        schema = {
            "id": "team", "title": "Team",
            "sections": [{"id": "members", "repeatable": True, "minInstances": 1, "fields": [
                {"id": "email", "type": "email",
                 "validation": [{"type": "async", "validator": "available"}]},
            ]}],
        }
        session = FormSession(schema, registry=registry)
        session.add_instance("members", {"email": "slow@example.com"})
        session.add_instance("members", {"email": "taken@example.com"})

        async def scenario():
            await session.validate_field("email", 2)
            pending = asyncio.ensure_future(session.validate_field("email", 1))
            await asyncio.sleep(0.005)
            session.remove_instance("members", 1)
            return await pending

        assert asyncio.run(scenario()) is None
        assert session.state.values["email[1]"] == "taken@example.com"
        assert session.state.fields["email[1]"].errors == ("Address is taken",)
        assert session.state.fields["email[1]"].validating is False

    def test_reset_reseeds_min_instances(self):
        session = FormSession(HOUSEHOLD)
        session.add_instance("members")

        session.reset()

        assert len(session.state.repeatable_sections["members"]) == 1
        assert session.state.values == {"relation[0]": "other"}


class TestAsyncOptions:
    """Test dependent selects through the session."""

    SCHEMA = {
        "id": "address",
        "title": "Address",
        "sections": [{"id": "main", "fields": [
            {"id": "country", "type": "select", "options": [{"label": "New Zealand", "value": "NZ"}]},
            {"id": "city", "type": "select",
             "asyncOptions": {"url": "/api/cities?country={value}", "dependsOn": "country"}},
        ]}],
    }

    def test_load_uses_dependency_value(self):
        requests = []

        async def fetch(request):
            requests.append(request.url)
            return FetchResponse(200, [{"value": "wlg", "label": "Wellington"}])

        session = FormSession(self.SCHEMA, fetch=fetch)

        assert asyncio.run(session.load_options("city")).options == ()
        assert requests == []

        session.set_value("country", "NZ")
        state = asyncio.run(session.load_options("city"))

        assert [o.label for o in state.options] == ["Wellington"]
        assert requests == ["/api/cities?country=NZ"]
        assert session.options_loader("city").state is state

    def test_field_without_async_options(self):
        with pytest.raises(KeyError):
            FormSession(self.SCHEMA).options_loader("country")


class TestAutosave:
    """Test autosave wired through set_value."""

    def schema(self, **autosave):
        return dict(SIGNUP, autosave=dict({"enabled": True, "debounceMs": 10}, **autosave))

    def test_set_value_triggers_debounced_save(self):
        saved = []

        async def save(values):
            saved.append(values)
            return {"version": 1}

        session = FormSession(self.schema(), save=save)

        async def scenario():
            session.set_value("age", 20)
            session.set_value("age", 21)
            await asyncio.sleep(0.05)

        asyncio.run(scenario())

        assert saved == [{"age": 21}]
        snapshot = session.snapshot()
        assert snapshot["autosavePhase"] == "idle"
        assert snapshot["autosave"]["lastSaved"] is not None

    def test_autosave_off_without_save_function(self):
        session = FormSession(self.schema())
        assert session.autosave.enabled is False

    def test_engine_config_enables_autosave(self):
        async def save(values):
            return {"version": 1}

        session = FormSession(SIGNUP, config=EngineConfig(autosave_enabled=True), save=save)
        assert session.autosave.enabled is True

    def test_conflict_and_resolution(self):
        results = [{"version": 1}, {"version": 7, "values": {"age": 50}}]

        async def save(values):
            return results.pop(0)

        session = FormSession(self.schema(), save=save)

        async def scenario():
            session.set_value("age", 20)
            assert await session.save_now() is True
            session.set_value("age", 30)
            assert await session.save_now() is False
            conflicted = session.snapshot()
            session.resolve_conflict("remote")
            session.autosave.cancel()
            return conflicted

        conflicted = asyncio.run(scenario())

        assert conflicted["autosavePhase"] == "conflict"
        assert conflicted["autosave"]["hasConflict"] is True
        assert session.state.values == {"age": 50}
        assert session.autosave.expected_version == 7

    def test_failed_save_shows_in_snapshot(self):
        async def save(values):
            raise ConnectionError("offline")

        session = FormSession(self.schema(), save=save)
        asyncio.run(session.save_now())

        assert session.snapshot()["autosaveError"] == "offline"


class TestDrafts:
    """Test draft persistence through the session."""

    def test_save_and_restore(self):
        drafts = InMemoryDraftStore()
        first = FormSession(SIGNUP, drafts=drafts)
        first.set_value("age", 33)
        draft = first.save_draft()

        second = FormSession(SIGNUP, drafts=drafts)

        assert second.restore_draft() is True
        assert second.state.values["age"] == 33
        assert second.state.autosave.draft_loaded is True
        assert second.state.autosave.last_saved == draft.timestamp

    def test_storage_key_from_schema(self):
        drafts = InMemoryDraftStore()
        session = FormSession(dict(SIGNUP, autosave={"storageKey": "signup-v2"}), drafts=drafts)
        session.save_draft()

        assert drafts.has("signup-v2") is True

    def test_restore_without_draft(self):
        assert FormSession(SIGNUP, drafts=InMemoryDraftStore()).restore_draft() is False
        assert FormSession(SIGNUP).save_draft() is None

    def test_diverging_draft_conflicts(self):
        session = FormSession(SIGNUP)
        session.set_value("age", 40)

        assert session.restore_draft(Draft({"age": 25}, timestamp=1.0)) is False
        assert session.autosave.phase == AutosavePhase.CONFLICT
        assert session.state.autosave.saved_values == {"age": 25}


class TestSessionBasics:
    """Test construction, diagnostics and snapshots."""

    def test_defaults_and_initial_values(self):
        schema = {"id": "f", "title": "F", "sections": [{"id": "s", "fields": [
            {"id": "name", "type": "text", "defaultValue": "Ada"},
            {"id": "city", "type": "text", "defaultValue": "London"},
        ]}]}
        session = FormSession(schema, initial_values={"city": "Paris"})

        assert session.state.values == {"name": "Ada", "city": "Paris"}
        assert session.state.initial_values == {"name": "Ada", "city": "Paris"}

    def test_broken_schema_raises(self):
        with pytest.raises(SchemaLoadError):
            FormSession({"id": "f", "sections": []})

    def test_unknown_operator_is_visible_and_reported(self):
        collector = DiagnosticCollector()
        schema = {"id": "f", "title": "F", "sections": [{"id": "s", "fields": [
            {"id": "a", "type": "text", "showWhen": {"field": "b", "operator": "between", "value": [1, 2]}},
        ]}]}
        session = FormSession(schema, diagnostics=collector)

        assert session.visible_field_ids() == {"a"}
        assert DiagnosticCode.UNKNOWN_OPERATOR in collector.codes()

    def test_snapshot(self):
        session = FormSession(SIGNUP)
        session.set_value("age", 12)

        snapshot = session.snapshot()

        assert snapshot["formId"] == "signup"
        assert snapshot["values"] == {"age": 12}
        assert snapshot["visibleFields"] == ["age", "guardian", "username"]
        assert snapshot["isDirty"] is True
        assert snapshot["isValid"] is True
        assert snapshot["autosavePhase"] == "idle"
        assert "autosaveError" not in snapshot

    def test_reset_to_initial_values(self):
        session = FormSession(SIGNUP, initial_values={"age": 30})
        session.set_value("age", 12)

        session.reset()

        assert session.state.values == {"age": 30}
        assert session.snapshot()["isDirty"] is False

    def test_close_is_safe_without_pending_work(self):
        session = FormSession(SIGNUP)
        session.close()
        assert session.autosave.phase == AutosavePhase.IDLE
