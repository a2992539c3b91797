"""Unit tests for validators and the synchronous validation pipeline.

Tests cover:
- Built-in validators and their fallback messages
- Fail-fast rule ordering and message overrides
- Custom validators from a registry
- Fail-open handling of unknown rules, missing validators and bad patterns
- Form-level validation (hidden fields, touched-only, repeatable instances)
- FieldErrorDetail flattening
"""

import pytest

from formflow.diagnostics import DiagnosticCode, DiagnosticCollector
from formflow.errors import FieldErrorDetail
from formflow.schema import load_schema
from formflow.validation import ValidationEngine, validate_field_sync, validate_form_sync
from formflow.validators import ValidatorRegistry, get_builtin_validator


def check(value, *rules, form_values=None, registry=None, diagnostics=None):
    return validate_field_sync("f", value, list(rules), form_values or {}, registry, diagnostics)


class TestRequired:
    """Test the required validator."""

    @pytest.mark.parametrize("value", [None, "", "   ", False])
    def test_missing_values_fail(self, value):
        result = check(value, {"type": "required"})

        assert result.is_valid is False
        assert result.errors == ["This field is required"]

    @pytest.mark.parametrize("value", [0, "x", True, ["a"]])
    def test_present_values_pass(self, value):
        """0 is a value, not an absence."""
        assert check(value, {"type": "required"}).is_valid is True

    def test_custom_message(self):
        result = check("", {"type": "required", "message": "Name please"})
        assert result.errors == ["Name please"]


class TestLengthAndRange:
    """Test minLength / maxLength / min / max."""

    def test_min_length(self):
        assert check("ab", {"type": "minLength", "value": 3}).errors == ["Must be at least 3 characters"]
        assert check("abc", {"type": "minLength", "value": 3}).is_valid is True

    def test_max_length(self):
        assert check("abcd", {"type": "maxLength", "value": 3}).errors == ["Must be at most 3 characters"]

    def test_length_ignores_numbers(self):
        assert check(12, {"type": "minLength", "value": 5}).is_valid is True

    def test_min(self):
        assert check(10, {"type": "min", "value": 18}).errors == ["Must be at least 18"]
        assert check(18, {"type": "min", "value": 18}).is_valid is True

    def test_max(self):
        assert check(120, {"type": "max", "value": 99}).errors == ["Must be at most 99"]

    def test_range_ignores_strings_and_bools(self):
        assert check("5", {"type": "min", "value": 18}).is_valid is True
        assert check(True, {"type": "max", "value": 0}).is_valid is True


class TestFormatValidators:
    """Test pattern / email / phone / url."""

    def test_pattern(self):
        assert check("abc", {"type": "pattern", "value": "^[a-z]+$"}).is_valid is True
        assert check("ab1", {"type": "pattern", "value": "^[a-z]+$"}).errors == ["Invalid format"]

    def test_email(self):
        assert check("ada@example.com", {"type": "email"}).is_valid is True
        assert check("nope", {"type": "email"}).errors == ["Please enter a valid email address"]

    def test_phone(self):
        assert check("+1 (555) 123-4567", {"type": "phone"}).is_valid is True
        assert check("call me", {"type": "phone"}).errors == ["Please enter a valid phone number"]

    def test_url(self):
        assert check("https://example.com/path", {"type": "url"}).is_valid is True
        assert check("example.com", {"type": "url"}).errors == ["Please enter a valid URL"]

    def test_formats_skip_empty_strings(self):
        """Emptiness is the required rule's job."""
        for rule in ("email", "phone", "url"):
            assert check("", {"type": rule}).is_valid is True

    def test_unknown_builtin_lookup(self):
        assert get_builtin_validator("iban") is None


class TestFailFast:
    """Rules run in order and stop at the first failure."""

    def test_first_failure_wins(self):
        result = check(
            "ab1",
            {"type": "minLength", "value": 5, "message": "Too short"},
            {"type": "pattern", "value": "^[a-z]+$", "message": "Letters only"},
        )

        assert result.errors == ["Too short"]
        assert result.failed_rule.type == "minLength"

    def test_second_rule_runs_when_first_passes(self):
        result = check(
            "abc1",
            {"type": "minLength", "value": 3},
            {"type": "pattern", "value": "^[a-z]+$", "message": "Letters only"},
        )
        assert result.errors == ["Letters only"]

    def test_async_rules_are_skipped(self):
        result = check("taken", {"type": "async", "value": "/api/check"})
        assert result.is_valid is True

    def test_result_to_dict(self):
        data = check("", {"type": "required"}).to_dict()

        assert data["fieldId"] == "f"
        assert data["isValid"] is False
        assert data["failedRule"] == {"type": "required"}


class TestCustomValidators:
    """Test registry-backed custom rules."""

    def test_registered_validator_runs(self):
        registry = ValidatorRegistry()

        @registry.validator("even")
        def even(value, params, form_values):
            return None if value % 2 == 0 else "Must be even"

        assert check(3, {"type": "custom", "validator": "even"}, registry=registry).errors == ["Must be even"]
        assert check(4, {"type": "custom", "validator": "even"}, registry=registry).is_valid is True

    def test_validator_receives_params_and_form_values(self):
        registry = ValidatorRegistry()
        seen = {}

        def matches(value, params, form_values):
            seen.update(params=dict(params), form_values=dict(form_values))
            return None if value == form_values.get(params["other"]) else "Does not match"

        registry.register("matches", matches)
        result = check(
            "secret",
            {"type": "custom", "value": "matches", "params": {"other": "password"}},
            form_values={"password": "secret"},
            registry=registry,
        )

        assert result.is_valid is True
        assert seen["params"]["other"] == "password"
        assert seen["form_values"] == {"password": "secret"}

    def test_missing_validator_passes_and_reports(self):
        collector = DiagnosticCollector()
        result = check("x", {"type": "custom", "validator": "nope"}, diagnostics=collector)

        assert result.is_valid is True
        assert collector.codes() == [DiagnosticCode.CUSTOM_VALIDATOR_MISSING]
        assert collector.diagnostics[0].context["validator"] == "nope"

    def test_registry_contains(self):
        registry = ValidatorRegistry()
        registry.register_async("unique", lambda value, params, form_values: None)

        assert "unique" in registry
        assert registry.get("unique") is None
        assert registry.get_async("unique") is not None


class TestFailOpenRules:
    """Schema anomalies pass the field and emit diagnostics."""

    def test_unknown_rule_type(self):
        collector = DiagnosticCollector()
        result = check("x", {"type": "iban"}, diagnostics=collector)

        assert result.is_valid is True
        assert collector.codes() == [DiagnosticCode.UNKNOWN_RULE]

    def test_invalid_pattern(self):
        collector = DiagnosticCollector()
        result = check("abc", {"type": "pattern", "value": "[unclosed"}, diagnostics=collector)

        assert result.is_valid is True
        assert collector.codes() == [DiagnosticCode.INVALID_PATTERN]

    def test_later_rules_still_run_after_anomaly(self):
        collector = DiagnosticCollector()
        result = check("", {"type": "iban"}, {"type": "required"}, diagnostics=collector)

        assert result.errors == ["This field is required"]


class TestValidateFormSync:
    """Test the form-level pass over plain field dicts."""

    FIELDS = [
        {"id": "name", "validation": [{"type": "required"}]},
        {"id": "email", "validation": [{"type": "required"}, {"type": "email"}]},
        {"id": "notes"},
    ]

    def test_collects_errors_per_field(self):
        result = validate_form_sync(self.FIELDS, {"email": "bad"})

        assert result.is_valid is False
        assert result.field_errors == {
            "name": ["This field is required"],
            "email": ["Please enter a valid email address"],
        }
        assert result.error_count == 2

    def test_hidden_fields_are_skipped(self):
        result = validate_form_sync(self.FIELDS, {"email": "ada@example.com"}, hidden_fields=["name"])
        assert result.is_valid is True

    def test_touched_only(self):
        result = validate_form_sync(self.FIELDS, {}, touched_only=True, touched_fields=["email"])
        assert list(result.field_errors) == ["email"]

    def test_touched_only_with_nothing_touched(self):
        assert validate_form_sync(self.FIELDS, {}, touched_only=True).is_valid is True

    def test_to_field_errors(self):
        details = validate_form_sync(self.FIELDS, {"email": "bad"}).to_field_errors()

        assert details == [
            FieldErrorDetail(path="name", code="required", message="This field is required"),
            FieldErrorDetail(path="email", code="email", message="Please enter a valid email address"),
        ]

    def test_to_dict(self):
        data = validate_form_sync(self.FIELDS, {}).to_dict()

        assert data["isValid"] is False
        assert data["errorCount"] == 2


class TestValidationEngine:
    """Test validation bound to a schema."""

    @pytest.fixture
    def schema(self):
        return load_schema({
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
                    ],
                },
                {
                    "id": "people",
                    "repeatable": True,
                    "fields": [
                        {"id": "person", "type": "text", "validation": [{"type": "required"}]},
                        {"id": "nickname", "type": "text",
                         "showWhen": {"field": "person", "operator": "equals", "value": "Bob"},
                         "validation": [{"type": "required"}]},
                    ],
                },
            ],
        })

    def test_hidden_required_field_is_skipped(self, schema):
        result = ValidationEngine(schema).validate({"age": 21})
        assert result.is_valid is True

    def test_visible_required_field_is_checked(self, schema):
        result = ValidationEngine(schema).validate({"age": 12})
        assert result.field_errors == {"age": ["Must be at least 18"], "guardian": ["This field is required"]}

    def test_repeatable_instances_use_scoped_keys(self, schema):
        result = ValidationEngine(schema).validate(
            {"age": 30, "person[0]": "Ada"}, instance_counts={"people": 2}
        )
        assert result.field_errors == {"person[1]": ["This field is required"]}

    def test_instance_conditions_read_their_own_instance(self, schema):
        engine = ValidationEngine(schema)
        values = {"age": 30, "person[0]": "Ada", "person[1]": "Bob"}

        assert engine.hidden_field_keys(values, {"people": 2}) == ["guardian", "nickname[0]"]
        assert engine.validate(values, instance_counts={"people": 2}).field_errors == {
            "nickname[1]": ["This field is required"]
        }

    def test_validate_single_field(self, schema):
        engine = ValidationEngine(schema)

        assert engine.validate_field("age", 10, {}).errors == ["Must be at least 18"]
        assert engine.validate_field("person", None, {}, instance_index=3).field_id == "person[3]"

    def test_unknown_field_is_vacuously_valid(self, schema):
        assert ValidationEngine(schema).validate_field("missing", None, {}).is_valid is True
