"""Synchronous validation pipeline.

Rules run strictly in schema order and stop at the first failure (fail-fast):
a field reports at most one error per pass, taken from the failing rule's
``message`` or, failing that, the validator's own fallback message. Async
rules are skipped here; see ``formflow.async_validation``.

Schema anomalies never raise. Unknown rule types, custom rules whose
validator is not registered, and invalid regular expressions are reported to
the diagnostics sink and treated as passing.

Usage:
    >>> result = validate_field_sync("name", "ab1", [
    ...     {"type": "minLength", "value": 3, "message": "Too short"},
    ...     {"type": "pattern", "value": "^[a-z]+$", "message": "Letters only"},
    ... ], {})
    >>> result.errors
    ['Too short']
"""

import re
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from formflow.diagnostics import DiagnosticCode, DiagnosticSink, report
from formflow.errors import FieldErrorDetail
from formflow.resolver import scope_values, visible_field_ids, visible_section_ids
from formflow.schema import FieldSchema, FormSchema, ValidationRule, parse_rules
from formflow.state import field_key
from formflow.types import FieldValue, FormValues, RuleType
from formflow.validators import ValidatorRegistry, get_builtin_validator

RuleLike = Union[ValidationRule, Dict[str, Any]]


@dataclass(frozen=True)
class FieldValidationResult:
    """Result of validating one field.

    Attributes:
        field_id: Key of the validated field
        is_valid: Whether every sync rule passed
        errors: At most one message (fail-fast)
        failed_rule: The rule that produced the error, if any
    """
    field_id: str
    is_valid: bool
    errors: List[str]
    failed_rule: Optional[ValidationRule] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "fieldId": self.field_id,
            "isValid": self.is_valid,
            "errors": list(self.errors),
        }
        if self.failed_rule is not None:
            result["failedRule"] = self.failed_rule.to_dict()
        return result


@dataclass(frozen=True)
class FormValidationResult:
    """Aggregated result of validating a set of fields.

    Attributes:
        is_valid: Whether no field produced an error
        field_errors: Error messages keyed by field key (failing fields only)
        error_count: Total number of messages
        failed_rules: The failing rule per field key
    """
    is_valid: bool
    field_errors: Dict[str, List[str]]
    error_count: int
    failed_rules: Dict[str, ValidationRule] = field(default_factory=dict)

    def to_field_errors(self) -> List[FieldErrorDetail]:
        """Flatten into ``FieldErrorDetail`` records, one per message."""
        details: List[FieldErrorDetail] = []
        for path, messages in self.field_errors.items():
            rule = self.failed_rules.get(path)
            code = rule.type if rule is not None else RuleType.CUSTOM
            code = code.value if isinstance(code, RuleType) else str(code)
            details.extend(FieldErrorDetail(path=path, code=code, message=m) for m in messages)
        return details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "isValid": self.is_valid,
            "fieldErrors": {k: list(v) for k, v in self.field_errors.items()},
            "errorCount": self.error_count,
        }


def _rule_params(rule: ValidationRule) -> Dict[str, Any]:
    params: Dict[str, Any] = dict(rule.params)
    params["value"] = rule.value
    params["message"] = rule.message
    return params


def _validate_rule(
    field_id: str,
    value: FieldValue,
    rule: ValidationRule,
    form_values: FormValues,
    registry: Optional[ValidatorRegistry],
    diagnostics: Optional[DiagnosticSink],
) -> Optional[str]:
    """Run one rule. Returns the validator's message or None."""
    if rule.type == RuleType.CUSTOM:
        fn = registry.get(rule.validator) if registry is not None else None
        if fn is None:
            report(
                diagnostics,
                DiagnosticCode.CUSTOM_VALIDATOR_MISSING,
                f"Custom validator {rule.validator!r} not found",
                field=field_id,
                validator=rule.validator,
            )
            return None
        return fn(value, _rule_params(rule), form_values)

    validator = get_builtin_validator(rule.type)
    if validator is None:
        report(
            diagnostics,
            DiagnosticCode.UNKNOWN_RULE,
            f"Unknown validator type: {rule.type!r}",
            field=field_id,
            rule=str(rule.type),
        )
        return None

    try:
        return validator(value, _rule_params(rule), form_values)
    except re.error as exc:
        report(
            diagnostics,
            DiagnosticCode.INVALID_PATTERN,
            f"Invalid regex pattern {rule.value!r}: {exc}",
            field=field_id,
            pattern=rule.value,
        )
        return None


def validate_field_sync(
    field_id: str,
    value: FieldValue,
    rules: Iterable[RuleLike],
    form_values: FormValues,
    registry: Optional[ValidatorRegistry] = None,
    diagnostics: Optional[DiagnosticSink] = None,
) -> FieldValidationResult:
    """Validate one value against its rules, stopping at the first failure.

    Args:
        field_id: Key of the field being validated
        value: Current value
        rules: Rules in schema order (parsed or wire dicts)
        form_values: Full values snapshot, passed to validators
        registry: Lookup for ``custom`` rules
        diagnostics: Sink for schema anomalies

    Returns:
        FieldValidationResult with zero or one error
    """
    for rule in parse_rules(list(rules)):
        if rule.is_async:
            continue
        error = _validate_rule(field_id, value, rule, form_values, registry, diagnostics)
        if error:
            return FieldValidationResult(
                field_id=field_id,
                is_valid=False,
                errors=[rule.message or error],
                failed_rule=rule,
            )
    return FieldValidationResult(field_id=field_id, is_valid=True, errors=[])


def _field_parts(f: Union[FieldSchema, Dict[str, Any]]) -> Tuple[str, Sequence[ValidationRule]]:
    if isinstance(f, FieldSchema):
        return f.id, f.validation
    return f["id"], parse_rules(f.get("validation"))


def validate_form_sync(
    fields: Iterable[Union[FieldSchema, Dict[str, Any]]],
    values: FormValues,
    touched_only: bool = False,
    touched_fields: Optional[Collection[str]] = None,
    hidden_fields: Optional[Collection[str]] = None,
    registry: Optional[ValidatorRegistry] = None,
    diagnostics: Optional[DiagnosticSink] = None,
) -> FormValidationResult:
    """Validate every field of a form.

    Fields in ``hidden_fields`` are skipped; with ``touched_only`` fields not in
    ``touched_fields`` are skipped too. Fields without rules are vacuously valid.
    """
    touched = set(touched_fields or ())
    hidden = set(hidden_fields or ())

    field_errors: Dict[str, List[str]] = {}
    failed_rules: Dict[str, ValidationRule] = {}
    error_count = 0

    for f in fields:
        field_id, rules = _field_parts(f)
        if field_id in hidden:
            continue
        if touched_only and field_id not in touched:
            continue
        if not rules:
            continue

        result = validate_field_sync(field_id, values.get(field_id), rules, values, registry, diagnostics)
        if not result.is_valid:
            field_errors[field_id] = result.errors
            if result.failed_rule is not None:
                failed_rules[field_id] = result.failed_rule
            error_count += len(result.errors)

    return FormValidationResult(
        is_valid=error_count == 0,
        field_errors=field_errors,
        error_count=error_count,
        failed_rules=failed_rules,
    )


class ValidationEngine:
    """Validation bound to one form schema.

    Combines the resolver and the sync pipeline: hidden fields (by their own
    condition or because their section is hidden) are never validated, and
    fields of repeatable sections are validated once per instance under their
    scoped keys.

    Examples:
        >>> from formflow.schema import load_schema
        >>> schema = load_schema({"id": "f", "title": "F", "sections": [{"id": "s", "fields": [
        ...     {"id": "age", "type": "number", "validation": [{"type": "required"}, {"type": "min", "value": 18}]}
        ... ]}]})
        >>> engine = ValidationEngine(schema)
        >>> engine.validate({"age": 10}).field_errors
        {'age': ['Must be at least 18']}
    """

    def __init__(
        self,
        schema: FormSchema,
        registry: Optional[ValidatorRegistry] = None,
        diagnostics: Optional[DiagnosticSink] = None,
    ) -> None:
        self.schema = schema
        self.registry = registry or ValidatorRegistry()
        self.diagnostics = diagnostics

    def validate_field(
        self,
        field_id: str,
        value: FieldValue,
        form_values: FormValues,
        instance_index: Optional[int] = None,
    ) -> FieldValidationResult:
        """Validate one field by id; unknown ids are vacuously valid."""
        key = str(field_key(field_id, instance_index))
        f = self.schema.get_field(field_id)
        if f is None:
            return FieldValidationResult(field_id=key, is_valid=True, errors=[])
        return validate_field_sync(key, value, f.validation, form_values, self.registry, self.diagnostics)

    def hidden_field_keys(
        self,
        values: FormValues,
        instance_counts: Optional[Mapping[str, int]] = None,
    ) -> List[str]:
        """Keys of every field (or field instance) that is currently hidden."""
        hidden: List[str] = []
        sections = visible_section_ids(self.schema, values, self.diagnostics)
        for section in self.schema.iter_sections():
            if section.repeatable:
                for index in range((instance_counts or {}).get(section.id, 0)):
                    scoped = scope_values(values, section.field_ids, index)
                    shown = visible_field_ids(
                        {f.id: f.show_when for f in section.fields}, scoped, self.diagnostics
                    )
                    hidden.extend(
                        str(field_key(f.id, index))
                        for f in section.fields
                        if section.id not in sections or f.id not in shown
                    )
                continue
            shown = visible_field_ids({f.id: f.show_when for f in section.fields}, values, self.diagnostics)
            hidden.extend(f.id for f in section.fields if section.id not in sections or f.id not in shown)
        return hidden

    def validate(
        self,
        values: FormValues,
        touched_only: bool = False,
        touched_fields: Optional[Collection[str]] = None,
        instance_counts: Optional[Mapping[str, int]] = None,
    ) -> FormValidationResult:
        """Validate all visible fields, including every repeatable instance.

        Args:
            values: Values snapshot
            touched_only: Only validate keys listed in ``touched_fields``
            touched_fields: Touched field keys
            instance_counts: Number of instances per repeatable section

        Returns:
            FormValidationResult keyed by field key
        """
        targets: List[Dict[str, Any]] = []
        for section in self.schema.iter_sections():
            if section.repeatable:
                for index in range((instance_counts or {}).get(section.id, 0)):
                    targets.extend(
                        {"id": str(field_key(f.id, index)), "validation": f.validation}
                        for f in section.fields
                    )
            else:
                targets.extend({"id": f.id, "validation": f.validation} for f in section.fields)

        return validate_form_sync(
            targets,
            values,
            touched_only=touched_only,
            touched_fields=touched_fields,
            hidden_fields=self.hidden_field_keys(values, instance_counts),
            registry=self.registry,
            diagnostics=self.diagnostics,
        )


__all__ = [
    "FieldValidationResult",
    "FormValidationResult",
    "ValidationEngine",
    "validate_field_sync",
    "validate_form_sync",
]
