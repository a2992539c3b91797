"""Condition resolver: boolean visibility expressions over a values snapshot.

Evaluation is pure structural recursion over the condition tree. Nothing here
raises for malformed input: an unknown operator or an unrecognised condition
shape evaluates to ``True`` (visible) and a diagnostic is reported through the
sink passed in. Hiding a field because of a typo in the schema would silently
drop user data from submissions, so unknown input fails open.

Usage:
    >>> evaluate({"field": "country", "operator": "equals", "value": "US"}, {"country": "US"})
    True
    >>> evaluate({"not": {"field": "age", "operator": "greaterThan", "value": 17}}, {"age": 21})
    False
"""

from typing import Any, Dict, Iterable, Mapping, Optional, Set, Union

from formflow.diagnostics import DiagnosticCode, DiagnosticSink, report
from formflow.schema import (
    AndCondition,
    Condition,
    FieldSchema,
    FormSchema,
    NotCondition,
    OrCondition,
    SimpleCondition,
    UnknownCondition,
    parse_condition,
)
from formflow.state import field_key, values_equal
from formflow.types import ConditionOperator, FieldValue, FormValues, RuleType

ConditionLike = Union[Condition, Dict[str, Any]]


def get_nested_value(values: Mapping[str, Any], path: str) -> Any:
    """Look up ``path`` by dotted traversal; missing segments yield None.

    Examples:
        >>> get_nested_value({"a": {"b": 1}}, "a.b")
        1
        >>> get_nested_value({"a": None}, "a.b") is None
        True
    """
    current: Any = values
    for key in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def is_empty(value: Any) -> bool:
    """Whether a value counts as empty for conditions.

    Examples:
        >>> is_empty(0), is_empty(False), is_empty(""), is_empty("  "), is_empty([]), is_empty(None)
        (False, False, True, True, True, True)
    """
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (bool, int, float)):
        return False
    if _is_sequence(value):
        return len(value) == 0
    return False


def _evaluate_simple(
    condition: SimpleCondition, values: Mapping[str, Any], diagnostics: Optional[DiagnosticSink]
) -> bool:
    field_value = get_nested_value(values, condition.field)
    compare = condition.value
    op = condition.operator

    if op == ConditionOperator.EQUALS:
        return values_equal(field_value, compare)

    if op == ConditionOperator.NOT_EQUALS:
        return not values_equal(field_value, compare)

    if op == ConditionOperator.CONTAINS:
        if isinstance(field_value, str) and isinstance(compare, str):
            return compare in field_value
        if _is_sequence(field_value) and isinstance(compare, str):
            return compare in field_value
        return False

    if op == ConditionOperator.GREATER_THAN:
        return _is_number(field_value) and _is_number(compare) and field_value > compare

    if op == ConditionOperator.LESS_THAN:
        return _is_number(field_value) and _is_number(compare) and field_value < compare

    if op == ConditionOperator.IS_EMPTY:
        return is_empty(field_value)

    if op == ConditionOperator.IS_NOT_EMPTY:
        return not is_empty(field_value)

    if op == ConditionOperator.IN:
        if _is_sequence(compare):
            return any(values_equal(field_value, item) for item in compare)
        return False

    if op == ConditionOperator.NOT_IN:
        if _is_sequence(compare):
            return not any(values_equal(field_value, item) for item in compare)
        return True

    report(
        diagnostics,
        DiagnosticCode.UNKNOWN_OPERATOR,
        f"Unknown operator: {op!r}",
        field=condition.field,
        operator=str(op),
    )
    return True


def evaluate(
    condition: ConditionLike,
    values: Mapping[str, Any],
    diagnostics: Optional[DiagnosticSink] = None,
) -> bool:
    """Evaluate a condition against a values snapshot.

    Args:
        condition: Parsed condition or its wire dict
        values: Form values (may contain nested mappings)
        diagnostics: Sink for unknown operators/shapes (logs when None)

    Returns:
        True when the condition holds, or when it cannot be understood
    """
    condition = parse_condition(condition)

    if isinstance(condition, SimpleCondition):
        return _evaluate_simple(condition, values, diagnostics)

    if isinstance(condition, AndCondition):
        return all(evaluate(child, values, diagnostics) for child in condition.children)

    if isinstance(condition, OrCondition):
        return any(evaluate(child, values, diagnostics) for child in condition.children)

    if isinstance(condition, NotCondition):
        return not evaluate(condition.child, values, diagnostics)

    raw = condition.raw if isinstance(condition, UnknownCondition) else condition
    report(diagnostics, DiagnosticCode.UNKNOWN_CONDITION, f"Unknown condition type: {raw!r}")
    return True


def visible_field_ids(
    field_conditions: Mapping[str, Optional[ConditionLike]],
    values: Mapping[str, Any],
    diagnostics: Optional[DiagnosticSink] = None,
) -> Set[str]:
    """Ids of fields whose condition holds; fields without one are always visible."""
    return {
        field_id
        for field_id, condition in field_conditions.items()
        if condition is None or evaluate(condition, values, diagnostics)
    }


def hidden_required_field_ids(
    fields: Iterable[Union[FieldSchema, Dict[str, Any]]],
    values: Mapping[str, Any],
    diagnostics: Optional[DiagnosticSink] = None,
) -> Set[str]:
    """Ids of fields carrying a ``required`` rule whose condition evaluates false.

    Accepts parsed ``FieldSchema`` objects or raw field dicts.
    """
    hidden: Set[str] = set()
    for f in fields:
        if isinstance(f, FieldSchema):
            field_id, show_when = f.id, f.show_when
            has_required = f.has_rule(RuleType.REQUIRED)
        else:
            field_id, show_when = f["id"], f.get("showWhen")
            has_required = any(
                isinstance(rule, dict) and rule.get("type") == RuleType.REQUIRED.value
                for rule in f.get("validation") or ()
            )
        if has_required and show_when is not None and not evaluate(show_when, values, diagnostics):
            hidden.add(field_id)
    return hidden


def visible_section_ids(
    schema: FormSchema,
    values: Mapping[str, Any],
    diagnostics: Optional[DiagnosticSink] = None,
) -> Set[str]:
    """Ids of visible sections. A nested section is hidden when its parent is."""
    visible: Set[str] = set()

    def walk(sections, parent_visible: bool) -> None:
        for section in sections:
            shown = parent_visible and (
                section.show_when is None or evaluate(section.show_when, values, diagnostics)
            )
            if shown:
                visible.add(section.id)
            walk(section.sections, shown)

    walk(schema.sections, True)
    return visible


def visible_fields_for_schema(
    schema: FormSchema,
    values: Mapping[str, Any],
    diagnostics: Optional[DiagnosticSink] = None,
) -> Set[str]:
    """Visible field ids, taking section visibility into account."""
    sections = visible_section_ids(schema, values, diagnostics)
    conditions = {
        f.id: f.show_when
        for section in schema.iter_sections()
        if section.id in sections
        for f in section.fields
    }
    return visible_field_ids(conditions, values, diagnostics)


def scope_values(values: FormValues, field_ids: Iterable[str], instance_index: int) -> Dict[str, FieldValue]:
    """Project one repeatable-section instance onto unscoped field ids.

    The result is a copy of ``values`` where each ``field_id`` holds the value
    stored under ``field_id[instance_index]``, so conditions written against
    sibling fields evaluate per instance.
    """
    scoped: Dict[str, FieldValue] = dict(values)
    for field_id in field_ids:
        scoped[field_id] = values.get(str(field_key(field_id, instance_index)))
    return scoped


__all__ = [
    "ConditionLike",
    "evaluate",
    "get_nested_value",
    "is_empty",
    "visible_field_ids",
    "hidden_required_field_ids",
    "visible_section_ids",
    "visible_fields_for_schema",
    "scope_values",
]
