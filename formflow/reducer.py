"""Form state reducer and selectors.

``form_reducer(state, action)`` is a pure function: it never mutates ``state``
and never validates. Validation is run by collaborators after a value change
and fed back through ``SetFieldError`` / ``SetFormErrors``.

Each intent message type has one handler registered in ``_HANDLERS``. An
unrecognised message returns the state unchanged and reports a diagnostic.

Usage:
    >>> from formflow.actions import SetFieldValue
    >>> from formflow.state import create_initial_state
    >>> state = create_initial_state({"name": "Ada"})
    >>> state = form_reducer(state, SetFieldValue(field_id="name", value="Grace"))
    >>> state.fields["name"].dirty
    True
"""

from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Type, TypeVar

from formflow.actions import (
    AddSectionInstance,
    ClearAllErrors,
    ClearFieldError,
    FormAction,
    RemoveSectionInstance,
    ResetForm,
    ResolveConflict,
    SetConflict,
    SetDraftLoaded,
    SetFieldError,
    SetFieldTouched,
    SetFieldValidating,
    SetFieldValue,
    SetFormErrors,
    SetLastSaved,
    SetSubmitting,
    SetValues,
)
from formflow.diagnostics import DiagnosticCode, DiagnosticSink, report
from formflow.state import (
    FieldState,
    FormState,
    RepeatableSectionState,
    SectionInstance,
    field_key,
    parse_field_key,
    values_equal,
)
from formflow.types import ConflictResolution, FieldValue

V = TypeVar("V")


# ============================================================================
# HELPERS
# ============================================================================

def _with_field(state: FormState, key: str, **changes) -> Dict[str, FieldState]:
    existing = state.fields.get(key) or FieldState()
    fields = dict(state.fields)
    fields[key] = replace(existing, **changes)
    return fields


def _initial_value(state: FormState, field_id: str, instance_index: Optional[int]) -> FieldValue:
    if instance_index is not None:
        key = str(field_key(field_id, instance_index))
        if key in state.initial_values:
            return state.initial_values[key]
    return state.initial_values.get(field_id)


def _rekey(mapping: Mapping[str, V], field_ids: Set[str], removed: int) -> Dict[str, V]:
    """Drop ``field[removed]`` keys and shift higher indices down by one."""
    result: Dict[str, V] = {}
    for key, value in mapping.items():
        parsed = parse_field_key(key)
        if parsed.instance_index is None or parsed.field_id not in field_ids:
            result[key] = value
        elif parsed.instance_index < removed:
            result[key] = value
        elif parsed.instance_index > removed:
            result[str(field_key(parsed.field_id, parsed.instance_index - 1))] = value
    return result


# ============================================================================
# FIELD-LEVEL HANDLERS
# ============================================================================

def _set_field_value(state: FormState, action: SetFieldValue) -> FormState:
    key = str(field_key(action.field_id, action.instance_index))
    dirty = not values_equal(action.value, _initial_value(state, action.field_id, action.instance_index))

    values = dict(state.values)
    values[key] = action.value
    if action.instance_index is not None:
        # unscoped id tracks the section-level "current" value
        values[action.field_id] = action.value

    repeatable_sections = state.repeatable_sections
    section = state.repeatable_sections.get(action.section_id) if action.section_id else None
    if section is not None and action.instance_index is not None and 0 <= action.instance_index < len(section):
        instances = list(section.instances)
        instance = dict(instances[action.instance_index])
        existing = instance.get(action.field_id) or FieldState()
        instance[action.field_id] = replace(existing, value=action.value, dirty=dirty, errors=())
        instances[action.instance_index] = instance
        repeatable_sections = dict(state.repeatable_sections)
        repeatable_sections[action.section_id] = RepeatableSectionState(instances=tuple(instances))

    return replace(
        state,
        values=values,
        fields=_with_field(state, key, value=action.value, dirty=dirty, errors=()),
        repeatable_sections=repeatable_sections,
    )


def _set_field_touched(state: FormState, action: SetFieldTouched) -> FormState:
    key = str(field_key(action.field_id, action.instance_index))
    return replace(state, fields=_with_field(state, key, touched=action.touched))


def _set_field_error(state: FormState, action: SetFieldError) -> FormState:
    key = str(field_key(action.field_id, action.instance_index))
    return replace(state, fields=_with_field(state, key, errors=tuple(action.errors), validating=False))


def _clear_field_error(state: FormState, action: ClearFieldError) -> FormState:
    key = str(field_key(action.field_id, action.instance_index))
    if key not in state.fields:
        return state
    return replace(state, fields=_with_field(state, key, errors=()))


def _set_field_validating(state: FormState, action: SetFieldValidating) -> FormState:
    key = str(field_key(action.field_id, action.instance_index))
    return replace(state, fields=_with_field(state, key, validating=action.validating))


# ============================================================================
# FORM-LEVEL HANDLERS
# ============================================================================

def _set_values(state: FormState, action: SetValues) -> FormState:
    fields = dict(state.fields)
    for key, value in action.values.items():
        existing = state.fields.get(key) or FieldState()
        dirty = False if action.is_initial else not values_equal(value, state.initial_values.get(key))
        fields[key] = replace(existing, value=value, dirty=dirty)

    values = dict(state.values)
    values.update(action.values)
    return replace(
        state,
        values=values,
        fields=fields,
        initial_values=dict(action.values) if action.is_initial else state.initial_values,
    )


def _reset_form(state: FormState, action: ResetForm) -> FormState:
    reset_values = dict(action.values if action.values is not None else state.initial_values)
    return replace(
        state,
        values=reset_values,
        fields={key: FieldState(value=value) for key, value in reset_values.items()},
        repeatable_sections={},
        is_submitting=False,
    )


def _set_submitting(state: FormState, action: SetSubmitting) -> FormState:
    return replace(
        state,
        is_submitting=action.submitting,
        submit_count=state.submit_count + 1 if action.submitting else state.submit_count,
    )


def _set_form_errors(state: FormState, action: SetFormErrors) -> FormState:
    fields = dict(state.fields)
    for key, errors in action.errors.items():
        existing = state.fields.get(key) or FieldState()
        fields[key] = replace(existing, errors=tuple(errors))
    return replace(state, fields=fields)


def _clear_errors_in(instance: SectionInstance) -> SectionInstance:
    return {fid: replace(fs, errors=()) for fid, fs in instance.items()}


def _clear_all_errors(state: FormState, action: ClearAllErrors) -> FormState:
    return replace(
        state,
        fields={key: replace(fs, errors=()) for key, fs in state.fields.items()},
        repeatable_sections={
            section_id: RepeatableSectionState(
                instances=tuple(_clear_errors_in(instance) for instance in section.instances)
            )
            for section_id, section in state.repeatable_sections.items()
        },
    )


# ============================================================================
# REPEATABLE SECTION HANDLERS
# ============================================================================

def _add_section_instance(state: FormState, action: AddSectionInstance) -> FormState:
    section = state.repeatable_sections.get(action.section_id) or RepeatableSectionState()
    defaults = action.default_values or {}
    index = len(section)

    instance: SectionInstance = {fid: FieldState(value=value) for fid, value in defaults.items()}
    repeatable_sections = dict(state.repeatable_sections)
    repeatable_sections[action.section_id] = RepeatableSectionState(
        instances=section.instances + (instance,)
    )

    values = dict(state.values)
    for fid, value in defaults.items():
        values[str(field_key(fid, index))] = value

    return replace(state, values=values, repeatable_sections=repeatable_sections)


def _remove_section_instance(state: FormState, action: RemoveSectionInstance) -> FormState:
    section = state.repeatable_sections.get(action.section_id)
    if section is None or not 0 <= action.instance_index < len(section):
        return state

    field_ids: Set[str] = set(action.field_ids)
    for instance in section.instances:
        field_ids.update(instance)

    instances = tuple(
        instance for index, instance in enumerate(section.instances) if index != action.instance_index
    )
    repeatable_sections = dict(state.repeatable_sections)
    repeatable_sections[action.section_id] = RepeatableSectionState(instances=instances)

    return replace(
        state,
        values=_rekey(state.values, field_ids, action.instance_index),
        fields=_rekey(state.fields, field_ids, action.instance_index),
        initial_values=_rekey(state.initial_values, field_ids, action.instance_index),
        repeatable_sections=repeatable_sections,
    )


# ============================================================================
# AUTOSAVE HANDLERS
# ============================================================================

def _set_draft_loaded(state: FormState, action: SetDraftLoaded) -> FormState:
    autosave = replace(state.autosave, draft_loaded=action.loaded)
    if action.timestamp is not None:
        autosave = replace(autosave, last_saved=action.timestamp)
    return replace(state, autosave=autosave)


def _set_last_saved(state: FormState, action: SetLastSaved) -> FormState:
    return replace(state, autosave=replace(state.autosave, last_saved=action.timestamp))


def _set_conflict(state: FormState, action: SetConflict) -> FormState:
    prior = state.autosave

    def keep(new, old):
        return new if new is not None else old

    return replace(
        state,
        autosave=replace(
            prior,
            has_conflict=action.has_conflict,
            local_values=keep(action.local_values, prior.local_values),
            saved_values=keep(action.saved_values, prior.saved_values),
            local_timestamp=keep(action.local_timestamp, prior.local_timestamp),
            saved_timestamp=keep(action.saved_timestamp, prior.saved_timestamp),
        ),
    )


def _resolve_conflict(state: FormState, action: ResolveConflict) -> FormState:
    chosen = (
        state.autosave.local_values
        if action.resolution == ConflictResolution.LOCAL
        else state.autosave.saved_values
    )
    return replace(
        state,
        values=dict(chosen) if chosen is not None else state.values,
        autosave=replace(state.autosave, has_conflict=False, local_values=None, saved_values=None),
    )


_HANDLERS: Dict[Type, Callable[[FormState, FormAction], FormState]] = {
    SetFieldValue: _set_field_value,
    SetFieldTouched: _set_field_touched,
    SetFieldError: _set_field_error,
    ClearFieldError: _clear_field_error,
    SetFieldValidating: _set_field_validating,
    SetValues: _set_values,
    ResetForm: _reset_form,
    SetSubmitting: _set_submitting,
    SetFormErrors: _set_form_errors,
    ClearAllErrors: _clear_all_errors,
    AddSectionInstance: _add_section_instance,
    RemoveSectionInstance: _remove_section_instance,
    SetDraftLoaded: _set_draft_loaded,
    SetLastSaved: _set_last_saved,
    SetConflict: _set_conflict,
    ResolveConflict: _resolve_conflict,
}


def form_reducer(
    state: FormState,
    action: FormAction,
    diagnostics: Optional[DiagnosticSink] = None,
) -> FormState:
    """Apply one intent message and return the next state.

    Args:
        state: Current snapshot (never modified)
        action: Intent message
        diagnostics: Sink for unrecognised messages

    Returns:
        The next snapshot, or ``state`` itself when nothing changes
    """
    handler = _HANDLERS.get(type(action))
    if handler is None:
        report(diagnostics, DiagnosticCode.UNKNOWN_ACTION, f"Unknown action: {action!r}")
        return state
    return handler(state, action)


# ============================================================================
# SELECTORS
# ============================================================================

def is_valid(state: FormState) -> bool:
    """True when no field has any error."""
    return not any(fs.errors for fs in state.fields.values())


def is_dirty(state: FormState) -> bool:
    return any(fs.dirty for fs in state.fields.values())


def is_validating(state: FormState) -> bool:
    return any(fs.validating for fs in state.fields.values())


def get_all_errors(state: FormState) -> Dict[str, List[str]]:
    return {key: list(fs.errors) for key, fs in state.fields.items() if fs.errors}


def get_field_state(state: FormState, field_id: str, instance_index: Optional[int] = None) -> Optional[FieldState]:
    return state.fields.get(str(field_key(field_id, instance_index)))


def get_field_value(state: FormState, field_id: str, instance_index: Optional[int] = None) -> FieldValue:
    return state.values.get(str(field_key(field_id, instance_index)))


def get_touched_fields(state: FormState) -> List[str]:
    return [key for key, fs in state.fields.items() if fs.touched]


def get_section_instance_count(state: FormState, section_id: str) -> int:
    section = state.repeatable_sections.get(section_id)
    return len(section) if section is not None else 0


def get_instance_counts(state: FormState, section_ids: Optional[Iterable[str]] = None) -> Dict[str, int]:
    """Instance count per repeatable section (all known sections by default)."""
    ids = section_ids if section_ids is not None else state.repeatable_sections.keys()
    return {section_id: get_section_instance_count(state, section_id) for section_id in ids}


__all__ = [
    "form_reducer",
    "is_valid",
    "is_dirty",
    "is_validating",
    "get_all_errors",
    "get_field_state",
    "get_field_value",
    "get_touched_fields",
    "get_section_instance_count",
    "get_instance_counts",
]
