"""Immutable form state snapshots.

The reducer is the only code that produces new ``FormState`` values; every
other component receives snapshots and must treat them (including the dicts
they hold) as read-only. Updates are made with ``dataclasses.replace`` and
fresh dict copies, never in place.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, NamedTuple, Optional, Tuple

from formflow.types import FieldValue, FormValues

_SCOPED_KEY = re.compile(r"^(?P<field>.+)\[(?P<index>\d+)\]$")


class FieldKey(NamedTuple):
    """Structured key of a field, optionally inside a repeatable instance.

    ``str(key)`` gives the wire key used in ``values`` and ``fields``.

    Examples:
        >>> str(FieldKey("street", 2))
        'street[2]'
        >>> str(FieldKey("email"))
        'email'
    """
    field_id: str
    instance_index: Optional[int] = None

    def __str__(self) -> str:
        if self.instance_index is None:
            return self.field_id
        return f"{self.field_id}[{self.instance_index}]"


def field_key(field_id: str, instance_index: Optional[int] = None) -> FieldKey:
    return FieldKey(field_id, instance_index)


def parse_field_key(key: str) -> FieldKey:
    """Split a wire key back into its parts.

    Examples:
        >>> parse_field_key("street[2]")
        FieldKey(field_id='street', instance_index=2)
        >>> parse_field_key("email")
        FieldKey(field_id='email', instance_index=None)
    """
    match = _SCOPED_KEY.match(key)
    if match is None:
        return FieldKey(key)
    return FieldKey(match.group("field"), int(match.group("index")))


def values_equal(left: Any, right: Any) -> bool:
    """Strict value equality: booleans never equal numbers.

    Examples:
        >>> values_equal(1, True), values_equal(0, 0.0), values_equal(["a"], ["a"])
        (False, True, True)
    """
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


@dataclass(frozen=True)
class FieldState:
    """Per-field metadata. Created lazily on first write."""
    value: FieldValue = None
    touched: bool = False
    dirty: bool = False
    validating: bool = False
    errors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "touched": self.touched,
            "dirty": self.dirty,
            "validating": self.validating,
            "errors": list(self.errors),
        }


SectionInstance = Dict[str, FieldState]


@dataclass(frozen=True)
class RepeatableSectionState:
    """Ordered instances of a repeatable section, indexed 0..N-1.

    The instance count is not checked against the section's min/max here;
    callers check before dispatching add/remove.
    """
    instances: Tuple[SectionInstance, ...] = ()

    def __len__(self) -> int:
        return len(self.instances)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instances": [
                {field_id: fs.to_dict() for field_id, fs in instance.items()}
                for instance in self.instances
            ]
        }


@dataclass(frozen=True)
class AutosaveState:
    """Autosave bookkeeping held inside the form state.

    A conflict exists only when ``has_conflict`` is True. Resolving a conflict
    always clears ``local_values`` and ``saved_values``.
    """
    draft_loaded: bool = False
    last_saved: Optional[float] = None
    has_conflict: bool = False
    local_values: Optional[FormValues] = None
    saved_values: Optional[FormValues] = None
    local_timestamp: Optional[float] = None
    saved_timestamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "draftLoaded": self.draft_loaded,
            "lastSaved": self.last_saved,
            "hasConflict": self.has_conflict,
            "localValues": self.local_values,
            "savedValues": self.saved_values,
            "localTimestamp": self.local_timestamp,
            "savedTimestamp": self.saved_timestamp,
        }


@dataclass(frozen=True)
class FormState:
    """Canonical state of one form session.

    Attributes:
        values: Current values by field key
        fields: Per-field metadata by field key
        repeatable_sections: Instances by section id
        initial_values: Baseline used for dirtiness and reset
        is_submitting: Whether a submit is in progress
        submit_count: Number of submit attempts
        autosave: Autosave/conflict bookkeeping
    """
    values: FormValues = field(default_factory=dict)
    fields: Dict[str, FieldState] = field(default_factory=dict)
    repeatable_sections: Dict[str, RepeatableSectionState] = field(default_factory=dict)
    initial_values: FormValues = field(default_factory=dict)
    is_submitting: bool = False
    submit_count: int = 0
    autosave: AutosaveState = field(default_factory=AutosaveState)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain snapshot for collaborators and serialization."""
        return {
            "values": dict(self.values),
            "fields": {key: fs.to_dict() for key, fs in self.fields.items()},
            "repeatableSections": {
                section_id: section.to_dict()
                for section_id, section in self.repeatable_sections.items()
            },
            "initialValues": dict(self.initial_values),
            "isSubmitting": self.is_submitting,
            "submitCount": self.submit_count,
            "autosave": self.autosave.to_dict(),
        }


def create_initial_state(initial_values: Optional[FormValues] = None) -> FormState:
    """Start a form session from its initial values.

    Examples:
        >>> state = create_initial_state({"name": "Ada"})
        >>> state.values == state.initial_values == {"name": "Ada"}
        True
        >>> state.fields
        {}
    """
    values = dict(initial_values or {})
    return FormState(values=values, initial_values=dict(values))


__all__ = [
    "FieldKey",
    "field_key",
    "parse_field_key",
    "values_equal",
    "FieldState",
    "SectionInstance",
    "RepeatableSectionState",
    "AutosaveState",
    "FormState",
    "create_initial_state",
]
