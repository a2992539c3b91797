"""Intent messages accepted by the form reducer.

Every state change is expressed as one of these immutable messages and
applied by ``formflow.reducer.form_reducer``. Messages carry no behaviour;
each has a ``type`` (an ``ActionType``) and serializes to the wire shape
``{"type": ..., "payload": {...}}``.

Usage:
    >>> action = SetFieldValue(field_id="email", value="ada@example.com")
    >>> action.to_dict()["type"]
    'SET_FIELD_VALUE'
"""

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, List, Optional, Type, Union

from formflow.types import ActionType, ConflictResolution, FieldValue, FormValues


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class _Action:
    """Shared serialization for intent messages."""
    type: ClassVar[ActionType]

    def payload(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, tuple):
                value = list(value)
            if isinstance(value, ConflictResolution):
                value = value.value
            result[_camel(f.name)] = value
        return result

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the ``{type, payload}`` wire shape."""
        data: Dict[str, Any] = {"type": self.type.value}
        payload = self.payload()
        if payload:
            data["payload"] = payload
        return data


# ============================================================================
# FIELD-LEVEL
# ============================================================================

@dataclass(frozen=True)
class SetFieldValue(_Action):
    """Overwrite a value; recomputes dirtiness and clears the field's errors.

    ``section_id`` (with ``instance_index``) also updates that instance's
    field state inside the repeatable section.
    """
    type: ClassVar[ActionType] = ActionType.SET_FIELD_VALUE
    field_id: str
    value: FieldValue
    instance_index: Optional[int] = None
    section_id: Optional[str] = None


@dataclass(frozen=True)
class SetFieldTouched(_Action):
    type: ClassVar[ActionType] = ActionType.SET_FIELD_TOUCHED
    field_id: str
    touched: bool = True
    instance_index: Optional[int] = None


@dataclass(frozen=True)
class SetFieldError(_Action):
    """Replace a field's errors. Also ends any in-progress validation."""
    type: ClassVar[ActionType] = ActionType.SET_FIELD_ERROR
    field_id: str
    errors: tuple = ()
    instance_index: Optional[int] = None


@dataclass(frozen=True)
class ClearFieldError(_Action):
    type: ClassVar[ActionType] = ActionType.CLEAR_FIELD_ERROR
    field_id: str
    instance_index: Optional[int] = None


@dataclass(frozen=True)
class SetFieldValidating(_Action):
    type: ClassVar[ActionType] = ActionType.SET_FIELD_VALIDATING
    field_id: str
    validating: bool
    instance_index: Optional[int] = None


# ============================================================================
# FORM-LEVEL
# ============================================================================

@dataclass(frozen=True)
class SetValues(_Action):
    """Merge many values at once.

    With ``is_initial`` the values become the new baseline and are not dirty.
    """
    type: ClassVar[ActionType] = ActionType.SET_VALUES
    values: FormValues = field(default_factory=dict)
    is_initial: bool = False


@dataclass(frozen=True)
class ResetForm(_Action):
    """Reset to ``values`` or, when None, to the recorded initial values."""
    type: ClassVar[ActionType] = ActionType.RESET_FORM
    values: Optional[FormValues] = None


@dataclass(frozen=True)
class SetSubmitting(_Action):
    type: ClassVar[ActionType] = ActionType.SET_SUBMITTING
    submitting: bool


@dataclass(frozen=True)
class SetFormErrors(_Action):
    type: ClassVar[ActionType] = ActionType.SET_FORM_ERRORS
    errors: Dict[str, List[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class ClearAllErrors(_Action):
    type: ClassVar[ActionType] = ActionType.CLEAR_ALL_ERRORS


# ============================================================================
# REPEATABLE SECTIONS
# ============================================================================

@dataclass(frozen=True)
class AddSectionInstance(_Action):
    """Append an instance. ``max_instances`` is the caller's responsibility."""
    type: ClassVar[ActionType] = ActionType.ADD_SECTION_INSTANCE
    section_id: str
    default_values: Optional[Dict[str, FieldValue]] = None


@dataclass(frozen=True)
class RemoveSectionInstance(_Action):
    """Remove an instance by index.

    ``field_ids`` names the section's fields so their scoped keys can be
    shifted down; the ids present in the instances are always included.
    """
    type: ClassVar[ActionType] = ActionType.REMOVE_SECTION_INSTANCE
    section_id: str
    instance_index: int
    field_ids: tuple = ()


# ============================================================================
# AUTOSAVE
# ============================================================================

@dataclass(frozen=True)
class SetDraftLoaded(_Action):
    type: ClassVar[ActionType] = ActionType.SET_DRAFT_LOADED
    loaded: bool
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class SetLastSaved(_Action):
    type: ClassVar[ActionType] = ActionType.SET_LAST_SAVED
    timestamp: float


@dataclass(frozen=True)
class SetConflict(_Action):
    """Record a conflict. Snapshots left as None keep their previous values."""
    type: ClassVar[ActionType] = ActionType.SET_CONFLICT
    has_conflict: bool
    local_values: Optional[FormValues] = None
    saved_values: Optional[FormValues] = None
    local_timestamp: Optional[float] = None
    saved_timestamp: Optional[float] = None


@dataclass(frozen=True)
class ResolveConflict(_Action):
    type: ClassVar[ActionType] = ActionType.RESOLVE_CONFLICT
    resolution: ConflictResolution

    def __post_init__(self):
        if not isinstance(self.resolution, ConflictResolution):
            object.__setattr__(self, "resolution", ConflictResolution.parse(self.resolution))


FormAction = Union[
    SetFieldValue,
    SetFieldTouched,
    SetFieldError,
    ClearFieldError,
    SetFieldValidating,
    SetValues,
    ResetForm,
    SetSubmitting,
    SetFormErrors,
    ClearAllErrors,
    AddSectionInstance,
    RemoveSectionInstance,
    SetDraftLoaded,
    SetLastSaved,
    SetConflict,
    ResolveConflict,
]

ACTION_CLASSES: Dict[ActionType, Type[_Action]] = {
    cls.type: cls
    for cls in (
        SetFieldValue,
        SetFieldTouched,
        SetFieldError,
        ClearFieldError,
        SetFieldValidating,
        SetValues,
        ResetForm,
        SetSubmitting,
        SetFormErrors,
        ClearAllErrors,
        AddSectionInstance,
        RemoveSectionInstance,
        SetDraftLoaded,
        SetLastSaved,
        SetConflict,
        ResolveConflict,
    )
}


def action_from_dict(data: Dict[str, Any]) -> FormAction:
    """Parse the ``{type, payload}`` wire shape.

    Raises:
        ValueError: If the type is unknown
        TypeError: If the payload does not fit the message

    Examples:
        >>> action_from_dict({"type": "SET_SUBMITTING", "payload": {"submitting": True}})
        SetSubmitting(submitting=True)
    """
    cls = ACTION_CLASSES[ActionType(data["type"])]
    by_camel = {_camel(f.name): f.name for f in fields(cls)}  # type: ignore[arg-type]
    kwargs: Dict[str, Any] = {}
    for key, value in (data.get("payload") or {}).items():
        name = by_camel.get(key, key)
        if isinstance(value, list) and name in ("errors", "field_ids"):
            value = tuple(value)
        kwargs[name] = value
    return cls(**kwargs)  # type: ignore[return-value]


__all__ = [
    "SetFieldValue",
    "SetFieldTouched",
    "SetFieldError",
    "ClearFieldError",
    "SetFieldValidating",
    "SetValues",
    "ResetForm",
    "SetSubmitting",
    "SetFormErrors",
    "ClearAllErrors",
    "AddSectionInstance",
    "RemoveSectionInstance",
    "SetDraftLoaded",
    "SetLastSaved",
    "SetConflict",
    "ResolveConflict",
    "FormAction",
    "ACTION_CLASSES",
    "action_from_dict",
]
