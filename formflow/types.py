"""Core type definitions for the formflow engine.

This module defines the fundamental types shared by every component:
- FieldValue / FormValues: the value model used uniformly for all field kinds
- FieldType: the field kinds a schema may declare
- RuleType / ValidationTrigger: declarative validation rule kinds
- ConditionOperator: comparison operators for visibility conditions
- ActionType: the closed set of intent messages understood by the reducer
- AutosavePhase / ConflictResolution: autosave coordinator states

Enums subclass ``str`` so that wire values compare equal to their members
(``RuleType.REQUIRED == "required"``), the same way schema documents spell them.
"""

from enum import Enum
from typing import Dict, List, Optional, Union

from typing_extensions import Literal, TypeAlias

FieldValue: TypeAlias = Optional[Union[str, int, float, bool, List[str]]]
"""A single field's value. ``None`` means the value is absent."""

FormValues: TypeAlias = Dict[str, FieldValue]
"""Mapping of field key to value for one snapshot."""

TriggerName = Literal["change", "blur", "submit"]


class FieldType(str, Enum):
    """Field kinds understood by the engine."""
    TEXT = "text"
    NUMBER = "number"
    SELECT = "select"
    CHECKBOX = "checkbox"
    TEXTAREA = "textarea"


class RuleType(str, Enum):
    """Validation rule kinds.

    ``ASYNC`` rules are never run by the synchronous pass; ``CUSTOM`` rules are
    looked up by name in a validator registry.
    """
    REQUIRED = "required"
    MIN_LENGTH = "minLength"
    MAX_LENGTH = "maxLength"
    PATTERN = "pattern"
    MIN = "min"
    MAX = "max"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    CUSTOM = "custom"
    ASYNC = "async"


class ValidationTrigger(str, Enum):
    """Hint telling collaborators when a rule should run.

    The pipeline itself never filters on the trigger.
    """
    CHANGE = "change"
    BLUR = "blur"
    SUBMIT = "submit"


class ConditionOperator(str, Enum):
    """Operators available to simple conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    IS_EMPTY = "isEmpty"
    IS_NOT_EMPTY = "isNotEmpty"
    IN = "in"
    NOT_IN = "notIn"


class ActionType(str, Enum):
    """Intent message types accepted by the form reducer."""
    # Field-level
    SET_FIELD_VALUE = "SET_FIELD_VALUE"
    SET_FIELD_TOUCHED = "SET_FIELD_TOUCHED"
    SET_FIELD_ERROR = "SET_FIELD_ERROR"
    CLEAR_FIELD_ERROR = "CLEAR_FIELD_ERROR"
    SET_FIELD_VALIDATING = "SET_FIELD_VALIDATING"

    # Form-level
    SET_VALUES = "SET_VALUES"
    RESET_FORM = "RESET_FORM"
    SET_SUBMITTING = "SET_SUBMITTING"
    SET_FORM_ERRORS = "SET_FORM_ERRORS"
    CLEAR_ALL_ERRORS = "CLEAR_ALL_ERRORS"

    # Repeatable sections
    ADD_SECTION_INSTANCE = "ADD_SECTION_INSTANCE"
    REMOVE_SECTION_INSTANCE = "REMOVE_SECTION_INSTANCE"

    # Autosave
    SET_DRAFT_LOADED = "SET_DRAFT_LOADED"
    SET_LAST_SAVED = "SET_LAST_SAVED"
    SET_CONFLICT = "SET_CONFLICT"
    RESOLVE_CONFLICT = "RESOLVE_CONFLICT"


class AutosavePhase(str, Enum):
    """Autosave coordinator phases.

    ``conflict`` is only left through an explicit resolution.
    """
    IDLE = "idle"
    PENDING_SAVE = "pending_save"
    SAVING = "saving"
    CONFLICT = "conflict"


class ConflictResolution(str, Enum):
    """Which side wins when resolving an autosave conflict."""
    LOCAL = "local"
    SAVED = "saved"

    @classmethod
    def parse(cls, value: Union[str, "ConflictResolution"]) -> "ConflictResolution":
        """Accept ``remote`` as an alias for the saved (server) side."""
        if isinstance(value, ConflictResolution):
            return value
        if value == "remote":
            return cls.SAVED
        return cls(value)


class ConflictStrategy(str, Enum):
    """How the autosave coordinator handles a detected conflict."""
    LOCAL = "local"
    REMOTE = "remote"
    PROMPT = "prompt"


__all__ = [
    "FieldValue",
    "FormValues",
    "TriggerName",
    "FieldType",
    "RuleType",
    "ValidationTrigger",
    "ConditionOperator",
    "ActionType",
    "AutosavePhase",
    "ConflictResolution",
    "ConflictStrategy",
]
