"""Built-in synchronous validators and the custom validator registry.

Each validator takes the field value, the rule parameters and the full form
values, and returns an error message or None. Validators only judge values of
the kind they understand: ``minLength`` ignores numbers, ``min`` ignores
strings, and format checks ignore empty strings (``required`` covers those).
"""

import re
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import urlsplit

from formflow.types import FieldValue, FormValues, RuleType

SyncValidator = Callable[[FieldValue, Mapping[str, Any], FormValues], Optional[str]]
AsyncValidatorFn = Callable[[FieldValue, Mapping[str, Any], FormValues], Awaitable[Optional[str]]]

EMAIL_PATTERN = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
PHONE_PATTERN = re.compile(
    r"[+]?[(]?[0-9]{1,3}[)]?[-\s.]?[(]?[0-9]{1,4}[)]?[-\s.]?[0-9]{1,4}[-\s.]?[0-9]{1,9}"
)

REQUIRED_MESSAGE = "This field is required"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def required(value: FieldValue, params: Mapping[str, Any], form_values: FormValues) -> Optional[str]:
    """Fails on absent values, blank strings and unchecked checkboxes. 0 is a value."""
    if value is None:
        return REQUIRED_MESSAGE
    if isinstance(value, str) and value.strip() == "":
        return REQUIRED_MESSAGE
    if value is False:
        return REQUIRED_MESSAGE
    return None


def min_length(value: FieldValue, params: Mapping[str, Any], form_values: FormValues) -> Optional[str]:
    if not isinstance(value, str):
        return None
    limit = params.get("value")
    if not _is_number(limit):
        return None
    if len(value) < limit:
        return f"Must be at least {limit} characters"
    return None


def max_length(value: FieldValue, params: Mapping[str, Any], form_values: FormValues) -> Optional[str]:
    if not isinstance(value, str):
        return None
    limit = params.get("value")
    if not _is_number(limit):
        return None
    if len(value) > limit:
        return f"Must be at most {limit} characters"
    return None


def pattern(value: FieldValue, params: Mapping[str, Any], form_values: FormValues) -> Optional[str]:
    """Search ``value`` for the rule's regular expression.

    The pattern is compiled on every call; ``re.error`` propagates so the
    pipeline can report it and pass the field.
    """
    if not isinstance(value, str) or value == "":
        return None
    source = params.get("value")
    if not isinstance(source, str):
        return None
    if re.search(source, value) is None:
        return "Invalid format"
    return None


def email(value: FieldValue, params: Mapping[str, Any], form_values: FormValues) -> Optional[str]:
    if not isinstance(value, str) or value == "":
        return None
    if EMAIL_PATTERN.fullmatch(value) is None:
        return "Please enter a valid email address"
    return None


def phone(value: FieldValue, params: Mapping[str, Any], form_values: FormValues) -> Optional[str]:
    if not isinstance(value, str) or value == "":
        return None
    if PHONE_PATTERN.fullmatch(value) is None:
        return "Please enter a valid phone number"
    return None


def url(value: FieldValue, params: Mapping[str, Any], form_values: FormValues) -> Optional[str]:
    """Accept absolute URLs with a scheme and a host."""
    if not isinstance(value, str) or value == "":
        return None
    try:
        parts = urlsplit(value)
    except ValueError:
        return "Please enter a valid URL"
    if not parts.scheme or not parts.netloc or any(ch.isspace() for ch in value):
        return "Please enter a valid URL"
    return None


def minimum(value: FieldValue, params: Mapping[str, Any], form_values: FormValues) -> Optional[str]:
    if not _is_number(value):
        return None
    limit = params.get("value")
    if not _is_number(limit):
        return None
    if value < limit:
        return f"Must be at least {limit}"
    return None


def maximum(value: FieldValue, params: Mapping[str, Any], form_values: FormValues) -> Optional[str]:
    if not _is_number(value):
        return None
    limit = params.get("value")
    if not _is_number(limit):
        return None
    if value > limit:
        return f"Must be at most {limit}"
    return None


BUILTIN_VALIDATORS: Dict[RuleType, SyncValidator] = {
    RuleType.REQUIRED: required,
    RuleType.MIN_LENGTH: min_length,
    RuleType.MAX_LENGTH: max_length,
    RuleType.PATTERN: pattern,
    RuleType.EMAIL: email,
    RuleType.PHONE: phone,
    RuleType.URL: url,
    RuleType.MIN: minimum,
    RuleType.MAX: maximum,
}


def get_builtin_validator(rule_type: Any) -> Optional[SyncValidator]:
    try:
        return BUILTIN_VALIDATORS.get(RuleType(rule_type))
    except ValueError:
        return None


class ValidatorRegistry:
    """Named validators referenced by ``custom`` rules.

    Schemas stay pure data: a custom rule only names its validator, and the
    function is registered here by the application.

    Examples:
        >>> registry = ValidatorRegistry()
        >>> @registry.validator("even")
        ... def even(value, params, form_values):
        ...     return None if isinstance(value, int) and value % 2 == 0 else "Must be even"
        >>> registry.get("even") is even
        True
    """

    def __init__(self):
        self._sync: Dict[str, SyncValidator] = {}
        self._async: Dict[str, AsyncValidatorFn] = {}

    def register(self, name: str, fn: SyncValidator) -> None:
        self._sync[name] = fn

    def register_async(self, name: str, fn: AsyncValidatorFn) -> None:
        self._async[name] = fn

    def validator(self, name: str) -> Callable[[SyncValidator], SyncValidator]:
        """Decorator form of ``register``."""
        def decorate(fn: SyncValidator) -> SyncValidator:
            self.register(name, fn)
            return fn
        return decorate

    def get(self, name: Optional[str]) -> Optional[SyncValidator]:
        if name is None:
            return None
        return self._sync.get(name)

    def get_async(self, name: Optional[str]) -> Optional[AsyncValidatorFn]:
        if name is None:
            return None
        return self._async.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._sync or name in self._async


__all__ = [
    "SyncValidator",
    "AsyncValidatorFn",
    "BUILTIN_VALIDATORS",
    "get_builtin_validator",
    "ValidatorRegistry",
    "required",
    "min_length",
    "max_length",
    "pattern",
    "email",
    "phone",
    "url",
    "minimum",
    "maximum",
]
