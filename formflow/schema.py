"""Form schema model and loader.

A form is described entirely as data: a tree of sections holding fields,
each field carrying declarative validation rules and an optional visibility
condition. This module parses that wire shape into immutable dataclasses.

Structural problems with the document itself (missing ids, wrong container
types, duplicate ids, reference cycles) are reported by ``load_schema`` as a
``SchemaLoadError``. Content anomalies inside rules and conditions (unknown
rule types, unknown operators, unparseable condition shapes) are *not*
structural: they are kept as-is and degrade to fail-open behaviour at
evaluation time, so a single odd rule never prevents a form from loading.

Usage:
    >>> schema = load_schema({
    ...     "id": "contact",
    ...     "title": "Contact",
    ...     "sections": [{"id": "main", "fields": [
    ...         {"id": "email", "type": "text", "label": "Email",
    ...          "validation": [{"type": "required"}, {"type": "email"}]},
    ...     ]}],
    ... })
    >>> [f.id for f in schema.iter_fields()]
    ['email']
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from jsonschema import Draft7Validator

from formflow.errors import SchemaLoadError
from formflow.types import ConditionOperator, FieldType, FieldValue, RuleType, ValidationTrigger


# ============================================================================
# CONDITIONS
# ============================================================================

@dataclass(frozen=True)
class SimpleCondition:
    """Compare one field's value against a constant.

    ``operator`` is a raw string when it is not a known ``ConditionOperator``.
    """
    field: str
    operator: Union[ConditionOperator, str]
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "field": self.field,
            "operator": self.operator.value if isinstance(self.operator, ConditionOperator) else self.operator,
        }
        if self.value is not None:
            result["value"] = self.value
        return result


@dataclass(frozen=True)
class AndCondition:
    children: Tuple["Condition", ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"and": [c.to_dict() for c in self.children]}


@dataclass(frozen=True)
class OrCondition:
    children: Tuple["Condition", ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"or": [c.to_dict() for c in self.children]}


@dataclass(frozen=True)
class NotCondition:
    child: "Condition"

    def to_dict(self) -> Dict[str, Any]:
        return {"not": self.child.to_dict()}


@dataclass(frozen=True)
class UnknownCondition:
    """A condition whose shape could not be recognised. Evaluates as visible."""
    raw: Any

    def to_dict(self) -> Any:
        return self.raw


Condition = Union[SimpleCondition, AndCondition, OrCondition, NotCondition, UnknownCondition]

CONDITION_TYPES = (SimpleCondition, AndCondition, OrCondition, NotCondition, UnknownCondition)


def parse_condition(data: Any) -> Condition:
    """Parse a condition wire shape into a ``Condition``.

    Never raises: anything unrecognised becomes an ``UnknownCondition``.

    Examples:
        >>> parse_condition({"field": "country", "operator": "equals", "value": "US"})
        SimpleCondition(field='country', operator=<ConditionOperator.EQUALS: 'equals'>, value='US')
        >>> parse_condition({"xor": []})
        UnknownCondition(raw={'xor': []})
    """
    if isinstance(data, CONDITION_TYPES):
        return data
    if not isinstance(data, dict):
        return UnknownCondition(raw=data)

    if "field" in data and "operator" in data:
        operator = data["operator"]
        try:
            operator = ConditionOperator(operator)
        except ValueError:
            pass
        return SimpleCondition(field=str(data["field"]), operator=operator, value=data.get("value"))

    if "and" in data and isinstance(data["and"], (list, tuple)):
        return AndCondition(children=tuple(parse_condition(c) for c in data["and"]))

    if "or" in data and isinstance(data["or"], (list, tuple)):
        return OrCondition(children=tuple(parse_condition(c) for c in data["or"]))

    if "not" in data:
        return NotCondition(child=parse_condition(data["not"]))

    return UnknownCondition(raw=data)


# ============================================================================
# VALIDATION RULES
# ============================================================================

@dataclass(frozen=True)
class ValidationRule:
    """A declarative validation constraint attached to a field.

    Attributes:
        type: Rule kind; a raw string when not a known ``RuleType``
        message: Error message overriding the validator's fallback
        trigger: When collaborators should run the rule (hint only)
        value: Threshold, pattern string, validator name or URL depending on type
        validator: Registered validator name (custom rules)
        params: Extra parameters passed to custom validators
        url: Endpoint for async rules
        debounce_ms: Debounce delay for async rules
    """
    type: Union[RuleType, str]
    message: Optional[str] = None
    trigger: Optional[ValidationTrigger] = None
    value: Any = None
    validator: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    url: Optional[str] = None
    debounce_ms: Optional[int] = None

    @property
    def is_async(self) -> bool:
        return self.type == RuleType.ASYNC

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the rule wire shape."""
        result: Dict[str, Any] = {
            "type": self.type.value if isinstance(self.type, RuleType) else self.type,
        }
        if self.message is not None:
            result["message"] = self.message
        if self.trigger is not None:
            result["trigger"] = self.trigger.value
        if self.value is not None:
            result["value"] = self.value
        if self.validator is not None:
            result["validator"] = self.validator
        if self.params:
            result["params"] = self.params
        if self.url is not None:
            result["url"] = self.url
        if self.debounce_ms is not None:
            result["debounceMs"] = self.debounce_ms
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationRule":
        """Create a rule from its wire shape.

        Custom rules may name their validator in ``validator`` or ``value``;
        async rules may carry their endpoint in ``url`` or ``value``.
        """
        rule_type: Union[RuleType, str] = data.get("type", "")
        try:
            rule_type = RuleType(rule_type)
        except ValueError:
            pass

        trigger = data.get("trigger")
        try:
            trigger = ValidationTrigger(trigger) if trigger is not None else None
        except ValueError:
            trigger = None

        value = data.get("value")
        validator = data.get("validator")
        url = data.get("url")
        if rule_type == RuleType.CUSTOM and validator is None and isinstance(value, str):
            validator = value
        if rule_type == RuleType.ASYNC and url is None and isinstance(value, str):
            url = value

        return cls(
            type=rule_type,
            message=data.get("message"),
            trigger=trigger,
            value=value,
            validator=validator,
            params=dict(data.get("params") or {}),
            url=url,
            debounce_ms=data.get("debounceMs"),
        )


def parse_rules(data: Optional[List[Any]]) -> Tuple[ValidationRule, ...]:
    """Parse a list of rule wire shapes, accepting already-parsed rules."""
    rules: List[ValidationRule] = []
    for item in data or ():
        if isinstance(item, ValidationRule):
            rules.append(item)
        elif isinstance(item, dict):
            rules.append(ValidationRule.from_dict(item))
        else:
            rules.append(ValidationRule(type=str(item)))
    return tuple(rules)


# ============================================================================
# FIELDS & SECTIONS
# ============================================================================

@dataclass(frozen=True)
class SelectOption:
    label: str
    value: Union[str, int, float]
    disabled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"label": self.label, "value": self.value}
        if self.disabled:
            result["disabled"] = True
        return result


@dataclass(frozen=True)
class AsyncOptionsConfig:
    """Where and how a select field fetches its options.

    ``url`` may contain a ``{value}`` placeholder replaced by the dependency
    field's current value.
    """
    url: str
    method: str = "GET"
    response_path: Optional[str] = None
    label_key: str = "label"
    value_key: str = "value"
    depends_on: Tuple[str, ...] = ()
    cache_duration: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AsyncOptionsConfig":
        depends_on = data.get("dependsOn") or ()
        if isinstance(depends_on, str):
            depends_on = (depends_on,)
        return cls(
            url=data["url"],
            method=str(data.get("method", "GET")).upper(),
            response_path=data.get("responsePath"),
            label_key=data.get("labelKey") or "label",
            value_key=data.get("valueKey") or "value",
            depends_on=tuple(depends_on),
            cache_duration=int(data.get("cacheDuration") or 0),
        )


@dataclass(frozen=True)
class FieldSchema:
    """A single named, typed, independently validated unit of form data.

    Attributes:
        id: Unique identifier, used as the form-state key
        type: Field kind; a raw string when not a known ``FieldType``
        label: Human-readable label
        validation: Rules evaluated in order, first failure stops
        show_when: Visibility condition (always visible when None)
        default_value: Value used to seed the form
        options: Static select options
        async_options: Remote select options configuration
        attributes: Remaining type-specific attributes, passed through untouched
    """
    id: str
    type: Union[FieldType, str]
    label: str = ""
    validation: Tuple[ValidationRule, ...] = ()
    show_when: Optional[Condition] = None
    default_value: FieldValue = None
    options: Tuple[SelectOption, ...] = ()
    async_options: Optional[AsyncOptionsConfig] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = frozenset(
        {"id", "type", "label", "validation", "showWhen", "defaultValue", "options", "asyncOptions"}
    )

    def has_rule(self, rule_type: Union[RuleType, str]) -> bool:
        return any(rule.type == rule_type for rule in self.validation)

    @property
    def async_rules(self) -> Tuple[ValidationRule, ...]:
        return tuple(rule for rule in self.validation if rule.is_async)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldSchema":
        field_type: Union[FieldType, str] = data["type"]
        try:
            field_type = FieldType(field_type)
        except ValueError:
            pass

        show_when = data.get("showWhen")
        async_options = data.get("asyncOptions")
        return cls(
            id=data["id"],
            type=field_type,
            label=data.get("label", ""),
            validation=parse_rules(data.get("validation")),
            show_when=parse_condition(show_when) if show_when is not None else None,
            default_value=data.get("defaultValue"),
            options=tuple(
                SelectOption(label=o["label"], value=o["value"], disabled=bool(o.get("disabled", False)))
                for o in data.get("options") or ()
            ),
            async_options=AsyncOptionsConfig.from_dict(async_options) if async_options else None,
            attributes={k: v for k, v in data.items() if k not in cls._KNOWN_KEYS},
        )


@dataclass(frozen=True)
class SectionSchema:
    """A named group of fields, optionally repeatable."""
    id: str
    fields: Tuple[FieldSchema, ...] = ()
    title: Optional[str] = None
    description: Optional[str] = None
    repeatable: bool = False
    min_instances: Optional[int] = None
    max_instances: Optional[int] = None
    show_when: Optional[Condition] = None
    sections: Tuple["SectionSchema", ...] = ()

    @property
    def field_ids(self) -> Tuple[str, ...]:
        return tuple(f.id for f in self.fields)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SectionSchema":
        show_when = data.get("showWhen")
        return cls(
            id=data["id"],
            fields=tuple(FieldSchema.from_dict(f) for f in data.get("fields") or ()),
            title=data.get("title"),
            description=data.get("description"),
            repeatable=bool(data.get("repeatable", False)),
            min_instances=data.get("minInstances"),
            max_instances=data.get("maxInstances"),
            show_when=parse_condition(show_when) if show_when is not None else None,
            sections=tuple(SectionSchema.from_dict(s) for s in data.get("sections") or ()),
        )


@dataclass(frozen=True)
class AutosaveConfig:
    """Per-form autosave settings. ``None`` members defer to the engine config."""
    enabled: bool = False
    debounce_ms: Optional[int] = None
    storage_key: Optional[str] = None
    conflict_strategy: Optional[str] = None
    version_field: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutosaveConfig":
        return cls(
            enabled=bool(data.get("enabled", False)),
            debounce_ms=data.get("debounceMs"),
            storage_key=data.get("storageKey"),
            conflict_strategy=data.get("conflictStrategy"),
            version_field=data.get("versionField"),
        )


@dataclass(frozen=True)
class FormSchema:
    """Top-level form description: the sole configuration surface of a form."""
    id: str
    title: str
    sections: Tuple[SectionSchema, ...]
    version: Optional[str] = None
    description: Optional[str] = None
    autosave: Optional[AutosaveConfig] = None

    def iter_sections(self) -> Iterator[SectionSchema]:
        """Yield every section depth-first, nested sections after their parent."""
        stack = list(reversed(self.sections))
        while stack:
            section = stack.pop()
            yield section
            stack.extend(reversed(section.sections))

    def iter_fields(self) -> Iterator[FieldSchema]:
        for section in self.iter_sections():
            yield from section.fields

    def get_field(self, field_id: str) -> Optional[FieldSchema]:
        for f in self.iter_fields():
            if f.id == field_id:
                return f
        return None

    def get_section(self, section_id: str) -> Optional[SectionSchema]:
        for section in self.iter_sections():
            if section.id == section_id:
                return section
        return None

    def section_of(self, field_id: str) -> Optional[SectionSchema]:
        for section in self.iter_sections():
            if field_id in section.field_ids:
                return section
        return None

    def repeatable_sections(self) -> List[SectionSchema]:
        return [s for s in self.iter_sections() if s.repeatable]

    def field_conditions(self) -> Dict[str, Optional[Condition]]:
        return {f.id: f.show_when for f in self.iter_fields()}

    def default_values(self) -> Dict[str, FieldValue]:
        """Defaults of fields outside repeatable sections."""
        defaults: Dict[str, FieldValue] = {}
        for section in self.iter_sections():
            if section.repeatable:
                continue
            for f in section.fields:
                if f.default_value is not None:
                    defaults[f.id] = f.default_value
        return defaults

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FormSchema":
        autosave = data.get("autosave")
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            sections=tuple(SectionSchema.from_dict(s) for s in data.get("sections") or ()),
            version=data.get("version"),
            description=data.get("description"),
            autosave=AutosaveConfig.from_dict(autosave) if autosave else None,
        )


# ============================================================================
# LOADING
# ============================================================================

FORM_SCHEMA_DOCUMENT: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["id", "title", "sections"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "title": {"type": "string"},
        "version": {"type": "string"},
        "description": {"type": "string"},
        "sections": {"type": "array", "items": {"$ref": "#/definitions/section"}},
        "autosave": {"$ref": "#/definitions/autosave"},
    },
    "definitions": {
        "section": {
            "type": "object",
            "required": ["id", "fields"],
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "title": {"type": "string"},
                "fields": {"type": "array", "items": {"$ref": "#/definitions/field"}},
                "repeatable": {"type": "boolean"},
                "minInstances": {"type": "integer", "minimum": 0},
                "maxInstances": {"type": "integer", "minimum": 0},
                "showWhen": {"type": "object"},
                "sections": {"type": "array", "items": {"$ref": "#/definitions/section"}},
            },
        },
        "field": {
            "type": "object",
            "required": ["id", "type"],
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "type": {"type": "string"},
                "label": {"type": "string"},
                "validation": {"type": "array", "items": {"type": "object"}},
                "showWhen": {"type": "object"},
                "options": {
                    "type": "array",
                    "items": {"type": "object", "required": ["label", "value"]},
                },
                "asyncOptions": {"type": "object", "required": ["url"]},
            },
        },
        "autosave": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "debounceMs": {"type": "number", "minimum": 0},
                "storageKey": {"type": "string"},
                "conflictStrategy": {"enum": ["local", "remote", "prompt"]},
                "versionField": {"type": "string"},
            },
        },
    },
}

_document_validator = Draft7Validator(FORM_SCHEMA_DOCUMENT)


def _find_cycles(data: Any, path: str, active: set, errors: List[str]) -> None:
    if isinstance(data, (dict, list)):
        if id(data) in active:
            errors.append(f"{path or '<root>'}: schema must be a tree, found a reference cycle")
            return
        active.add(id(data))
        items = data.items() if isinstance(data, dict) else enumerate(data)
        for key, child in items:
            _find_cycles(child, f"{path}/{key}", active, errors)
        active.discard(id(data))


def _check_unique_ids(data: Dict[str, Any], errors: List[str]) -> None:
    seen_sections: Dict[str, str] = {}
    seen_fields: Dict[str, str] = {}

    def walk(sections: List[Dict[str, Any]], path: str) -> None:
        for i, section in enumerate(sections):
            section_path = f"{path}/{i}"
            section_id = section["id"]
            if section_id in seen_sections:
                errors.append(f"{section_path}/id: duplicate section id '{section_id}'")
            seen_sections.setdefault(section_id, section_path)

            for j, f in enumerate(section.get("fields") or ()):
                field_id = f["id"]
                if field_id in seen_fields:
                    errors.append(f"{section_path}/fields/{j}/id: duplicate field id '{field_id}'")
                seen_fields.setdefault(field_id, section_path)

            low, high = section.get("minInstances"), section.get("maxInstances")
            if low is not None and high is not None and low > high:
                errors.append(f"{section_path}: minInstances ({low}) exceeds maxInstances ({high})")

            walk(section.get("sections") or [], f"{section_path}/sections")

    walk(data.get("sections") or [], "sections")


def load_schema(data: Union[Dict[str, Any], FormSchema]) -> FormSchema:
    """Check a schema document and build a ``FormSchema``.

    Args:
        data: Schema wire shape (or an already-built ``FormSchema``)

    Returns:
        The parsed schema

    Raises:
        SchemaLoadError: If the document is not a tree, violates the document
            structure, or reuses an id
    """
    if isinstance(data, FormSchema):
        return data
    if not isinstance(data, dict):
        raise SchemaLoadError([f"schema must be an object, got {type(data).__name__}"])

    errors: List[str] = []
    _find_cycles(data, "", set(), errors)
    if errors:
        raise SchemaLoadError(errors)

    for error in sorted(_document_validator.iter_errors(data), key=lambda e: list(e.absolute_path)):
        path = "/".join(str(p) for p in error.absolute_path) or "<root>"
        errors.append(f"{path}: {error.message}")
    if errors:
        raise SchemaLoadError(errors)

    _check_unique_ids(data, errors)
    if errors:
        raise SchemaLoadError(errors)

    return FormSchema.from_dict(data)


__all__ = [
    "SimpleCondition",
    "AndCondition",
    "OrCondition",
    "NotCondition",
    "UnknownCondition",
    "Condition",
    "parse_condition",
    "ValidationRule",
    "parse_rules",
    "SelectOption",
    "AsyncOptionsConfig",
    "FieldSchema",
    "SectionSchema",
    "AutosaveConfig",
    "FormSchema",
    "FORM_SCHEMA_DOCUMENT",
    "load_schema",
]
