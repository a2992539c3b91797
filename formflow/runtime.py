"""FormSession orchestrator.

``FormSession`` ties the engine together for one live form: it owns the
``FormStore``, runs sync and async validation for fields, computes
visibility with the resolver, drives submission, enforces repeatable-section
limits and hands value changes to the autosave coordinator.

Renderers and other front ends talk to a session only; they never need to
dispatch intent messages themselves (although ``dispatch`` is available).

Usage:
    >>> import asyncio
    >>> session = FormSession({
    ...     "id": "signup", "title": "Sign up",
    ...     "sections": [{"id": "main", "fields": [
    ...         {"id": "age", "type": "number",
    ...          "validation": [{"type": "required"}, {"type": "min", "value": 18}]},
    ...     ]}],
    ... })
    >>> _ = session.set_value("age", 16)
    >>> asyncio.run(session.validate_field("age"))
    ['Must be at least 18']
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from formflow.actions import (
    AddSectionInstance,
    ClearAllErrors,
    FormAction,
    RemoveSectionInstance,
    ResetForm,
    SetFieldError,
    SetFieldTouched,
    SetFieldValidating,
    SetFieldValue,
    SetFormErrors,
    SetSubmitting,
)
from formflow.async_validation import AsyncValidator, create_async_validator
from formflow.autosave import AutosaveCoordinator, SaveFunction
from formflow.config import EngineConfig
from formflow.diagnostics import DiagnosticCode, DiagnosticSink, report
from formflow.drafts import Draft, DraftStore
from formflow.errors import FormflowError, InstanceLimitError
from formflow.events import EventEmitter
from formflow.options import OptionsLoader
from formflow.reducer import get_instance_counts, get_section_instance_count, is_dirty, is_valid
from formflow.resolver import visible_fields_for_schema
from formflow.schema import FormSchema, SectionSchema, ValidationRule, load_schema
from formflow.state import FormState, field_key, parse_field_key
from formflow.store import FormStore
from formflow.transport import Fetch
from formflow.types import ConflictResolution, FieldValue, FormValues, RuleType
from formflow.validation import FormValidationResult, ValidationEngine
from formflow.validators import ValidatorRegistry

logger = logging.getLogger(__name__)

SubmitHandler = Callable[[FormValues], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of ``FormSession.submit``.

    Attributes:
        ok: True when validation passed and the handler completed
        field_errors: Validation errors by field key (empty when valid)
        error: Message of an exception raised by the submit handler
    """
    ok: bool
    field_errors: Dict[str, List[str]] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"ok": self.ok}
        if self.field_errors:
            result["fieldErrors"] = {k: list(v) for k, v in self.field_errors.items()}
        if self.error is not None:
            result["error"] = self.error
        return result


async def _no_save(values: FormValues) -> Dict[str, Any]:
    raise FormflowError("No save function configured")


class FormSession:
    """One live form: state, validation, visibility, submit and autosave.

    Attributes:
        schema: Parsed form schema
        config: Effective configuration (engine defaults plus the form's own)
        store: Owner of the form state
        engine: Sync validation bound to the schema
        autosave: Autosave/conflict coordinator

    Examples:
        >>> session = FormSession({"id": "f", "title": "F", "sections": [
        ...     {"id": "s", "fields": [{"id": "name", "type": "text", "defaultValue": "Ada"}]}]})
        >>> session.state.values
        {'name': 'Ada'}
    """

    def __init__(
        self,
        schema: Union[FormSchema, Dict[str, Any]],
        config: Optional[EngineConfig] = None,
        registry: Optional[ValidatorRegistry] = None,
        fetch: Optional[Fetch] = None,
        save: Optional[SaveFunction] = None,
        diagnostics: Optional[DiagnosticSink] = None,
        initial_values: Optional[FormValues] = None,
        drafts: Optional[DraftStore] = None,
    ):
        """Initialize a session.

        Args:
            schema: Parsed schema or its wire dict (loaded with ``load_schema``)
            config: Engine defaults; the form's ``autosave`` settings override them
            registry: Custom sync/async validators referenced by name
            fetch: Fetch function for async validation and options
            save: Autosave function; autosave stays off without one
            diagnostics: Sink for schema anomalies (logs when None)
            initial_values: Values merged over the schema defaults
            drafts: Store used by ``restore_draft``/``save_draft``

        Raises:
            SchemaLoadError: If ``schema`` is a dict that fails to load
        """
        self.schema = schema if isinstance(schema, FormSchema) else load_schema(schema)
        self.config = (config or EngineConfig()).for_schema(self.schema)
        self.registry = registry or ValidatorRegistry()
        self.diagnostics = diagnostics
        self.engine = ValidationEngine(self.schema, self.registry, diagnostics)
        self.drafts = drafts
        self._fetch = fetch
        self._async_validators: Dict[Tuple[str, str], AsyncValidator] = {}
        self._validation_runs: Dict[str, int] = {}
        self._options: Dict[str, OptionsLoader] = {}

        values = self.schema.default_values()
        values.update(initial_values or {})
        self.store = FormStore(self.schema.id, values, diagnostics)
        self.autosave = AutosaveCoordinator(
            self.store,
            save or _no_save,
            debounce_ms=self.config.autosave_debounce_ms,
            enabled=self.config.autosave_enabled and save is not None,
            conflict_strategy=self.config.conflict_strategy,
        )
        self._seed_min_instances()

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def state(self) -> FormState:
        return self.store.state

    @property
    def events(self) -> EventEmitter:
        return self.store.events

    def dispatch(self, action: FormAction) -> FormState:
        return self.store.dispatch(action)

    def _instance_counts(self) -> Dict[str, int]:
        return get_instance_counts(self.state, [s.id for s in self.schema.repeatable_sections()])

    def _repeatable_section_of(self, field_id: str) -> Optional[SectionSchema]:
        section = self.schema.section_of(field_id)
        return section if section is not None and section.repeatable else None

    # ------------------------------------------------------------------
    # Field operations
    # ------------------------------------------------------------------

    def set_value(self, field_id: str, value: FieldValue, instance_index: Optional[int] = None) -> FormState:
        """Write a value and arm an autosave when the form becomes dirty."""
        section = self._repeatable_section_of(field_id) if instance_index is not None else None
        state = self.dispatch(
            SetFieldValue(
                field_id=field_id,
                value=value,
                instance_index=instance_index,
                section_id=section.id if section is not None else None,
            )
        )
        if self.autosave.enabled:
            self.autosave.notify_change(state.values, is_dirty(state))
        return state

    def touch(self, field_id: str, instance_index: Optional[int] = None) -> FormState:
        return self.dispatch(SetFieldTouched(field_id=field_id, touched=True, instance_index=instance_index))

    async def validate_field(self, field_id: str, instance_index: Optional[int] = None) -> Optional[List[str]]:
        """Validate one field: sync rules first, then async rules.

        Errors are dispatched to the store. A run overtaken by a newer run for
        the same field is discarded: nothing is dispatched and None is returned.

        Returns:
            The field's errors (empty when valid), or None when stale
        """
        key = str(field_key(field_id, instance_index))
        run = self._validation_runs.get(key, 0) + 1
        self._validation_runs[key] = run

        values = self.state.values
        value = values.get(key)
        result = self.engine.validate_field(field_id, value, values, instance_index)
        schema_field = self.schema.get_field(field_id)
        async_rules = schema_field.async_rules if schema_field is not None else ()

        if not result.is_valid or not async_rules:
            self.dispatch(SetFieldError(field_id=field_id, errors=tuple(result.errors), instance_index=instance_index))
            return list(result.errors)

        self.dispatch(SetFieldValidating(field_id=field_id, validating=True, instance_index=instance_index))
        errors: List[str] = []
        for rule in async_rules:
            error = await self._run_async_rule(key, rule, value, values)
            if self._validation_runs.get(key) != run:
                return None
            if error:
                errors.append(error)
                break

        self.dispatch(SetFieldError(field_id=field_id, errors=tuple(errors), instance_index=instance_index))
        return errors

    async def _run_async_rule(
        self, key: str, rule: ValidationRule, value: FieldValue, values: FormValues
    ) -> Optional[str]:
        named = self.registry.get_async(rule.validator)
        if named is not None:
            params = dict(rule.params)
            params["value"] = rule.value
            return await named(value, params, values)

        if rule.url:
            return await self._async_validator(key, rule).validate(value)

        report(
            self.diagnostics,
            DiagnosticCode.CUSTOM_VALIDATOR_MISSING,
            f"Async rule on {key!r} has neither a url nor a registered validator",
            field=key,
            validator=rule.validator,
        )
        return None

    def _async_validator(self, key: str, rule: ValidationRule) -> AsyncValidator:
        cache_key = (key, rule.url or "")
        validator = self._async_validators.get(cache_key)
        if validator is None:
            validator = create_async_validator(
                rule.url or "",
                debounce_ms=rule.debounce_ms if rule.debounce_ms is not None else self.config.async_debounce_ms,
                fetch=self._fetch,
                timeout_ms=self.config.async_timeout_ms,
                diagnostics=self.diagnostics,
            )
            self._async_validators[cache_key] = validator
        return validator

    def validate_form(self, touched_only: bool = False) -> FormValidationResult:
        """Validate every visible field without touching the store."""
        state = self.state
        touched = [key for key, fs in state.fields.items() if fs.touched]
        return self.engine.validate(
            state.values,
            touched_only=touched_only,
            touched_fields=touched,
            instance_counts=self._instance_counts(),
        )

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    def visible_field_ids(self) -> Set[str]:
        """Ids of fields currently shown (field and section conditions)."""
        return visible_fields_for_schema(self.schema, self.state.values, self.diagnostics)

    def hidden_required_field_ids(self) -> Set[str]:
        """Ids of required fields that are currently hidden."""
        visible = self.visible_field_ids()
        return {
            f.id
            for f in self.schema.iter_fields()
            if f.has_rule(RuleType.REQUIRED) and f.id not in visible
        }

    def options_loader(self, field_id: str) -> OptionsLoader:
        """The options loader of a select field with ``asyncOptions``.

        Raises:
            KeyError: If the field has no async options
        """
        loader = self._options.get(field_id)
        if loader is None:
            schema_field = self.schema.get_field(field_id)
            if schema_field is None or schema_field.async_options is None:
                raise KeyError(f"Field {field_id!r} has no async options")
            loader = OptionsLoader(schema_field.async_options, self._fetch)
            self._options[field_id] = loader
        return loader

    async def load_options(self, field_id: str):
        """Load options for ``field_id`` using its dependency's current value."""
        loader = self.options_loader(field_id)
        depends_on = loader.config.depends_on
        dependency_value = self.state.values.get(depends_on[0]) if depends_on else None
        return await loader.load(dependency_value)

    # ------------------------------------------------------------------
    # Submit / reset
    # ------------------------------------------------------------------

    def _touch_all(self) -> None:
        counts = self._instance_counts()
        for section in self.schema.iter_sections():
            if section.repeatable:
                for index in range(counts.get(section.id, 0)):
                    for f in section.fields:
                        self.touch(f.id, index)
            else:
                for f in section.fields:
                    self.touch(f.id)

    async def submit(self, on_submit: SubmitHandler) -> SubmitResult:
        """Validate the visible fields and hand the values to ``on_submit``.

        Every field is marked touched first. When validation fails the errors
        are dispatched and ``on_submit`` is not called. Otherwise all errors
        are cleared, ``is_submitting`` is held while the handler runs, and a
        handler exception is logged and reported in the result.
        """
        self._touch_all()
        result = self.validate_form()
        if not result.is_valid:
            self.dispatch(ClearAllErrors())
            self.dispatch(SetFormErrors(errors=result.field_errors))
            return SubmitResult(ok=False, field_errors=result.field_errors)

        self.dispatch(ClearAllErrors())
        self.dispatch(SetSubmitting(submitting=True))
        try:
            outcome = on_submit(dict(self.state.values))
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.exception("Submit handler failed for form %s", self.schema.id)
            return SubmitResult(ok=False, error=str(exc) or exc.__class__.__name__)
        finally:
            self.dispatch(SetSubmitting(submitting=False))
        return SubmitResult(ok=True)

    def reset(self, values: Optional[FormValues] = None) -> FormState:
        """Reset to ``values`` (or the initial values) and re-seed minimum instances."""
        self._cancel_pending()
        self.dispatch(ResetForm(values=values))
        self._seed_min_instances()
        return self.state

    def _cancel_pending(self) -> None:
        for validator in self._async_validators.values():
            validator.cancel()
        self._validation_runs.clear()
        self.autosave.cancel()

    # ------------------------------------------------------------------
    # Repeatable sections
    # ------------------------------------------------------------------

    def _repeatable(self, section_id: str) -> SectionSchema:
        section = self.schema.get_section(section_id)
        if section is None or not section.repeatable:
            raise KeyError(f"Unknown repeatable section: {section_id!r}")
        return section

    def _seed_min_instances(self) -> None:
        for section in self.schema.repeatable_sections():
            while get_section_instance_count(self.state, section.id) < (section.min_instances or 0):
                self._append_instance(section, None)

    def _append_instance(self, section: SectionSchema, default_values: Optional[Dict[str, FieldValue]]) -> int:
        defaults = {f.id: f.default_value for f in section.fields if f.default_value is not None}
        defaults.update(default_values or {})
        index = get_section_instance_count(self.state, section.id)
        self.dispatch(AddSectionInstance(section_id=section.id, default_values=defaults))
        return index

    def add_instance(self, section_id: str, default_values: Optional[Dict[str, FieldValue]] = None) -> int:
        """Append an instance and return its index.

        Raises:
            KeyError: If the section is unknown or not repeatable
            InstanceLimitError: If the section already has ``max_instances``
        """
        section = self._repeatable(section_id)
        count = get_section_instance_count(self.state, section_id)
        if section.max_instances is not None and count >= section.max_instances:
            raise InstanceLimitError(
                section_id,
                count,
                section.max_instances,
                f"Section '{section_id}' allows at most {section.max_instances} instances",
            )
        return self._append_instance(section, default_values)

    def remove_instance(self, section_id: str, instance_index: int) -> FormState:
        """Remove an instance; later instances shift down by one.

        Raises:
            KeyError: If the section is unknown or not repeatable
            InstanceLimitError: If the section is at ``min_instances``
        """
        section = self._repeatable(section_id)
        count = get_section_instance_count(self.state, section_id)
        limit = section.min_instances or 0
        if count <= limit:
            raise InstanceLimitError(
                section_id, count, limit, f"Section '{section_id}' needs at least {limit} instances"
            )
        for (key, _url), validator in self._async_validators.items():
            if parse_field_key(key).field_id in section.field_ids:
                validator.cancel()
        # Runs on removed or shifted keys must not land on the new occupant
        for key in list(self._validation_runs):
            parsed = parse_field_key(key)
            if (
                parsed.field_id in section.field_ids
                and parsed.instance_index is not None
                and parsed.instance_index >= instance_index
            ):
                self._validation_runs[key] += 1
        return self.dispatch(
            RemoveSectionInstance(
                section_id=section_id, instance_index=instance_index, field_ids=section.field_ids
            )
        )

    # ------------------------------------------------------------------
    # Autosave / drafts
    # ------------------------------------------------------------------

    async def save_now(self) -> bool:
        return await self.autosave.save_now()

    def resolve_conflict(self, resolution: Union[ConflictResolution, str]) -> FormState:
        self.autosave.resolve(resolution)
        return self.state

    @property
    def _storage_key(self) -> str:
        autosave = self.schema.autosave
        return autosave.storage_key if autosave is not None and autosave.storage_key else self.schema.id

    def save_draft(self) -> Optional[Draft]:
        """Persist the current values to the draft store, if one is configured."""
        if self.drafts is None:
            return None
        version = self.autosave.expected_version or None
        return self.drafts.save(self._storage_key, dict(self.state.values), version)

    def restore_draft(self, draft: Optional[Draft] = None) -> bool:
        """Apply ``draft`` (or the stored one). Returns False on conflict or no draft."""
        if draft is None and self.drafts is not None:
            draft = self.drafts.load(self._storage_key)
        if draft is None:
            return False
        return self.autosave.restore_draft(draft)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Plain-data view of the session for renderers and serialization."""
        state = self.state
        result = state.to_dict()
        result.update(
            {
                "formId": self.schema.id,
                "visibleFields": sorted(self.visible_field_ids()),
                "isValid": is_valid(state),
                "isDirty": is_dirty(state),
                "autosavePhase": self.autosave.phase.value,
            }
        )
        if self.autosave.last_error is not None:
            result["autosaveError"] = self.autosave.last_error
        return result

    def close(self) -> None:
        """Cancel pending validation, option loads and autosaves."""
        self._cancel_pending()
        for loader in self._options.values():
            loader.cancel()


__all__ = [
    "FormSession",
    "SubmitResult",
    "SubmitHandler",
]
