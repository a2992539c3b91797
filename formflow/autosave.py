"""Autosave and conflict coordinator.

The coordinator debounces saves of dirty form values, tracks the server
version it expects next, and turns an unexpected version into an explicit
conflict that only a resolution can clear.

Phases move along ``AUTOSAVE_TRANSITIONS``; any other move raises
``InvalidAutosaveTransitionError``::

    idle -> pending_save        notify_change while dirty
    pending_save -> saving      debounce timer expired
    saving -> idle              save accepted
    saving -> conflict          unexpected server version
    conflict -> pending_save    resolve (idle when autosave is disabled)

Save results have the shape ``{version, values?, timestamp?}``. With an
expected version of 0 the first result is always accepted; afterwards a
result whose version is not ``expected + 1`` is a conflict.

Usage:
    >>> async def save(values):  # doctest: +SKIP
    ...     return {"version": await api.save(values)}
    >>> coordinator = AutosaveCoordinator(store, save, debounce_ms=2000)  # doctest: +SKIP
    >>> coordinator.notify_change(store.state.values, is_dirty=True)  # doctest: +SKIP
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Union

from formflow.actions import ResolveConflict, SetConflict, SetDraftLoaded, SetLastSaved, SetValues
from formflow.async_validation import Debouncer
from formflow.drafts import Draft, now_ms
from formflow.errors import InvalidAutosaveTransitionError
from formflow.reducer import is_dirty
from formflow.state import values_equal
from formflow.store import FormStore
from formflow.types import AutosavePhase, ConflictResolution, ConflictStrategy, FormValues

logger = logging.getLogger(__name__)

DEFAULT_AUTOSAVE_DEBOUNCE_MS = 2000

AUTOSAVE_TRANSITIONS: Dict[AutosavePhase, Set[AutosavePhase]] = {
    AutosavePhase.IDLE: {
        AutosavePhase.PENDING_SAVE,
        AutosavePhase.SAVING,
        AutosavePhase.CONFLICT,
    },
    AutosavePhase.PENDING_SAVE: {
        AutosavePhase.PENDING_SAVE,
        AutosavePhase.IDLE,
        AutosavePhase.SAVING,
        AutosavePhase.CONFLICT,
    },
    AutosavePhase.SAVING: {
        AutosavePhase.IDLE,
        AutosavePhase.PENDING_SAVE,
        AutosavePhase.CONFLICT,
    },
    # Left only through resolve()
    AutosavePhase.CONFLICT: {
        AutosavePhase.IDLE,
        AutosavePhase.PENDING_SAVE,
    },
}


@dataclass(frozen=True)
class SaveResult:
    """What the injected save function reports back."""
    version: int
    values: Optional[FormValues] = None
    timestamp: Optional[float] = None

    @classmethod
    def coerce(cls, raw: Union["SaveResult", Mapping[str, Any]]) -> "SaveResult":
        if isinstance(raw, SaveResult):
            return raw
        return cls(version=raw["version"], values=raw.get("values"), timestamp=raw.get("timestamp"))


SaveFunction = Callable[[FormValues], Awaitable[Union[SaveResult, Mapping[str, Any]]]]


class AutosaveCoordinator:
    """Debounced autosave with version-based conflict detection.

    Attributes:
        phase: Current ``AutosavePhase``
        expected_version: Last version acknowledged by the server (0 = unknown)
        server_version: Version reported alongside the current conflict
        last_error: Message of the last failed save, if any
    """

    _KEY = "autosave"

    def __init__(
        self,
        store: FormStore,
        save: SaveFunction,
        debounce_ms: float = DEFAULT_AUTOSAVE_DEBOUNCE_MS,
        enabled: bool = True,
        conflict_strategy: Union[ConflictStrategy, str] = ConflictStrategy.PROMPT,
        expected_version: int = 0,
        clock: Callable[[], float] = now_ms,
    ):
        self._store = store
        self._save = save
        self.debounce_ms = debounce_ms
        self.enabled = enabled
        self.conflict_strategy = ConflictStrategy(conflict_strategy)
        self.expected_version = expected_version
        self.server_version: Optional[int] = None
        self.last_error: Optional[str] = None
        self.phase = AutosavePhase.IDLE
        self._clock = clock
        self._debouncer = Debouncer()
        self._changed_while_saving: Optional[FormValues] = None

    # ------------------------------------------------------------------
    # Phase handling
    # ------------------------------------------------------------------

    def can_transition_to(self, target: AutosavePhase) -> bool:
        return target in AUTOSAVE_TRANSITIONS.get(self.phase, set())

    def _transition(self, target: AutosavePhase) -> None:
        if not self.can_transition_to(target):
            allowed = ", ".join(sorted(p.value for p in AUTOSAVE_TRANSITIONS[self.phase]))
            raise InvalidAutosaveTransitionError(
                current_phase=self.phase,
                target_phase=target,
                message=(
                    f"Invalid autosave transition: cannot move from '{self.phase.value}' "
                    f"to '{target.value}'. Allowed: {allowed}"
                ),
            )
        logger.debug("Autosave %s -> %s", self.phase.value, target.value)
        self.phase = target

    @property
    def is_saving(self) -> bool:
        return self.phase == AutosavePhase.SAVING

    @property
    def has_conflict(self) -> bool:
        return self.phase == AutosavePhase.CONFLICT

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    def notify_change(self, values: FormValues, is_dirty: bool) -> bool:
        """Report a values change; (re)starts the debounce timer when dirty.

        Must be called from a running event loop. Returns whether a save was
        armed. Changes are ignored while disabled, clean, or in conflict.
        """
        if not self.enabled or not is_dirty or self.phase == AutosavePhase.CONFLICT:
            return False
        if self.phase == AutosavePhase.SAVING:
            self._changed_while_saving = dict(values)
            return True

        snapshot = dict(values)
        self._transition(AutosavePhase.PENDING_SAVE)
        self._debouncer.schedule(self._KEY, self.debounce_ms, lambda: self._run_save(snapshot))
        return True

    def cancel(self) -> None:
        """Drop a pending (not yet started) save."""
        if self.phase == AutosavePhase.PENDING_SAVE:
            self._debouncer.cancel(self._KEY)
            self._transition(AutosavePhase.IDLE)

    async def save_now(self, values: Optional[FormValues] = None) -> bool:
        """Save immediately, skipping the debounce.

        Returns:
            True when the save was accepted, False otherwise
        """
        if self.phase == AutosavePhase.PENDING_SAVE:
            self._debouncer.cancel(self._KEY)
        return await self._run_save(dict(values if values is not None else self._store.state.values))

    async def _run_save(self, values: FormValues) -> bool:
        if self.phase in (AutosavePhase.SAVING, AutosavePhase.CONFLICT):
            return False

        self._transition(AutosavePhase.SAVING)
        self.last_error = None
        try:
            result = SaveResult.coerce(await self._save(values))
        except asyncio.CancelledError:
            self._changed_while_saving = None
            if self.phase == AutosavePhase.SAVING:
                self.phase = AutosavePhase.IDLE
            raise
        except Exception as exc:
            logger.warning("Autosave failed: %s", exc, exc_info=True)
            self.last_error = str(exc) or "Save failed"
            if self.phase != AutosavePhase.SAVING:
                return False
            self._transition(AutosavePhase.IDLE)
            pending, self._changed_while_saving = self._changed_while_saving, None
            if pending is not None:
                self.notify_change(pending, True)
            return False

        # A conflict entered mid-save is left only through resolve()
        if self.phase == AutosavePhase.CONFLICT:
            return False

        if self.expected_version > 0 and result.version != self.expected_version + 1:
            logger.info(
                "Autosave conflict: expected version %s, server returned %s",
                self.expected_version + 1,
                result.version,
            )
            self._enter_conflict(values, result.values, result.timestamp, result.version)
            return False

        self.expected_version = result.version
        self._transition(AutosavePhase.IDLE)
        self._store.dispatch(SetLastSaved(timestamp=result.timestamp if result.timestamp is not None else self._clock()))

        pending, self._changed_while_saving = self._changed_while_saving, None
        if pending is not None:
            self.notify_change(pending, True)
        return True

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def _enter_conflict(
        self,
        local_values: FormValues,
        saved_values: Optional[FormValues],
        saved_timestamp: Optional[float],
        server_version: Optional[int],
    ) -> None:
        if self.phase == AutosavePhase.PENDING_SAVE:
            self._debouncer.cancel(self._KEY)
        self._changed_while_saving = None
        self._transition(AutosavePhase.CONFLICT)
        self.server_version = server_version
        self._store.dispatch(
            SetConflict(
                has_conflict=True,
                local_values=dict(local_values),
                saved_values=dict(saved_values) if saved_values is not None else None,
                local_timestamp=self._clock(),
                saved_timestamp=saved_timestamp,
            )
        )
        if self.conflict_strategy == ConflictStrategy.LOCAL:
            self.resolve(ConflictResolution.LOCAL)
        elif self.conflict_strategy == ConflictStrategy.REMOTE:
            self.resolve(ConflictResolution.SAVED)

    def resolve(self, resolution: Union[ConflictResolution, str]) -> None:
        """Resolve the current conflict and re-arm a save of the result.

        Args:
            resolution: ``local``, ``saved`` or its alias ``remote``
        """
        resolution = ConflictResolution.parse(resolution)
        self._store.dispatch(ResolveConflict(resolution=resolution))
        if self.server_version is not None:
            self.expected_version = self.server_version
        self.server_version = None

        if self.phase != AutosavePhase.CONFLICT:
            return
        self._transition(AutosavePhase.IDLE)
        if self.enabled:
            self.notify_change(self._store.state.values, True)

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def restore_draft(self, draft: Draft) -> bool:
        """Load a persisted draft into the form.

        Without diverging local edits the draft values are applied (as
        edits, not as the baseline) and ``SetDraftLoaded`` is dispatched.
        When the user has already changed fields to something else, a
        conflict is raised carrying both snapshots.

        Returns:
            True when the draft was applied, False when it conflicted
        """
        state = self._store.state
        diverges = is_dirty(state) and any(
            not values_equal(state.values.get(key), value) for key, value in draft.values.items()
        )
        if diverges:
            self._enter_conflict(state.values, draft.values, draft.timestamp, draft.version)
            return False

        self._store.dispatch(SetValues(values=dict(draft.values)))
        self._store.dispatch(SetDraftLoaded(loaded=True, timestamp=draft.timestamp))
        if draft.version is not None:
            self.expected_version = draft.version
        return True

    def clear_error(self) -> None:
        self.last_error = None


__all__ = [
    "AUTOSAVE_TRANSITIONS",
    "AutosaveCoordinator",
    "SaveFunction",
    "SaveResult",
    "DEFAULT_AUTOSAVE_DEBOUNCE_MS",
]
