"""Engine configuration.

``EngineConfig`` holds engine-wide defaults. A form's own ``autosave``
settings take precedence over them (see ``EngineConfig.for_schema``).
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from formflow.schema import FormSchema
from formflow.types import ConflictStrategy


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults.

    Attributes:
        async_debounce_ms: Quiet period before async validation requests
        async_timeout_ms: Ceiling on async validation requests (none when None)
        autosave_debounce_ms: Quiet period before autosaves
        autosave_enabled: Whether autosave runs at all
        conflict_strategy: ``prompt`` leaves conflicts to the caller;
            ``local``/``remote`` resolve them automatically

    Examples:
        >>> EngineConfig.from_dict({"asyncDebounceMs": 500}).async_debounce_ms
        500
        >>> EngineConfig().conflict_strategy
        <ConflictStrategy.PROMPT: 'prompt'>
    """
    async_debounce_ms: int = 300
    async_timeout_ms: Optional[int] = None
    autosave_debounce_ms: int = 2000
    autosave_enabled: bool = False
    conflict_strategy: ConflictStrategy = ConflictStrategy.PROMPT

    def __post_init__(self):
        if not isinstance(self.conflict_strategy, ConflictStrategy):
            object.__setattr__(self, "conflict_strategy", ConflictStrategy(self.conflict_strategy))
        if self.async_debounce_ms < 0 or self.autosave_debounce_ms < 0:
            raise ValueError("Debounce delays must be non-negative")
        if self.async_timeout_ms is not None and self.async_timeout_ms <= 0:
            raise ValueError("async_timeout_ms must be positive when set")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asyncDebounceMs": self.async_debounce_ms,
            "asyncTimeoutMs": self.async_timeout_ms,
            "autosaveDebounceMs": self.autosave_debounce_ms,
            "autosaveEnabled": self.autosave_enabled,
            "conflictStrategy": self.conflict_strategy.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        defaults = cls()
        return cls(
            async_debounce_ms=data.get("asyncDebounceMs", defaults.async_debounce_ms),
            async_timeout_ms=data.get("asyncTimeoutMs", defaults.async_timeout_ms),
            autosave_debounce_ms=data.get("autosaveDebounceMs", defaults.autosave_debounce_ms),
            autosave_enabled=data.get("autosaveEnabled", defaults.autosave_enabled),
            conflict_strategy=data.get("conflictStrategy", defaults.conflict_strategy),
        )

    def for_schema(self, schema: FormSchema) -> "EngineConfig":
        """Apply the form's own autosave settings on top of this config."""
        autosave = schema.autosave
        if autosave is None:
            return self
        return replace(
            self,
            autosave_enabled=autosave.enabled,
            autosave_debounce_ms=(
                autosave.debounce_ms if autosave.debounce_ms is not None else self.autosave_debounce_ms
            ),
            conflict_strategy=(
                ConflictStrategy(autosave.conflict_strategy)
                if autosave.conflict_strategy is not None
                else self.conflict_strategy
            ),
        )


__all__ = ["EngineConfig"]
