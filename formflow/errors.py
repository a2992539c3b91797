"""Structured error types for the formflow engine.

User-facing validation failures are never raised: they travel as data in
``FieldErrorDetail`` records and per-field error lists inside the form state.
The exceptions defined here cover the remaining cases where a caller asked
for something that cannot be done (loading a structurally broken schema,
exceeding a repeatable section's instance limits, an illegal autosave phase
change) or where an injected transport reports a failure.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from formflow.types import AutosavePhase, RuleType


@dataclass(frozen=True)
class FieldErrorDetail:
    """Per-field validation error details.

    Attributes:
        path: Field key (e.g. "email", "street[1]")
        code: Rule type that failed (e.g. "required", "minLength")
        message: Human-readable error description

    Examples:
        >>> err = FieldErrorDetail(path="email", code="email", message="Please enter a valid email address")
        >>> err.to_dict()["path"]
        'email'
    """
    path: str
    code: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "path": self.path,
            "code": self.code.value if isinstance(self.code, RuleType) else self.code,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldErrorDetail":
        """Create FieldErrorDetail from dict."""
        return cls(path=data["path"], code=data["code"], message=data["message"])


class FormflowError(Exception):
    """Base class for all formflow exceptions."""


class SchemaLoadError(FormflowError):
    """Raised when a schema document is structurally invalid.

    Attributes:
        errors: One message per problem found
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            summary += f" (and {len(self.errors) - 5} more)"
        super().__init__(f"Invalid form schema: {summary}")


class TransportError(FormflowError):
    """Raised by fetch functions when a request fails or returns non-2xx.

    Attributes:
        status: HTTP status code, or None when no response was received
    """

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class InstanceLimitError(FormflowError):
    """Raised when adding or removing an instance would break min/max limits.

    Attributes:
        section_id: The repeatable section concerned
        count: Current instance count
        limit: The limit that would be violated
    """

    def __init__(self, section_id: str, count: int, limit: int, message: str):
        self.section_id = section_id
        self.count = count
        self.limit = limit
        super().__init__(message)


class InvalidAutosaveTransitionError(FormflowError):
    """Raised when the autosave coordinator is asked for an illegal phase change.

    Attributes:
        current_phase: The phase before the attempted transition
        target_phase: The phase that was attempted
    """

    def __init__(self, current_phase: AutosavePhase, target_phase: AutosavePhase, message: str):
        self.current_phase = current_phase
        self.target_phase = target_phase
        super().__init__(message)


__all__ = [
    "FieldErrorDetail",
    "FormflowError",
    "SchemaLoadError",
    "TransportError",
    "InstanceLimitError",
    "InvalidAutosaveTransitionError",
]
