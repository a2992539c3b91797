"""Diagnostics channel for schema anomalies and fail-open decisions.

Pure components (resolver, validation pipeline, reducer) never log directly.
They report anomalies through a ``DiagnosticSink`` passed in by the caller, so
the same code can run silently in tests, collect problems for display, or
forward everything to ``logging`` (the default).
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class DiagnosticCode(str, Enum):
    """Categories of non-fatal anomalies reported by the engine."""
    UNKNOWN_CONDITION = "unknown_condition"
    UNKNOWN_OPERATOR = "unknown_operator"
    UNKNOWN_RULE = "unknown_rule"
    CUSTOM_VALIDATOR_MISSING = "custom_validator_missing"
    INVALID_PATTERN = "invalid_pattern"
    ASYNC_VALIDATION_FAILED = "async_validation_failed"
    ASYNC_VALIDATION_TIMEOUT = "async_validation_timeout"
    UNKNOWN_ACTION = "unknown_action"


@dataclass(frozen=True)
class Diagnostic:
    """A single reported anomaly.

    Attributes:
        code: Category of the anomaly
        message: Human-readable description
        context: Optional structured details (field id, rule, operator, ...)

    Examples:
        >>> d = Diagnostic(DiagnosticCode.UNKNOWN_OPERATOR, "Unknown operator: 'between'")
        >>> d.to_dict()["code"]
        'unknown_operator'
    """
    code: DiagnosticCode
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "code": self.code.value if isinstance(self.code, DiagnosticCode) else self.code,
            "message": self.message,
        }
        if self.context:
            result["context"] = self.context
        return result


DiagnosticSink = Callable[[Diagnostic], None]
"""Callback receiving diagnostics. Must not raise."""


def logging_sink(diagnostic: Diagnostic) -> None:
    """Default sink: forward the diagnostic to the module logger as a warning."""
    logger.warning("%s: %s", diagnostic.code.value, diagnostic.message,
                   extra={"diagnostic": diagnostic.to_dict()})


def null_sink(diagnostic: Diagnostic) -> None:
    """Sink that discards everything."""


class DiagnosticCollector:
    """Sink that records diagnostics in order.

    Examples:
        >>> collector = DiagnosticCollector()
        >>> collector(Diagnostic(DiagnosticCode.UNKNOWN_RULE, "Unknown validator type: 'iban'"))
        >>> len(collector)
        1
        >>> collector.codes()
        [<DiagnosticCode.UNKNOWN_RULE: 'unknown_rule'>]
    """

    def __init__(self, forward: Optional[DiagnosticSink] = None):
        self.diagnostics: List[Diagnostic] = []
        self._forward = forward

    def __call__(self, diagnostic: Diagnostic) -> None:
        self.diagnostics.append(diagnostic)
        if self._forward is not None:
            self._forward(diagnostic)

    def __len__(self) -> int:
        return len(self.diagnostics)

    def codes(self) -> List[DiagnosticCode]:
        return [d.code for d in self.diagnostics]

    def clear(self) -> None:
        self.diagnostics.clear()


def report(
    sink: Optional[DiagnosticSink],
    code: DiagnosticCode,
    message: str,
    **context: Any,
) -> None:
    """Build a diagnostic and hand it to ``sink`` (``logging_sink`` when None)."""
    (sink if sink is not None else logging_sink)(Diagnostic(code=code, message=message, context=context))


__all__ = [
    "Diagnostic",
    "DiagnosticCode",
    "DiagnosticSink",
    "DiagnosticCollector",
    "logging_sink",
    "null_sink",
    "report",
]
