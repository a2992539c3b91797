"""formflow: declarative form engine.

A form is described entirely as data: sections, fields, validation rules and
visibility conditions. formflow turns that data plus user input into a live,
validated, submittable form state:
- Condition resolver for field and section visibility
- Fail-fast sync validation and debounced, fail-open async validation
- Immutable form state driven by a pure reducer over intent messages
- Repeatable sections with min/max instance limits
- Debounced autosave with version-based conflict detection

Rendering is out of scope; the engine exposes state snapshots and operations
that any front end can drive.

Basic usage:
    >>> from formflow.runtime import FormSession
    >>> session = FormSession({
    ...     "id": "contact", "title": "Contact",
    ...     "sections": [{"id": "main", "fields": [
    ...         {"id": "email", "type": "text", "validation": [{"type": "email"}]},
    ...     ]}],
    ... })
    >>> _ = session.set_value("email", "not-an-email")
    >>> session.validate_form().field_errors
    {'email': ['Please enter a valid email address']}
"""

__version__ = "0.1.0"
__author__ = "formflow contributors"

# Version info
VERSION = (0, 1, 0)

# Core exports
from formflow.config import EngineConfig
from formflow.runtime import FormSession, SubmitResult
from formflow.schema import FormSchema, load_schema

# Package metadata
__all__ = [
    "__version__",
    "VERSION",
    "EngineConfig",
    "FormSchema",
    "FormSession",
    "SubmitResult",
    "load_schema",
]
