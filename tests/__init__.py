"""Test suite for the formflow form engine.

This package contains tests for:
- Condition resolver (operators, composition, fail-open behaviour)
- Schema loading and configuration
- Sync validation (built-ins, fail-fast, custom validators, hidden fields)
- Async validation (debounce, supersession, fail-open)
- Reducer, store and event stream
- Autosave, drafts and conflict handling
- Async options loading
- Integration scenarios through FormSession
"""
