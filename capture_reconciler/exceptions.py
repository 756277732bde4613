"""
Custom exception hierarchy for capture reconciliation.

Each exception type maps to a specific failure category so callers (the
pipeline, the API layer) can decide whether a failure is row-local,
document-local, or a caller error.
"""

from __future__ import annotations


class ReconciliationError(Exception):
    """Base exception for all reconciliation failures."""

    def __init__(self, code: str, message: str, details: dict | None = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)


class LookupUnavailableError(ReconciliationError):
    """The lookup provider could not be reached (retryable)."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("LOOKUP_UNAVAILABLE", message, details)


class LookupSourceError(ReconciliationError):
    """The lookup source could not be loaded, parsed, or rejected the request."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("LOOKUP_SOURCE_INVALID", message, details)


class LookupConfigError(ReconciliationError):
    """Lookup validation is disabled or its configuration is incomplete."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("LOOKUP_NOT_CONFIGURED", message, details)


class LedgerTransitionError(ReconciliationError):
    """An operator action referenced an unknown row or an unknown action."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("LEDGER_TRANSITION_INVALID", message, details)


class DocumentNotFoundError(ReconciliationError):
    """The record store has no document with the requested id."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("DOCUMENT_NOT_FOUND", message, details)


class DocumentExportedError(ReconciliationError):
    """The document was exported and can no longer be mutated."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("DOCUMENT_EXPORTED", message, details)


class StaleRunError(ReconciliationError):
    """A re-validation run was superseded by a newer one for the same document."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("REVALIDATION_SUPERSEDED", message, details)
