from __future__ import annotations


class DunsumdayError(Exception):
    """Base class for errors raised by the tracking engine and its storage gateway."""


class ValidationError(DunsumdayError, ValueError):
    """Raised when input is rejected before any mutation takes place."""


class NotFoundError(DunsumdayError, LookupError):
    """Raised when a referenced item, occurrence or config entry does not exist."""


class ConflictError(DunsumdayError):
    """Raised when a mutation is not allowed in the target's current state."""


class StorageError(DunsumdayError):
    """Raised by the storage gateway; the original database error is chained."""
