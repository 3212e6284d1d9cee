# repogrowth/exceptions.py
"""
Shared exception classes used across the engine.

Only structural failures are raised. Row- and address-level outcomes
(blocked domains, duplicates, thresholds not yet met, bounces) are
returned as values and absorbed into counters by the callers.
"""

from __future__ import annotations


class InvalidFormat(ValueError):
    """
    Raised when a raw string is not a syntactically valid email address.

    Row-level callers (CSV import) record this as a per-row error instead
    of letting it escape.
    """

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(f"{reason}: {raw!r}")
        self.raw = raw
        self.reason = reason


class SchemaError(ValueError):
    """
    Raised when an uploaded CSV cannot be processed at all.

    Examples:
        - no header row
        - no column named "email" (case-insensitive)
    """

    pass


class ImportLimitExceeded(RuntimeError):
    """Raised when an upload exceeds the configured row or byte cap."""

    pass


class ConcurrentConflict(RuntimeError):
    """
    Raised when an insert-if-absent lost a race against another writer.

    The ledger retries the admission once; callers never see this.
    """

    pass


class RepositoryNotFound(LookupError):
    pass


class RepositoryExists(ValueError):
    """Raised when a repository name (case-insensitive) is already taken."""

    pass


class ImportNotFound(LookupError):
    pass


class EmailNotFound(LookupError):
    """Raised by lifecycle operations on an address the repository never saw."""

    pass


class DigestNotFound(LookupError):
    pass


class PermissionDenied(PermissionError):
    """Raised when an actor is neither the repository owner nor a moderator."""

    pass


class DeliveryError(RuntimeError):
    """Raised when the delivery collaborator cannot accept a digest job."""

    pass


__all__ = [
    "InvalidFormat",
    "SchemaError",
    "ImportLimitExceeded",
    "ConcurrentConflict",
    "RepositoryNotFound",
    "RepositoryExists",
    "ImportNotFound",
    "EmailNotFound",
    "DigestNotFound",
    "PermissionDenied",
    "DeliveryError",
]
