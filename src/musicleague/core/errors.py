"""Typed domain errors.

Every rejected command raises one of these. The API layer renders them as
``{"error": {"code": ..., "message": ...}}`` with the matching status code,
so callers never see raw storage exceptions.
"""

from __future__ import annotations


class DomainError(Exception):
    """Base class for errors a client can render directly."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class NotFound(DomainError):
    """The addressed entity does not exist (or is not visible to the caller)."""

    code = "not_found"
    status_code = 404


class Forbidden(DomainError):
    """The principal lacks an active membership or the required role."""

    code = "forbidden"
    status_code = 403


class FailedPrecondition(DomainError):
    """The command is well-formed but illegal in the current state."""

    code = "failed_precondition"
    status_code = 400


class Conflict(DomainError):
    """A concurrent writer won the race. Safe to retry once."""

    code = "conflict"
    status_code = 409


class Internal(DomainError):
    """Storage or transaction failure."""

    code = "internal"
    status_code = 500


# Fragments of driver error messages that indicate lock contention rather
# than a genuine failure. SQLite reports "database is locked"; Postgres
# reports serialization failures and deadlocks.
_CONTENTION_MARKERS = ("locked", "could not serialize", "deadlock", "busy")


def is_lock_contention(exc: BaseException) -> bool:
    """Return True if a driver error looks like write-lock contention."""
    text = str(exc).lower()
    return any(marker in text for marker in _CONTENTION_MARKERS)
