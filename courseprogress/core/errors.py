"""Domain errors raised by the progress engine.

The pure layers (state machine, aggregation, status manager) raise these
directly; the repos raise VersionConflictError; ProgressService retries
only on VersionConflictError and lets everything else propagate.  The API
layer maps each class to one HTTP status.
"""

from __future__ import annotations


class ProgressError(Exception):
    """Base class for all progress engine errors."""

    code = "progress_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(ProgressError):
    """Enrollment or chapter missing, or chapter outside the enrollment's course."""

    code = "not_found"


class InvalidArgumentError(ProgressError):
    """Negative time delta, or an engagement flag the chapter cannot carry."""

    code = "invalid_argument"


class ConflictError(ProgressError):
    """Retry budget exhausted under contention; the caller should retry later."""

    code = "conflict"


class PreconditionFailedError(ProgressError):
    """Disallowed lifecycle transition, e.g. dropping a completed enrollment."""

    code = "precondition_failed"


class VersionConflictError(ProgressError):
    """A compare-and-swap lost the race: the stored version moved on.

    Internal to the engine.  ProgressService converts repeated conflicts
    into ConflictError once its retry ceiling is reached.
    """

    code = "version_conflict"
