"""Errors specific to the export job manager."""

from __future__ import annotations

import typing as typ

if typ.TYPE_CHECKING:
    from sluice.exports.models import ExtractionId, JobStatus


class ExportError(Exception):
    """Base class for export module errors."""


class InvalidExtractionIdError(ExportError, ValueError):
    """Raised when a report or execution id is not a UUID string."""

    def __init__(self, field: str, value: object) -> None:
        """Record the offending field and value."""
        self.field = field
        self.value = value
        super().__init__(f"{field} must be a UUID string, got: {value!r}")


class JobNotFoundError(ExportError):
    """Raised when no export job exists for an id."""

    def __init__(self, job_id: ExtractionId) -> None:
        """Record the id that was looked up."""
        self.job_id = job_id
        super().__init__(f"Export job not found: {job_id}")


class InvalidJobTransitionError(ExportError):
    """Raised when a status change would move a job backwards."""

    def __init__(
        self, job_id: ExtractionId, current: JobStatus, target: JobStatus
    ) -> None:
        """Record the job and the refused transition."""
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(
            f"Export job {job_id} cannot move from {current} to {target}"
        )


class BackendQueryFailedError(ExportError):
    """Raised when the query backend reports a failed query.

    The message is the backend's reason, verbatim.
    """

    def __init__(self, reason: str, *, handle: str) -> None:
        """Record the backend handle and its failure reason."""
        self.reason = reason
        self.handle = handle
        super().__init__(reason)


class BackendThrottledError(ExportError):
    """Raised by query backends for transient throttling signals."""

    def __init__(self, code: str, message: str = "") -> None:
        """Record the throttling code reported by the backend."""
        self.code = code
        super().__init__(message or f"Query backend throttled the request: {code}")


class DeadlineExceededError(ExportError):
    """Raised when an export exceeds one of its time limits."""

    def __init__(self, message: str, *, limit_minutes: int) -> None:
        """Record the elapsed limit."""
        self.limit_minutes = limit_minutes
        super().__init__(message)

    @classmethod
    def no_status_update(cls, limit_minutes: int) -> DeadlineExceededError:
        """Return the error for a job that went silent."""
        return cls(
            f"Set to FAILED as no status update after {limit_minutes} minutes",
            limit_minutes=limit_minutes,
        )

    @classmethod
    def not_started(cls, limit_minutes: int) -> DeadlineExceededError:
        """Return the error for a deferred job that never left the queue."""
        return cls(
            f"Set to FAILED as query not started after {limit_minutes} minutes",
            limit_minutes=limit_minutes,
        )


class BackgroundJobCreationError(ExportError):
    """Raised when a background job record cannot be written."""

    def __init__(self, job_id: ExtractionId, attempts: int) -> None:
        """Record the export and the number of attempts made."""
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(
            f"Failed to create background job for {job_id} "
            f"after {attempts} attempt(s)"
        )
