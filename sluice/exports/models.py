"""Domain types for export jobs.

An ``ExtractionJob`` tracks one export of one report from submission to a
terminal state. Its status only moves forward; terminal jobs may still gain a
download URL.
"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import enum
import typing as typ
import uuid

import msgspec

from sluice.exports.errors import InvalidExtractionIdError
from sluice.refresh.models import refresh_model_from_name

if typ.TYPE_CHECKING:
    from sluice.refresh.models import RefreshModel


class JobStatus(enum.StrEnum):
    """Lifecycle status of an export job."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    CONVERTING = "CONVERTING"
    COMPRESSING = "COMPRESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        """Return True for ``SUCCEEDED`` and ``FAILED``."""
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)

    def can_move_to(self, target: JobStatus) -> bool:
        """Return True when ``target`` is a legal next status."""
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.CONVERTING,
            JobStatus.COMPRESSING,
            JobStatus.SUCCEEDED,
            JobStatus.FAILED,
        }
    ),
    JobStatus.CONVERTING: frozenset(
        {JobStatus.COMPRESSING, JobStatus.SUCCEEDED, JobStatus.FAILED}
    ),
    JobStatus.COMPRESSING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class ExportFormat(enum.StrEnum):
    """Artifact format requested by the caller."""

    CSV = "csv"
    XLSX = "xlsx"


class ExportOptions(msgspec.Struct, kw_only=True, frozen=True):
    """Caller-supplied options for one export.

    Attributes
    ----------
    platform
        Tenant the report belongs to.
    owner_id
        User who requested the export.
    report_name
        Human-readable report name used to name spreadsheet artifacts.
    format
        Requested artifact format.
    compress
        Whether to compress the final artifact.
    model
        Refresh model of the tenant: ``legacy``, ``managed`` or ``warehouse``.
    installation_class
        Installation classification for managed tenants.
    nightly_timeout_minutes
        Tenant-specific nightly refresh timeout for legacy tenants.
    create_background_job
        Whether a deferred export also records a background job.
    timezone
        Owner timezone, used for the export date in artifact names.

    """

    platform: str
    owner_id: str = ""
    report_name: str = "report"
    format: ExportFormat = ExportFormat.CSV
    compress: bool = False
    model: typ.Literal["legacy", "managed", "warehouse"] = "legacy"
    installation_class: str = ""
    nightly_timeout_minutes: int | None = None
    create_background_job: bool = False
    timezone: str = "UTC"

    
    def refresh_model(self) -> RefreshModel:
        """Return the tenant's refresh model variant."""
        return refresh_model_from_name(
            self.model,
            self.installation_class,
            nightly_timeout_minutes=self.nightly_timeout_minutes,
        )


def _require_uuid(value: str, field: str) -> str:
    try:
        uuid.UUID(value)
    except (TypeError, ValueError) as exc:
        raise InvalidExtractionIdError(field, value) from exc
    return value


@dc.dataclass(frozen=True, slots=True)
class ExtractionId:
    """Identity of one export job: the report and the execution."""

    report_id: str
    execution_id: str

    def __post_init__(self) -> None:
        """Reject identifiers that are not UUID strings."""
        _require_uuid(self.report_id, "report_id")
        _require_uuid(self.execution_id, "execution_id")

    @classmethod
    def new(cls, report_id: str) -> ExtractionId:
        """Return an id with a freshly generated execution id."""
        return cls(report_id=report_id, execution_id=str(uuid.uuid4()))

    def __str__(self) -> str:
        """Return ``report_id/execution_id``."""
        return f"{self.report_id}/{self.execution_id}"


@dc.dataclass(frozen=True, slots=True)
class ExtractionJob:
    """Persisted state of one export job.

    Attributes
    ----------
    job_id
        Report and execution identifiers.
    status
        Current lifecycle status.
    options
        Options the export was submitted with.
    started_at
        When the job was created.
    ended_at
        When the job reached a terminal status.
    last_heartbeat
        Last progress update written by the running worker.
    started_from_queue_at
        When a deferred job was resumed.
    backend_handle
        The query backend's own execution id.
    deferred_query
        Query text held while the job is ``QUEUED``.
    query
        Query text submitted to the backend, kept for diagnostics.
    artifact
        Location of the current result artifact.
    error_detail
        Human-readable failure reason.
    download_url
        Time-bounded URL of the final artifact.

    """

    job_id: ExtractionId
    status: JobStatus
    options: ExportOptions
    started_at: dt.datetime
    ended_at: dt.datetime | None = None
    last_heartbeat: dt.datetime | None = None
    started_from_queue_at: dt.datetime | None = None
    backend_handle: str | None = None
    deferred_query: str | None = None
    query: str | None = None
    artifact: str | None = None
    error_detail: str | None = None
    download_url: str | None = None

    @property
    def last_process_time(self) -> dt.datetime:
        """Return the latest sign of progress recorded for the job."""
        return self.last_heartbeat or self.started_from_queue_at or self.started_at


class JobView(msgspec.Struct, kw_only=True, frozen=True):
    """Status of an export job as reported to pollers."""

    report_id: str
    execution_id: str
    status: JobStatus
    format: ExportFormat
    compress: bool
    started_at: dt.datetime
    ended_at: dt.datetime | None = None
    last_heartbeat: dt.datetime | None = None
    error_detail: str | None = None
    download_url: str | None = None

    @classmethod
    def from_job(cls, job: ExtractionJob) -> JobView:
        """Build a view of ``job``."""
        return cls(
            report_id=job.job_id.report_id,
            execution_id=job.job_id.execution_id,
            status=job.status,
            format=job.options.format,
            compress=job.options.compress,
            started_at=job.started_at,
            ended_at=job.ended_at,
            last_heartbeat=job.last_heartbeat,
            error_detail=job.error_detail,
            download_url=(
                job.download_url if job.status is JobStatus.SUCCEEDED else None
            ),
        )


class SubmitResult(msgspec.Struct, kw_only=True, frozen=True):
    """Outcome of submitting an export.

    ``refresh_error`` is True when triggering a refresh failed and the export
    ran immediately instead of waiting for it.
    """

    report_id: str
    execution_id: str
    status: JobStatus
    refresh_error: bool = False
