"""Emit structured observability events for export job lifecycles.

Usage
-----
>>> event_logger = ExportEventLogger()
>>> event_logger.log_submitted(job_id=job_id, platform="acme.example.com")

"""

from __future__ import annotations

import enum
import typing as typ

from sluice.logging import get_logger, log_error, log_info

if typ.TYPE_CHECKING:
    from sluice.exports.models import ExtractionId, JobStatus

logger = get_logger(__name__)


class ExportEventType(enum.StrEnum):
    """Structured log event types for export jobs."""

    SUBMITTED = "export.submitted"
    DEFERRED = "export.deferred"
    RESUMED = "export.resumed"
    STAGE = "export.stage"
    SUCCEEDED = "export.succeeded"
    FAILED = "export.failed"


class ExportEventLogger:
    """Emit structured export events via femtologging."""

    def log_submitted(
        self,
        *,
        job_id: ExtractionId,
        platform: str,
        refresh_error: bool = False,
    ) -> None:
        """Log a query submitted to the backend without waiting."""
        log_info(
            logger,
            "[%s] job_id=%s platform=%s refresh_error=%s",
            ExportEventType.SUBMITTED,
            job_id,
            platform,
            refresh_error,
        )

    def log_deferred(self, *, job_id: ExtractionId, platform: str) -> None:
        """Log a job queued behind a refresh."""
        log_info(
            logger,
            "[%s] job_id=%s platform=%s",
            ExportEventType.DEFERRED,
            job_id,
            platform,
        )

    def log_resumed(self, *, job_id: ExtractionId, platform: str) -> None:
        """Log a deferred job released from the queue."""
        log_info(
            logger,
            "[%s] job_id=%s platform=%s",
            ExportEventType.RESUMED,
            job_id,
            platform,
        )

    def log_stage(self, *, job_id: ExtractionId, status: JobStatus) -> None:
        """Log a job entering a post-processing stage."""
        log_info(
            logger,
            "[%s] job_id=%s status=%s",
            ExportEventType.STAGE,
            job_id,
            status,
        )

    def log_succeeded(
        self, *, job_id: ExtractionId, artifact: str, duration_seconds: float
    ) -> None:
        """Log a job that produced its final artifact."""
        log_info(
            logger,
            "[%s] job_id=%s artifact=%s duration_seconds=%.3f",
            ExportEventType.SUCCEEDED,
            job_id,
            artifact,
            duration_seconds,
        )

    def log_failed(
        self,
        *,
        job_id: ExtractionId,
        detail: str,
        error: BaseException | None = None,
    ) -> None:
        """Log a job marked ``FAILED``.

        Parameters
        ----------
        job_id
            The failed job.
        detail
            Reason recorded on the job.
        error
            Exception that caused the failure, when there is one.

        """
        log_error(
            logger,
            "[%s] job_id=%s error_type=%s detail=%s",
            ExportEventType.FAILED,
            job_id,
            "none" if error is None else type(error).__name__,
            detail,
            exc_info=error,
        )
