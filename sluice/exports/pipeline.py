"""Post-processing of a finished export query.

The pipeline writes the raw result, then optionally converts it to a
spreadsheet and compresses it. Each stage's status is persisted before the
stage starts, so a poller never sees a job ahead of the work actually done.
Artifact names depend only on the job, so re-running a stage is harmless.
"""

from __future__ import annotations

import typing as typ

from sluice.common.time import load_zone
from sluice.exports.artifacts import archive_key, raw_result_key, spreadsheet_key
from sluice.exports.errors import InvalidJobTransitionError
from sluice.exports.models import ExportFormat, JobStatus

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from sluice.exports.artifacts import ObjectStore
    from sluice.exports.backend import QueryBackend
    from sluice.exports.models import ExtractionJob
    from sluice.exports.observability import ExportEventLogger
    from sluice.exports.storage import ExportJobStore


class ExportPipeline:
    """Turn a finished backend query into the job's final artifact.

    Parameters
    ----------
    jobs
        Store the job's progress is written to.
    objects
        Object store holding the artifacts.
    event_logger
        Receives stage and success events.
    clock
        Returns the current aware UTC time.
    report_name_limit
        Maximum report name length in spreadsheet names.

    """

    def __init__(  # noqa: PLR0913
        self,
        jobs: ExportJobStore,
        objects: ObjectStore,
        *,
        event_logger: ExportEventLogger,
        clock: cabc.Callable[[], dt.datetime],
        report_name_limit: int = 30,
    ) -> None:
        """Wire the pipeline to its stores."""
        self._jobs = jobs
        self._objects = objects
        self._event_logger = event_logger
        self._clock = clock
        self._report_name_limit = report_name_limit

    async def run(
        self, job: ExtractionJob, backend: QueryBackend, handle: str
    ) -> str:
        """Produce the artifact for ``job`` and mark it ``SUCCEEDED``.

        Returns
        -------
        str
            Location of the final artifact.

        Raises
        ------
        InvalidJobTransitionError
            If the job left its expected status while the pipeline ran,
            for example because a watchdog failed it.

        """
        execution_id = job.job_id.execution_id
        location = raw_result_key(execution_id)
        if await self._objects.exists(location):
            await backend.release(handle)
        else:
            location = await self._objects.write_result(
                location, backend.fetch_result(handle)
            )
        await self._jobs.set_artifact(job.job_id, location)
        current = JobStatus.RUNNING

        if job.options.format is ExportFormat.XLSX:
            await self._enter(job, current, JobStatus.CONVERTING)
            current = JobStatus.CONVERTING
            target = spreadsheet_key(
                execution_id,
                job.options.report_name,
                self._export_date(job),
                limit=self._report_name_limit,
            )
            location = await self._objects.convert_to_spreadsheet(location, target)
            await self._jobs.set_artifact(job.job_id, location)

        if job.options.compress:
            await self._enter(job, current, JobStatus.COMPRESSING)
            current = JobStatus.COMPRESSING
            location = await self._objects.compress(
                location, archive_key(execution_id)
            )
            await self._jobs.set_artifact(job.job_id, location)

        finished_at = self._clock()
        if not await self._jobs.transition(
            job.job_id,
            JobStatus.SUCCEEDED,
            expected=(current,),
            ended_at=finished_at,
            artifact=location,
        ):
            raise InvalidJobTransitionError(job.job_id, current, JobStatus.SUCCEEDED)
        self._event_logger.log_succeeded(
            job_id=job.job_id,
            artifact=location,
            duration_seconds=(finished_at - job.started_at).total_seconds(),
        )
        return location

    async def _enter(
        self, job: ExtractionJob, current: JobStatus, stage: JobStatus
    ) -> None:
        if not await self._jobs.transition(job.job_id, stage, expected=(current,)):
            raise InvalidJobTransitionError(job.job_id, current, stage)
        self._event_logger.log_stage(job_id=job.job_id, status=stage)

    def _export_date(self, job: ExtractionJob) -> dt.date:
        try:
            zone = load_zone(job.options.timezone)
        except LookupError:
            return job.started_at.date()
        return job.started_at.astimezone(zone).date()
