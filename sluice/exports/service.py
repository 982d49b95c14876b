"""Export job manager: drive one export from submission to a terminal state.

``ExportJobManager`` consults the refresh state machine to decide whether an
export runs now or waits in the queue, runs the backend query under the
heartbeat watchdog, and post-processes the result. Pollers read jobs through
``poll_export``, which also fails jobs that have gone silent.

Usage
-----
>>> manager = ExportJobManager(
...     ExportJobStore(session_factory),
...     RefreshStateMachine(RefreshStore(session_factory)),
...     SqlAlchemyQueryBackend(engine),
...     FilesystemObjectStore(Path("/var/lib/sluice/exports")),
... )
>>> result = await manager.submit_export(
...     report_id, "SELECT 1", ExportOptions(platform="acme.example.com")
... )
>>> view = await manager.poll_export(
...     ExtractionId(result.report_id, result.execution_id)
... )

"""

from __future__ import annotations

import asyncio
import datetime as dt
import functools
import time
import typing as typ

from sqlalchemy.exc import SQLAlchemyError

from sluice.common.time import utcnow
from sluice.exports.backend import QueryState
from sluice.exports.config import ExportConfig
from sluice.exports.errors import (
    BackendQueryFailedError,
    BackendThrottledError,
    DeadlineExceededError,
    JobNotFoundError,
)
from sluice.exports.models import (
    ExportOptions,
    ExtractionId,
    ExtractionJob,
    JobStatus,
    JobView,
    SubmitResult,
)
from sluice.exports.observability import ExportEventLogger
from sluice.exports.pipeline import ExportPipeline
from sluice.exports.watchdog import Deadline, run_with_watchdog
from sluice.logging import get_logger, log_debug, log_warning
from sluice.refresh.errors import WorkflowTriggerError
from sluice.refresh.models import ManagedRefresh, RefreshStatus

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sluice.exports.artifacts import ObjectStore
    from sluice.exports.backend import QueryBackend
    from sluice.exports.storage import BackgroundJobStore, ExportJobStore
    from sluice.refresh.models import EffectiveRefresh, RefreshModel
    from sluice.refresh.service import RefreshStateMachine

logger = get_logger(__name__)


class ExportJobManager:
    """Submit, run, resume, and poll export jobs.

    Parameters
    ----------
    jobs
        Store holding export jobs.
    refresh
        State machine gating exports on dataset freshness.
    backend
        Query engine the exports run on.
    objects
        Object store receiving the artifacts.
    config
        Time limits, retry policy, and naming limits.
    background_jobs
        Store recording deferred exports for background resumption.
    event_logger
        Receives export lifecycle events.
    clock
        Returns the current aware UTC time.
    monotonic
        Monotonic clock the job deadlines are measured on.

    """

    def __init__(  # noqa: PLR0913
        self,
        jobs: ExportJobStore,
        refresh: RefreshStateMachine,
        backend: QueryBackend,
        objects: ObjectStore,
        *,
        config: ExportConfig | None = None,
        background_jobs: BackgroundJobStore | None = None,
        event_logger: ExportEventLogger | None = None,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
        monotonic: cabc.Callable[[], float] = time.monotonic,
    ) -> None:
        """Wire the manager to its stores and collaborators."""
        self._jobs = jobs
        self._refresh = refresh
        self._backend = backend
        self._objects = objects
        self._config = config or ExportConfig()
        self._background_jobs = background_jobs
        self._event_logger = event_logger or ExportEventLogger()
        self._clock = clock
        self._monotonic = monotonic
        self._pipeline = ExportPipeline(
            jobs,
            objects,
            event_logger=self._event_logger,
            clock=clock,
            report_name_limit=self._config.report_name_limit,
        )
        self._tasks: set[asyncio.Task[JobView]] = set()

    async def submit_export(
        self,
        report_id: str,
        query: str,
        options: ExportOptions,
        *,
        wait: bool = False,
    ) -> SubmitResult:
        """Create an export job and either start it or queue it.

        The job is queued while the tenant's refresh is running or due. A
        managed tenant whose refresh is due gets one triggered first; if the
        trigger fails the export runs immediately and ``refresh_error`` is
        set on the result.

        Parameters
        ----------
        report_id
            UUID of the report being exported.
        query
            Query text to run.
        options
            Tenant, format, and naming options.
        wait
            Run the job to a terminal status before returning. Otherwise the
            job continues as a background task of the running event loop.

        Returns
        -------
        SubmitResult
            The new job's ids and status.

        Raises
        ------
        InvalidExtractionIdError
            If ``report_id`` is not a UUID string.
        BackgroundJobCreationError
            If a requested background job could not be recorded. The job
            itself stays queued.

        """
        job_id = ExtractionId.new(report_id)
        model = options.refresh_model

        effective = await self._refresh.get_effective_refresh(options.platform, model)
        refresh_error = False
        if effective.status is RefreshStatus.IN_PROGRESS or effective.is_refresh_needed:
            refresh_error = not await self._trigger_if_needed(
                options.platform, model, effective
            )
            if not refresh_error:
                return await self._defer(job_id, query, options)

        now = self._clock()
        job = ExtractionJob(
            job_id=job_id,
            status=JobStatus.RUNNING,
            options=options,
            started_at=now,
            last_heartbeat=now,
            query=query,
        )
        await self._jobs.create(job)
        self._event_logger.log_submitted(
            job_id=job_id, platform=options.platform, refresh_error=refresh_error
        )
        view = await self._start(job, query, wait=wait)
        return SubmitResult(
            report_id=job_id.report_id,
            execution_id=job_id.execution_id,
            status=view.status,
            refresh_error=refresh_error,
        )

    async def _trigger_if_needed(
        self, platform: str, model: RefreshModel, effective: EffectiveRefresh
    ) -> bool:
        """Start a managed refresh unless one is already running.

        Returns False when the trigger failed.
        """
        if not isinstance(model, ManagedRefresh):
            return True
        if effective.status is RefreshStatus.IN_PROGRESS:
            return True
        try:
            await self._refresh.trigger_refresh(platform, model)
        except WorkflowTriggerError as exc:
            log_warning(
                logger,
                "Refresh trigger failed for %s; running export immediately: %s",
                platform,
                exc,
            )
            return False
        return True

    async def _defer(
        self, job_id: ExtractionId, query: str, options: ExportOptions
    ) -> SubmitResult:
        await self._jobs.create(
            ExtractionJob(
                job_id=job_id,
                status=JobStatus.QUEUED,
                options=options,
                started_at=self._clock(),
                deferred_query=query,
            )
        )
        self._event_logger.log_deferred(job_id=job_id, platform=options.platform)
        if options.create_background_job:
            if self._background_jobs is None:
                log_warning(
                    logger,
                    "No background job store configured; %s must be resumed "
                    "explicitly",
                    job_id,
                )
            else:
                await self._background_jobs.create(job_id, options.platform)
        return SubmitResult(
            report_id=job_id.report_id,
            execution_id=job_id.execution_id,
            status=JobStatus.QUEUED,
        )

    async def _start(self, job: ExtractionJob, query: str, *, wait: bool) -> JobView:
        """Submit ``query`` for a ``RUNNING`` job and drive it."""
        deadline = Deadline.after(self._config.time_limit, clock=self._monotonic)
        try:
            handle = await self._submit_query(query, deadline)
        except Exception as exc:  # noqa: BLE001
            await self._fail(job.job_id, str(exc), query=query, error=exc)
            return await self._view(job.job_id)
        await self._jobs.set_backend_handle(job.job_id, handle)

        drive = self._drive(job, handle, query, deadline)
        if wait:
            return await drive
        task = asyncio.create_task(drive)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await self._view(job.job_id)

    async def _submit_query(self, query: str, deadline: Deadline) -> str:
        while True:
            deadline.check()
            try:
                return await self._backend.submit(query)
            except BackendThrottledError as exc:
                log_debug(logger, "Query submission throttled: %s", exc.code)
                await asyncio.sleep(self._config.poll_interval_seconds)

    async def _drive(
        self,
        job: ExtractionJob,
        handle: str,
        query: str,
        deadline: Deadline,
    ) -> JobView:
        try:
            await run_with_watchdog(
                self._execute(job, handle, deadline),
                deadline=deadline,
                heartbeat=functools.partial(self._heartbeat, job.job_id),
                interval_s=self._config.heartbeat_interval_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            await self._backend.release(handle)
            await self._fail(job.job_id, str(exc), query=query, error=exc)
        return await self._view(job.job_id)

    async def _execute(
        self, job: ExtractionJob, handle: str, deadline: Deadline
    ) -> str:
        await self._wait_for_query(handle, deadline)
        return await self._pipeline.run(job, self._backend, handle)

    async def _wait_for_query(self, handle: str, deadline: Deadline) -> None:
        """Poll the backend until the query finishes.

        Throttled status calls are retried until ``deadline`` passes.

        Raises
        ------
        BackendQueryFailedError
            If the backend reports the query failed.
        DeadlineExceededError
            If ``deadline`` passes first.

        """
        while True:
            deadline.check()
            try:
                status = await self._backend.status(handle)
            except BackendThrottledError as exc:
                log_debug(logger, "Status check for %s throttled: %s", handle, exc.code)
                await asyncio.sleep(self._config.poll_interval_seconds)
                continue

            match status.state:
                case QueryState.SUCCEEDED:
                    return
                case QueryState.FAILED:
                    raise BackendQueryFailedError(
                        status.reason or "Query failed", handle=handle
                    )
            await asyncio.sleep(self._config.poll_interval_seconds)

    async def _heartbeat(self, job_id: ExtractionId) -> None:
        retries = max(1, self._config.heartbeat_retries)
        for attempt in range(1, retries + 1):
            try:
                await self._jobs.touch_heartbeat(job_id, self._clock())
            except SQLAlchemyError as exc:
                if attempt == retries:
                    log_warning(
                        logger,
                        "Heartbeat for %s failed after %d attempt(s)",
                        job_id,
                        retries,
                        exc_info=exc,
                    )
                    return
                await asyncio.sleep(self._config.poll_interval_seconds)
            else:
                return

    async def _fail(
        self,
        job_id: ExtractionId,
        detail: str,
        *,
        query: str | None,
        error: BaseException | None = None,
    ) -> bool:
        failed = await self._jobs.fail(job_id, detail, at=self._clock(), query=query)
        if failed:
            self._event_logger.log_failed(job_id=job_id, detail=detail, error=error)
        return failed

    async def _get(self, job_id: ExtractionId) -> ExtractionJob:
        job = await self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _view(self, job_id: ExtractionId) -> JobView:
        return JobView.from_job(await self._get(job_id))

    async def poll_export(self, job_id: ExtractionId) -> JobView:
        """Return the job's status, failing it first if it went silent.

        A running job whose last progress is older than the time limit is
        marked ``FAILED``. Queued jobs are bounded by the queued-start limit
        of ``resume_deferred_export`` instead. A succeeded job gets a fresh
        download URL.

        Raises
        ------
        JobNotFoundError
            If no job exists for ``job_id``.

        """
        job = await self._get(job_id)
        if not job.status.is_terminal and job.status is not JobStatus.QUEUED:
            if self._clock() - job.last_process_time > self._config.time_limit:
                error = DeadlineExceededError.no_status_update(
                    self._config.time_limit_minutes
                )
                await self._fail(job_id, str(error), query=job.query, error=error)
                job = await self._get(job_id)

        if job.status is JobStatus.SUCCEEDED and job.artifact is not None:
            ttl = dt.timedelta(seconds=self._config.download_url_ttl_seconds)
            url = await self._objects.download_url(job.artifact, ttl)
            await self._jobs.set_download_url(job_id, url)
            job = await self._get(job_id)
        return JobView.from_job(job)

    async def resume_deferred_export(
        self, job_id: ExtractionId, *, wait: bool = True
    ) -> JobView:
        """Submit a queued job once its tenant's refresh has finished.

        Calling this on a job that is no longer ``QUEUED`` returns its view
        without side effects, and two concurrent calls submit the query at
        most once. A job still blocked by a running refresh after the
        queued-start limit is failed.

        Parameters
        ----------
        job_id
            Job to resume.
        wait
            Run the resumed job to a terminal status before returning.

        Raises
        ------
        JobNotFoundError
            If no job exists for ``job_id``.

        """
        job = await self._get(job_id)
        if job.status is not JobStatus.QUEUED:
            return JobView.from_job(job)

        model = job.options.refresh_model
        effective = await self._refresh.get_effective_refresh(
            job.options.platform, model
        )
        now = self._clock()
        if effective.status is RefreshStatus.IN_PROGRESS:
            if now - job.started_at > self._config.queued_start_limit:
                error = DeadlineExceededError.not_started(
                    self._config.queued_start_limit_minutes
                )
                await self._fail(
                    job_id, str(error), query=job.deferred_query, error=error
                )
            return await self._view(job_id)

        query = job.deferred_query or ""
        claimed = await self._jobs.transition(
            job_id,
            JobStatus.RUNNING,
            expected=(JobStatus.QUEUED,),
            started_from_queue_at=now,
            deferred_query=None,
            query=query,
        )
        if not claimed:
            return await self._view(job_id)
        self._event_logger.log_resumed(job_id=job_id, platform=job.options.platform)
        return await self._start(await self._get(job_id), query, wait=wait)

    async def resume_pending(self, *, limit: int = 100) -> list[JobView]:
        """Resume the deferred exports recorded as background jobs.

        Background jobs whose export has left the queue are marked done.
        """
        if self._background_jobs is None:
            return []
        views: list[JobView] = []
        for background_id, job_id in await self._background_jobs.pending(limit=limit):
            try:
                view = await self.resume_deferred_export(job_id)
            except JobNotFoundError:
                log_warning(logger, "Dropping background job for missing %s", job_id)
                await self._background_jobs.mark_done(background_id)
                continue
            if view.status is not JobStatus.QUEUED:
                await self._background_jobs.mark_done(background_id)
            views.append(view)
        return views

    async def drain(self) -> None:
        """Wait for jobs started without ``wait`` to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
