"""Persistence for export jobs and their background job records.

Status changes are conditional ``UPDATE ... WHERE status IN (...)`` writes
that only accept the legal predecessors of the target status, so a job never
moves backwards and terminal jobs stay terminal even when a late writer
races a watchdog or a poller.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import typing as typ

import msgspec
from sqlalchemy import JSON, Boolean, Index, Integer, String, Text, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, mapped_column

from sluice.common.time import utcnow
from sluice.exports.errors import BackgroundJobCreationError
from sluice.exports.models import ExportOptions, ExtractionId, ExtractionJob, JobStatus
from sluice.logging import get_logger, log_warning
from sluice.storage import Base, UTCDateTime, string_enum

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

logger = get_logger(__name__)

_ACTIVE_STATUSES = tuple(status for status in JobStatus if not status.is_terminal)


class ExtractionJobRow(Base):
    """One export job, keyed by report id and execution id."""

    __tablename__ = "extraction_jobs"
    __table_args__ = (Index("ix_extraction_jobs_platform", "platform"),)

    report_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    execution_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    platform: Mapped[str] = mapped_column(String(255))
    status: Mapped[JobStatus] = mapped_column(string_enum(JobStatus))
    options: Mapped[dict[str, typ.Any]] = mapped_column(JSON)
    started_at: Mapped[dt.datetime] = mapped_column(UTCDateTime())
    ended_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime(), default=None)
    last_heartbeat: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    started_from_queue_at: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    backend_handle: Mapped[str | None] = mapped_column(String(255), default=None)
    deferred_query: Mapped[str | None] = mapped_column(Text, default=None)
    query: Mapped[str | None] = mapped_column(Text, default=None)
    artifact: Mapped[str | None] = mapped_column(String(1024), default=None)
    error_detail: Mapped[str | None] = mapped_column(Text, default=None)
    download_url: Mapped[str | None] = mapped_column(Text, default=None)


class BackgroundJobRow(Base):
    """A deferred export waiting to be resumed by a background worker."""

    __tablename__ = "background_jobs"
    __table_args__ = (Index("ix_background_jobs_done", "done"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[str] = mapped_column(String(36))
    execution_id: Mapped[str] = mapped_column(String(36))
    platform: Mapped[str] = mapped_column(String(255))
    done: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)


def _to_job(row: ExtractionJobRow) -> ExtractionJob:
    return ExtractionJob(
        job_id=ExtractionId(row.report_id, row.execution_id),
        status=row.status,
        options=msgspec.convert(row.options, type=ExportOptions),
        started_at=row.started_at,
        ended_at=row.ended_at,
        last_heartbeat=row.last_heartbeat,
        started_from_queue_at=row.started_from_queue_at,
        backend_handle=row.backend_handle,
        deferred_query=row.deferred_query,
        query=row.query,
        artifact=row.artifact,
        error_detail=row.error_detail,
        download_url=row.download_url,
    )


def _predecessors(target: JobStatus) -> tuple[JobStatus, ...]:
    return tuple(status for status in JobStatus if status.can_move_to(target))


class ExportJobStore:
    """Key-value access to export jobs.

    Parameters
    ----------
    session_factory
        Async session factory bound to the Sluice database.

    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Store the session factory used for every operation."""
        self._session_factory = session_factory

    async def create(self, job: ExtractionJob) -> None:
        """Insert a new job record."""
        async with self._session_factory() as session, session.begin():
            session.add(
                ExtractionJobRow(
                    report_id=job.job_id.report_id,
                    execution_id=job.job_id.execution_id,
                    platform=job.options.platform,
                    status=job.status,
                    options=msgspec.to_builtins(job.options),
                    started_at=job.started_at,
                    ended_at=job.ended_at,
                    last_heartbeat=job.last_heartbeat,
                    started_from_queue_at=job.started_from_queue_at,
                    backend_handle=job.backend_handle,
                    deferred_query=job.deferred_query,
                    query=job.query,
                    artifact=job.artifact,
                    error_detail=job.error_detail,
                    download_url=job.download_url,
                )
            )

    async def get(self, job_id: ExtractionId) -> ExtractionJob | None:
        """Return the job stored under ``job_id`` if one exists."""
        async with self._session_factory() as session:
            row = await session.get(
                ExtractionJobRow, (job_id.report_id, job_id.execution_id)
            )
            return None if row is None else _to_job(row)

    async def _update(
        self,
        job_id: ExtractionId,
        values: dict[str, object],
        statuses: tuple[JobStatus, ...],
    ) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(ExtractionJobRow)
                .where(
                    ExtractionJobRow.report_id == job_id.report_id,
                    ExtractionJobRow.execution_id == job_id.execution_id,
                    ExtractionJobRow.status.in_(statuses),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    async def transition(
        self,
        job_id: ExtractionId,
        target: JobStatus,
        *,
        expected: tuple[JobStatus, ...] | None = None,
        **values: object,
    ) -> bool:
        """Move a job to ``target`` and write ``values`` in the same statement.

        Parameters
        ----------
        job_id
            Job to update.
        target
            New status.
        expected
            Restrict the statuses the job may currently be in. Defaults to
            every legal predecessor of ``target``.
        **values
            Other columns to write alongside the status.

        Returns
        -------
        bool
            False when the job does not exist or is not in an accepted
            status.

        """
        allowed = _predecessors(target)
        if expected is not None:
            allowed = tuple(status for status in allowed if status in expected)
        return await self._update(job_id, {"status": target, **values}, allowed)

    async def fail(
        self,
        job_id: ExtractionId,
        detail: str,
        *,
        at: dt.datetime,
        query: str | None = None,
    ) -> bool:
        """Move a non-terminal job to ``FAILED`` with a reason.

        A failed job no longer holds a deferred query.

        """
        values: dict[str, object] = {
            "ended_at": at,
            "error_detail": detail,
            "deferred_query": None,
        }
        if query is not None:
            values["query"] = query
        return await self.transition(job_id, JobStatus.FAILED, **values)

    async def touch_heartbeat(self, job_id: ExtractionId, at: dt.datetime) -> bool:
        """Record progress on a job that is still active."""
        return await self._update(job_id, {"last_heartbeat": at}, _ACTIVE_STATUSES)

    async def set_backend_handle(self, job_id: ExtractionId, handle: str) -> bool:
        """Record the query backend's execution handle."""
        return await self._update(
            job_id, {"backend_handle": handle}, _ACTIVE_STATUSES
        )

    async def set_artifact(self, job_id: ExtractionId, location: str) -> bool:
        """Record the location of the job's current artifact."""
        return await self._update(job_id, {"artifact": location}, _ACTIVE_STATUSES)

    async def set_download_url(self, job_id: ExtractionId, url: str) -> bool:
        """Attach a download URL to a succeeded job."""
        return await self._update(
            job_id, {"download_url": url}, (JobStatus.SUCCEEDED,)
        )


class BackgroundJobStore:
    """Record deferred exports for background resumption.

    Parameters
    ----------
    session_factory
        Async session factory bound to the Sluice database.
    retries
        Attempts made for each new record.
    retry_delay_ms
        Delay between attempts.

    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retries: int = 3,
        retry_delay_ms: int = 200,
    ) -> None:
        """Store the session factory and retry policy."""
        self._session_factory = session_factory
        self._retries = max(1, retries)
        self._retry_delay_s = retry_delay_ms / 1000

    async def create(self, job_id: ExtractionId, platform: str) -> int:
        """Record a background job for ``job_id`` and return its id.

        Raises
        ------
        BackgroundJobCreationError
            If every attempt fails.

        """
        last_error: SQLAlchemyError | None = None
        for attempt in range(1, self._retries + 1):
            try:
                return await self._insert(job_id, platform)
            except SQLAlchemyError as exc:
                last_error = exc
                log_warning(
                    logger,
                    "Background job for %s failed on attempt %d/%d: %s",
                    job_id,
                    attempt,
                    self._retries,
                    exc,
                )
            if attempt < self._retries:
                await asyncio.sleep(self._retry_delay_s)
        raise BackgroundJobCreationError(job_id, self._retries) from last_error

    async def _insert(self, job_id: ExtractionId, platform: str) -> int:
        async with self._session_factory() as session, session.begin():
            row = BackgroundJobRow(
                report_id=job_id.report_id,
                execution_id=job_id.execution_id,
                platform=platform,
            )
            session.add(row)
            await session.flush()
            return row.id

    async def pending(self, *, limit: int = 100) -> list[tuple[int, ExtractionId]]:
        """Return the oldest unfinished background jobs."""
        async with self._session_factory() as session:
            rows = (
                await session.scalars(
                    select(BackgroundJobRow)
                    .where(BackgroundJobRow.done.is_(False))
                    .order_by(BackgroundJobRow.created_at, BackgroundJobRow.id)
                    .limit(limit)
                )
            ).all()
            return [
                (row.id, ExtractionId(row.report_id, row.execution_id)) for row in rows
            ]

    async def mark_done(self, background_id: int) -> None:
        """Mark a background job as handled."""
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(BackgroundJobRow)
                .where(BackgroundJobRow.id == background_id)
                .values(done=True)
                .execution_options(synchronize_session=False)
            )


async def init_export_storage(engine: AsyncEngine) -> None:
    """Create all tables registered with Base if they are absent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
