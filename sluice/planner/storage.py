"""Persistence for report schedule entries."""

from __future__ import annotations

import datetime as dt
import typing as typ

import msgspec
from sqlalchemy import JSON, Boolean, Date, Index, Integer, String, select
from sqlalchemy.orm import Mapped, mapped_column

from sluice.common.time import utcnow
from sluice.logging import get_logger, log_warning
from sluice.planner.models import RecurrenceUnit, ScheduleEntry
from sluice.storage import Base, UTCDateTime, string_enum

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

logger = get_logger(__name__)


class ScheduleEntryRow(Base):
    """Recurrence definition of one scheduled report."""

    __tablename__ = "schedule_entries"
    __table_args__ = (Index("ix_schedule_entries_platform", "platform"),)

    report_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    platform: Mapped[str] = mapped_column(String(255))
    owner_id: Mapped[str] = mapped_column(String(255))
    anchor: Mapped[dt.date] = mapped_column(Date())
    every: Mapped[int] = mapped_column(Integer)
    unit: Mapped[RecurrenceUnit] = mapped_column(string_enum(RecurrenceUnit))
    paused: Mapped[bool] = mapped_column(Boolean, default=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    recipients: Mapped[list[str]] = mapped_column(JSON, default=list)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )


class ScheduleStore:
    """Read and write schedule entries.

    Parameters
    ----------
    session_factory
        Async session factory bound to the Sluice database.

    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Store the session factory used for every operation."""
        self._session_factory = session_factory

    async def put(self, entry: ScheduleEntry) -> None:
        """Create or replace the schedule of ``entry.report_id``."""
        async with self._session_factory() as session, session.begin():
            await session.merge(
                ScheduleEntryRow(
                    report_id=entry.report_id,
                    platform=entry.platform,
                    owner_id=entry.owner_id,
                    anchor=entry.anchor_day,
                    every=entry.every,
                    unit=entry.unit,
                    paused=entry.paused,
                    active=entry.active,
                    recipients=list(entry.recipients),
                )
            )

    async def list_for_platforms(
        self, platforms: cabc.Iterable[str]
    ) -> list[ScheduleEntry]:
        """Return the schedule entries of ``platforms``.

        Rows that no longer form a valid schedule, such as a non-positive
        interval, are skipped with a warning.
        """
        keys = list(dict.fromkeys(platforms))
        if not keys:
            return []
        async with self._session_factory() as session:
            rows = (
                await session.scalars(
                    select(ScheduleEntryRow)
                    .where(ScheduleEntryRow.platform.in_(keys))
                    .order_by(ScheduleEntryRow.platform, ScheduleEntryRow.report_id)
                )
            ).all()

        entries: list[ScheduleEntry] = []
        for row in rows:
            try:
                entries.append(
                    msgspec.convert(
                        {
                            "report_id": row.report_id,
                            "platform": row.platform,
                            "owner_id": row.owner_id,
                            "anchor": row.anchor,
                            "every": row.every,
                            "unit": row.unit,
                            "paused": row.paused,
                            "active": row.active,
                            "recipients": row.recipients or [],
                        },
                        type=ScheduleEntry,
                    )
                )
            except msgspec.ValidationError as exc:
                log_warning(
                    logger,
                    "Skipping invalid schedule for report %s on %s: %s",
                    row.report_id,
                    row.platform,
                    exc,
                )
        return entries


async def init_planner_storage(engine: AsyncEngine) -> None:
    """Create all tables registered with Base if they are absent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
