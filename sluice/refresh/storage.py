"""Persistence for refresh records and refresh token budgets.

Every mutation is a single ``UPDATE ... WHERE`` statement touching only the
fields it owns, so concurrent writers updating different fields of the same
tenant record do not clobber each other. Conditional writes report whether a
row was affected.
"""

from __future__ import annotations

import datetime as dt
import typing as typ

from sqlalchemy import Integer, String, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from sluice.common.time import utcnow
from sluice.refresh.models import (
    RefreshRecord,
    RefreshStatus,
    RefreshTokenBudget,
    RefreshTrack,
    TrackState,
)
from sluice.storage import Base, UTCDateTime, string_enum

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy import ColumnElement
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


class RefreshRecordRow(Base):
    """One refresh record per tenant."""

    __tablename__ = "refresh_records"

    platform: Mapped[str] = mapped_column(String(255), primary_key=True)
    scheduled_status: Mapped[RefreshStatus] = mapped_column(
        string_enum(RefreshStatus), default=RefreshStatus.UNSET
    )
    scheduled_last_update: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    on_demand_status: Mapped[RefreshStatus] = mapped_column(
        string_enum(RefreshStatus), default=RefreshStatus.UNSET
    )
    on_demand_last_update: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    last_refresh_start: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    workflow_execution_id: Mapped[str | None] = mapped_column(
        String(255), default=None
    )
    warehouse_last_refresh_start: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )


class RefreshTokenBudgetRow(Base):
    """Remaining on-demand refresh tokens for one tenant."""

    __tablename__ = "refresh_token_budgets"

    platform: Mapped[str] = mapped_column(String(255), primary_key=True)
    daily_remaining: Mapped[int] = mapped_column(Integer)
    monthly_remaining: Mapped[int] = mapped_column(Integer)
    last_request: Mapped[dt.datetime] = mapped_column(UTCDateTime())
    last_reset: Mapped[dt.datetime] = mapped_column(UTCDateTime())


_STATUS_COLUMNS = {
    RefreshTrack.SCHEDULED: ("scheduled_status", "scheduled_last_update"),
    RefreshTrack.ON_DEMAND: ("on_demand_status", "on_demand_last_update"),
}


def _track_values(
    track: RefreshTrack, status: RefreshStatus, at: dt.datetime
) -> dict[str, object]:
    status_column, date_column = _STATUS_COLUMNS[track]
    return {status_column: status, date_column: at}


def _to_record(row: RefreshRecordRow) -> RefreshRecord:
    return RefreshRecord(
        platform=row.platform,
        scheduled=TrackState(row.scheduled_status, row.scheduled_last_update),
        on_demand=TrackState(row.on_demand_status, row.on_demand_last_update),
        last_refresh_start=row.last_refresh_start,
        error_count=row.error_count,
        workflow_execution_id=row.workflow_execution_id,
        warehouse_last_refresh_start=row.warehouse_last_refresh_start,
    )


def _to_budget(row: RefreshTokenBudgetRow) -> RefreshTokenBudget:
    return RefreshTokenBudget(
        platform=row.platform,
        daily_remaining=row.daily_remaining,
        monthly_remaining=row.monthly_remaining,
        last_request=row.last_request,
        last_reset=row.last_reset,
    )


class RefreshStore:
    """Key-value access to refresh records and token budgets.

    Parameters
    ----------
    session_factory
        Async session factory bound to the Sluice database.

    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Store the session factory used for every operation."""
        self._session_factory = session_factory

    async def get(self, platform: str) -> RefreshRecord | None:
        """Return the refresh record for ``platform`` if one exists."""
        async with self._session_factory() as session:
            row = await session.get(RefreshRecordRow, platform)
            return None if row is None else _to_record(row)

    async def get_many(
        self, platforms: cabc.Iterable[str]
    ) -> dict[str, RefreshRecord]:
        """Return existing refresh records keyed by platform."""
        keys = list(dict.fromkeys(platforms))
        if not keys:
            return {}
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(RefreshRecordRow).where(RefreshRecordRow.platform.in_(keys))
            )
            return {row.platform: _to_record(row) for row in rows}

    async def _update(
        self,
        platform: str,
        values: dict[str, object],
        *,
        create: bool = True,
    ) -> bool:
        """Apply a partial update, creating the record when it is missing.

        Returns
        -------
        bool
            True when a row was updated or created.

        """
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(RefreshRecordRow)
                .where(RefreshRecordRow.platform == platform)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount or not create:
                return bool(result.rowcount)

        async with self._session_factory() as session:
            session.add(RefreshRecordRow(platform=platform, **values))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
            else:
                return True

        # Another writer created the record first; apply the update to it.
        return await self._update(platform, values, create=False)

    async def set_track(
        self,
        platform: str,
        track: RefreshTrack,
        status: RefreshStatus,
        at: dt.datetime,
    ) -> None:
        """Unconditionally set one track's status and last update."""
        await self._update(platform, _track_values(track, status, at))

    async def set_tracks(
        self,
        platforms: cabc.Iterable[str],
        status: RefreshStatus,
        at: dt.datetime,
    ) -> None:
        """Set both tracks of every platform to ``status``."""
        values = {
            **_track_values(RefreshTrack.SCHEDULED, status, at),
            **_track_values(RefreshTrack.ON_DEMAND, status, at),
        }
        for platform in dict.fromkeys(platforms):
            await self._update(platform, values)

    async def _update_where(
        self,
        platform: str,
        values: dict[str, object],
        *conditions: ColumnElement[bool],
    ) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(RefreshRecordRow)
                .where(RefreshRecordRow.platform == platform, *conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    async def expire_scheduled(
        self,
        platform: str,
        *,
        seen: dt.datetime | None,
        at: dt.datetime,
    ) -> bool:
        """Force a silent scheduled refresh to ``Error``.

        The write only applies while the scheduled track is still the
        ``InProgress`` run last updated at ``seen`` and the on-demand track
        is not running.

        Returns
        -------
        bool
            False when another writer changed either track first.

        """
        last_update = RefreshRecordRow.scheduled_last_update
        return await self._update_where(
            platform,
            _track_values(RefreshTrack.SCHEDULED, RefreshStatus.ERROR, at),
            RefreshRecordRow.scheduled_status == RefreshStatus.IN_PROGRESS,
            RefreshRecordRow.on_demand_status != RefreshStatus.IN_PROGRESS,
            last_update.is_(None) if seen is None else last_update == seen,
        )

    async def settle_workflow(
        self,
        platform: str,
        execution_id: str,
        status: RefreshStatus,
        at: dt.datetime,
    ) -> bool:
        """Set both tracks from the outcome of workflow ``execution_id``.

        Applies only while that execution still drives an ``InProgress``
        scheduled refresh.
        """
        return await self._update_where(
            platform,
            {
                **_track_values(RefreshTrack.SCHEDULED, status, at),
                **_track_values(RefreshTrack.ON_DEMAND, status, at),
            },
            RefreshRecordRow.scheduled_status == RefreshStatus.IN_PROGRESS,
            RefreshRecordRow.workflow_execution_id == execution_id,
        )

    async def begin_scheduled(self, platform: str, at: dt.datetime) -> bool:
        """Move the scheduled track to ``InProgress`` unless it already is.

        Stamps ``last_refresh_start``, clears any previous workflow execution
        id and forces the on-demand track to ``Error`` in the same statement.

        Returns
        -------
        bool
            True when this caller now owns the scheduled refresh.

        """
        values = {
            **_track_values(RefreshTrack.SCHEDULED, RefreshStatus.IN_PROGRESS, at),
            **_track_values(RefreshTrack.ON_DEMAND, RefreshStatus.ERROR, at),
            "last_refresh_start": at,
            "workflow_execution_id": None,
        }
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(RefreshRecordRow)
                .where(
                    RefreshRecordRow.platform == platform,
                    RefreshRecordRow.scheduled_status != RefreshStatus.IN_PROGRESS,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return True
            exists = await session.get(RefreshRecordRow, platform)
            if exists is not None:
                return False

        async with self._session_factory() as session:
            session.add(RefreshRecordRow(platform=platform, **values))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def set_error_count(self, platform: str, value: int) -> None:
        """Overwrite the scheduled error count."""
        await self._update(platform, {"error_count": value})

    async def increment_error_count(self, platform: str) -> None:
        """Add one to the scheduled error count."""
        updated = await self._update(
            platform,
            {"error_count": RefreshRecordRow.error_count + 1},
            create=False,
        )
        if not updated:
            await self._update(platform, {"error_count": 1})

    async def set_workflow_execution_id(
        self, platform: str, execution_id: str | None
    ) -> None:
        """Record the workflow execution driving the scheduled refresh."""
        await self._update(platform, {"workflow_execution_id": execution_id})

    async def set_warehouse_refresh_start(
        self, platform: str, at: dt.datetime
    ) -> None:
        """Record the start of the last completed warehouse refresh."""
        await self._update(platform, {"warehouse_last_refresh_start": at})

    async def get_budget(self, platform: str) -> RefreshTokenBudget | None:
        """Return the token budget for ``platform`` if one exists."""
        async with self._session_factory() as session:
            row = await session.get(RefreshTokenBudgetRow, platform)
            return None if row is None else _to_budget(row)

    async def put_budget(self, budget: RefreshTokenBudget) -> None:
        """Create or replace the token budget for a tenant."""
        async with self._session_factory() as session, session.begin():
            await session.merge(
                RefreshTokenBudgetRow(
                    platform=budget.platform,
                    daily_remaining=budget.daily_remaining,
                    monthly_remaining=budget.monthly_remaining,
                    last_request=budget.last_request,
                    last_reset=budget.last_reset,
                )
            )

    async def _update_budget(
        self,
        platform: str,
        values: dict[str, object],
        *conditions: ColumnElement[bool],
    ) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(RefreshTokenBudgetRow)
                .where(RefreshTokenBudgetRow.platform == platform, *conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    async def reset_daily_tokens(
        self, platform: str, daily: int, at: dt.datetime
    ) -> bool:
        """Reset the daily counter, leaving the monthly counter untouched."""
        return await self._update_budget(
            platform, {"daily_remaining": daily, "last_request": at}
        )

    async def zero_daily_tokens(self, platform: str) -> bool:
        """Clear the daily counter once the monthly budget is spent."""
        return await self._update_budget(platform, {"daily_remaining": 0})

    async def consume_token(self, platform: str, at: dt.datetime) -> bool:
        """Atomically take one daily and one monthly token.

        Returns
        -------
        bool
            False when either counter is already zero or no budget exists.

        """
        return await self._update_budget(
            platform,
            {
                "daily_remaining": RefreshTokenBudgetRow.daily_remaining - 1,
                "monthly_remaining": RefreshTokenBudgetRow.monthly_remaining - 1,
                "last_request": at,
            },
            RefreshTokenBudgetRow.daily_remaining > 0,
            RefreshTokenBudgetRow.monthly_remaining > 0,
        )

    async def restore_token(self, platform: str, at: dt.datetime) -> bool:
        """Give back one daily and one monthly token."""
        return await self._update_budget(
            platform,
            {
                "daily_remaining": RefreshTokenBudgetRow.daily_remaining + 1,
                "monthly_remaining": RefreshTokenBudgetRow.monthly_remaining + 1,
                "last_request": at,
            },
        )


async def init_refresh_storage(engine: AsyncEngine) -> None:
    """Create all tables registered with Base if they are absent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
