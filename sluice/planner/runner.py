"""Run one scheduled extraction pass for a set of tenants.

The runner closes out the nightly refresh of each tenant, plans the due
reports against the tenants' schedules, and dispatches each tenant's due
reports. A tenant whose dispatch fails is reported back without stopping
the others.
"""

from __future__ import annotations

import typing as typ

import msgspec

from sluice.planner.observability import PlannerEventLogger
from sluice.planner.service import plan_due_extractions

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from sluice.planner.models import DueExtractions
    from sluice.planner.platform_api import ReportDispatcher
    from sluice.planner.service import TimezoneResolver
    from sluice.planner.storage import ScheduleStore
    from sluice.refresh.service import RefreshStateMachine


class PlannerRunResult(msgspec.Struct, kw_only=True, frozen=True):
    """Outcome of one scheduled extraction pass."""

    due: dict[str, dict[str, list[str]]]
    failed_platforms: tuple[str, ...] = ()


class ScheduledExtractionRunner:
    """Plan and dispatch scheduled extractions for tenants.

    Parameters
    ----------
    schedules
        Store holding schedule entries.
    refresh
        State machine whose nightly refresh is completed before planning.
    timezone_resolver
        Resolves owner timezones for the planning pass.
    dispatcher
        Hands due reports to each tenant.
    event_logger
        Receives planning and dispatch events.

    """

    def __init__(
        self,
        schedules: ScheduleStore,
        refresh: RefreshStateMachine,
        timezone_resolver: TimezoneResolver,
        dispatcher: ReportDispatcher,
        *,
        event_logger: PlannerEventLogger | None = None,
    ) -> None:
        """Wire the runner to its collaborators."""
        self._schedules = schedules
        self._refresh = refresh
        self._timezone_resolver = timezone_resolver
        self._dispatcher = dispatcher
        self._event_logger = event_logger or PlannerEventLogger()

    async def run(
        self,
        platforms: cabc.Sequence[str],
        now: dt.datetime,
        *,
        complete_refresh: bool = True,
    ) -> PlannerRunResult:
        """Plan and dispatch the reports due at ``now``.

        Parameters
        ----------
        platforms
            Tenants whose schedules are evaluated.
        now
            Aware instant the pass runs for.
        complete_refresh
            Whether to mark both refresh tracks ``Succeeded`` first, as the
            pass follows a finished nightly refresh.

        Returns
        -------
        PlannerRunResult
            The due mapping and the tenants whose dispatch failed.

        """
        if complete_refresh:
            await self._refresh.complete_nightly_refresh(platforms)

        entries = await self._schedules.list_for_platforms(platforms)
        due = await plan_due_extractions(
            now,
            entries,
            self._timezone_resolver,
            event_logger=self._event_logger,
        )
        failed = await self._dispatch_all(due)
        return PlannerRunResult(due=due, failed_platforms=tuple(failed))

    async def _dispatch_all(self, due: DueExtractions) -> list[str]:
        failed: list[str] = []
        for platform, reports_by_owner in due.items():
            try:
                await self._dispatcher.dispatch(platform, reports_by_owner)
            except Exception as exc:  # noqa: BLE001
                self._event_logger.log_dispatch_failed(platform=platform, error=exc)
                failed.append(platform)
                continue
            self._event_logger.log_dispatched(
                platform=platform,
                owners=len(reports_by_owner),
                reports=sum(len(ids) for ids in reports_by_owner.values()),
            )
        return failed
