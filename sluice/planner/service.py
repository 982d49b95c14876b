"""Decide which scheduled reports are due.

``plan_due_extractions`` is a function of its inputs: the caller supplies
"now" and a timezone resolver, and nothing here reads a clock. Owner
timezones are cached for a single pass only, since an owner may change their
timezone between passes.

Usage
-----
>>> due = await plan_due_extractions(
...     dt.datetime(2019, 10, 7, 6, tzinfo=dt.UTC),
...     entries,
...     resolver,
... )
>>> due
{'acme.example.com': {'12': ['2b0c...']}}

"""

from __future__ import annotations

import collections.abc as cabc
import datetime as dt
import typing as typ
import zoneinfo

from sluice.common.time import ensure_aware, load_zone
from sluice.planner.observability import PlannerEventLogger
from sluice.planner.recurrence import is_due

if typ.TYPE_CHECKING:
    from sluice.planner.models import DueExtractions, ScheduleEntry

type TimezoneResolver = cabc.Callable[[str, str], cabc.Awaitable[str]]

_FALLBACK_ZONE = "UTC"


class _OwnerZoneCache:
    """Resolve owner timezones at most once per planning pass."""

    def __init__(
        self, resolver: TimezoneResolver, event_logger: PlannerEventLogger
    ) -> None:
        self._resolver = resolver
        self._event_logger = event_logger
        self._zones: dict[tuple[str, str], dt.tzinfo] = {}

    async def zone_for(self, platform: str, owner_id: str) -> dt.tzinfo:
        key = (platform, owner_id)
        if key not in self._zones:
            self._zones[key] = await self._resolve(platform, owner_id)
        return self._zones[key]

    async def _resolve(self, platform: str, owner_id: str) -> dt.tzinfo:
        try:
            name = await self._resolver(platform, owner_id)
        except Exception as exc:  # noqa: BLE001
            # One bad owner must not abort the whole pass.
            self._event_logger.log_timezone_fallback(
                platform=platform, owner_id=owner_id, reason=str(exc)
            )
            return load_zone(_FALLBACK_ZONE)

        try:
            return load_zone(name)
        except zoneinfo.ZoneInfoNotFoundError:
            self._event_logger.log_timezone_fallback(
                platform=platform,
                owner_id=owner_id,
                reason=f"unknown timezone {name!r}",
            )
            return load_zone(_FALLBACK_ZONE)


async def plan_due_extractions(
    now: dt.datetime,
    entries: cabc.Iterable[ScheduleEntry],
    timezone_resolver: TimezoneResolver,
    *,
    event_logger: PlannerEventLogger | None = None,
) -> DueExtractions:
    """Group the report ids due at ``now`` by platform and owner.

    Parameters
    ----------
    now
        Aware instant the pass runs for.
    entries
        Schedule entries to evaluate.
    timezone_resolver
        Async callable returning the IANA timezone name of
        ``(platform, owner_id)``. Failures and unknown names fall back to
        UTC.
    event_logger
        Receives pass and fallback events.

    Returns
    -------
    DueExtractions
        ``{platform: {owner_id: [report_id, ...]}}`` in entry order.

    Raises
    ------
    TimezoneAwareRequiredError
        If ``now`` is naive.

    """
    now = ensure_aware(now, field="now")
    events = event_logger or PlannerEventLogger()
    zones = _OwnerZoneCache(timezone_resolver, events)

    due: DueExtractions = {}
    evaluated = 0
    due_reports = 0
    for entry in entries:
        evaluated += 1
        if not entry.is_schedulable:
            continue
        zone = await zones.zone_for(entry.platform, entry.owner_id)
        today = now.astimezone(zone).date()
        if not is_due(today, entry.anchor_day, entry.every, entry.unit):
            continue
        due.setdefault(entry.platform, {}).setdefault(entry.owner_id, []).append(
            entry.report_id
        )
        due_reports += 1

    events.log_pass_completed(
        entries=evaluated, due_reports=due_reports, platforms=len(due)
    )
    return due
