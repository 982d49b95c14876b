"""Behavioural coverage for scheduled extraction planning."""

from __future__ import annotations

import asyncio
import datetime as dt
import typing as typ

from pytest_bdd import given, parsers, scenario, then, when

from sluice.planner import (
    PlannerRunResult,
    RecurrenceUnit,
    ScheduledExtractionRunner,
    ScheduleEntry,
    ScheduleStore,
)
from sluice.refresh import RefreshStateMachine, RefreshStore
from tests.helpers.fakes import FakeTimezoneResolver, RecordingDispatcher

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def run_async[T](coro: typ.Coroutine[typ.Any, typ.Any, T]) -> T:
    """Run async coroutines in sync BDD step functions."""
    return asyncio.run(coro)


class PlannerContext(typ.TypedDict, total=False):
    """Shared mutable scenario state."""

    session_factory: async_sessionmaker[AsyncSession]
    resolver: FakeTimezoneResolver
    dispatcher: RecordingDispatcher
    platforms: list[str]
    result: PlannerRunResult


@scenario(
    "scheduled_extractions.feature",
    "Month-end schedules fire on the last day of a short month",
)
def test_month_end_schedule() -> None:
    """Wrap the pytest-bdd scenario."""


@scenario(
    "scheduled_extractions.feature",
    "Reports are not due before the owner's local day begins",
)
def test_owner_local_day() -> None:
    """Wrap the pytest-bdd scenario."""


@given(
    parsers.parse(
        'a monthly schedule "{report_id}" for owner "{owner_id}" on "{platform}" '
        'anchored on "{anchor}"'
    ),
    target_fixture="planner_context",
)
def given_monthly_schedule(
    feature_session_factory: async_sessionmaker[AsyncSession],
    report_id: str,
    owner_id: str,
    platform: str,
    anchor: str,
) -> PlannerContext:
    """Store a monthly schedule entry."""
    run_async(
        ScheduleStore(feature_session_factory).put(
            ScheduleEntry(
                report_id=report_id,
                platform=platform,
                owner_id=owner_id,
                anchor=dt.date.fromisoformat(anchor),
                every=1,
                unit=RecurrenceUnit.MONTH,
                recipients=("finance@example.com",),
            )
        )
    )
    return {
        "session_factory": feature_session_factory,
        "resolver": FakeTimezoneResolver(),
        "dispatcher": RecordingDispatcher(),
        "platforms": [platform],
    }


@given(parsers.parse('owner "{owner_id}" on "{platform}" lives in "{zone}"'))
def given_owner_zone(
    planner_context: PlannerContext, owner_id: str, platform: str, zone: str
) -> None:
    """Register the owner's timezone with the resolver."""
    planner_context["resolver"].zones[(platform, owner_id)] = zone


@when(parsers.parse('the planner runs at "{at}"'))
def when_planner_runs(planner_context: PlannerContext, at: str) -> None:
    """Run one planning pass."""
    session_factory = planner_context["session_factory"]
    runner = ScheduledExtractionRunner(
        ScheduleStore(session_factory),
        RefreshStateMachine(RefreshStore(session_factory)),
        planner_context["resolver"],
        planner_context["dispatcher"],
    )
    planner_context["result"] = run_async(
        runner.run(planner_context["platforms"], dt.datetime.fromisoformat(at))
    )


@then(
    parsers.parse(
        'report "{report_id}" is due for owner "{owner_id}" on "{platform}"'
    )
)
def then_report_due(
    planner_context: PlannerContext, report_id: str, owner_id: str, platform: str
) -> None:
    """Check the report was planned and dispatched."""
    expected = {owner_id: [report_id]}
    assert planner_context["result"].due == {platform: expected}
    assert planner_context["dispatcher"].calls == [(platform, expected)]


@then("nothing is due")
def then_nothing_due(planner_context: PlannerContext) -> None:
    """Check the pass planned and dispatched nothing."""
    assert planner_context["result"].due == {}
    assert planner_context["dispatcher"].calls == []
