"""Recurrence planning for scheduled report extractions.

Public API
----------
plan_due_extractions
    Group the report ids due at a given instant by platform and owner.
is_due
    Pure recurrence rule for day, week and month schedules.
ScheduleEntry, RecurrenceUnit
    Schedule definition types.
ScheduleStore
    SQLAlchemy-backed store for schedule entries.
ScheduledExtractionRunner
    Complete the nightly refresh, plan, and dispatch for a set of tenants.
PlatformApiClient
    httpx client resolving owner timezones and dispatching due reports.

"""

from sluice.planner.config import PlannerConfig
from sluice.planner.errors import (
    DispatchError,
    PlannerConfigError,
    PlannerError,
    TimezoneResolutionError,
)
from sluice.planner.models import DueExtractions, RecurrenceUnit, ScheduleEntry
from sluice.planner.observability import PlannerEventLogger, PlannerEventType
from sluice.planner.platform_api import PlatformApiClient, ReportDispatcher
from sluice.planner.recurrence import is_due
from sluice.planner.runner import PlannerRunResult, ScheduledExtractionRunner
from sluice.planner.service import TimezoneResolver, plan_due_extractions
from sluice.planner.storage import ScheduleStore, init_planner_storage

__all__ = [
    "DispatchError",
    "DueExtractions",
    "PlannerConfig",
    "PlannerConfigError",
    "PlannerError",
    "PlannerEventLogger",
    "PlannerEventType",
    "PlannerRunResult",
    "PlatformApiClient",
    "RecurrenceUnit",
    "ReportDispatcher",
    "ScheduleEntry",
    "ScheduleStore",
    "ScheduledExtractionRunner",
    "TimezoneResolutionError",
    "TimezoneResolver",
    "init_planner_storage",
    "is_due",
    "plan_due_extractions",
]
