"""Schedule definitions consumed by the extraction planner."""

from __future__ import annotations

import datetime as dt
import enum
import typing as typ

import msgspec


class RecurrenceUnit(enum.StrEnum):
    """Unit of a schedule's recurrence interval."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class ScheduleEntry(msgspec.Struct, kw_only=True, frozen=True):
    """Recurrence definition for one scheduled report.

    Attributes
    ----------
    report_id
        Report to extract when the schedule is due.
    platform
        Tenant owning the report.
    owner_id
        Report author; due reports are grouped by owner.
    anchor
        First occurrence ("schedule from"), compared as a calendar date.
    every
        Interval between occurrences, in ``unit``.
    unit
        Recurrence unit.
    paused
        Paused schedules are never due.
    active
        Inactive schedules are never due.
    recipients
        Delivery recipients; a schedule without recipients is never due.

    """

    report_id: str
    platform: str
    owner_id: str
    anchor: dt.date
    every: typ.Annotated[int, msgspec.Meta(gt=0)]
    unit: RecurrenceUnit
    paused: bool = False
    active: bool = True
    recipients: tuple[str, ...] = ()

    @property
    def anchor_day(self) -> dt.date:
        """Return the anchor truncated to a calendar date."""
        if isinstance(self.anchor, dt.datetime):
            return self.anchor.date()
        return self.anchor

    @property
    def is_schedulable(self) -> bool:
        """Return True when the schedule may fire at all."""
        return (
            self.active
            and not self.paused
            and self.every > 0
            and bool(self.recipients)
        )


# Due report ids grouped by platform, then by owner.
type DueExtractions = dict[str, dict[str, list[str]]]
