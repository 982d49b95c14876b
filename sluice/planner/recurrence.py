"""Calendar recurrence rules for scheduled extractions.

All functions here are pure: they take calendar dates and never read a
clock, so the recurrence rules can be tested in isolation.

Monthly schedules clamp to the end of short months. An anchor on the 29th,
30th or 31st fires on the last day of any month too short to contain that
day, so in a 30-day month anchors on the 30th and 31st both fire on the
30th.
"""

from __future__ import annotations

import calendar
import typing as typ

from sluice.planner.models import RecurrenceUnit

if typ.TYPE_CHECKING:
    import datetime as dt

_DAYS_PER_WEEK = 7


def months_between(start: dt.date, end: dt.date) -> int:
    """Return the number of calendar month boundaries from start to end."""
    return (end.year - start.year) * 12 + (end.month - start.month)


def clamped_day(anchor: dt.date, target: dt.date) -> int:
    """Return the anchor's day of month clamped to the target month."""
    _, days_in_month = calendar.monthrange(target.year, target.month)
    return min(anchor.day, days_in_month)


def is_due(today: dt.date, anchor: dt.date, every: int, unit: RecurrenceUnit) -> bool:
    """Return whether a schedule fires on ``today``.

    Parameters
    ----------
    today
        Current calendar date in the owner's timezone.
    anchor
        Calendar date of the first occurrence.
    every
        Interval between occurrences; non-positive intervals never fire.
    unit
        Recurrence unit.

    Returns
    -------
    bool
        True when ``today`` is an occurrence of the schedule.

    Examples
    --------
    >>> import datetime as dt
    >>> is_due(dt.date(2019, 9, 30), dt.date(2019, 8, 31), 1, RecurrenceUnit.MONTH)
    True
    >>> is_due(dt.date(2019, 9, 30), dt.date(2019, 8, 29), 1, RecurrenceUnit.MONTH)
    False

    """
    if every <= 0 or today < anchor:
        return False
    if today == anchor:
        return True

    match unit:
        case RecurrenceUnit.DAY:
            return (today - anchor).days % every == 0
        case RecurrenceUnit.WEEK:
            days = (today - anchor).days
            if days % _DAYS_PER_WEEK:
                return False
            return (days // _DAYS_PER_WEEK) % every == 0
        case RecurrenceUnit.MONTH:
            if months_between(anchor, today) % every:
                return False
            return today.day == clamped_day(anchor, today)
    return False
