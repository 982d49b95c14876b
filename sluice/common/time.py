"""Common time utilities."""

from __future__ import annotations

import datetime as dt
import zoneinfo


class TimezoneAwareRequiredError(ValueError):
    """Raised when datetime inputs lack timezone information."""

    def __init__(self, context: str) -> None:
        """Attach a consistent message for the failing context."""
        super().__init__(f"{context} must be timezone aware")

    @classmethod
    def for_column(cls) -> TimezoneAwareRequiredError:
        """Return an error indicating a persisted timestamp was naive."""
        return cls("stored datetime values")

    @classmethod
    def for_field(cls, field: str) -> TimezoneAwareRequiredError:
        """Return an error naming the naive field."""
        return cls(field)


def utcnow() -> dt.datetime:
    """Return an aware UTC timestamp suitable for DB defaults."""
    return dt.datetime.now(dt.UTC)


def ensure_aware(value: dt.datetime, *, field: str) -> dt.datetime:
    """Return ``value`` converted to UTC, rejecting naive datetimes."""
    if value.tzinfo is None:
        raise TimezoneAwareRequiredError.for_field(field)
    return value.astimezone(dt.UTC)


def parse_aware_iso(
    value: str | None, *, field: str = "as_of_iso"
) -> dt.datetime | None:
    """Parse an ISO timestamp string, requiring timezone information.

    Parameters
    ----------
    value
        ISO format timestamp string, or None.
    field
        Name used in the error message.

    Returns
    -------
    dt.datetime | None
        Parsed datetime with timezone, or None if input was None.

    Raises
    ------
    ValueError
        If the timestamp lacks timezone information.

    """
    if value is None:
        return None
    parsed = dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        msg = (
            f"{field} must include timezone information, got naive datetime: "
            f"{value!r}. Use ISO format with offset (e.g., '2024-07-14T10:00:00Z' "
            f"or '2024-07-14T10:00:00+00:00')."
        )
        raise ValueError(msg)
    return parsed


def load_zone(name: str) -> zoneinfo.ZoneInfo:
    """Return the IANA zone called ``name``.

    Raises
    ------
    zoneinfo.ZoneInfoNotFoundError
        If ``name`` is empty, malformed, or unknown to the tz database.

    """
    try:
        return zoneinfo.ZoneInfo(name)
    except (ValueError, OSError, zoneinfo.ZoneInfoNotFoundError) as exc:
        raise zoneinfo.ZoneInfoNotFoundError(name) from exc
