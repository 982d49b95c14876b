"""Configuration for refresh expiry, the nightly watchdog, and token budgets.

Usage
-----
Create a configuration with defaults:

>>> config = RefreshConfig()
>>> config.expiration_window("staging")
datetime.timedelta(seconds=28800)

Or load from environment variables:

>>> import os
>>> os.environ["SLUICE_REFRESH_EXPIRATION_OVERRIDE_SECONDS"] = "600"
>>> RefreshConfig.from_env().expiration_window("trial")
datetime.timedelta(seconds=600)

"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import os

_SAAS_CLASSES = frozenset(
    {
        "trial",
        "smb",
        "demo",
        "internal",
        "sales_pre_release",
        "predisposition",
        "mhr_internal",
    }
)
_STAGING_CLASSES = frozenset({"staging"})
_PRODUCTION_CLASSES = frozenset({"ecs", "large_enterprise", "production"})


def _parse_int(env_var: str, default: int, *, minimum: int) -> int:
    """Read an integer env var no smaller than ``minimum``."""
    raw = os.environ.get(env_var, "")
    if not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        msg = f"{env_var} must be an integer, got: {raw!r}"
        raise ValueError(msg) from exc
    if value < minimum:
        qualifier = "positive" if minimum == 1 else f"at least {minimum}"
        msg = f"{env_var} must be {qualifier}, got: {value}"
        raise ValueError(msg)
    return value


@dc.dataclass(frozen=True, slots=True)
class RefreshConfig:
    """Configuration for the refresh state machine.

    Attributes
    ----------
    default_window_hours
        Expiration window for unclassified installations.
    saas_window_hours
        Expiration window for trial, SMB, demo and internal installations.
    staging_window_hours
        Expiration window for staging installations.
    production_window_hours
        Expiration window for dedicated production installations.
    expiration_override_seconds
        When set, replaces every tiered window.
    nightly_timeout_minutes
        Minutes after which a silent nightly refresh is forced to ``Error``.
    daily_tokens
        On-demand refresh tokens granted per day.
    monthly_tokens
        On-demand refresh tokens granted per calendar month.

    """

    default_window_hours: int = 24
    saas_window_hours: int = 24
    staging_window_hours: int = 8
    production_window_hours: int = 4
    expiration_override_seconds: int | None = None
    nightly_timeout_minutes: int = 300
    daily_tokens: int = 5
    monthly_tokens: int = 30

    def expiration_window(self, installation_class: str) -> dt.timedelta:
        """Return how long a completed refresh stays fresh.

        Parameters
        ----------
        installation_class
            Installation classification; unknown or empty values use the
            default window.

        Returns
        -------
        dt.timedelta
            The freshness window for the classification.

        """
        if self.expiration_override_seconds:
            return dt.timedelta(seconds=self.expiration_override_seconds)

        key = installation_class.strip().lower()
        if key in _SAAS_CLASSES:
            hours = self.saas_window_hours
        elif key in _STAGING_CLASSES:
            hours = self.staging_window_hours
        elif key in _PRODUCTION_CLASSES:
            hours = self.production_window_hours
        else:
            hours = self.default_window_hours
        return dt.timedelta(hours=hours)

    @property
    def nightly_timeout(self) -> dt.timedelta:
        """Return the nightly watchdog timeout."""
        return dt.timedelta(minutes=self.nightly_timeout_minutes)

    @classmethod
    def from_env(cls) -> RefreshConfig:
        """Create configuration from environment variables.

        Reads ``SLUICE_REFRESH_DEFAULT_WINDOW_HOURS``,
        ``SLUICE_REFRESH_SAAS_WINDOW_HOURS``,
        ``SLUICE_REFRESH_STAGING_WINDOW_HOURS``,
        ``SLUICE_REFRESH_PRODUCTION_WINDOW_HOURS``,
        ``SLUICE_REFRESH_EXPIRATION_OVERRIDE_SECONDS``,
        ``SLUICE_REFRESH_NIGHTLY_TIMEOUT_MINUTES``,
        ``SLUICE_REFRESH_DAILY_TOKENS`` and ``SLUICE_REFRESH_MONTHLY_TOKENS``.
        An override of ``0`` disables the override.

        Raises
        ------
        ValueError
            If any variable is not an integer or is out of range.

        """
        override = _parse_int(
            "SLUICE_REFRESH_EXPIRATION_OVERRIDE_SECONDS", 0, minimum=0
        )
        return cls(
            default_window_hours=_parse_int(
                "SLUICE_REFRESH_DEFAULT_WINDOW_HOURS", 24, minimum=1
            ),
            saas_window_hours=_parse_int(
                "SLUICE_REFRESH_SAAS_WINDOW_HOURS", 24, minimum=1
            ),
            staging_window_hours=_parse_int(
                "SLUICE_REFRESH_STAGING_WINDOW_HOURS", 8, minimum=1
            ),
            production_window_hours=_parse_int(
                "SLUICE_REFRESH_PRODUCTION_WINDOW_HOURS", 4, minimum=1
            ),
            expiration_override_seconds=override or None,
            nightly_timeout_minutes=_parse_int(
                "SLUICE_REFRESH_NIGHTLY_TIMEOUT_MINUTES", 300, minimum=1
            ),
            daily_tokens=_parse_int("SLUICE_REFRESH_DAILY_TOKENS", 5, minimum=0),
            monthly_tokens=_parse_int("SLUICE_REFRESH_MONTHLY_TOKENS", 30, minimum=0),
        )
