"""Domain types for per-tenant refresh state.

A tenant ("platform") carries one ``RefreshRecord`` with two independent
tracks: the scheduled (nightly) track and the on-demand track. Which of the
tenant's refresh models applies is decided once at the boundary and passed
around as a ``RefreshModel`` variant.

"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import enum

import msgspec

_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.UTC)


class RefreshStatus(enum.StrEnum):
    """Status of one refresh track."""

    UNSET = "Unset"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    ERROR = "Error"


class RefreshTrack(enum.StrEnum):
    """The two independent refresh channels tracked per tenant."""

    SCHEDULED = "scheduled"
    ON_DEMAND = "on_demand"


@dc.dataclass(frozen=True, slots=True)
class TrackState:
    """Status and last update time of a single track."""

    status: RefreshStatus = RefreshStatus.UNSET
    last_update: dt.datetime | None = None

    @property
    def sort_key(self) -> dt.datetime:
        """Return ``last_update``, treating a missing date as the epoch."""
        return self.last_update or _EPOCH


@dc.dataclass(frozen=True, slots=True)
class RefreshRecord:
    """Persisted refresh state for one tenant.

    Attributes
    ----------
    platform
        Tenant identifier.
    scheduled
        State of the scheduled (nightly) track.
    on_demand
        State of the on-demand track.
    last_refresh_start
        When the most recent scheduled refresh was started.
    error_count
        Consecutive scheduled refresh failures.
    workflow_execution_id
        Handle to the external workflow run driving the scheduled refresh.
    warehouse_last_refresh_start
        Start of the last completed warehouse-native refresh.

    """

    platform: str
    scheduled: TrackState = dc.field(default_factory=TrackState)
    on_demand: TrackState = dc.field(default_factory=TrackState)
    last_refresh_start: dt.datetime | None = None
    error_count: int = 0
    workflow_execution_id: str | None = None
    warehouse_last_refresh_start: dt.datetime | None = None

    def track(self, track: RefreshTrack) -> TrackState:
        """Return the state of ``track``."""
        if track is RefreshTrack.SCHEDULED:
            return self.scheduled
        return self.on_demand

    @property
    def is_unset(self) -> bool:
        """Return True when neither track has ever recorded a status."""
        return (
            self.scheduled.status is RefreshStatus.UNSET
            and self.on_demand.status is RefreshStatus.UNSET
        )

    @property
    def any_in_progress(self) -> bool:
        """Return True when either track is running."""
        return RefreshStatus.IN_PROGRESS in (
            self.scheduled.status,
            self.on_demand.status,
        )

    def latest_track(self) -> TrackState:
        """Return the track with the more recent update.

        Ties go to the on-demand track.
        """
        if self.scheduled.sort_key > self.on_demand.sort_key:
            return self.scheduled
        return self.on_demand


class EffectiveRefresh(msgspec.Struct, kw_only=True, frozen=True):
    """Resolved refresh state returned to gating callers.

    Attributes
    ----------
    status
        Effective status across both tracks.
    date
        Last update time of the track that produced ``status``.
    is_refresh_needed
        Whether a new refresh should run. ``None`` for models that do not
        track expiry.
    error_count
        Consecutive scheduled failures, for models that track them.
    last_refresh_start
        Start of the last scheduled or warehouse refresh, when known.

    """

    status: RefreshStatus
    date: dt.datetime | None = None
    is_refresh_needed: bool | None = None
    error_count: int | None = None
    last_refresh_start: dt.datetime | None = None


@dc.dataclass(frozen=True, slots=True)
class LegacyRefresh:
    """Nightly refresh guarded by a watchdog, without an expiry window.

    Attributes
    ----------
    nightly_timeout_minutes
        Tenant-specific watchdog timeout. The configured timeout applies
        when omitted.

    """

    nightly_timeout_minutes: int | None = None


@dc.dataclass(frozen=True, slots=True)
class ManagedRefresh:
    """Workflow-driven refresh that expires after a tiered window.

    Attributes
    ----------
    installation_class
        Caller-supplied installation classification used to pick the
        expiration window. Empty when the classification is unknown.

    """

    installation_class: str = ""


@dc.dataclass(frozen=True, slots=True)
class WarehouseRefresh:
    """Warehouse-native refresh that bypasses both tracks."""


type RefreshModel = LegacyRefresh | ManagedRefresh | WarehouseRefresh


@dc.dataclass(frozen=True, slots=True)
class RefreshTokenBudget:
    """Remaining on-demand refresh tokens for one tenant."""

    platform: str
    daily_remaining: int
    monthly_remaining: int
    last_request: dt.datetime
    last_reset: dt.datetime

    @property
    def has_token(self) -> bool:
        """Return True when both counters allow another refresh."""
        return self.daily_remaining > 0 and self.monthly_remaining > 0


@dc.dataclass(frozen=True, slots=True)
class WarehouseRefreshDetails:
    """Latest refresh reported by the warehouse."""

    completed: bool
    last_refresh_start: dt.datetime | None


def refresh_model_name(model: RefreshModel) -> str:
    """Return the persisted name of a refresh model variant."""
    match model:
        case ManagedRefresh():
            return "managed"
        case WarehouseRefresh():
            return "warehouse"
    return "legacy"


def refresh_model_from_name(
    name: str,
    installation_class: str = "",
    *,
    nightly_timeout_minutes: int | None = None,
) -> RefreshModel:
    """Rebuild a refresh model variant from its persisted name.

    Raises
    ------
    ValueError
        If ``name`` is not a known refresh model.

    """
    match name:
        case "legacy":
            return LegacyRefresh(nightly_timeout_minutes=nightly_timeout_minutes)
        case "managed":
            return ManagedRefresh(installation_class=installation_class)
        case "warehouse":
            return WarehouseRefresh()
    msg = f"Unknown refresh model: {name!r}"
    raise ValueError(msg)
