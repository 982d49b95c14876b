"""Refresh state machine: the source of truth for dataset freshness.

``RefreshStateMachine`` answers "is it safe, or necessary, to query the
analytical store for this tenant" and records refresh starts, completions,
and failures on the tenant's two tracks.

Usage
-----
>>> machine = RefreshStateMachine(RefreshStore(session_factory))
>>> effective = await machine.get_effective_refresh(
...     "acme.example.com", ManagedRefresh(installation_class="staging")
... )
>>> effective.is_refresh_needed
True

"""

from __future__ import annotations

import datetime as dt
import typing as typ

from sluice.common.time import utcnow
from sluice.logging import get_logger, log_warning
from sluice.refresh.config import RefreshConfig
from sluice.refresh.errors import RefreshTokensExhaustedError, WorkflowTriggerError
from sluice.refresh.models import (
    EffectiveRefresh,
    LegacyRefresh,
    ManagedRefresh,
    RefreshRecord,
    RefreshStatus,
    RefreshTrack,
    WarehouseRefresh,
)
from sluice.refresh.observability import RefreshEventLogger
from sluice.refresh.tokens import RefreshTokenLedger
from sluice.refresh.workflow import WorkflowStatus

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sluice.refresh.models import RefreshModel, TrackState
    from sluice.refresh.storage import RefreshStore
    from sluice.refresh.workflow import WarehouseRefreshSource, WorkflowTrigger

logger = get_logger(__name__)

_TERMINAL_OUTCOMES = frozenset({RefreshStatus.SUCCEEDED, RefreshStatus.ERROR})


def _in_progress_track(record: RefreshRecord) -> TrackState:
    if record.scheduled.status is RefreshStatus.IN_PROGRESS:
        return record.scheduled
    return record.on_demand


class RefreshStateMachine:
    """Read and drive per-tenant refresh state.

    Parameters
    ----------
    store
        Store holding refresh records and token budgets.
    config
        Expiration tiers, watchdog timeout, and token defaults.
    workflow
        Optional workflow engine used by managed tenants.
    warehouse
        Optional source of warehouse-native refresh history.
    tokens
        Token ledger; one is built from ``store`` when omitted.
    event_logger
        Receives refresh lifecycle events.
    clock
        Returns the current aware UTC time.

    """

    def __init__(  # noqa: PLR0913
        self,
        store: RefreshStore,
        *,
        config: RefreshConfig | None = None,
        workflow: WorkflowTrigger | None = None,
        warehouse: WarehouseRefreshSource | None = None,
        tokens: RefreshTokenLedger | None = None,
        event_logger: RefreshEventLogger | None = None,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Wire the state machine to its store and collaborators."""
        self._store = store
        self._config = config or RefreshConfig()
        self._workflow = workflow
        self._warehouse = warehouse
        self._event_logger = event_logger or RefreshEventLogger()
        self._clock = clock
        self._tokens = tokens or RefreshTokenLedger(
            store, self._config, event_logger=self._event_logger, clock=clock
        )

    @property
    def config(self) -> RefreshConfig:
        """Return the active refresh configuration."""
        return self._config

    async def get_effective_refresh(
        self, platform: str, model: RefreshModel
    ) -> EffectiveRefresh:
        """Resolve the tenant's effective refresh state under ``model``.

        Either track being ``InProgress`` always wins. Otherwise the track
        with the later update decides the status. Managed tenants also learn
        whether a new refresh is needed.

        Parameters
        ----------
        platform
            Tenant identifier.
        model
            The tenant's refresh model, chosen once by the caller.

        Returns
        -------
        EffectiveRefresh
            The effective status with model-specific extras.

        """
        match model:
            case WarehouseRefresh():
                return await self._warehouse_refresh(platform)
            case ManagedRefresh(installation_class=installation_class):
                return await self._managed_refresh(platform, installation_class)
            case LegacyRefresh(nightly_timeout_minutes=minutes):
                return await self._legacy_refresh(platform, minutes)
        msg = f"Unsupported refresh model: {model!r}"
        raise TypeError(msg)

    async def _legacy_refresh(
        self, platform: str, timeout_minutes: int | None
    ) -> EffectiveRefresh:
        record = await self._store.get(platform)
        if record is None or record.is_unset:
            # Legacy tenants without history are left alone until the nightly
            # job first runs.
            return EffectiveRefresh(status=RefreshStatus.UNSET)

        timeout = self._nightly_timeout(timeout_minutes)
        if self._is_timed_out(record, timeout):
            if await self._expire_nightly(record, timeout):
                return EffectiveRefresh(
                    status=RefreshStatus.ERROR, date=record.on_demand.last_update
                )
            # Another writer settled the scheduled track first.
            record = await self._store.get(platform) or record

        if record.any_in_progress:
            track = _in_progress_track(record)
            return EffectiveRefresh(
                status=RefreshStatus.IN_PROGRESS, date=track.last_update
            )
        latest = record.latest_track()
        return EffectiveRefresh(status=latest.status, date=latest.last_update)

    async def _managed_refresh(
        self, platform: str, installation_class: str
    ) -> EffectiveRefresh:
        record = await self._store.get(platform)
        if record is None or record.is_unset:
            return EffectiveRefresh(
                status=RefreshStatus.UNSET, is_refresh_needed=True, error_count=0
            )

        if await self._reconcile(record):
            record = await self._store.get(platform) or record

        if record.any_in_progress:
            track = _in_progress_track(record)
            return EffectiveRefresh(
                status=RefreshStatus.IN_PROGRESS,
                date=track.last_update,
                is_refresh_needed=False,
                error_count=record.error_count,
                last_refresh_start=record.last_refresh_start,
            )

        latest = record.latest_track()
        window = self._config.expiration_window(installation_class)
        expired = self._clock() - latest.sort_key >= window
        return EffectiveRefresh(
            status=latest.status,
            date=latest.last_update,
            is_refresh_needed=expired or latest.status is RefreshStatus.ERROR,
            error_count=record.error_count,
            last_refresh_start=record.last_refresh_start,
        )

    async def _warehouse_refresh(self, platform: str) -> EffectiveRefresh:
        record = await self._store.get(platform)
        stored = None if record is None else record.warehouse_last_refresh_start

        if self._warehouse is not None:
            try:
                details = await self._warehouse.last_refresh(platform)
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    logger,
                    "Warehouse refresh lookup failed for %s; using stored value",
                    platform,
                    exc_info=exc,
                )
            else:
                latest = details.last_refresh_start
                if details.completed and latest is not None:
                    if stored is None or latest > stored:
                        await self._store.set_warehouse_refresh_start(platform, latest)
                        stored = latest

        return EffectiveRefresh(
            status=RefreshStatus.SUCCEEDED, date=stored, last_refresh_start=stored
        )

    async def begin_refresh(self, platform: str, track: RefreshTrack) -> bool:
        """Mark ``track`` as running for ``platform``.

        Starting the scheduled track is a conditional write: it only succeeds
        when the track is not already ``InProgress``. It also stamps the
        refresh start and forces the on-demand track to ``Error``, whether or
        not this caller won the conditional write.

        Returns
        -------
        bool
            True when this caller owns the refresh it started.

        """
        now = self._clock()
        if track is RefreshTrack.SCHEDULED:
            owned = await self._store.begin_scheduled(platform, now)
            if not owned:
                await self._store.set_track(
                    platform, RefreshTrack.ON_DEMAND, RefreshStatus.ERROR, now
                )
        else:
            await self._store.set_track(
                platform, RefreshTrack.ON_DEMAND, RefreshStatus.IN_PROGRESS, now
            )
            owned = True
        self._event_logger.log_refresh_started(
            platform=platform, track=track, owned=owned
        )
        return owned

    async def complete_refresh(
        self,
        platform: str,
        track: RefreshTrack,
        outcome: RefreshStatus,
    ) -> None:
        """Record a terminal outcome on ``track``.

        Success clears the scheduled error count; a scheduled failure
        increments it.

        Raises
        ------
        ValueError
            If ``outcome`` is not ``Succeeded`` or ``Error``.

        """
        if outcome not in _TERMINAL_OUTCOMES:
            msg = f"Refresh outcome must be terminal, got: {outcome}"
            raise ValueError(msg)

        await self._store.set_track(platform, track, outcome, self._clock())
        if outcome is RefreshStatus.SUCCEEDED:
            record = await self._store.get(platform)
            if record is not None and record.error_count:
                await self._store.set_error_count(platform, 0)
        elif track is RefreshTrack.SCHEDULED:
            await self._store.increment_error_count(platform)
        self._event_logger.log_refresh_completed(
            platform=platform, track=track, status=outcome
        )

    async def complete_nightly_refresh(self, platforms: cabc.Iterable[str]) -> None:
        """Mark both tracks ``Succeeded`` for every tenant in ``platforms``."""
        targets = list(dict.fromkeys(platforms))
        await self._store.set_tracks(targets, RefreshStatus.SUCCEEDED, self._clock())
        for platform in targets:
            self._event_logger.log_refresh_completed(
                platform=platform,
                track=RefreshTrack.SCHEDULED,
                status=RefreshStatus.SUCCEEDED,
            )

    async def detect_nightly_timeout(
        self, platform: str, timeout_minutes: int | None = None
    ) -> bool:
        """Force a silent nightly refresh to ``Error``.

        Fires when the scheduled track is ``InProgress``, the on-demand track
        is not, and the scheduled track has not been updated for longer than
        the timeout.

        Parameters
        ----------
        platform
            Tenant identifier.
        timeout_minutes
            Watchdog timeout; the configured value when omitted.

        Returns
        -------
        bool
            True when the scheduled track was forced to ``Error``.

        """
        record = await self._store.get(platform)
        if record is None:
            return False
        timeout = self._nightly_timeout(timeout_minutes)
        if not self._is_timed_out(record, timeout):
            return False
        return await self._expire_nightly(record, timeout)

    def _nightly_timeout(self, minutes: int | None) -> dt.timedelta:
        if minutes is None:
            return self._config.nightly_timeout
        return dt.timedelta(minutes=minutes)

    def _is_timed_out(self, record: RefreshRecord, timeout: dt.timedelta) -> bool:
        scheduled = record.scheduled
        if scheduled.status is not RefreshStatus.IN_PROGRESS:
            return False
        if record.on_demand.status is RefreshStatus.IN_PROGRESS:
            return False
        return self._clock() - scheduled.sort_key > timeout

    async def _expire_nightly(
        self, record: RefreshRecord, timeout: dt.timedelta
    ) -> bool:
        scheduled = record.scheduled
        if not await self._store.expire_scheduled(
            record.platform, seen=scheduled.last_update, at=self._clock()
        ):
            return False
        self._event_logger.log_refresh_timed_out(
            platform=record.platform,
            last_update=scheduled.last_update,
            timeout=timeout,
        )
        return True

    async def reconcile_with_workflow(self, platform: str) -> bool:
        """Settle both tracks from a finished external workflow run.

        Returns
        -------
        bool
            True when the record was changed.

        """
        record = await self._store.get(platform)
        if record is None:
            return False
        return await self._reconcile(record)

    async def _reconcile(self, record: RefreshRecord) -> bool:
        execution_id = record.workflow_execution_id
        if (
            self._workflow is None
            or not execution_id
            or record.scheduled.status is not RefreshStatus.IN_PROGRESS
        ):
            return False

        try:
            workflow_status = await self._workflow.status(execution_id)
        except Exception as exc:  # noqa: BLE001
            self._event_logger.log_reconcile_failed(
                platform=record.platform, execution_id=execution_id, error=exc
            )
            return False

        if workflow_status is WorkflowStatus.RUNNING:
            return False

        status = (
            RefreshStatus.SUCCEEDED
            if workflow_status is WorkflowStatus.SUCCEEDED
            else RefreshStatus.ERROR
        )
        if not await self._store.settle_workflow(
            record.platform, execution_id, status, self._clock()
        ):
            return False
        self._event_logger.log_refresh_reconciled(
            platform=record.platform,
            execution_id=execution_id,
            workflow_status=workflow_status,
            status=status,
        )
        return True

    async def trigger_refresh(self, platform: str, model: ManagedRefresh) -> str:
        """Start a managed refresh through the workflow engine.

        Returns
        -------
        str
            The workflow execution id now recorded on the tenant.

        Raises
        ------
        WorkflowTriggerError
            If no workflow engine is configured or the start call fails. The
            refresh record is left untouched in that case.

        """
        if self._workflow is None:
            raise WorkflowTriggerError.unavailable(platform)
        try:
            execution_id = await self._workflow.start_refresh(
                platform, model.installation_class
            )
        except WorkflowTriggerError:
            raise
        except Exception as exc:
            raise WorkflowTriggerError.start_failed(platform, exc) from exc

        await self.begin_refresh(platform, RefreshTrack.SCHEDULED)
        await self._store.set_workflow_execution_id(platform, execution_id)
        return execution_id

    async def request_on_demand_refresh(
        self, platform: str, *, timezone: str = "UTC"
    ) -> None:
        """Spend a token and start the on-demand track.

        Raises
        ------
        RefreshTokensExhaustedError
            If the tenant has no daily or monthly token left.

        """
        if not await self._tokens.consume_token(platform, timezone=timezone):
            raise RefreshTokensExhaustedError(platform)
        await self.begin_refresh(platform, RefreshTrack.ON_DEMAND)

    async def record_ingestion_failure(
        self, platforms: cabc.Iterable[str], *, on_demand: bool
    ) -> None:
        """Handle a failure reported by the downstream ingestion pipeline.

        The failed track moves to ``Error``. An on-demand failure also hands
        back the token the attempt consumed.
        """
        track = RefreshTrack.ON_DEMAND if on_demand else RefreshTrack.SCHEDULED
        for platform in dict.fromkeys(platforms):
            await self.complete_refresh(platform, track, RefreshStatus.ERROR)
            if on_demand:
                await self._tokens.restore_token(platform)

    async def consume_token(self, platform: str, *, timezone: str = "UTC") -> bool:
        """Take one on-demand token; False means "cannot refresh now"."""
        return await self._tokens.consume_token(platform, timezone=timezone)

    async def restore_token_budget(self, platform: str) -> bool:
        """Give back one daily and one monthly token."""
        return await self._tokens.restore_token(platform)

    async def reset_error_count(self, platform: str) -> None:
        """Clear the scheduled error count."""
        await self._store.set_error_count(platform, 0)
