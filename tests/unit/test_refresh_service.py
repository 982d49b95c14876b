"""Unit tests for RefreshStateMachine."""

from __future__ import annotations

import asyncio
import datetime as dt
import typing as typ

import pytest

from sluice.refresh import (
    LegacyRefresh,
    ManagedRefresh,
    RefreshConfig,
    RefreshStateMachine,
    RefreshStatus,
    RefreshStore,
    RefreshTokensExhaustedError,
    RefreshTrack,
    WarehouseRefresh,
    WarehouseRefreshDetails,
    WorkflowStatus,
    WorkflowTriggerError,
)
from tests.helpers.fakes import FakeWarehouse, FakeWorkflow, MutableClock
from tests.helpers.femtologging_capture import capture_femto_logs

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from sluice.refresh import RefreshRecord

PLATFORM = "acme.example.com"
T0 = dt.datetime(2024, 7, 14, 2, 0, tzinfo=dt.UTC)


class _InterleavedStore(RefreshStore):
    """Refresh store that lets another writer act right after one read."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        super().__init__(session_factory)
        self.after_read: cabc.Callable[[], cabc.Awaitable[None]] | None = None

    async def get(self, platform: str) -> RefreshRecord | None:
        record = await super().get(platform)
        action, self.after_read = self.after_read, None
        if action is not None:
            await action()
        return record


@pytest.fixture
def clock() -> MutableClock:
    """Return a clock starting at T0."""
    return MutableClock(T0)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> RefreshStore:
    """Return a refresh store bound to the test database."""
    return RefreshStore(session_factory)


@pytest.fixture
def workflow() -> FakeWorkflow:
    """Return a workflow trigger whose runs stay RUNNING."""
    return FakeWorkflow()


@pytest.fixture
def machine(
    store: RefreshStore, clock: MutableClock, workflow: FakeWorkflow
) -> RefreshStateMachine:
    """Return a state machine wired to fakes."""
    return RefreshStateMachine(
        store,
        config=RefreshConfig(daily_tokens=2, monthly_tokens=10),
        workflow=workflow,
        clock=clock,
    )


class TestEffectiveStatusPrecedence:
    """Tests for resolving the effective status across both tracks."""

    @pytest.mark.asyncio
    async def test_legacy_without_history_is_unset(
        self, machine: RefreshStateMachine
    ) -> None:
        """Legacy tenants with no record are left alone."""
        effective = await machine.get_effective_refresh(PLATFORM, LegacyRefresh())

        assert effective.status is RefreshStatus.UNSET
        assert effective.is_refresh_needed is None, "Legacy tracks no expiry"

    @pytest.mark.asyncio
    async def test_later_track_wins(
        self, machine: RefreshStateMachine, store: RefreshStore
    ) -> None:
        """The track with the later update decides the status."""
        await store.set_track(
            PLATFORM, RefreshTrack.SCHEDULED, RefreshStatus.SUCCEEDED, T0
        )
        later = T0 + dt.timedelta(minutes=30)
        await store.set_track(
            PLATFORM, RefreshTrack.ON_DEMAND, RefreshStatus.ERROR, later
        )

        effective = await machine.get_effective_refresh(PLATFORM, LegacyRefresh())

        assert effective.status is RefreshStatus.ERROR
        assert effective.date == later

    @pytest.mark.asyncio
    async def test_in_progress_wins_regardless_of_dates(
        self, machine: RefreshStateMachine, store: RefreshStore
    ) -> None:
        """An older InProgress track still wins over a newer terminal one."""
        await store.set_track(
            PLATFORM, RefreshTrack.ON_DEMAND, RefreshStatus.IN_PROGRESS, T0
        )
        await store.set_track(
            PLATFORM,
            RefreshTrack.SCHEDULED,
            RefreshStatus.SUCCEEDED,
            T0 + dt.timedelta(minutes=30),
        )

        effective = await machine.get_effective_refresh(PLATFORM, LegacyRefresh())

        assert effective.status is RefreshStatus.IN_PROGRESS
        assert effective.date == T0, "Date should come from the running track"

    @pytest.mark.asyncio
    async def test_equal_dates_prefer_on_demand(
        self, machine: RefreshStateMachine, store: RefreshStore
    ) -> None:
        """Ties go to the on-demand track."""
        await store.set_track(
            PLATFORM, RefreshTrack.SCHEDULED, RefreshStatus.SUCCEEDED, T0
        )
        await store.set_track(PLATFORM, RefreshTrack.ON_DEMAND, RefreshStatus.ERROR, T0)

        effective = await machine.get_effective_refresh(PLATFORM, LegacyRefresh())

        assert effective.status is RefreshStatus.ERROR


class TestManagedRefresh:
    """Tests for expiry and error handling of managed tenants."""

    @pytest.mark.asyncio
    async def test_unset_needs_refresh(self, machine: RefreshStateMachine) -> None:
        """A managed tenant without history needs a refresh."""
        effective = await machine.get_effective_refresh(PLATFORM, ManagedRefresh())

        assert effective.status is RefreshStatus.UNSET
        assert effective.is_refresh_needed is True
        assert effective.error_count == 0

    @pytest.mark.parametrize(
        ("elapsed_hours", "needed"),
        [
            pytest.param(7, False, id="fresh"),
            pytest.param(8, True, id="expired"),
        ],
    )
    @pytest.mark.asyncio
    async def test_expiry_uses_installation_tier(
        self,
        machine: RefreshStateMachine,
        store: RefreshStore,
        clock: MutableClock,
        elapsed_hours: int,
        *,
        needed: bool,
    ) -> None:
        """Staging installations expire after eight hours."""
        await store.set_tracks([PLATFORM], RefreshStatus.SUCCEEDED, T0)
        clock.advance(hours=elapsed_hours)

        effective = await machine.get_effective_refresh(
            PLATFORM, ManagedRefresh(installation_class="staging")
        )

        assert effective.status is RefreshStatus.SUCCEEDED
        assert effective.is_refresh_needed is needed, (
            f"After {elapsed_hours}h a staging refresh needed={needed}"
        )

    @pytest.mark.asyncio
    async def test_error_needs_refresh(
        self, machine: RefreshStateMachine, store: RefreshStore
    ) -> None:
        """A fresh but failed refresh still needs a new one."""
        await store.set_tracks([PLATFORM], RefreshStatus.ERROR, T0)

        effective = await machine.get_effective_refresh(PLATFORM, ManagedRefresh())

        assert effective.is_refresh_needed is True

    @pytest.mark.asyncio
    async def test_trigger_records_execution(
        self, machine: RefreshStateMachine, store: RefreshStore, workflow: FakeWorkflow
    ) -> None:
        """Triggering starts the workflow and the scheduled track."""
        execution_id = await machine.trigger_refresh(
            PLATFORM, ManagedRefresh(installation_class="smb")
        )

        record = await store.get(PLATFORM)
        effective = await machine.get_effective_refresh(PLATFORM, ManagedRefresh())

        assert workflow.started == [(PLATFORM, "smb")]
        assert record is not None
        assert record.workflow_execution_id == execution_id
        assert effective.status is RefreshStatus.IN_PROGRESS
        assert effective.is_refresh_needed is False, "Running refresh is not due"

    @pytest.mark.asyncio
    async def test_failed_trigger_leaves_record_untouched(
        self, machine: RefreshStateMachine, store: RefreshStore, workflow: FakeWorkflow
    ) -> None:
        """A workflow start failure raises and writes nothing."""
        workflow.start_error = ConnectionError("workflow engine unreachable")

        with pytest.raises(WorkflowTriggerError, match="unreachable"):
            await machine.trigger_refresh(PLATFORM, ManagedRefresh())

        assert await store.get(PLATFORM) is None

    @pytest.mark.asyncio
    async def test_trigger_without_workflow(self, store: RefreshStore) -> None:
        """Without a workflow engine the trigger is unavailable."""
        machine = RefreshStateMachine(store)

        with pytest.raises(WorkflowTriggerError, match="No refresh workflow"):
            await machine.trigger_refresh(PLATFORM, ManagedRefresh())


class TestWorkflowReconciliation:
    """Tests for settling both tracks from finished workflow runs."""

    @pytest.mark.parametrize(
        ("workflow_status", "expected"),
        [
            pytest.param(WorkflowStatus.SUCCEEDED, RefreshStatus.SUCCEEDED, id="ok"),
            pytest.param(WorkflowStatus.FAILED, RefreshStatus.ERROR, id="failed"),
            pytest.param(WorkflowStatus.TIMED_OUT, RefreshStatus.ERROR, id="timeout"),
        ],
    )
    @pytest.mark.asyncio
    async def test_finished_run_settles_both_tracks(
        self,
        machine: RefreshStateMachine,
        store: RefreshStore,
        workflow: FakeWorkflow,
        workflow_status: WorkflowStatus,
        expected: RefreshStatus,
    ) -> None:
        """A finished workflow moves both tracks to its outcome."""
        await machine.trigger_refresh(PLATFORM, ManagedRefresh())
        workflow.workflow_status = workflow_status

        effective = await machine.get_effective_refresh(PLATFORM, ManagedRefresh())
        record = await store.get(PLATFORM)

        assert effective.status is expected
        assert record is not None
        assert record.scheduled.status is expected
        assert record.on_demand.status is expected

    @pytest.mark.asyncio
    async def test_status_failure_keeps_state(
        self, machine: RefreshStateMachine, workflow: FakeWorkflow
    ) -> None:
        """A failing status check is logged and changes nothing."""
        await machine.trigger_refresh(PLATFORM, ManagedRefresh())
        workflow.status_error = TimeoutError("describe_execution timed out")

        with capture_femto_logs("sluice.refresh.observability") as capture:
            changed = await machine.reconcile_with_workflow(PLATFORM)
            record = capture.wait_for_event("refresh.reconcile_failed")

        assert changed is False
        assert "TimeoutError" in record.message

    @pytest.mark.asyncio
    async def test_late_result_leaves_newer_run_alone(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: MutableClock,
        workflow: FakeWorkflow,
    ) -> None:
        """An old run's outcome does not settle a run started after the read."""
        store = _InterleavedStore(session_factory)
        machine = RefreshStateMachine(store, workflow=workflow, clock=clock)
        first = await machine.trigger_refresh(PLATFORM, ManagedRefresh())
        workflow.workflow_status = WorkflowStatus.FAILED

        async def restart() -> None:
            await machine.complete_refresh(
                PLATFORM, RefreshTrack.SCHEDULED, RefreshStatus.SUCCEEDED
            )
            clock.advance(minutes=5)
            await machine.trigger_refresh(PLATFORM, ManagedRefresh())

        store.after_read = restart
        changed = await machine.reconcile_with_workflow(PLATFORM)
        record = await store.get(PLATFORM)

        assert changed is False
        assert record is not None
        assert record.scheduled.status is RefreshStatus.IN_PROGRESS
        assert record.workflow_execution_id != first


class TestScheduledTrack:
    """Tests for starting and finishing the scheduled track."""

    @pytest.mark.asyncio
    async def test_scheduled_start_forces_on_demand_error(
        self, machine: RefreshStateMachine, store: RefreshStore
    ) -> None:
        """Starting a scheduled refresh always errors the on-demand track."""
        await machine.begin_refresh(PLATFORM, RefreshTrack.ON_DEMAND)

        owned = await machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED)
        record = await store.get(PLATFORM)

        assert owned is True
        assert record is not None
        assert record.on_demand.status is RefreshStatus.ERROR

    @pytest.mark.asyncio
    async def test_refused_start_still_errors_on_demand(
        self, machine: RefreshStateMachine, store: RefreshStore, clock: MutableClock
    ) -> None:
        """A caller that loses the race still forces on-demand to Error."""
        await machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED)
        clock.advance(minutes=1)
        await machine.begin_refresh(PLATFORM, RefreshTrack.ON_DEMAND)

        owned = await machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED)
        record = await store.get(PLATFORM)

        assert owned is False
        assert record is not None
        assert record.on_demand.status is RefreshStatus.ERROR

    @pytest.mark.asyncio
    async def test_no_double_nightly_start(
        self, machine: RefreshStateMachine, store: RefreshStore
    ) -> None:
        """Concurrent scheduled starts have exactly one owner."""
        await store.set_tracks([PLATFORM], RefreshStatus.SUCCEEDED, T0)

        owners = await asyncio.gather(
            machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED),
            machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED),
        )

        assert owners.count(True) == 1, f"Expected one owner, got {owners}"

    @pytest.mark.asyncio
    async def test_completion_tracks_error_count(
        self, machine: RefreshStateMachine, store: RefreshStore
    ) -> None:
        """Scheduled errors accumulate until a success clears them."""
        await machine.complete_refresh(
            PLATFORM, RefreshTrack.SCHEDULED, RefreshStatus.ERROR
        )
        await machine.complete_refresh(
            PLATFORM, RefreshTrack.SCHEDULED, RefreshStatus.ERROR
        )
        errored = await store.get(PLATFORM)
        await machine.complete_refresh(
            PLATFORM, RefreshTrack.SCHEDULED, RefreshStatus.SUCCEEDED
        )
        cleared = await store.get(PLATFORM)

        assert errored is not None
        assert errored.error_count == 2
        assert cleared is not None
        assert cleared.error_count == 0

    @pytest.mark.asyncio
    async def test_completion_requires_terminal_outcome(
        self, machine: RefreshStateMachine
    ) -> None:
        """Only Succeeded and Error are valid outcomes."""
        with pytest.raises(ValueError, match="terminal"):
            await machine.complete_refresh(
                PLATFORM, RefreshTrack.SCHEDULED, RefreshStatus.IN_PROGRESS
            )

    @pytest.mark.asyncio
    async def test_nightly_completion_marks_every_tenant(
        self, machine: RefreshStateMachine, store: RefreshStore
    ) -> None:
        """Both tracks of each listed tenant end up Succeeded."""
        await machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED)

        await machine.complete_nightly_refresh([PLATFORM, "globex.example.com"])
        records = await store.get_many([PLATFORM, "globex.example.com"])

        assert len(records) == 2
        for record in records.values():
            assert record.scheduled.status is RefreshStatus.SUCCEEDED
            assert record.on_demand.status is RefreshStatus.SUCCEEDED


class TestNightlyTimeout:
    """Tests for the nightly refresh watchdog."""

    @pytest.mark.asyncio
    async def test_silent_nightly_refresh_becomes_error(
        self, machine: RefreshStateMachine, store: RefreshStore, clock: MutableClock
    ) -> None:
        """A scheduled refresh silent for over 300 minutes is failed."""
        await machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED)
        clock.advance(minutes=301)

        with capture_femto_logs("sluice.refresh.observability") as capture:
            effective = await machine.get_effective_refresh(PLATFORM, LegacyRefresh())
            capture.wait_for_event("refresh.timed_out")
        record = await store.get(PLATFORM)

        assert effective.status is RefreshStatus.ERROR
        assert record is not None
        assert record.scheduled.status is RefreshStatus.ERROR

    @pytest.mark.asyncio
    async def test_within_timeout_stays_in_progress(
        self, machine: RefreshStateMachine, clock: MutableClock
    ) -> None:
        """The watchdog leaves refreshes inside the timeout alone."""
        await machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED)
        clock.advance(minutes=299)

        assert await machine.detect_nightly_timeout(PLATFORM) is False

    @pytest.mark.asyncio
    async def test_running_on_demand_suppresses_timeout(
        self, machine: RefreshStateMachine, clock: MutableClock
    ) -> None:
        """The watchdog does not fire while an on-demand refresh runs."""
        await machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED)
        await machine.begin_refresh(PLATFORM, RefreshTrack.ON_DEMAND)
        clock.advance(minutes=400)

        assert await machine.detect_nightly_timeout(PLATFORM) is False

    @pytest.mark.asyncio
    async def test_explicit_timeout_overrides_config(
        self, machine: RefreshStateMachine, clock: MutableClock
    ) -> None:
        """Callers may pass their own timeout."""
        await machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED)
        clock.advance(minutes=31)

        assert await machine.detect_nightly_timeout(PLATFORM, 30) is True

    @pytest.mark.parametrize(
        ("tenant_minutes", "elapsed", "expected"),
        [
            pytest.param(30, 31, RefreshStatus.ERROR, id="shorter"),
            pytest.param(600, 301, RefreshStatus.IN_PROGRESS, id="longer"),
        ],
    )
    @pytest.mark.asyncio
    async def test_tenant_timeout_replaces_configured(
        self,
        machine: RefreshStateMachine,
        clock: MutableClock,
        tenant_minutes: int,
        elapsed: int,
        expected: RefreshStatus,
    ) -> None:
        """A legacy tenant's own timeout decides when its refresh expires."""
        await machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED)
        clock.advance(minutes=elapsed)

        effective = await machine.get_effective_refresh(
            PLATFORM, LegacyRefresh(nightly_timeout_minutes=tenant_minutes)
        )

        assert effective.status is expected

    @pytest.mark.parametrize(
        "model",
        [
            pytest.param(None, id="detect"),
            pytest.param(LegacyRefresh(), id="legacy-read"),
        ],
    )
    @pytest.mark.asyncio
    async def test_completion_after_read_is_not_overwritten(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: MutableClock,
        model: LegacyRefresh | None,
    ) -> None:
        """A completion landing between the read and the write wins."""
        store = _InterleavedStore(session_factory)
        machine = RefreshStateMachine(store, clock=clock)
        await machine.begin_refresh(PLATFORM, RefreshTrack.SCHEDULED)
        clock.advance(minutes=301)

        async def complete() -> None:
            await machine.complete_refresh(
                PLATFORM, RefreshTrack.SCHEDULED, RefreshStatus.SUCCEEDED
            )

        store.after_read = complete
        if model is None:
            assert await machine.detect_nightly_timeout(PLATFORM) is False
        else:
            effective = await machine.get_effective_refresh(PLATFORM, model)
            assert effective.status is RefreshStatus.SUCCEEDED
        record = await store.get(PLATFORM)

        assert record is not None
        assert record.scheduled.status is RefreshStatus.SUCCEEDED
        assert record.error_count == 0


class TestWarehouseRefresh:
    """Tests for warehouse-native tenants."""

    @pytest.mark.asyncio
    async def test_completed_refresh_is_recorded(
        self, store: RefreshStore, clock: MutableClock
    ) -> None:
        """A newer completed warehouse refresh is stored and reported."""
        started = T0 - dt.timedelta(hours=1)
        machine = RefreshStateMachine(
            store,
            warehouse=FakeWarehouse(WarehouseRefreshDetails(True, started)),
            clock=clock,
        )

        effective = await machine.get_effective_refresh(PLATFORM, WarehouseRefresh())
        record = await store.get(PLATFORM)

        assert effective.status is RefreshStatus.SUCCEEDED
        assert effective.last_refresh_start == started
        assert record is not None
        assert record.warehouse_last_refresh_start == started

    @pytest.mark.asyncio
    async def test_incomplete_refresh_keeps_stored_value(
        self, store: RefreshStore
    ) -> None:
        """An unfinished warehouse refresh does not replace the stored start."""
        await store.set_warehouse_refresh_start(PLATFORM, T0)
        machine = RefreshStateMachine(
            store,
            warehouse=FakeWarehouse(
                WarehouseRefreshDetails(False, T0 + dt.timedelta(hours=1))
            ),
        )

        effective = await machine.get_effective_refresh(PLATFORM, WarehouseRefresh())

        assert effective.last_refresh_start == T0

    @pytest.mark.asyncio
    async def test_lookup_failure_uses_stored_value(self, store: RefreshStore) -> None:
        """A failing warehouse lookup falls back to the stored start."""
        await store.set_warehouse_refresh_start(PLATFORM, T0)
        machine = RefreshStateMachine(
            store, warehouse=FakeWarehouse(error=RuntimeError("warehouse offline"))
        )

        effective = await machine.get_effective_refresh(PLATFORM, WarehouseRefresh())

        assert effective.status is RefreshStatus.SUCCEEDED
        assert effective.date == T0


class TestOnDemandTokens:
    """Tests for token-gated on-demand refreshes."""

    @pytest.mark.asyncio
    async def test_request_spends_token_and_starts_track(
        self, machine: RefreshStateMachine, store: RefreshStore
    ) -> None:
        """An on-demand request consumes a token and starts its track."""
        await machine.request_on_demand_refresh(PLATFORM)

        record = await store.get(PLATFORM)
        budget = await store.get_budget(PLATFORM)

        assert record is not None
        assert record.on_demand.status is RefreshStatus.IN_PROGRESS
        assert budget is not None
        assert (budget.daily_remaining, budget.monthly_remaining) == (1, 9)

    @pytest.mark.asyncio
    async def test_exhausted_budget_refuses(
        self, machine: RefreshStateMachine
    ) -> None:
        """Requests beyond the daily budget are refused."""
        await machine.request_on_demand_refresh(PLATFORM)
        await machine.request_on_demand_refresh(PLATFORM)

        with pytest.raises(RefreshTokensExhaustedError):
            await machine.request_on_demand_refresh(PLATFORM)

    @pytest.mark.asyncio
    async def test_ingestion_failure_restores_one_token(
        self, machine: RefreshStateMachine, store: RefreshStore
    ) -> None:
        """A failed on-demand ingestion hands back exactly one token."""
        await machine.request_on_demand_refresh(PLATFORM)
        before = await store.get_budget(PLATFORM)

        await machine.record_ingestion_failure([PLATFORM], on_demand=True)
        after = await store.get_budget(PLATFORM)
        record = await store.get(PLATFORM)

        assert before is not None
        assert after is not None
        assert after.daily_remaining == before.daily_remaining + 1
        assert after.monthly_remaining == before.monthly_remaining + 1
        assert record is not None
        assert record.on_demand.status is RefreshStatus.ERROR

    @pytest.mark.asyncio
    async def test_scheduled_ingestion_failure_keeps_tokens(
        self, machine: RefreshStateMachine, store: RefreshStore
    ) -> None:
        """Scheduled failures do not touch the token budget."""
        await machine.consume_token(PLATFORM)
        before = await store.get_budget(PLATFORM)

        await machine.record_ingestion_failure([PLATFORM], on_demand=False)
        after = await store.get_budget(PLATFORM)
        record = await store.get(PLATFORM)

        assert before == after
        assert record is not None
        assert record.scheduled.status is RefreshStatus.ERROR
        assert record.error_count == 1
