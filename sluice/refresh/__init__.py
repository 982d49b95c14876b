"""Per-tenant refresh state machine and refresh token budgets.

Public API
----------
RefreshStateMachine
    Resolves effective refresh state and records refresh lifecycle changes.
RefreshStore
    SQLAlchemy-backed store for refresh records and token budgets.
RefreshTokenLedger
    Lazily reset daily and monthly on-demand refresh tokens.
RefreshConfig
    Expiration tiers, nightly watchdog timeout, and token defaults.
LegacyRefresh, ManagedRefresh, WarehouseRefresh
    Refresh model variants selected once per tenant.
WorkflowTrigger, WarehouseRefreshSource
    Ports for externally orchestrated refreshes.

"""

from sluice.refresh.config import RefreshConfig
from sluice.refresh.errors import (
    RefreshError,
    RefreshTokensExhaustedError,
    WorkflowTriggerError,
)
from sluice.refresh.models import (
    EffectiveRefresh,
    LegacyRefresh,
    ManagedRefresh,
    RefreshModel,
    RefreshRecord,
    RefreshStatus,
    RefreshTokenBudget,
    RefreshTrack,
    TrackState,
    WarehouseRefresh,
    WarehouseRefreshDetails,
    refresh_model_from_name,
    refresh_model_name,
)
from sluice.refresh.observability import RefreshEventLogger, RefreshEventType
from sluice.refresh.service import RefreshStateMachine
from sluice.refresh.storage import RefreshStore, init_refresh_storage
from sluice.refresh.tokens import RefreshTokenLedger
from sluice.refresh.workflow import (
    WarehouseRefreshSource,
    WorkflowStatus,
    WorkflowTrigger,
)

__all__ = [
    "EffectiveRefresh",
    "LegacyRefresh",
    "ManagedRefresh",
    "RefreshConfig",
    "RefreshError",
    "RefreshEventLogger",
    "RefreshEventType",
    "RefreshModel",
    "RefreshRecord",
    "RefreshStateMachine",
    "RefreshStatus",
    "RefreshStore",
    "RefreshTokenBudget",
    "RefreshTokenLedger",
    "RefreshTokensExhaustedError",
    "RefreshTrack",
    "TrackState",
    "WarehouseRefresh",
    "WarehouseRefreshDetails",
    "WarehouseRefreshSource",
    "WorkflowStatus",
    "WorkflowTrigger",
    "WorkflowTriggerError",
    "init_refresh_storage",
    "refresh_model_from_name",
    "refresh_model_name",
]
