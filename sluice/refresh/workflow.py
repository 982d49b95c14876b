"""Ports for externally orchestrated refreshes.

``WorkflowTrigger`` starts and inspects the workflow that rebuilds a tenant's
analytical dataset. ``WarehouseRefreshSource`` reports the last refresh of a
warehouse-native tenant. Both are ``runtime_checkable`` so adapters can be
validated with ``isinstance`` at wiring time.

"""

from __future__ import annotations

import enum
import typing as typ

if typ.TYPE_CHECKING:
    from sluice.refresh.models import WarehouseRefreshDetails


class WorkflowStatus(enum.StrEnum):
    """Execution status reported by the workflow engine."""

    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    ABORTED = "ABORTED"


@typ.runtime_checkable
class WorkflowTrigger(typ.Protocol):
    """Protocol for the workflow engine that runs managed refreshes."""

    async def start_refresh(self, platform: str, installation_class: str) -> str:
        """Start a refresh workflow and return its execution id."""
        ...

    async def status(self, execution_id: str) -> WorkflowStatus:
        """Return the current status of a workflow execution."""
        ...


@typ.runtime_checkable
class WarehouseRefreshSource(typ.Protocol):
    """Protocol for reading the warehouse's own refresh history."""

    async def last_refresh(self, platform: str) -> WarehouseRefreshDetails:
        """Return details of the most recent warehouse refresh."""
        ...
