"""QueryBackend protocol for executing export queries.

This module defines the port through which the export job manager submits
queries, tracks their progress, and streams their results. Adapters wrap a
concrete query engine.

Backends signal transient rate limiting by raising ``BackendThrottledError``;
the manager retries those calls until the job's deadline passes. Any other
exception fails the job.

Usage
-----
>>> from sluice.exports.sql_backend import SqlAlchemyQueryBackend
>>> isinstance(SqlAlchemyQueryBackend(engine), QueryBackend)
True

"""

from __future__ import annotations

import dataclasses as dc
import enum
import typing as typ

if typ.TYPE_CHECKING:
    import collections.abc as cabc

# Error codes query engines use for rate limiting.
THROTTLING_CODES = frozenset(
    {"ThrottlingException", "Throttling", "TooManyRequestsException"}
)


class QueryState(enum.StrEnum):
    """Execution state reported by a query backend."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dc.dataclass(frozen=True, slots=True)
class QueryStatus:
    """State of one backend query, with the backend's reason on failure."""

    state: QueryState
    reason: str | None = None


@typ.runtime_checkable
class QueryBackend(typ.Protocol):
    """Protocol for query engines that run export queries."""

    async def submit(self, query: str) -> str:
        """Start ``query`` and return the backend's execution handle."""
        ...

    async def status(self, handle: str) -> QueryStatus:
        """Return the current state of the query behind ``handle``."""
        ...

    def fetch_result(self, handle: str) -> cabc.AsyncIterator[cabc.Sequence[object]]:
        """Stream the result rows of a finished query.

        The first row yielded is the header.
        """
        ...

    async def release(self, handle: str) -> None:
        """Forget a query whose result will not be fetched."""
        ...
