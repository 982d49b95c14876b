"""SQLAlchemy adapter for the QueryBackend protocol.

Each submitted query runs as a background task on an async engine. The
result is buffered in memory until it is fetched, so this adapter suits
local use and tests rather than very large exports.
"""

from __future__ import annotations

import asyncio
import typing as typ
import uuid

from sqlalchemy import text

from sluice.exports.backend import QueryState, QueryStatus
from sluice.logging import get_logger, log_debug

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncEngine

logger = get_logger(__name__)

type _Result = tuple[list[str], list[tuple[object, ...]]]


class SqlAlchemyQueryBackend:
    """Run export queries against a SQLAlchemy async engine.

    Parameters
    ----------
    engine
        Engine the queries run on.

    """

    def __init__(self, engine: AsyncEngine) -> None:
        """Store the engine used for every query."""
        self._engine = engine
        self._tasks: dict[str, asyncio.Task[_Result]] = {}
        self._released: set[asyncio.Task[_Result]] = set()

    async def submit(self, query: str) -> str:
        """Start ``query`` in the background and return its handle."""
        handle = str(uuid.uuid4())
        self._tasks[handle] = asyncio.create_task(self._execute(query))
        log_debug(logger, "Submitted query %s", handle)
        return handle

    async def _execute(self, query: str) -> _Result:
        async with self._engine.connect() as conn:
            result = await conn.execute(text(query))
            header = list(result.keys())
            rows = [tuple(row) for row in result.all()]
        return header, rows

    async def status(self, handle: str) -> QueryStatus:
        """Map the query task's state onto a ``QueryStatus``."""
        task = self._tasks.get(handle)
        if task is None:
            return QueryStatus(
                QueryState.FAILED, reason=f"Unknown query handle: {handle}"
            )
        if not task.done():
            return QueryStatus(QueryState.RUNNING)
        if task.cancelled():
            del self._tasks[handle]
            return QueryStatus(QueryState.FAILED, reason="Query was cancelled")
        exc = task.exception()
        if exc is not None:
            del self._tasks[handle]
            return QueryStatus(QueryState.FAILED, reason=str(exc))
        return QueryStatus(QueryState.SUCCEEDED)

    async def fetch_result(
        self, handle: str
    ) -> cabc.AsyncIterator[cabc.Sequence[object]]:
        """Yield the header and rows of a finished query.

        Raises
        ------
        KeyError
            If ``handle`` is unknown or its result was already fetched.

        """
        task = self._tasks.pop(handle)
        header, rows = await task
        yield header
        for row in rows:
            yield row

    async def release(self, handle: str) -> None:
        """Drop ``handle`` without fetching its result.

        A query that is still running is left to finish in the background.
        """
        task = self._tasks.pop(handle, None)
        if task is None:
            return
        if task.done():
            _retrieve(task)
            return
        self._released.add(task)
        task.add_done_callback(self._forget)
        log_debug(logger, "Released running query %s", handle)

    def _forget(self, task: asyncio.Task[_Result]) -> None:
        self._released.discard(task)
        _retrieve(task)


def _retrieve(task: asyncio.Task[_Result]) -> None:
    # Marks any error as retrieved; nobody awaits a released task.
    if not task.cancelled():
        task.exception()
