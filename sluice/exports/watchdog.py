"""Heartbeat watchdog for synchronously executed export jobs.

``run_with_watchdog`` races the export work against a deadline timer while a
heartbeat task records progress. Whichever of the work and the timer finishes
first wins; when the timer wins the work is abandoned and
``DeadlineExceededError`` is raised.

The same ``Deadline`` is handed to the work itself so loops inside it, such
as throttling retries, stop at the same instant the timer fires.

Usage
-----
>>> deadline = Deadline.after(dt.timedelta(minutes=60))
>>> result = await run_with_watchdog(
...     drive_export(deadline),
...     deadline=deadline,
...     heartbeat=touch,
...     interval_s=60.0,
... )

"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses as dc
import time
import typing as typ

from sluice.exports.errors import DeadlineExceededError

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt


@dc.dataclass(frozen=True, slots=True)
class Deadline:
    """A fixed instant on a monotonic clock after which work must stop.

    Attributes
    ----------
    limit
        The allowed duration.
    expires_at
        Monotonic time at which the deadline passes.
    clock
        Monotonic clock the deadline is measured on.

    """

    limit: dt.timedelta
    expires_at: float
    clock: cabc.Callable[[], float] = time.monotonic

    @classmethod
    def after(
        cls,
        limit: dt.timedelta,
        *,
        clock: cabc.Callable[[], float] = time.monotonic,
    ) -> Deadline:
        """Return a deadline ``limit`` from now."""
        return cls(limit=limit, expires_at=clock() + limit.total_seconds(), clock=clock)

    @property
    def limit_minutes(self) -> int:
        """Return the limit in whole minutes."""
        return int(self.limit.total_seconds() // 60)

    def remaining(self) -> float:
        """Return the seconds left, never negative."""
        return max(0.0, self.expires_at - self.clock())

    @property
    def expired(self) -> bool:
        """Return True once the deadline has passed."""
        return self.clock() >= self.expires_at

    def check(self) -> None:
        """Raise ``DeadlineExceededError`` if the deadline has passed."""
        if self.expired:
            raise DeadlineExceededError.no_status_update(self.limit_minutes)


async def _beat(
    heartbeat: cabc.Callable[[], cabc.Awaitable[object]], interval_s: float
) -> None:
    while True:
        await asyncio.sleep(interval_s)
        await heartbeat()


async def _cancel(task: asyncio.Future[typ.Any]) -> None:
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def run_with_watchdog[T](
    work: cabc.Awaitable[T],
    *,
    deadline: Deadline,
    heartbeat: cabc.Callable[[], cabc.Awaitable[object]],
    interval_s: float,
) -> T:
    """Run ``work`` until it finishes or ``deadline`` passes.

    Parameters
    ----------
    work
        The export work to run.
    deadline
        Deadline raced against the work.
    heartbeat
        Called every ``interval_s`` seconds while the work runs. It must
        handle its own failures.
    interval_s
        Seconds between heartbeats.

    Returns
    -------
    T
        The result of ``work``.

    Raises
    ------
    DeadlineExceededError
        If the deadline passes before the work finishes.

    """
    work_task = asyncio.ensure_future(work)
    timer = asyncio.create_task(asyncio.sleep(deadline.remaining()))
    beat = asyncio.create_task(_beat(heartbeat, interval_s))
    try:
        done, _ = await asyncio.wait(
            {work_task, timer}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        await _cancel(work_task)
        raise
    finally:
        await _cancel(beat)
        await _cancel(timer)

    if work_task in done:
        return work_task.result()

    # The backend query is left running; only this side gives up on it.
    await _cancel(work_task)
    raise DeadlineExceededError.no_status_update(deadline.limit_minutes)
