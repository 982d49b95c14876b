"""On-demand refresh token budgets.

Each tenant gets a daily and a monthly allowance of on-demand refreshes.
Counters reset lazily on read, using calendar days and months in the tenant's
own timezone: a new month restores both counters, a new day restores the
daily counter while monthly tokens remain, and a spent monthly budget pins
the daily counter at zero.

Usage
-----
>>> ledger = RefreshTokenLedger(RefreshStore(session_factory))
>>> await ledger.consume_token("acme.example.com", timezone="Europe/Rome")
True

"""

from __future__ import annotations

import dataclasses as dc
import typing as typ
import zoneinfo

from sluice.common.time import load_zone, utcnow
from sluice.logging import get_logger, log_warning
from sluice.refresh.config import RefreshConfig
from sluice.refresh.models import RefreshTokenBudget
from sluice.refresh.observability import RefreshEventLogger

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from sluice.refresh.storage import RefreshStore

logger = get_logger(__name__)


class RefreshTokenLedger:
    """Read, reset, consume, and restore tenant refresh tokens.

    Parameters
    ----------
    store
        Store holding token budgets.
    config
        Supplies the default daily and monthly allowances.
    event_logger
        Receives token exhaustion and restoration events.
    clock
        Returns the current aware UTC time.

    """

    def __init__(
        self,
        store: RefreshStore,
        config: RefreshConfig | None = None,
        *,
        event_logger: RefreshEventLogger | None = None,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Wire the ledger to its store and defaults."""
        self._store = store
        self._config = config or RefreshConfig()
        self._event_logger = event_logger or RefreshEventLogger()
        self._clock = clock

    @staticmethod
    def _zone(timezone: str) -> dt.tzinfo:
        try:
            return load_zone(timezone)
        except zoneinfo.ZoneInfoNotFoundError:
            log_warning(logger, "Unknown tenant timezone %r; using UTC", timezone)
            return load_zone("UTC")

    async def reset_tokens(
        self,
        platform: str,
        *,
        daily: int | None = None,
        monthly: int | None = None,
    ) -> RefreshTokenBudget:
        """Reset both counters, falling back to configured defaults.

        Zero or missing allowances use the defaults, matching how tenant
        settings express "use the default".
        """
        now = self._clock()
        budget = RefreshTokenBudget(
            platform=platform,
            daily_remaining=daily or self._config.daily_tokens,
            monthly_remaining=monthly or self._config.monthly_tokens,
            last_request=now,
            last_reset=now,
        )
        await self._store.put_budget(budget)
        return budget

    async def current_budget(
        self, platform: str, *, timezone: str = "UTC"
    ) -> RefreshTokenBudget:
        """Return the tenant's budget after applying any due resets.

        Parameters
        ----------
        platform
            Tenant identifier.
        timezone
            IANA name of the tenant's default timezone; unknown names fall
            back to UTC.

        Returns
        -------
        RefreshTokenBudget
            The budget as it stands after resets.

        """
        budget = await self._store.get_budget(platform)
        if budget is None:
            return await self.reset_tokens(platform)

        now = self._clock()
        zone = self._zone(timezone)
        local_now = now.astimezone(zone)
        last_reset = budget.last_reset.astimezone(zone)
        last_request = budget.last_request.astimezone(zone)

        if (local_now.year, local_now.month) > (last_reset.year, last_reset.month):
            return await self.reset_tokens(platform)

        if budget.monthly_remaining == 0:
            if budget.daily_remaining != 0:
                await self._store.zero_daily_tokens(platform)
            return dc.replace(budget, daily_remaining=0)

        if local_now.date() > last_request.date():
            daily = self._config.daily_tokens
            await self._store.reset_daily_tokens(platform, daily, now)
            return dc.replace(budget, daily_remaining=daily, last_request=now)

        return budget

    async def consume_token(self, platform: str, *, timezone: str = "UTC") -> bool:
        """Take one token, returning False when the budget is exhausted.

        An exhausted budget is a refusal, not an error; callers should treat
        it as "cannot refresh now".
        """
        budget = await self.current_budget(platform, timezone=timezone)
        if not budget.has_token:
            self._event_logger.log_tokens_exhausted(
                platform=platform,
                daily_remaining=budget.daily_remaining,
                monthly_remaining=budget.monthly_remaining,
            )
            return False
        consumed = await self._store.consume_token(platform, self._clock())
        if not consumed:
            # A concurrent request spent the last token first.
            self._event_logger.log_tokens_exhausted(
                platform=platform,
                daily_remaining=0,
                monthly_remaining=budget.monthly_remaining,
            )
        return consumed

    async def restore_token(self, platform: str) -> bool:
        """Give back exactly one daily and one monthly token."""
        restored = await self._store.restore_token(platform, self._clock())
        self._event_logger.log_tokens_restored(platform=platform, restored=restored)
        return restored
