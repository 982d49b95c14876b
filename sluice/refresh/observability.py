"""Emit structured observability events for tenant refresh state changes.

Usage
-----
>>> event_logger = RefreshEventLogger()
>>> event_logger.log_refresh_started(
...     platform="acme.example.com",
...     track=RefreshTrack.SCHEDULED,
...     owned=True,
... )

"""

from __future__ import annotations

import enum
import typing as typ

from sluice.logging import get_logger, log_error, log_info, log_warning

if typ.TYPE_CHECKING:
    import datetime as dt

    from sluice.refresh.models import RefreshStatus, RefreshTrack
    from sluice.refresh.workflow import WorkflowStatus

logger = get_logger(__name__)


class RefreshEventType(enum.StrEnum):
    """Structured log event types for refresh state changes."""

    REFRESH_STARTED = "refresh.started"
    REFRESH_COMPLETED = "refresh.completed"
    REFRESH_TIMED_OUT = "refresh.timed_out"
    REFRESH_RECONCILED = "refresh.reconciled"
    RECONCILE_FAILED = "refresh.reconcile_failed"
    TOKENS_EXHAUSTED = "refresh.tokens_exhausted"
    TOKENS_RESTORED = "refresh.tokens_restored"


class RefreshEventLogger:
    """Emit structured refresh events via femtologging."""

    def log_refresh_started(
        self,
        *,
        platform: str,
        track: RefreshTrack,
        owned: bool,
    ) -> None:
        """Log the start of a refresh and whether this caller owns it."""
        log_info(
            logger,
            "[%s] platform=%s track=%s owned=%s",
            RefreshEventType.REFRESH_STARTED,
            platform,
            track,
            owned,
        )

    def log_refresh_completed(
        self,
        *,
        platform: str,
        track: RefreshTrack,
        status: RefreshStatus,
    ) -> None:
        """Log a track reaching a terminal status."""
        log_info(
            logger,
            "[%s] platform=%s track=%s status=%s",
            RefreshEventType.REFRESH_COMPLETED,
            platform,
            track,
            status,
        )

    def log_refresh_timed_out(
        self,
        *,
        platform: str,
        last_update: dt.datetime | None,
        timeout: dt.timedelta,
    ) -> None:
        """Log a nightly refresh forced to ``Error`` by the watchdog.

        Parameters
        ----------
        platform
            Tenant whose nightly refresh went silent.
        last_update
            Last update recorded on the scheduled track.
        timeout
            Watchdog timeout that elapsed.

        """
        log_error(
            logger,
            "[%s] platform=%s last_update=%s timeout_minutes=%d",
            RefreshEventType.REFRESH_TIMED_OUT,
            platform,
            None if last_update is None else last_update.isoformat(),
            int(timeout.total_seconds() // 60),
        )

    def log_refresh_reconciled(
        self,
        *,
        platform: str,
        execution_id: str,
        workflow_status: WorkflowStatus,
        status: RefreshStatus,
    ) -> None:
        """Log both tracks being settled from a finished workflow run."""
        log_info(
            logger,
            "[%s] platform=%s execution_id=%s workflow_status=%s status=%s",
            RefreshEventType.REFRESH_RECONCILED,
            platform,
            execution_id,
            workflow_status,
            status,
        )

    def log_reconcile_failed(
        self,
        *,
        platform: str,
        execution_id: str,
        error: BaseException,
    ) -> None:
        """Log a workflow status check that failed and was skipped."""
        log_warning(
            logger,
            "[%s] platform=%s execution_id=%s error_type=%s error_message=%s",
            RefreshEventType.RECONCILE_FAILED,
            platform,
            execution_id,
            type(error).__name__,
            str(error),
            exc_info=error,
        )

    def log_tokens_exhausted(
        self,
        *,
        platform: str,
        daily_remaining: int,
        monthly_remaining: int,
    ) -> None:
        """Log an on-demand request refused for lack of tokens."""
        log_warning(
            logger,
            "[%s] platform=%s daily_remaining=%d monthly_remaining=%d",
            RefreshEventType.TOKENS_EXHAUSTED,
            platform,
            daily_remaining,
            monthly_remaining,
        )

    def log_tokens_restored(self, *, platform: str, restored: bool) -> None:
        """Log a token handed back after a failed on-demand ingestion."""
        log_info(
            logger,
            "[%s] platform=%s restored=%s",
            RefreshEventType.TOKENS_RESTORED,
            platform,
            restored,
        )
