"""Emit structured observability events for scheduled extraction planning."""

from __future__ import annotations

import enum

from sluice.logging import get_logger, log_error, log_info, log_warning

logger = get_logger(__name__)


class PlannerEventType(enum.StrEnum):
    """Structured log event types for planning passes."""

    PASS_COMPLETED = "planner.pass.completed"
    TIMEZONE_FALLBACK = "planner.timezone.fallback"
    DISPATCHED = "planner.dispatch.completed"
    DISPATCH_FAILED = "planner.dispatch.failed"


class PlannerEventLogger:
    """Emit structured planner events via femtologging."""

    def log_pass_completed(
        self, *, entries: int, due_reports: int, platforms: int
    ) -> None:
        """Log the outcome of one planning pass."""
        log_info(
            logger,
            "[%s] entries=%d due_reports=%d platforms=%d",
            PlannerEventType.PASS_COMPLETED,
            entries,
            due_reports,
            platforms,
        )

    def log_timezone_fallback(
        self, *, platform: str, owner_id: str, reason: str
    ) -> None:
        """Log an owner planned in UTC because their timezone was unusable."""
        log_warning(
            logger,
            "[%s] platform=%s owner_id=%s reason=%s",
            PlannerEventType.TIMEZONE_FALLBACK,
            platform,
            owner_id,
            reason,
        )

    def log_dispatched(self, *, platform: str, owners: int, reports: int) -> None:
        """Log due reports handed to a tenant."""
        log_info(
            logger,
            "[%s] platform=%s owners=%d reports=%d",
            PlannerEventType.DISPATCHED,
            platform,
            owners,
            reports,
        )

    def log_dispatch_failed(self, *, platform: str, error: BaseException) -> None:
        """Log a tenant whose due reports could not be dispatched."""
        log_error(
            logger,
            "[%s] platform=%s error_type=%s error_message=%s",
            PlannerEventType.DISPATCH_FAILED,
            platform,
            type(error).__name__,
            str(error),
            exc_info=error,
        )
