"""Errors specific to the refresh state machine."""

from __future__ import annotations


class RefreshError(Exception):
    """Base class for refresh module errors."""


class RefreshTokensExhaustedError(RefreshError):
    """Raised when an on-demand refresh is requested with no tokens left."""

    def __init__(self, platform: str) -> None:
        """Record the tenant whose budget is exhausted."""
        self.platform = platform
        super().__init__(
            f"No more refresh tokens available for {platform}; "
            "try again when the daily or monthly budget resets"
        )


class WorkflowTriggerError(RefreshError):
    """Raised when the external workflow engine cannot be reached."""

    def __init__(self, message: str, *, platform: str) -> None:
        """Initialise with a message and the affected tenant."""
        self.platform = platform
        super().__init__(message)

    @classmethod
    def start_failed(cls, platform: str, cause: BaseException) -> WorkflowTriggerError:
        """Return an error for a refresh workflow that failed to start."""
        return cls(
            f"Failed to start refresh workflow for {platform}: {cause}",
            platform=platform,
        )

    @classmethod
    def unavailable(cls, platform: str) -> WorkflowTriggerError:
        """Return an error when no workflow trigger is configured."""
        return cls(
            f"No refresh workflow trigger configured for {platform}",
            platform=platform,
        )
