"""Errors specific to the scheduled extraction planner."""

from __future__ import annotations


class PlannerError(Exception):
    """Base class for planner module errors."""


class TimezoneResolutionError(PlannerError):
    """Raised when an owner's timezone cannot be looked up."""

    def __init__(self, platform: str, owner_id: str, reason: str) -> None:
        """Record the owner whose timezone could not be resolved."""
        self.platform = platform
        self.owner_id = owner_id
        super().__init__(
            f"Cannot resolve timezone for owner {owner_id} on {platform}: {reason}"
        )


class DispatchError(PlannerError):
    """Raised when due reports cannot be handed to a tenant."""

    def __init__(self, message: str, *, platform: str) -> None:
        """Initialise with a message and the tenant that refused the request."""
        self.platform = platform
        super().__init__(message)

    @classmethod
    def http_error(cls, platform: str, status_code: int) -> DispatchError:
        """Return an error for non-2xx dispatch responses."""
        return cls(
            f"Dispatch to {platform} failed with HTTP {status_code}",
            platform=platform,
        )


class PlannerConfigError(PlannerError):
    """Raised when the platform API configuration is invalid."""

    @classmethod
    def missing_token(cls) -> PlannerConfigError:
        """Return an error when no platform API token is configured."""
        return cls("SLUICE_PLATFORM_API_TOKEN is required for the platform API")

    @classmethod
    def empty_token(cls) -> PlannerConfigError:
        """Return an error when the provided token is empty."""
        return cls("Platform API token must be non-empty")
