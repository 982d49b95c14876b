"""Configuration for the tenant platform API used by the planner."""

from __future__ import annotations

import dataclasses as dc
import os

from sluice.planner.errors import PlannerConfigError

_DEFAULT_BASE_URL = "https://{platform}"
_DEFAULT_TIMEOUT_S = 20.0


@dc.dataclass(frozen=True, slots=True)
class PlannerConfig:
    """Configuration for calls to tenant platforms.

    Attributes
    ----------
    api_token
        Bearer token presented to every tenant platform.
    base_url_template
        Base URL with a ``{platform}`` placeholder.
    timeout_s
        Request timeout in seconds.
    user_agent
        User agent sent with every request.

    """

    api_token: str
    base_url_template: str = _DEFAULT_BASE_URL
    timeout_s: float = _DEFAULT_TIMEOUT_S
    user_agent: str = "sluice/0.1"

    def base_url(self, platform: str) -> str:
        """Return the API base URL of ``platform``."""
        return self.base_url_template.format(platform=platform).rstrip("/")

    @classmethod
    def from_env(cls) -> PlannerConfig:
        """Create configuration from environment variables.

        Reads ``SLUICE_PLATFORM_API_TOKEN`` (required),
        ``SLUICE_PLATFORM_BASE_URL`` and ``SLUICE_PLATFORM_TIMEOUT_S``.

        Raises
        ------
        PlannerConfigError
            If the API token is missing.
        ValueError
            If the timeout is not a positive number.

        """
        token = os.environ.get("SLUICE_PLATFORM_API_TOKEN", "").strip()
        if not token:
            raise PlannerConfigError.missing_token()

        base_url = os.environ.get("SLUICE_PLATFORM_BASE_URL", "").strip()
        raw_timeout = os.environ.get("SLUICE_PLATFORM_TIMEOUT_S", "").strip()
        timeout_s = _DEFAULT_TIMEOUT_S
        if raw_timeout:
            try:
                timeout_s = float(raw_timeout)
            except ValueError as exc:
                msg = (
                    "SLUICE_PLATFORM_TIMEOUT_S must be a number, "
                    f"got: {raw_timeout!r}"
                )
                raise ValueError(msg) from exc
            if timeout_s <= 0:
                msg = f"SLUICE_PLATFORM_TIMEOUT_S must be positive, got: {timeout_s}"
                raise ValueError(msg)

        return cls(
            api_token=token,
            base_url_template=base_url or _DEFAULT_BASE_URL,
            timeout_s=timeout_s,
        )
