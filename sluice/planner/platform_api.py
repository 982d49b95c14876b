"""HTTP client for the tenant platform API.

The planner needs two things from a tenant platform: the timezone of a
report owner, and an endpoint that accepts due reports for extraction.
``PlatformApiClient`` provides both. An instance can be passed directly as
the planner's timezone resolver and as the runner's ``ReportDispatcher``.
"""

from __future__ import annotations

import typing as typ

import httpx
import msgspec

from sluice.planner.errors import (
    DispatchError,
    PlannerConfigError,
    TimezoneResolutionError,
)

if typ.TYPE_CHECKING:
    from sluice.planner.config import PlannerConfig

_HTTP_ERROR_STATUS_THRESHOLD = 400


@typ.runtime_checkable
class ReportDispatcher(typ.Protocol):
    """Protocol for handing due reports to a tenant for execution."""

    async def dispatch(
        self, platform: str, reports_by_owner: typ.Mapping[str, list[str]]
    ) -> None:
        """Request extraction of ``reports_by_owner`` on ``platform``."""
        ...


class _UserProps(msgspec.Struct):
    timezone: str | None = None


class _UserPropsEnvelope(msgspec.Struct):
    data: _UserProps


class _ExportRequest(msgspec.Struct):
    userId: str  # noqa: N815
    reports: list[str]


class _ExportsPayload(msgspec.Struct):
    exports: list[_ExportRequest]


class PlatformApiClient:
    """Platform API implementation of timezone lookup and dispatch."""

    def __init__(
        self,
        config: PlannerConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialise the client with the provided API configuration."""
        if not config.api_token.strip():
            raise PlannerConfigError.empty_token()

        self._config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=config.timeout_s,
            headers={
                "Authorization": f"Bearer {config.api_token}",
                "User-Agent": config.user_agent,
                "Accept": "application/json",
            },
        )

    async def aclose(self) -> None:
        """Close any owned HTTP resources."""
        if self._owns_client:
            await self._client.aclose()

    async def __call__(self, platform: str, owner_id: str) -> str:
        """Resolve an owner's timezone, matching the planner resolver shape."""
        return await self.owner_timezone(platform, owner_id)

    async def owner_timezone(self, platform: str, owner_id: str) -> str:
        """Return the IANA timezone name configured for a report owner.

        Raises
        ------
        TimezoneResolutionError
            If the request fails or the response carries no timezone.

        """
        url = f"{self._config.base_url(platform)}/report/v1/report/user/{owner_id}"
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise TimezoneResolutionError(platform, owner_id, str(exc)) from exc
        if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD:
            raise TimezoneResolutionError(
                platform, owner_id, f"HTTP {response.status_code}"
            )
        try:
            envelope = msgspec.json.decode(response.content, type=_UserPropsEnvelope)
        except msgspec.DecodeError as exc:
            raise TimezoneResolutionError(platform, owner_id, str(exc)) from exc
        if not envelope.data.timezone:
            raise TimezoneResolutionError(platform, owner_id, "no timezone set")
        return envelope.data.timezone

    async def dispatch(
        self, platform: str, reports_by_owner: typ.Mapping[str, list[str]]
    ) -> None:
        """Ask ``platform`` to extract the due reports of each owner.

        Raises
        ------
        DispatchError
            If the platform rejects the request.
        httpx.HTTPError
            If the request cannot be sent.

        """
        payload = _ExportsPayload(
            exports=[
                _ExportRequest(userId=owner_id, reports=list(report_ids))
                for owner_id, report_ids in reports_by_owner.items()
            ]
        )
        response = await self._client.post(
            f"{self._config.base_url(platform)}/report/v1/report/extractions",
            content=msgspec.json.encode(payload),
            headers={"Content-Type": "application/json"},
        )
        if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD:
            raise DispatchError.http_error(platform, response.status_code)
