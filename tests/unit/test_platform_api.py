"""Unit tests for PlannerConfig and the platform API client."""

from __future__ import annotations

import json
import secrets
import typing as typ

import httpx
import pytest

from sluice.planner import (
    DispatchError,
    PlannerConfig,
    PlannerConfigError,
    PlatformApiClient,
    ReportDispatcher,
    TimezoneResolutionError,
)

_TOKEN = secrets.token_hex(8)
ACME = "acme.example.com"


def _make_client(
    responses: list[httpx.Response],
) -> tuple[PlatformApiClient, httpx.AsyncClient, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responses[len(requests) - 1]

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    client = PlatformApiClient(
        PlannerConfig(api_token=_TOKEN, base_url_template="https://{platform}/api/"),
        http_client=http_client,
    )
    return client, http_client, requests


class TestPlannerConfig:
    """Tests for PlannerConfig.from_env."""

    def test_requires_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A missing token is a configuration error."""
        monkeypatch.delenv("SLUICE_PLATFORM_API_TOKEN", raising=False)
        with pytest.raises(PlannerConfigError, match="SLUICE_PLATFORM_API_TOKEN"):
            PlannerConfig.from_env()

    def test_reads_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Token, base URL, and timeout are read from the environment."""
        monkeypatch.setenv("SLUICE_PLATFORM_API_TOKEN", _TOKEN)
        monkeypatch.setenv("SLUICE_PLATFORM_BASE_URL", "http://{platform}:8080")
        monkeypatch.setenv("SLUICE_PLATFORM_TIMEOUT_S", "5")

        config = PlannerConfig.from_env()

        assert config.api_token == _TOKEN
        assert config.base_url(ACME) == "http://acme.example.com:8080"
        assert config.timeout_s == 5.0

    @pytest.mark.parametrize("raw", ["soon", "0"])
    def test_rejects_bad_timeout(
        self, monkeypatch: pytest.MonkeyPatch, raw: str
    ) -> None:
        """Timeouts must be positive numbers."""
        monkeypatch.setenv("SLUICE_PLATFORM_API_TOKEN", _TOKEN)
        monkeypatch.setenv("SLUICE_PLATFORM_TIMEOUT_S", raw)
        with pytest.raises(ValueError, match="SLUICE_PLATFORM_TIMEOUT_S"):
            PlannerConfig.from_env()


class TestOwnerTimezone:
    """Tests for resolving report owner timezones."""

    @pytest.mark.asyncio
    async def test_returns_timezone(self) -> None:
        """The owner's timezone is read from the user properties envelope."""
        client, http_client, requests = _make_client(
            [httpx.Response(200, json={"data": {"timezone": "Europe/Rome"}})]
        )
        try:
            zone = await client(ACME, "42")
        finally:
            await http_client.aclose()

        assert zone == "Europe/Rome"
        assert str(requests[0].url) == (
            "https://acme.example.com/api/report/v1/report/user/42"
        )

    @pytest.mark.parametrize(
        "response",
        [
            pytest.param(httpx.Response(404, json={}), id="http-error"),
            pytest.param(httpx.Response(200, json={"data": {}}), id="no-timezone"),
            pytest.param(httpx.Response(200, content=b"<html>"), id="not-json"),
        ],
    )
    @pytest.mark.asyncio
    async def test_unusable_responses_raise(self, response: httpx.Response) -> None:
        """Errors and empty payloads raise TimezoneResolutionError."""
        client, http_client, _ = _make_client([response])
        try:
            with pytest.raises(TimezoneResolutionError, match="owner 42"):
                await client.owner_timezone(ACME, "42")
        finally:
            await http_client.aclose()


class TestDispatch:
    """Tests for handing due reports to a tenant."""

    @pytest.mark.asyncio
    async def test_posts_reports_by_owner(self) -> None:
        """Each owner's due reports become one export request."""
        client, http_client, requests = _make_client([httpx.Response(202)])
        try:
            await client.dispatch(ACME, {"12": ["r1", "r2"], "13": ["r3"]})
        finally:
            await http_client.aclose()

        assert isinstance(client, ReportDispatcher)
        assert requests[0].method == "POST"
        assert str(requests[0].url).endswith("/report/v1/report/extractions")
        assert json.loads(requests[0].content) == {
            "exports": [
                {"userId": "12", "reports": ["r1", "r2"]},
                {"userId": "13", "reports": ["r3"]},
            ]
        }

    @pytest.mark.asyncio
    async def test_rejected_dispatch_raises(self) -> None:
        """Non-2xx responses raise DispatchError naming the tenant."""
        client, http_client, _ = _make_client([httpx.Response(503)])
        try:
            with pytest.raises(DispatchError, match="HTTP 503") as excinfo:
                await client.dispatch(ACME, {"12": ["r1"]})
        finally:
            await http_client.aclose()

        assert excinfo.value.platform == ACME


class TestClientLifecycle:
    """Tests for client construction and cleanup."""

    def test_rejects_empty_token(self) -> None:
        """Whitespace-only tokens are refused up front."""
        with pytest.raises(PlannerConfigError, match="non-empty"):
            PlatformApiClient(PlannerConfig(api_token="   "))

    @pytest.mark.asyncio
    async def test_does_not_close_borrowed_client(self) -> None:
        """Injected HTTP clients stay open after aclose."""
        client, http_client, _ = _make_client([])
        await client.aclose()

        assert http_client.is_closed is False
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_closes_owned_client(self) -> None:
        """Clients created internally are closed by aclose."""
        client = PlatformApiClient(PlannerConfig(api_token=_TOKEN))
        owned = typ.cast("httpx.AsyncClient", client._client)  # noqa: SLF001

        await client.aclose()

        assert owned.is_closed is True
