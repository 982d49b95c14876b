"""Unit tests for RefreshConfig."""

from __future__ import annotations

import datetime as dt

import pytest

from sluice.refresh import RefreshConfig

_ENV_VARS = (
    "SLUICE_REFRESH_DEFAULT_WINDOW_HOURS",
    "SLUICE_REFRESH_SAAS_WINDOW_HOURS",
    "SLUICE_REFRESH_STAGING_WINDOW_HOURS",
    "SLUICE_REFRESH_PRODUCTION_WINDOW_HOURS",
    "SLUICE_REFRESH_EXPIRATION_OVERRIDE_SECONDS",
    "SLUICE_REFRESH_NIGHTLY_TIMEOUT_MINUTES",
    "SLUICE_REFRESH_DAILY_TOKENS",
    "SLUICE_REFRESH_MONTHLY_TOKENS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestExpirationWindow:
    """Tests for the tiered expiration window."""

    @pytest.mark.parametrize(
        ("installation_class", "hours"),
        [
            pytest.param("trial", 24, id="saas"),
            pytest.param("SMB", 24, id="saas-uppercase"),
            pytest.param("staging", 8, id="staging"),
            pytest.param("large_enterprise", 4, id="production"),
            pytest.param("ecs", 4, id="ecs"),
            pytest.param("", 24, id="unknown-empty"),
            pytest.param("mainframe", 24, id="unknown"),
        ],
    )
    def test_window_per_classification(
        self, installation_class: str, hours: int
    ) -> None:
        """Each classification maps onto its tier."""
        window = RefreshConfig().expiration_window(installation_class)
        assert window == dt.timedelta(hours=hours), (
            f"{installation_class!r} should expire after {hours} hours"
        )

    def test_override_replaces_every_tier(self) -> None:
        """A positive override wins over the classification."""
        config = RefreshConfig(expiration_override_seconds=90)
        assert config.expiration_window("staging") == dt.timedelta(seconds=90), (
            "Override should apply to staging"
        )
        assert config.expiration_window("ecs") == dt.timedelta(seconds=90), (
            "Override should apply to production"
        )

    def test_nightly_timeout_defaults_to_five_hours(self) -> None:
        """The nightly watchdog fires after 300 minutes by default."""
        assert RefreshConfig().nightly_timeout == dt.timedelta(hours=5)


class TestFromEnv:
    """Tests for RefreshConfig.from_env."""

    def test_defaults(self) -> None:
        """Without variables the dataclass defaults apply."""
        assert RefreshConfig.from_env() == RefreshConfig(), (
            "from_env should match the defaults when nothing is set"
        )

    def test_reads_every_variable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Every documented variable is honoured."""
        values = dict(
            zip(_ENV_VARS, ("12", "20", "6", "2", "600", "90", "3", "10"), strict=True)
        )
        for name, value in values.items():
            monkeypatch.setenv(name, value)

        config = RefreshConfig.from_env()

        assert config == RefreshConfig(
            default_window_hours=12,
            saas_window_hours=20,
            staging_window_hours=6,
            production_window_hours=2,
            expiration_override_seconds=600,
            nightly_timeout_minutes=90,
            daily_tokens=3,
            monthly_tokens=10,
        )

    def test_zero_override_disables_override(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """An override of 0 means "no override"."""
        monkeypatch.setenv("SLUICE_REFRESH_EXPIRATION_OVERRIDE_SECONDS", "0")
        assert RefreshConfig.from_env().expiration_override_seconds is None

    @pytest.mark.parametrize(
        ("name", "value", "message"),
        [
            pytest.param(
                "SLUICE_REFRESH_DAILY_TOKENS", "many", "must be an integer", id="nan"
            ),
            pytest.param(
                "SLUICE_REFRESH_STAGING_WINDOW_HOURS",
                "0",
                "must be positive",
                id="zero",
            ),
            pytest.param(
                "SLUICE_REFRESH_MONTHLY_TOKENS", "-1", "at least 0", id="negative"
            ),
        ],
    )
    def test_rejects_invalid_values(
        self,
        monkeypatch: pytest.MonkeyPatch,
        name: str,
        value: str,
        message: str,
    ) -> None:
        """Malformed or out-of-range values raise ValueError."""
        monkeypatch.setenv(name, value)
        with pytest.raises(ValueError, match=message):
            RefreshConfig.from_env()
