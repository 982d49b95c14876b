"""Configuration for export job timing, naming, and artifact storage.

Usage
-----
Create a configuration with defaults:

>>> config = ExportConfig()
>>> config.time_limit
datetime.timedelta(seconds=3600)

Or load from environment variables:

>>> import os
>>> os.environ["SLUICE_EXPORT_TIME_LIMIT_MINUTES"] = "30"
>>> ExportConfig.from_env().time_limit_minutes
30

"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import os
from pathlib import Path


@dc.dataclass(frozen=True, slots=True)
class ExportConfig:
    """Configuration for the export job manager.

    Attributes
    ----------
    time_limit_minutes
        Minutes a job may go without progress before it is failed.
    heartbeat_interval_seconds
        Seconds between heartbeat writes while a job is running.
    poll_interval_seconds
        Seconds between query backend status checks, and the backoff after
        a throttled call.
    queued_start_limit_minutes
        Minutes a deferred job may wait for a refresh before it is failed.
    download_url_ttl_seconds
        Lifetime of generated download URLs.
    report_name_limit
        Maximum length of the report name used in spreadsheet names.
    heartbeat_retries
        Attempts made for each heartbeat write.
    background_job_retries
        Attempts made to record a background job.
    background_job_retry_delay_ms
        Delay between background job attempts.
    artifact_root
        Root directory of the filesystem object store, when one is used.

    """

    time_limit_minutes: int = 60
    heartbeat_interval_seconds: float = 60.0
    poll_interval_seconds: float = 3.0
    queued_start_limit_minutes: int = 120
    download_url_ttl_seconds: int = 3600
    report_name_limit: int = 30
    heartbeat_retries: int = 5
    background_job_retries: int = 3
    background_job_retry_delay_ms: int = 200
    artifact_root: Path | None = None

    @property
    def time_limit(self) -> dt.timedelta:
        """Return the no-progress time limit."""
        return dt.timedelta(minutes=self.time_limit_minutes)

    @property
    def queued_start_limit(self) -> dt.timedelta:
        """Return how long a deferred job may stay queued."""
        return dt.timedelta(minutes=self.queued_start_limit_minutes)

    @staticmethod
    def _parse_positive_int(env_var: str, default: int) -> int:
        """Read a positive integer env var, falling back to a default."""
        raw = os.environ.get(env_var, "")
        if not raw.strip():
            return default
        try:
            value = int(raw)
        except ValueError as exc:
            msg = f"{env_var} must be an integer, got: {raw!r}"
            raise ValueError(msg) from exc
        if value < 1:
            msg = f"{env_var} must be positive, got: {value}"
            raise ValueError(msg)
        return value

    @staticmethod
    def _parse_positive_float(env_var: str, default: float) -> float:
        """Read a positive float env var, falling back to a default."""
        raw = os.environ.get(env_var, "")
        if not raw.strip():
            return default
        try:
            value = float(raw)
        except ValueError as exc:
            msg = f"{env_var} must be a number, got: {raw!r}"
            raise ValueError(msg) from exc
        if value <= 0:
            msg = f"{env_var} must be positive, got: {value}"
            raise ValueError(msg)
        return value

    @classmethod
    def from_env(cls) -> ExportConfig:
        """Create configuration from environment variables.

        Reads ``SLUICE_EXPORT_TIME_LIMIT_MINUTES``,
        ``SLUICE_EXPORT_HEARTBEAT_INTERVAL_SECONDS``,
        ``SLUICE_EXPORT_POLL_INTERVAL_SECONDS``,
        ``SLUICE_EXPORT_QUEUED_START_LIMIT_MINUTES``,
        ``SLUICE_EXPORT_DOWNLOAD_URL_TTL_SECONDS``,
        ``SLUICE_EXPORT_REPORT_NAME_LIMIT``,
        ``SLUICE_EXPORT_HEARTBEAT_RETRIES``,
        ``SLUICE_EXPORT_BACKGROUND_JOB_RETRIES``,
        ``SLUICE_EXPORT_BACKGROUND_JOB_RETRY_DELAY_MS`` and
        ``SLUICE_EXPORT_ARTIFACT_ROOT``.

        Raises
        ------
        ValueError
            If a numeric variable is malformed or not positive.

        """
        artifact_root: Path | None = None
        raw_root = os.environ.get("SLUICE_EXPORT_ARTIFACT_ROOT", "")
        if raw_root.strip():
            artifact_root = Path(raw_root.strip())

        parse_int = cls._parse_positive_int
        parse_float = cls._parse_positive_float
        return cls(
            time_limit_minutes=parse_int("SLUICE_EXPORT_TIME_LIMIT_MINUTES", 60),
            heartbeat_interval_seconds=parse_float(
                "SLUICE_EXPORT_HEARTBEAT_INTERVAL_SECONDS", 60.0
            ),
            poll_interval_seconds=parse_float(
                "SLUICE_EXPORT_POLL_INTERVAL_SECONDS", 3.0
            ),
            queued_start_limit_minutes=parse_int(
                "SLUICE_EXPORT_QUEUED_START_LIMIT_MINUTES", 120
            ),
            download_url_ttl_seconds=parse_int(
                "SLUICE_EXPORT_DOWNLOAD_URL_TTL_SECONDS", 3600
            ),
            report_name_limit=parse_int("SLUICE_EXPORT_REPORT_NAME_LIMIT", 30),
            heartbeat_retries=parse_int("SLUICE_EXPORT_HEARTBEAT_RETRIES", 5),
            background_job_retries=parse_int(
                "SLUICE_EXPORT_BACKGROUND_JOB_RETRIES", 3
            ),
            background_job_retry_delay_ms=parse_int(
                "SLUICE_EXPORT_BACKGROUND_JOB_RETRY_DELAY_MS", 200
            ),
            artifact_root=artifact_root,
        )
