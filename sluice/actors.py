"""Dramatiq actors for scheduled extractions and export jobs.

Usage
-----
Queue a planning pass for a set of tenants:

>>> run_scheduled_extractions_job.send(
...     "postgresql+asyncpg://...",
...     ["acme.example.com", "globex.example.com"],
... )

Run one export under the heartbeat watchdog:

>>> export_report_job.send(
...     "postgresql+asyncpg://...",
...     "550e8400-e29b-41d4-a716-446655440000",
...     "SELECT * FROM revenue",
...     '{"platform": "acme.example.com", "format": "xlsx"}',
... )

"""

from __future__ import annotations

import asyncio
import os
import sys
import threading
import typing as typ

import dramatiq
import msgspec
from dramatiq.brokers.stub import StubBroker
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from sluice.common.time import parse_aware_iso, utcnow
from sluice.exports import (
    BackgroundJobStore,
    ExportConfig,
    ExportJobManager,
    ExportJobStore,
    ExportOptions,
    FilesystemObjectStore,
    SqlAlchemyQueryBackend,
)
from sluice.planner import (
    PlannerConfig,
    PlatformApiClient,
    ScheduledExtractionRunner,
    ScheduleStore,
)
from sluice.refresh import RefreshConfig, RefreshStateMachine, RefreshStore

type SessionFactory = async_sessionmaker[AsyncSession]

# Module-level caches for reusing engines across actor invocations
_ENGINE_CACHE: dict[str, AsyncEngine] = {}
_SESSION_FACTORY_CACHE: dict[str, SessionFactory] = {}
_CACHE_LOCK = threading.Lock()


def _ensure_engine(database_url: str) -> AsyncEngine:
    """Return the cached engine for *database_url*, creating it if absent.

    Precondition: the caller **must** hold ``_CACHE_LOCK``.
    """
    if database_url not in _ENGINE_CACHE:
        _ENGINE_CACHE[database_url] = create_async_engine(database_url)
    return _ENGINE_CACHE[database_url]


def _get_or_create_engine(database_url: str) -> AsyncEngine:
    """Get or create an async engine for the given database URL.

    Thread-safe: uses a lock to prevent race conditions in Dramatiq workers.
    """
    with _CACHE_LOCK:
        return _ensure_engine(database_url)


def _get_or_create_session_factory(database_url: str) -> SessionFactory:
    """Get or create an async session factory for the given database URL.

    Thread-safe: uses a lock to prevent race conditions in Dramatiq workers.
    """
    with _CACHE_LOCK:
        if database_url not in _SESSION_FACTORY_CACHE:
            _SESSION_FACTORY_CACHE[database_url] = async_sessionmaker(
                _ensure_engine(database_url), expire_on_commit=False
            )
        return _SESSION_FACTORY_CACHE[database_url]


def _build_refresh(session_factory: SessionFactory) -> RefreshStateMachine:
    return RefreshStateMachine(
        RefreshStore(session_factory), config=RefreshConfig.from_env()
    )


def _build_export_manager(
    database_url: str, query_database_url: str | None
) -> ExportJobManager:
    """Assemble an export manager from environment configuration.

    Raises
    ------
    ValueError
        If ``SLUICE_EXPORT_ARTIFACT_ROOT`` is not set.

    """
    config = ExportConfig.from_env()
    if config.artifact_root is None:
        msg = "SLUICE_EXPORT_ARTIFACT_ROOT must be set to run export jobs"
        raise ValueError(msg)

    session_factory = _get_or_create_session_factory(database_url)
    query_engine = _get_or_create_engine(query_database_url or database_url)
    return ExportJobManager(
        ExportJobStore(session_factory),
        _build_refresh(session_factory),
        SqlAlchemyQueryBackend(query_engine),
        FilesystemObjectStore(config.artifact_root),
        config=config,
        background_jobs=BackgroundJobStore(
            session_factory,
            retries=config.background_job_retries,
            retry_delay_ms=config.background_job_retry_delay_ms,
        ),
    )


async def _run_scheduled_extractions_async(
    session_factory: SessionFactory,
    platforms: list[str],
    as_of_iso: str | None,
) -> dict[str, typ.Any]:
    now = parse_aware_iso(as_of_iso) or utcnow()
    # httpx clients are bound to the event loop they were created on.
    client = PlatformApiClient(PlannerConfig.from_env())
    try:
        runner = ScheduledExtractionRunner(
            ScheduleStore(session_factory),
            _build_refresh(session_factory),
            client,
            client,
        )
        result = await runner.run(platforms, now)
    finally:
        await client.aclose()
    return msgspec.to_builtins(result)


_TRUTHY = frozenset({"1", "true", "yes"})
_PYTEST_ENV_MARKERS = ("PYTEST_CURRENT_TEST", "PYTEST_XDIST_WORKER")
_BROKER_LOCK = threading.Lock()
_broker_ready = threading.Event()


def _stub_broker_allowed() -> bool:
    """Return True for test runs or when ``SLUICE_ALLOW_STUB_BROKER`` is set."""
    flag = os.environ.get("SLUICE_ALLOW_STUB_BROKER", "").strip().lower()
    if flag in _TRUTHY or "pytest" in sys.modules:
        return True
    return any(marker in os.environ for marker in _PYTEST_ENV_MARKERS)


def ensure_broker_configured() -> None:
    """Make sure the Sluice actors have a Dramatiq broker to bind to.

    ``dramatiq.actor`` binds each actor to the broker that is current when
    it is declared, so this runs at import time and again in every actor
    body. Test runs and local runs with ``SLUICE_ALLOW_STUB_BROKER`` get an
    in-memory ``StubBroker``.

    Raises
    ------
    RuntimeError
        If no broker can be loaded and a stub broker is not allowed.

    """
    if _broker_ready.is_set():
        return
    with _BROKER_LOCK:
        if _broker_ready.is_set():
            return
        if _stub_broker_allowed():
            dramatiq.set_broker(StubBroker())
        else:
            try:
                dramatiq.get_broker()
            except (ImportError, LookupError) as exc:
                msg = (
                    "No Dramatiq broker is available for Sluice actors; "
                    "configure one or set SLUICE_ALLOW_STUB_BROKER=1"
                )
                raise RuntimeError(msg) from exc
        _broker_ready.set()


ensure_broker_configured()


@dramatiq.actor
def run_scheduled_extractions_job(
    database_url: str,
    platforms: list[str],
    *,
    as_of_iso: str | None = None,
) -> dict[str, typ.Any]:
    """Dramatiq actor running one scheduled extraction pass.

    Parameters
    ----------
    database_url
        SQLAlchemy URL of the Sluice database.
    platforms
        Tenants whose schedules are evaluated.
    as_of_iso
        Optional ISO timestamp the pass runs for. Must include timezone
        information (e.g., '2024-07-14T10:00:00Z').

    Returns
    -------
    dict[str, typ.Any]
        The due mapping and the tenants whose dispatch failed.

    Raises
    ------
    ValueError
        If as_of_iso is provided without timezone information.

    """
    ensure_broker_configured()
    session_factory = _get_or_create_session_factory(database_url)
    return asyncio.run(
        _run_scheduled_extractions_async(session_factory, platforms, as_of_iso)
    )


@dramatiq.actor
def export_report_job(
    database_url: str,
    report_id: str,
    query: str,
    options_json: str,
    *,
    query_database_url: str | None = None,
) -> dict[str, typ.Any]:
    """Dramatiq actor running one export to a terminal status.

    Parameters
    ----------
    database_url
        SQLAlchemy URL of the Sluice database.
    report_id
        UUID of the report being exported.
    query
        Query text to run.
    options_json
        JSON-encoded ``ExportOptions``.
    query_database_url
        SQLAlchemy URL the query runs against; defaults to ``database_url``.

    Returns
    -------
    dict[str, typ.Any]
        The submit result, including the final job status.

    Raises
    ------
    msgspec.ValidationError
        If ``options_json`` does not describe valid export options.

    """
    ensure_broker_configured()
    options = msgspec.json.decode(options_json, type=ExportOptions)
    manager = _build_export_manager(database_url, query_database_url)

    async def run() -> dict[str, typ.Any]:
        result = await manager.submit_export(report_id, query, options, wait=True)
        return msgspec.to_builtins(result)

    return asyncio.run(run())


@dramatiq.actor
def resume_deferred_exports_job(
    database_url: str,
    *,
    query_database_url: str | None = None,
    limit: int = 100,
) -> list[dict[str, typ.Any]]:
    """Dramatiq actor resuming deferred exports recorded as background jobs.

    Returns
    -------
    list[dict[str, typ.Any]]
        Views of the jobs that were examined.

    """
    ensure_broker_configured()
    manager = _build_export_manager(database_url, query_database_url)

    async def run() -> list[dict[str, typ.Any]]:
        views = await manager.resume_pending(limit=limit)
        return [msgspec.to_builtins(view) for view in views]

    return asyncio.run(run())
