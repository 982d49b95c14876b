"""Shared fixtures for unit and feature tests."""

from __future__ import annotations

import typing as typ

import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from sluice.exports import init_export_storage
from sluice.planner import init_planner_storage
from sluice.refresh import init_refresh_storage

if typ.TYPE_CHECKING:
    from pathlib import Path


async def _init_all_storage(engine: AsyncEngine) -> None:
    """Initialise refresh, planner, and export tables."""
    await init_refresh_storage(engine)
    await init_planner_storage(engine)
    await init_export_storage(engine)


async def _setup_sqlite(tmp_path: Path) -> AsyncEngine:
    """Create a SQLite engine and initialise all storage layers."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sluice_test.db'}")
    try:
        await _init_all_storage(engine)
    except Exception:
        await engine.dispose()
        raise
    return engine


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> typ.AsyncIterator[AsyncEngine]:
    """Yield an initialised sqlite engine."""
    engine = await _setup_sqlite(tmp_path)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Return a session factory bound to the test engine."""
    return async_sessionmaker(engine, expire_on_commit=False)
