"""Shared fixtures for BDD feature tests.

Step functions are synchronous and drive each async call with its own
``asyncio.run``, so the feature database does not pool connections across
event loops.
"""

from __future__ import annotations

import asyncio
import typing as typ

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from sluice.exports import init_export_storage
from sluice.planner import init_planner_storage
from sluice.refresh import init_refresh_storage

if typ.TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine


async def _init(engine: AsyncEngine) -> None:
    await init_refresh_storage(engine)
    await init_planner_storage(engine)
    await init_export_storage(engine)


@pytest.fixture
def feature_session_factory(
    tmp_path: Path,
) -> typ.Iterator[async_sessionmaker[AsyncSession]]:
    """Yield a session factory over a fresh, unpooled SQLite database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'sluice_features.db'}",
        poolclass=NullPool,
    )
    asyncio.run(_init(engine))
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        asyncio.run(engine.dispose())
