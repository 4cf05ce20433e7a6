"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ttg.config import Settings
from ttg.database import close_db, create_schema, get_session_factory, init_db
from ttg.gamification.catalog import Catalog
from ttg.gamification.engine import GamificationEngine
from ttg.gamification.scoring import ScoringConfig

from factories import EMPTY_CATALOG, build_test_catalog


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, max_conflict_retries=3, leaderboard_refresh_seconds=60)


@pytest.fixture
def catalog() -> Catalog:
    return build_test_catalog()


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite database per test."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'ttg.db'}")
    await create_schema()
    yield get_session_factory()
    await close_db()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Direct session for setup and assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_engine(session_factory, catalog, settings) -> Callable[..., GamificationEngine]:
    def _make(
        catalog: Catalog | None = catalog,
        config: ScoringConfig | None = None,
        redis: Any = None,
    ) -> GamificationEngine:
        return GamificationEngine(session_factory, catalog=catalog, config=config, redis=redis, settings=settings)

    return _make


@pytest.fixture
def engine(make_engine) -> GamificationEngine:
    return make_engine()


@pytest.fixture
def quiet_engine(make_engine) -> GamificationEngine:
    """Engine with an empty catalog: points only, no unlocks or challenges."""
    return make_engine(catalog=EMPTY_CATALOG)

