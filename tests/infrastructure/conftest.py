"""Database fixtures for the persistence tests."""

import pytest_asyncio

from orderflow.infrastructure.database import build_engine, build_session_factory, init_models


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh SQLite file."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}", echo=False)
    await init_models(engine)
    yield build_session_factory(engine)
    await engine.dispose()
