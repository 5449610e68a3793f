from contextlib import asynccontextmanager

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from league_scoring.db import create_engine_for, create_schema
from league_scoring.store import ScoreStore


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No real backoff sleeps in tests."""
    monkeypatch.setenv("SCORE_WRITE_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("SCORE_WRITE_ATTEMPTS", "3")


@pytest.fixture
def open_db(tmp_path):
    """Async context manager yielding a session factory on a fresh SQLite file."""

    @asynccontextmanager
    async def _open():
        engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'scores.db'}")
        await create_schema(engine)
        try:
            yield async_sessionmaker(engine, expire_on_commit=False)
        finally:
            await engine.dispose()

    return _open


@pytest.fixture
def open_store(open_db):
    @asynccontextmanager
    async def _open(store_cls=ScoreStore):
        async with open_db() as session_factory:
            yield store_cls(session_factory)

    return _open
