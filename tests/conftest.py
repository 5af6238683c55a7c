from __future__ import annotations

import os
from collections.abc import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# src.api.main reads settings at import time, before the autouse fixture runs.
os.environ.setdefault("DATABASE_URL", "postgresql+asyncpg://board:pw@localhost:5432/board_voting")
os.environ.setdefault("APP_PUBLIC_BASE_URL", "https://board.boardco.org")

from src import models  # noqa: E402, F401
from src.db import heartbeat, ledger  # noqa: E402, F401
from src.db.connection import Base  # noqa: E402


@pytest.fixture(autouse=True)
def _default_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "DATABASE_URL", "postgresql+asyncpg://board:pw@localhost:5432/board_voting"
    )
    monkeypatch.setenv("APP_PUBLIC_BASE_URL", "https://board.boardco.org")
    monkeypatch.setenv("VOTING_WEBHOOK_SECRET", "webhook-test-secret")
    monkeypatch.setenv("WEB_ACCESS_TOKEN_SECRET", "token-test-secret")
    monkeypatch.setenv("DELIVERY_BACKOFF_BASE_SECONDS", "0")
    from src.config import get_settings
    from src.handlers.abuse import get_vote_rate_limiter

    get_settings.cache_clear()
    get_vote_rate_limiter.cache_clear()


def requires_test_db() -> bool:
    test_database_url = os.getenv("TEST_DATABASE_URL")
    return bool(test_database_url and test_database_url.startswith("postgresql+asyncpg://"))


@pytest.fixture(scope="session")
def test_database_url() -> str:
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not requires_test_db():
        if os.getenv("CI_PARITY") == "1":
            pytest.fail("CI parity mode requires TEST_DATABASE_URL to be set to a Postgres asyncpg URL")
        pytest.skip("TEST_DATABASE_URL not set for postgres integration tests")
    assert test_database_url is not None
    return test_database_url


@pytest.fixture
async def db_session(test_database_url: str) -> AsyncIterator[AsyncSession]:
    engine = create_async_engine(test_database_url, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    async with maker() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_database_url: str, db_session: AsyncSession) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_session.bind, expire_on_commit=False)
