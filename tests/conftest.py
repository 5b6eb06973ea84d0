"""
Shared test fixtures.

Every test gets its own file-backed SQLite database (via aiosqlite) so
tests run without Docker / PostgreSQL / Redis, and so two sessions can
race on the same rows the way two API requests would.  The payment
processor is replaced by ``FakeProcessor`` from ``tests/fakes.py``.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from rideledger.infrastructure import models  # noqa: F401  (registers tables)
from rideledger.infrastructure.database import Base
from tests.fakes import FakeProcessor


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()
