"""
Async SQLAlchemy engine and session factory.

Uses ``asyncpg`` as the PostgreSQL driver for non-blocking I/O.  A
SQLite URL (``sqlite+aiosqlite``) is accepted for local runs and tests.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from rideledger.config import settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {}
    return {"pool_size": 20, "max_overflow": 10, "pool_pre_ping": True}


engine = create_async_engine(
    settings.database_url,
    echo=False,
    **_engine_options(settings.database_url),
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""
