"""
Async database engine and session factory for the feedback table.

Used when ``database.url`` is configured; otherwise the in-memory
repository is used.  Tables are created on startup if they do not exist.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""

    pass


def normalize_url(database_url: str) -> str:
    """Rewrite plain PostgreSQL URLs to the asyncpg driver.

    PaaS providers hand out ``postgres://`` or ``postgresql://`` URLs,
    which SQLAlchemy maps to a sync driver.
    """
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def get_engine(database_url: str, echo: bool = False, **kwargs: Any) -> AsyncEngine:
    """Create an async engine for *database_url*.

    Args:
        database_url: Database URL (``postgresql+asyncpg://`` or
            ``sqlite+aiosqlite://``).
        echo: Log emitted SQL.
        **kwargs: Passed through to ``create_async_engine``.

    Returns:
        AsyncEngine instance.
    """
    return create_async_engine(
        normalize_url(database_url),
        pool_pre_ping=True,
        echo=echo,
        **kwargs,
    )


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to *engine*."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables if they do not exist.

    Idempotent: safe to call on every startup.
    """
    from caseprep.db.models import FeedbackModel  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured", extra={})
