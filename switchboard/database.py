"""Async SQLAlchemy plumbing for the telemetry store.

The only persistent table in this library is the telemetry event log used
by SqlTelemetrySink. The host application owns the engine; this module just
builds it from settings and hands out a session factory.

There is no module-level engine; callers build and dispose their own.
SQLite URLs get no pool sizing since aiosqlite ignores it.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from switchboard.config import Settings

log = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Shared metadata for switchboard tables."""

    type_annotation_map: dict[Any, Any] = {}


def build_engine(settings: Settings, *, for_test: bool = False) -> AsyncEngine:
    """Engine for settings.database_url. for_test swaps in NullPool."""
    kwargs: dict[str, Any] = {"echo": settings.db_echo_sql}
    if for_test:
        kwargs["poolclass"] = NullPool
    elif not settings.database_url.startswith("sqlite"):
        kwargs.update(
            {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_pre_ping": True,
                "pool_recycle": 300,
            }
        )
    engine = create_async_engine(settings.database_url, **kwargs)
    log.info("database.engine_built", url=settings.database_url.split("@")[-1])
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=True,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables registered on Base (dev and tests; use migrations in prod)."""
    # Register ORM models on the metadata before create_all
    import switchboard.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("database.tables_created")
