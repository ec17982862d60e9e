"""PostgreSQL access for wastewarden.

``wastewarden.db.models`` maps donations, requests, deliveries, users and
rate-limit windows; ``wastewarden.db.migrations`` holds their Alembic history.

This module owns the single async engine of a process. Services never touch
it: the worker hands each sweep a session from :func:`get_session_factory`
and wraps it in an ``EntityStore``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from wastewarden.core.config import DatabaseSettings, Settings

ASYNC_DRIVER = "postgresql+psycopg"

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def async_database_url(url: str) -> str:
    """Point a bare ``postgres://`` or ``postgresql://`` URL at psycopg.

    URLs that already name a driver are returned unchanged.
    """
    scheme, separator, rest = url.partition("://")
    if separator and scheme in ("postgres", "postgresql"):
        return f"{ASYNC_DRIVER}://{rest}"
    return url


def build_engine(database: DatabaseSettings) -> AsyncEngine:
    """Pooled async engine for the configured database."""
    return create_async_engine(
        async_database_url(str(database.url)),
        pool_size=database.pool_size,
        max_overflow=database.max_overflow,
        pool_timeout=database.pool_timeout,
        echo=database.echo,
    )


def get_session_factory(settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the whole process.

    The engine is built on the first call, from ``settings`` or from the
    cached environment settings. Later calls ignore ``settings``.
    Sessions keep their attributes after commit so that services can
    return the entities they just wrote.
    """
    global _engine, _session_factory

    if _session_factory is None:
        if settings is None:
            from wastewarden.core.settings import get_settings

            settings = get_settings()
        _engine = build_engine(settings.database)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """One session, rolled back if the block raises and always closed.

    Committing is left to the caller::

        async with get_async_session() as session:
            store = EntityStore(session)
            await RequestLifecycleService(store, dispatcher).sweep()
    """
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def close_engine() -> None:
    """Dispose of the pooled connections. Safe to call when nothing was opened."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
