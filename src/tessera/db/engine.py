"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode — create_async_engine for connection pooling,
AsyncSession for per-request database access, dependency injection via FastAPI.

PostgreSQL (asyncpg) in production; SQLite (aiosqlite) works for local
runs and the test suite because the models only use portable types.
"""

from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tessera.config import settings
from tessera.errors import UnavailableError


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine with per-backend pool and timeout options.

    Every store call is bounded: asyncpg gets a command timeout, SQLite
    gets a busy timeout so concurrent writers wait instead of failing.
    """
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": settings.store_timeout_seconds},
        )
    # Connection pool: min 5, max 20 connections.
    return create_async_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=15,
        connect_args={
            "timeout": settings.store_timeout_seconds,
            "command_timeout": settings.store_timeout_seconds,
        },
    )


engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory — each request gets its own session.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncSession:
    """FastAPI dependency — yields a session per request, auto-closes."""
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def store_guard():
    """Translate connection-level store failures into UnavailableError.

    Constraint violations and programming errors pass through untouched;
    only failures a caller could sensibly retry are re-typed.
    """
    try:
        yield
    except (OperationalError, InterfaceError, TimeoutError) as exc:
        raise UnavailableError(f"Store unavailable: {exc}") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise UnavailableError(f"Store connection lost: {exc}") from exc
        raise
