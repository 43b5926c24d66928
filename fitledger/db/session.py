"""
Database Session Management - Async SQLAlchemy session factories.

Ledger writes (webhook settlement, renewals, bonus movements) go to the
primary; read-only endpoints may use a replica. Primary connections carry a
`lock_timeout` so a stuck row lock fails the request instead of queueing it.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fitledger.config import settings
from fitledger.observability.tracing import instrument_sqlalchemy

WRITE = "write"
READ = "read"

_engines: dict[str, AsyncEngine] = {}
_factories: dict[str, async_sessionmaker[AsyncSession]] = {}


def engine_options(role: str) -> dict[str, Any]:
    options: dict[str, Any] = {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_recycle": settings.database_pool_recycle,
        "pool_pre_ping": True,
        "echo": settings.log_level == "DEBUG",
    }
    if role == WRITE:
        options["connect_args"] = {
            "server_settings": {"lock_timeout": str(settings.database_lock_timeout_ms)}
        }
    return options


def get_engine(role: str = WRITE) -> AsyncEngine:
    """Get or create the engine for the primary (`write`) or replica (`read`)."""
    if role not in _engines:
        url = settings.database_url if role == WRITE else settings.read_database_url
        engine = create_async_engine(url, **engine_options(role))
        instrument_sqlalchemy(engine)
        _engines[role] = engine
    return _engines[role]


def get_session_factory(role: str = WRITE) -> async_sessionmaker[AsyncSession]:
    if role not in _factories:
        # Settled rows are read back after commit to build responses
        _factories[role] = async_sessionmaker(
            get_engine(role), class_=AsyncSession, expire_on_commit=False
        )
    return _factories[role]


@asynccontextmanager
async def get_write_session() -> AsyncIterator[AsyncSession]:
    """
    Primary session for scripts and background jobs.

    Usage:
        async with get_write_session() as session:
            mismatches = await BonusAccountService(session).find_ledger_mismatches()
    """
    async with get_session_factory(WRITE)() as session:
        yield session


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for the primary.

    Uncommitted work is rolled back when the handler raises, so a failed
    settlement never leaves a half-applied transaction on the connection.
    """
    async with get_session_factory(WRITE)() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for the replica (falls back to the primary URL)."""
    async with get_session_factory(READ)() as session:
        yield session


async def close_engines() -> None:
    """Dispose every engine (graceful shutdown)."""
    for role, engine in list(_engines.items()):
        await engine.dispose()
        del _engines[role]
        _factories.pop(role, None)
