from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from budgetflow.config import settings
import structlog

logger = structlog.get_logger()

# SQLSTATE raised when SELECT ... FOR UPDATE gives up waiting (lock_timeout).
LOCK_NOT_AVAILABLE = "55P03"
DEADLOCK_DETECTED = "40P01"
# Lock contention the client can resolve by retrying the whole request.
RETRYABLE_SQLSTATES = frozenset({LOCK_NOT_AVAILABLE, DEADLOCK_DETECTED})


class Base(DeclarativeBase):
    pass


def _get_db_url() -> str:
    """Strip sslmode from URL since asyncpg uses connect_args for SSL."""
    url = settings.DATABASE_URL
    url = url.replace("?sslmode=require", "").replace("&sslmode=require", "")
    return url


engine: AsyncEngine = create_async_engine(
    _get_db_url(),
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_timeout=30,
    pool_recycle=settings.DB_POOL_RECYCLE,
    pool_pre_ping=True,
    echo=settings.DEBUG,
    connect_args={"ssl": "require"} if settings.DB_SSL else {},
)

AsyncSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


async def set_lock_timeout(session: AsyncSession, timeout_ms: int) -> None:
    """Bound how long this transaction waits on a budget-code row lock."""
    # 'true' scopes the setting to the current transaction (SET LOCAL).
    await session.execute(
        text("SELECT set_config('lock_timeout', :timeout, true)"),
        {"timeout": f"{int(timeout_ms)}ms"},
    )


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """One unit of work: commit on success, roll back on any error.

    A workflow transition and the ledger mutation it triggers share this
    transaction, so they land together or not at all.
    """
    async with AsyncSessionLocal() as session:
        try:
            if settings.DB_LOCK_TIMEOUT_MS:
                await set_lock_timeout(session, settings.DB_LOCK_TIMEOUT_MS)
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db():
    async with session_scope() as session:
        yield session


async def init_db():
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        logger.info("db_connected", lock_timeout_ms=settings.DB_LOCK_TIMEOUT_MS)


async def close_db():
    await engine.dispose()
    logger.info("db_disconnected")
