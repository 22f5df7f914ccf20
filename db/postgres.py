"""Async PostgreSQL pool for the resolution store adapters (SD-009).

The engine reads tasks, entities, messages, events and facts with raw SQL and
writes only relations and enrichment results; the schema belongs to the main
backend. Every connection is tagged with ``application_name`` and a
``statement_timeout`` so a slow pgvector scan is cancelled by the server
instead of stalling a resolution.

Transient failures (dropped connections, pool timeouts) are retried with
exponential backoff through ``with_retry``. A cancelled statement is not
transient and is never retried.
"""

import asyncio
import random
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from config import get_settings
from models.errors import ErrorType
from utils.logging import get_logger

logger = get_logger(__name__)

APPLICATION_NAME = "resolution-engine"
MAX_BACKOFF_SECONDS = 8.0

engine: AsyncEngine | None = None
async_session_maker: async_sessionmaker[AsyncSession] | None = None

T = TypeVar("T")


def _calculate_backoff(
    attempt: int, base_delay: float = 1.0, max_delay: float = MAX_BACKOFF_SECONDS
) -> float:
    return min(base_delay * (2**attempt), max_delay) + random.uniform(0, 1)


def _is_statement_timeout(exc: BaseException) -> bool:
    # asyncpg QueryCanceledError, SQLSTATE 57014
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) == "57014" or "statement timeout" in str(exc)


def _is_retryable_error(exc: Exception) -> bool:
    """True for failures that a fresh connection can fix."""
    if _is_statement_timeout(exc):
        return False
    if isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError):
        # Other driver errors (constraint, syntax) only retry if the link broke
        return bool(exc.connection_invalidated)
    return isinstance(exc, (ConnectionError, TimeoutError, OSError))


async def with_retry(
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 1.0,
    operation_name: str = "database operation",
    **kwargs: Any,
) -> T:
    """Await ``operation(*args, **kwargs)``, retrying transient failures.

    Raises the last error once ``max_retries`` retries are used up, or the
    first non-transient error immediately.
    """
    attempt = 0
    while True:
        try:
            return await operation(*args, **kwargs)
        except Exception as e:
            if not _is_retryable_error(e) or attempt >= max_retries:
                logger.error(
                    f"{operation_name} failed after {attempt + 1} attempt(s): "
                    f"{type(e).__name__}: {e}",
                    extra={"error_type": ErrorType.DATABASE_ERROR},
                )
                raise
            delay = _calculate_backoff(attempt, base_delay)
            logger.warning(
                f"{operation_name} attempt {attempt + 1}/{max_retries + 1} failed "
                f"({type(e).__name__}); retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1


def _connect_args(statement_timeout_ms: int) -> dict:
    return {
        "server_settings": {
            "application_name": APPLICATION_NAME,
            "statement_timeout": str(statement_timeout_ms),
        }
    }


async def init_postgres():
    """Create the pool and check that the database answers."""
    global engine, async_session_maker
    settings = get_settings()

    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not configured")

    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=settings.postgres_pool_min_size,
        max_overflow=settings.postgres_pool_max_size - settings.postgres_pool_min_size,
        pool_recycle=settings.postgres_pool_recycle,
        connect_args=_connect_args(settings.postgres_statement_timeout_ms),
    )
    async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def ping():
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    await with_retry(
        ping,
        max_retries=settings.postgres_max_retries,
        base_delay=settings.postgres_retry_delay,
        operation_name="PostgreSQL connectivity check",
    )
    logger.info(
        "PostgreSQL pool ready",
        extra={
            "pool_size": settings.postgres_pool_min_size,
            "max_size": settings.postgres_pool_max_size,
            "statement_timeout_ms": settings.postgres_statement_timeout_ms,
        },
    )


async def close_postgres():
    global engine, async_session_maker
    if engine is not None:
        await engine.dispose()
        logger.info("PostgreSQL pool closed")
    engine = None
    async_session_maker = None


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Unit of work: commit on success, roll back on any error."""
    if async_session_maker is None:
        raise RuntimeError("PostgreSQL is not initialized; call init_postgres() first")
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
