"""
Database connection and session management.
"""
import asyncio
from typing import Any, AsyncGenerator, Dict
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.exc import OperationalError, DisconnectionError

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

TRANSIENT_ERROR_KEYWORDS = (
    "connection", "timeout", "network", "closed", "lost",
    "server closed", "connection reset",
)


def _engine_options(database_url: str) -> Dict[str, Any]:
    """Build engine options for the configured backend."""
    if database_url.startswith("sqlite"):
        # SQLite has no server-side pool or connection settings
        return {"echo": False}

    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": 3600,
        "echo": False,
        "connect_args": {
            "command_timeout": 30,
            "server_settings": {
                "application_name": "autoani_experiments",
                "tcp_keepalives_idle": "600",
                "tcp_keepalives_interval": "30",
                "tcp_keepalives_count": "3",
            },
        },
    }


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Base class for database models
Base = declarative_base()


def _is_transient(error: Exception) -> bool:
    error_str = str(error).lower()
    return any(keyword in error_str for keyword in TRANSIENT_ERROR_KEYWORDS)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting a database session.

    Commits on success, rolls back on any error.
    """
    async with get_db_session() as session:
        yield session


@asynccontextmanager
async def get_db_session():
    """
    Context manager for getting a database session.

    Used by request handlers (through `get_db`) and by the background
    auto-conclusion sweep. Transient connection errors are logged as such
    so callers can decide to retry the whole unit of work.
    """
    session = AsyncSessionLocal()
    try:
        yield session
        await session.commit()
    except (OperationalError, DisconnectionError) as e:
        await session.rollback()
        if _is_transient(e):
            logger.warning(f"Transient database error: {e}")
        else:
            logger.error(f"Database error: {e}")
        raise
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def run_with_retry(operation, max_retries: int = 3, retry_delay: float = 1.0):
    """
    Run `operation(session)` in a fresh session, retrying transient errors.

    Each attempt gets its own session so a failed unit of work never leaks
    state into the next attempt.
    """
    for attempt in range(max_retries):
        try:
            async with get_db_session() as session:
                return await operation(session)
        except (OperationalError, DisconnectionError) as e:
            if _is_transient(e) and attempt < max_retries - 1:
                logger.warning(
                    f"Database connection error (attempt {attempt + 1}/{max_retries}): {e}. "
                    f"Retrying in {retry_delay * (attempt + 1)}s..."
                )
                await asyncio.sleep(retry_delay * (attempt + 1))
                continue
            logger.error(f"Failed database operation after {attempt + 1} attempt(s): {e}")
            raise
