"""Database session management."""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine
)

from facematch.core.config import settings
from facematch.core.exceptions import StoreUnavailableError
from facematch.core.logging import get_logger
from facematch.infrastructure.database.models import Base

logger = get_logger(__name__)


def create_session_factory(
    url: Optional[str] = None,
    echo: Optional[bool] = None,
) -> async_sessionmaker[AsyncSession]:
    """Create an async engine and a session factory bound to it.

    Args:
        url: Async SQLAlchemy database URL (defaults to ``settings.DATABASE_URL``)
        echo: Log emitted SQL (defaults to ``settings.DATABASE_ECHO``)

    Returns:
        Session factory; the engine is reachable through ``factory.kw["bind"]``
    """
    engine = create_async_engine(
        url or settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO if echo is None else echo,
    )
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


def engine_of(session_factory: async_sessionmaker[AsyncSession]) -> AsyncEngine:
    """Engine a session factory is bound to."""
    return session_factory.kw["bind"]


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet.

    Raises:
        StoreUnavailableError: If the database cannot be reached
    """
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except SQLAlchemyError as e:
        logger.error("Failed to create database tables", error=str(e), exc_info=True)
        raise StoreUnavailableError("Record store unavailable", {"error": str(e)}) from e
    logger.info("Database tables ready", url=engine.url.render_as_string(hide_password=True))


@asynccontextmanager
async def get_db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session.

    Yields:
        AsyncSession: Database session

    Example:
        ```python
        async with get_db_session(factory) as session:
            await session.execute(query)
            await session.commit()
        ```
    """
    session = session_factory()
    logger.debug("Creating new database session")
    try:
        yield session
    except SQLAlchemyError as e:
        logger.error(
            "Database session error",
            error=str(e),
            exc_info=True
        )
        await session.rollback()
        raise
    except Exception:
        await session.rollback()
        raise
    finally:
        logger.debug("Closing database session")
        await session.close()
