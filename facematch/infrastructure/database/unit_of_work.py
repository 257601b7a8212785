"""Unit of work pattern implementation."""
from contextlib import asynccontextmanager
from types import TracebackType
from typing import AsyncGenerator, Optional, Type

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from facematch.core.exceptions import SaveFailedError, StoreUnavailableError
from facematch.core.logging import get_logger
from facematch.infrastructure.database.repositories import (
    ClusterRepository,
    EmbeddingRepository,
    PersonRepository,
)
from facematch.infrastructure.database.session import get_db_session

logger = get_logger(__name__)


class UnitOfWork:
    """Unit of work for managing database transactions and repositories.

    Unlike a plain session scope, leaving the context does not commit:
    callers decide when pending changes are saved (the search persists one
    batch at a time).
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize unit of work.

        Args:
            session: Database session
        """
        self._session = session
        self.people = PersonRepository(session)
        self.embeddings = EmbeddingRepository(session)
        self.clusters = ClusterRepository(session)

    @property
    def session(self) -> AsyncSession:
        """Underlying session."""
        return self._session

    async def __aenter__(self) -> "UnitOfWork":
        """Enter async context manager.

        Returns:
            UnitOfWork: Self
        """
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        """Exit async context manager, discarding unsaved changes on error.

        Args:
            exc_type: Exception type if an error occurred
            exc_val: Exception value if an error occurred
            exc_tb: Exception traceback if an error occurred
        """
        if exc_type is not None:
            await self.rollback()

    async def save(self) -> None:
        """Commit pending changes.

        Raises:
            SaveFailedError: If the commit fails; pending changes are discarded
        """
        try:
            await self._session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to save changes", error=str(e), exc_info=True)
            await self.rollback()
            raise SaveFailedError("Failed to save changes", {"error": str(e)}) from e

    async def rollback(self) -> None:
        """Rollback the current transaction."""
        await self._session.rollback()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator["UnitOfWork", None]:
        """Create a new transaction scope.

        Example:
            ```python
            async with uow.transaction():
                # saved if no exception is raised,
                # rolled back otherwise
                ...
            ```
        """
        try:
            yield self
            await self.save()
        except Exception:
            await self.rollback()
            raise


@asynccontextmanager
async def open_unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[UnitOfWork, None]:
    """Open a session and wrap it in a unit of work.

    Database errors raised inside the scope surface as ``StoreUnavailableError``;
    domain errors pass through unchanged.
    """
    async with get_db_session(session_factory) as session:
        try:
            async with UnitOfWork(session) as uow:
                yield uow
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Record store unavailable", {"error": str(e)}) from e
