"""
Base Repository for Prompt Generator SaaS

Generic async repository with the shared primary-key operations.
Repositories receive the session of the unit of work they run in,
so several repositories can share one transaction.
"""

from typing import Any, TypeVar, Generic, Optional, Type
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel


# Type variable for generic repository
ModelType = TypeVar("ModelType", bound=SQLModel)


def as_uuid(value: "str | UUID") -> UUID:
    """
    Coerce a string identifier to UUID.

    Raises:
        ValueError: if the string is not a valid UUID
    """
    return value if isinstance(value, UUID) else UUID(str(value))


class BaseRepository(Generic[ModelType]):
    """
    Generic async repository.

    Args:
        model: The SQLModel class to operate on
        session: Async database session
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self._model = model
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Get the current session."""
        return self._session

    async def get_by_id(self, id: Any) -> Optional[ModelType]:
        """
        Get a single record by its primary key.

        Args:
            id: Primary key value

        Returns:
            Model instance or None if not found
        """
        return await self._session.get(self._model, id)

    async def add(self, db_obj: ModelType) -> ModelType:
        """
        Persist a new record and load server-side defaults.

        Args:
            db_obj: Transient model instance

        Returns:
            The flushed instance
        """
        self._session.add(db_obj)
        await self._session.flush()
        await self._session.refresh(db_obj)
        return db_obj
