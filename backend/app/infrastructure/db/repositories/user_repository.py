"""
User Repository

Resolves user references for the subscription core.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import User
from app.infrastructure.db.models.user import UserModel
from app.infrastructure.db.repositories.base_repository import BaseRepository, as_uuid
from app.infrastructure.exceptions import UserNotFoundError


class UserRepository(BaseRepository[UserModel]):
    """
    Repository for user lookups.

    - resolve_user: Find a user or fail with UserNotFoundError
    - lock_user: Same, holding a row lock for the rest of the transaction
    """

    def __init__(self, session: AsyncSession):
        super().__init__(UserModel, session)

    async def _find(self, user_id: "str | UUID", for_update: bool) -> UserModel:
        try:
            user_uuid = as_uuid(user_id)
        except ValueError:
            raise UserNotFoundError(user_id)

        stmt = select(UserModel).where(UserModel.id == user_uuid)
        if for_update:
            stmt = stmt.with_for_update()

        result = await self.session.execute(stmt)
        user = result.scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def resolve_user(self, user_id: "str | UUID") -> UserModel:
        """
        Get a user by ID.

        Raises:
            UserNotFoundError: if the ID is malformed or unknown
        """
        return await self._find(user_id, for_update=False)

    async def lock_user(self, user_id: "str | UUID") -> UserModel:
        """
        Get a user by ID and lock its row.

        Subscription writes for one user serialize on this lock.
        """
        return await self._find(user_id, for_update=True)

    async def get_by_email(self, email: str) -> Optional[UserModel]:
        stmt = select(UserModel).where(UserModel.email == email)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_user(self, email: str, display_name: Optional[str] = None) -> UserModel:
        """Create a new user."""
        return await self.add(UserModel(email=email, display_name=display_name))

    @staticmethod
    def to_domain(model: UserModel) -> User:
        """Convert database model to domain entity."""
        return User(
            id=str(model.id),
            email=model.email,
            display_name=model.display_name,
        )
