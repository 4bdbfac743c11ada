"""
User Database Model

Minimal identity record the subscription core resolves users against.
Credentials and profile data live with the identity service.
"""

from typing import Optional

from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class UserModel(UUIDMixin, TimestampMixin, table=True):
    """Maps to the 'users' table."""

    __tablename__ = "users"

    email: str = Field(max_length=255, unique=True, index=True, nullable=False)
    display_name: Optional[str] = Field(default=None, max_length=255)
