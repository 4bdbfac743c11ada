"""
Subscription Database Model

SQLModel table for subscription data persistence.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from sqlalchemy import Index, text
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class SubscriptionModel(UUIDMixin, TimestampMixin, table=True):
    """
    Subscription table, one row per plan period.

    Maps to the 'subscriptions' table. Superseded periods keep
    ``is_current = False``; at most one current row exists per user.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_user_current",
            "user_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current"),
        ),
        Index("ix_subscriptions_status_end_date", "status", "end_date"),
    )

    user_id: UUID = Field(foreign_key="users.id", index=True, nullable=False)

    # Subscription details
    plan_id: str = Field(default="free", max_length=20)
    status: str = Field(default="ACTIVE", max_length=20)
    is_current: bool = Field(default=True)

    # Stripe IDs
    external_subscription_ref: Optional[str] = Field(default=None, max_length=255, index=True)
    external_customer_ref: Optional[str] = Field(default=None, max_length=255, index=True)
    external_price_ref: Optional[str] = Field(default=None, max_length=255)

    # Plan period
    start_date: date = Field(nullable=False)
    end_date: Optional[date] = Field(default=None)
