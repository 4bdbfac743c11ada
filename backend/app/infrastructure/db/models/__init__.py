"""
SQLModel ORM Models for Prompt Generator SaaS

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import (
    TimestampMixin,
    UUIDMixin,
    utcnow,
)
from app.infrastructure.db.models.user import UserModel
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.models.processed_webhook_event import ProcessedWebhookEventModel


__all__ = [
    # Base
    "TimestampMixin",
    "UUIDMixin",
    "utcnow",
    # Tables
    "UserModel",
    "SubscriptionModel",
    "ProcessedWebhookEventModel",
]
