"""
Processed Webhook Event Model

Stripe event IDs that were already applied, so redeliveries are skipped.
"""

from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.infrastructure.db.models.base import utcnow


class ProcessedWebhookEventModel(SQLModel, table=True):
    """Maps to the 'processed_webhook_events' table."""

    __tablename__ = "processed_webhook_events"

    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(max_length=100, nullable=False)
    processed_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        index=True,
        sa_type=DateTime(timezone=True),
    )
