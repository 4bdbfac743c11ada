"""
Processed Webhook Event Repository

Idempotency ledger for Stripe webhook deliveries.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.db.models.processed_webhook_event import ProcessedWebhookEventModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


class ProcessedEventRepository(BaseRepository[ProcessedWebhookEventModel]):
    """Runs inside the transaction that applies the event."""

    def __init__(self, session: AsyncSession):
        super().__init__(ProcessedWebhookEventModel, session)

    async def is_processed(self, event_id: str) -> bool:
        return await self.get_by_id(event_id) is not None

    async def mark_processed(self, event_id: str, event_type: str) -> bool:
        """
        Record an event as applied.

        Returns:
            False if the event was already recorded. A concurrent insert
            of the same ID fails the flush with IntegrityError.
        """
        if await self.is_processed(event_id):
            return False

        await self.add(ProcessedWebhookEventModel(event_id=event_id, event_type=event_type))
        return True
