"""
Subscription Repository

Data access layer for subscription persistence.
Follows Repository pattern for Clean Architecture.
"""

import logging
from datetime import date
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import (
    PlanId,
    Subscription,
    SubscriptionStatus,
)
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


# Statuses the expiry sweep moves to EXPIRED once end_date has passed
EXPIRABLE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.CANCELED.value,
)


class SubscriptionRepository(BaseRepository[SubscriptionModel]):
    """
    Repository for subscription data access.

    Runs inside the caller's transaction; writes are flushed, never
    committed here.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionModel, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_current_for_user(
        self,
        user_id: UUID,
        for_update: bool = False,
    ) -> Optional[SubscriptionModel]:
        """
        Get the current subscription row of a user.

        Args:
            user_id: Internal user ID
            for_update: Lock the row until the transaction ends

        Returns:
            Subscription row or None
        """
        stmt = select(SubscriptionModel).where(
            SubscriptionModel.user_id == user_id,
            SubscriptionModel.is_current == True,  # noqa: E712
        )
        if for_update:
            stmt = stmt.with_for_update()

        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: UUID) -> List[SubscriptionModel]:
        """All plan periods of a user, oldest first."""
        stmt = (
            select(SubscriptionModel)
            .where(SubscriptionModel.user_id == user_id)
            .order_by(SubscriptionModel.created_at, SubscriptionModel.start_date)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_external_subscription_ref(
        self,
        external_subscription_ref: str,
        for_update: bool = False,
    ) -> Optional[SubscriptionModel]:
        """
        Get the row bound to a Stripe subscription ID.

        A plan change on the same Stripe subscription leaves several rows
        with one ref; the current row wins, then the newest.
        """
        stmt = (
            select(SubscriptionModel)
            .where(SubscriptionModel.external_subscription_ref == external_subscription_ref)
            .order_by(
                SubscriptionModel.is_current.desc(),
                SubscriptionModel.created_at.desc(),
            )
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)

        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest_by_customer_ref(
        self,
        external_customer_ref: str,
    ) -> Optional[SubscriptionModel]:
        """Get the newest row bound to a Stripe customer ID."""
        stmt = (
            select(SubscriptionModel)
            .where(SubscriptionModel.external_customer_ref == external_customer_ref)
            .order_by(
                SubscriptionModel.is_current.desc(),
                SubscriptionModel.created_at.desc(),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_expirable_ids(self, today: date, limit: int) -> List[UUID]:
        """
        Get a batch of current rows whose end date has passed.

        Rows locked by another writer are skipped, not waited on.
        """
        stmt = (
            select(SubscriptionModel.id)
            .where(
                SubscriptionModel.is_current == True,  # noqa: E712
                SubscriptionModel.status.in_(EXPIRABLE_STATUSES),
                SubscriptionModel.end_date < today,
            )
            .order_by(SubscriptionModel.end_date)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def save(self, model: SubscriptionModel) -> SubscriptionModel:
        """
        Flush changes to an existing row.

        Args:
            model: Attached subscription row

        Returns:
            The refreshed row
        """
        model.updated_at = utcnow()
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        return model

    async def expire(self, ids: List[UUID], today: date) -> int:
        """
        Mark rows EXPIRED.

        The expiry predicate is re-checked so a row reactivated after it
        was selected is left alone.

        Returns:
            Number of rows transitioned
        """
        if not ids:
            return 0

        stmt = (
            update(SubscriptionModel)
            .where(
                SubscriptionModel.id.in_(ids),
                SubscriptionModel.is_current == True,  # noqa: E712
                SubscriptionModel.status.in_(EXPIRABLE_STATUSES),
                SubscriptionModel.end_date < today,
            )
            .values(status=SubscriptionStatus.EXPIRED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    @staticmethod
    def to_domain(model: SubscriptionModel) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=str(model.id),
            user_id=str(model.user_id),
            plan_id=PlanId(model.plan_id),
            status=SubscriptionStatus(model.status),
            external_subscription_ref=model.external_subscription_ref,
            external_customer_ref=model.external_customer_ref,
            external_price_ref=model.external_price_ref,
            start_date=model.start_date,
            end_date=model.end_date,
            is_current=model.is_current,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )
