"""
Subscription Lifecycle Service

Owns the subscription state machine: free-plan enrollment, paid plan
activation, cancellation, Stripe-driven status changes and expiry.

Each operation is one unit of work. Writes for one user serialize on the
user's row lock (activate/cancel/enroll) or on the subscription row lock
(status updates), and the partial unique index on current rows rejects
any second "current" row that slips through; such conflicts are retried.
"""

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import AsyncContextManager, Awaitable, Callable, List, Optional, Tuple, TypeVar
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import Settings, get_settings
from app.domain.plans import (
    get_free_plan,
    get_plan,
    list_plans,
    parse_plan_id,
    resolve_plan_for_external_price_ref,
    tier_rank,
)
from app.domain.subscription import (
    Plan,
    PlanId,
    Subscription,
    SubscriptionStatus,
    User,
)
from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.repositories.base_repository import as_uuid
from app.infrastructure.db.repositories.processed_event_repository import ProcessedEventRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.user_repository import UserRepository
from app.infrastructure.exceptions import (
    AlreadyCanceledError,
    ConcurrentUpdateError,
    DuplicateEventError,
    NoActiveSubscriptionError,
    SubscriptionNotFoundError,
    SupersededSubscriptionError,
    UnknownPlanReferenceError,
    UserNotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class PromptUsageCounter(ABC):
    """Read access to prompt-creation history, used for quota checks."""

    @abstractmethod
    async def count_prompts_since(self, user_id: str, since: date) -> int:
        """Number of prompts the user created on or after ``since``."""
        pass


class SubscriptionService:
    """
    Subscription lifecycle manager.

    Args:
        session_scope: Factory for transactional sessions
            (defaults to get_session_context)
        settings: Application settings
        usage_counter: Optional prompt history reader; without one the
            prompt quota is advisory
        clock: Returns "today" (UTC)
    """

    def __init__(
        self,
        session_scope: Optional[SessionScope] = None,
        settings: Optional[Settings] = None,
        usage_counter: Optional[PromptUsageCounter] = None,
        clock: Callable[[], date] = utc_today,
    ):
        self._session_scope = session_scope or get_session_context
        self._settings = settings or get_settings()
        self._usage_counter = usage_counter
        self._clock = clock

    def today(self) -> date:
        return self._clock()

    async def _in_transaction(
        self,
        operation: str,
        work: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """
        Run ``work`` in its own transaction, retrying write conflicts.

        Raises:
            ConcurrentUpdateError: conflicts persisted past MAX_RETRIES
        """
        attempts = self._settings.max_retries
        last_error: Optional[IntegrityError] = None

        for attempt in range(1, attempts + 1):
            try:
                async with self._session_scope() as session:
                    return await work(session)
            except IntegrityError as e:
                last_error = e
                logger.warning(
                    f"Write conflict during {operation} "
                    f"(attempt {attempt}/{attempts}): {e.orig}"
                )

        raise ConcurrentUpdateError(attempts=attempts, original_error=last_error)

    # =========================================================================
    # Registration
    # =========================================================================

    async def register_user(
        self,
        email: str,
        display_name: Optional[str] = None,
    ) -> Tuple[User, Subscription]:
        """
        Create a user together with its free subscription.

        Returns:
            Tuple of (User, Subscription)
        """
        async def work(session: AsyncSession) -> Tuple[User, Subscription]:
            users = UserRepository(session)
            subscriptions = SubscriptionRepository(session)

            if await users.get_by_email(email):
                raise ValidationError(
                    f"Email already registered: {email}",
                    details={"email": email},
                )

            user = await users.create_user(email, display_name)
            model = await subscriptions.add(self._new_free_row(user.id))

            logger.info(f"Registered user {user.id} on the free plan")
            return UserRepository.to_domain(user), SubscriptionRepository.to_domain(model)

        return await self._in_transaction("register_user", work)

    async def resolve_user(self, user_id: "str | UUID") -> User:
        """
        Resolve a user reference.

        Raises:
            UserNotFoundError: unknown or malformed ID
        """
        async with self._session_scope() as session:
            user = await UserRepository(session).resolve_user(user_id)
            return UserRepository.to_domain(user)

    # =========================================================================
    # Lifecycle Commands
    # =========================================================================

    async def create_free_subscription(self, user_id: "str | UUID") -> Subscription:
        """
        Enroll a user on the free plan.

        Idempotent: an existing current subscription is returned unchanged.

        Raises:
            UserNotFoundError: unknown user
        """
        async def work(session: AsyncSession) -> Subscription:
            users = UserRepository(session)
            subscriptions = SubscriptionRepository(session)

            user = await users.lock_user(user_id)
            existing = await subscriptions.get_current_for_user(user.id)
            if existing:
                logger.info(f"User {user.id} already has a subscription: {existing.plan_id}")
                return SubscriptionRepository.to_domain(existing)

            model = await subscriptions.add(self._new_free_row(user.id))
            logger.info(f"Created free subscription for user: {user.id}")
            return SubscriptionRepository.to_domain(model)

        return await self._in_transaction("create_free_subscription", work)

    async def activate(
        self,
        user_id: "str | UUID",
        external_subscription_ref: Optional[str],
        external_customer_ref: Optional[str],
        external_price_ref: Optional[str],
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> Subscription:
        """
        Activate a paid plan for a user.

        The current plan period is closed (CANCELED, ended today, no longer
        current) and a new ACTIVE period is opened with the Stripe refs.
        Re-delivering the same activation returns the current period
        unchanged.

        Raises:
            UserNotFoundError: unknown user
            UnknownPlanReferenceError: unknown price while STRICT_PRICE_MAPPING
            DuplicateEventError: ``event_id`` was already applied
        """
        plan_id = resolve_plan_for_external_price_ref(
            external_price_ref, settings=self._settings
        )

        async def work(session: AsyncSession) -> Subscription:
            users = UserRepository(session)
            subscriptions = SubscriptionRepository(session)
            await self._record_event(session, event_id, event_type)

            user = await users.lock_user(user_id)
            current = await subscriptions.get_current_for_user(user.id)

            if (
                current is not None
                and external_subscription_ref
                and current.external_subscription_ref == external_subscription_ref
                and current.plan_id == plan_id.value
            ):
                logger.info(
                    f"Subscription {external_subscription_ref} already active "
                    f"for user {user.id}, nothing to do"
                )
                return SubscriptionRepository.to_domain(current)

            model = await self._open_period(
                subscriptions,
                user.id,
                current,
                plan_id,
                external_subscription_ref,
                external_customer_ref,
                external_price_ref,
            )
            logger.info(
                f"Activated {plan_id.value} subscription for user: {user.id} "
                f"with Stripe ID: {external_subscription_ref}"
            )
            return SubscriptionRepository.to_domain(model)

        return await self._in_transaction("activate", work)

    async def cancel(self, user_id: "str | UUID") -> Subscription:
        """
        Cancel a user's current subscription.

        Plan entitlements stay until the expiry sweep runs past end_date.

        Raises:
            UserNotFoundError: unknown user
            NoActiveSubscriptionError: user has no subscription
            AlreadyCanceledError: subscription already canceled
        """
        async def work(session: AsyncSession) -> Subscription:
            users = UserRepository(session)
            subscriptions = SubscriptionRepository(session)

            user = await users.lock_user(user_id)
            current = await subscriptions.get_current_for_user(user.id)
            if current is None:
                raise NoActiveSubscriptionError(user.id)
            if current.status == SubscriptionStatus.CANCELED.value:
                raise AlreadyCanceledError(user.id)

            current.status = SubscriptionStatus.CANCELED.value
            current.end_date = self.today()
            await subscriptions.save(current)

            logger.info(f"Canceled subscription for user: {user.id} (plan: {current.plan_id})")
            return SubscriptionRepository.to_domain(current)

        return await self._in_transaction("cancel", work)

    async def update_status(
        self,
        external_subscription_ref: str,
        new_status: "str | SubscriptionStatus",
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> Subscription:
        """
        Apply a status reported by Stripe.

        CANCELED and UNPAID end the period today; ACTIVE clears the end
        date. Re-applying the status a row already holds changes nothing.
        A closed plan period only accepts CANCELED, which it already holds.

        Raises:
            ValidationError: status is not a local status
            SubscriptionNotFoundError: no row carries the Stripe ID
            SupersededSubscriptionError: the Stripe ID only matches a
                closed plan period
            DuplicateEventError: ``event_id`` was already applied
        """
        status = self._parse_status(new_status)

        async def work(session: AsyncSession) -> Subscription:
            subscriptions = SubscriptionRepository(session)
            await self._record_event(session, event_id, event_type)

            model = await self._lock_by_ref(subscriptions, external_subscription_ref, status)
            if not model.is_current or model.status == status.value:
                return SubscriptionRepository.to_domain(model)

            self._apply_status(model, status)
            await subscriptions.save(model)

            logger.info(
                f"Updated subscription status to {status.value} for user: "
                f"{model.user_id} (Stripe ID: {external_subscription_ref})"
            )
            return SubscriptionRepository.to_domain(model)

        return await self._in_transaction("update_status", work)

    async def schedule_end(
        self,
        external_subscription_ref: str,
        end_date: Optional[date],
    ) -> Subscription:
        """
        Record (or clear) a period-end cancellation on an ACTIVE row.

        The row stays ACTIVE; the expiry sweep retires it after end_date.
        Closed plan periods are left alone.

        Raises:
            SubscriptionNotFoundError: no row carries the Stripe ID
        """
        async def work(session: AsyncSession) -> Subscription:
            subscriptions = SubscriptionRepository(session)

            model = await self._lock_by_ref(subscriptions, external_subscription_ref)
            if (
                not model.is_current
                or model.status != SubscriptionStatus.ACTIVE.value
                or model.end_date == end_date
            ):
                return SubscriptionRepository.to_domain(model)

            model.end_date = end_date
            await subscriptions.save(model)

            logger.info(
                f"Subscription {external_subscription_ref} scheduled to end on {end_date}"
            )
            return SubscriptionRepository.to_domain(model)

        return await self._in_transaction("schedule_end", work)

    async def sync_subscription(
        self,
        external_subscription_ref: str,
        new_status: "str | SubscriptionStatus",
        external_price_ref: Optional[str] = None,
        external_customer_ref: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
        period_end: Optional[date] = None,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> Subscription:
        """
        Apply a Stripe subscription update in one transaction.

        Sets the status, opens a new plan period when an ACTIVE
        subscription moved to another plan's price, and records or clears
        a period-end cancellation.

        Raises:
            ValidationError: status is not a local status
            UnknownPlanReferenceError: unknown price while STRICT_PRICE_MAPPING
            SubscriptionNotFoundError: no row carries the Stripe ID
            SupersededSubscriptionError: the Stripe ID only matches a
                closed plan period
            DuplicateEventError: ``event_id`` was already applied
        """
        status = self._parse_status(new_status)
        plan_id = (
            resolve_plan_for_external_price_ref(external_price_ref, settings=self._settings)
            if external_price_ref
            else None
        )

        async def work(session: AsyncSession) -> Subscription:
            users = UserRepository(session)
            subscriptions = SubscriptionRepository(session)
            await self._record_event(session, event_id, event_type)

            # User lock first, same order as activate
            found = await subscriptions.get_by_external_subscription_ref(external_subscription_ref)
            if found is None:
                raise SubscriptionNotFoundError(external_subscription_ref)
            await users.lock_user(found.user_id)

            model = await self._lock_by_ref(subscriptions, external_subscription_ref, status)
            if not model.is_current:
                return SubscriptionRepository.to_domain(model)

            if model.status != status.value:
                self._apply_status(model, status)
                model = await subscriptions.save(model)
                logger.info(
                    f"Updated subscription status to {status.value} for user: "
                    f"{model.user_id} (Stripe ID: {external_subscription_ref})"
                )

            if (
                status == SubscriptionStatus.ACTIVE
                and plan_id is not None
                and plan_id.value != model.plan_id
            ):
                previous_plan = model.plan_id
                model = await self._open_period(
                    subscriptions,
                    model.user_id,
                    model,
                    plan_id,
                    external_subscription_ref,
                    external_customer_ref or model.external_customer_ref,
                    external_price_ref,
                )
                logger.info(
                    f"Changed plan {previous_plan} -> {plan_id.value} for user: "
                    f"{model.user_id} (Stripe ID: {external_subscription_ref})"
                )

            if cancel_at_period_end is not None and model.status == SubscriptionStatus.ACTIVE.value:
                end_date = period_end if cancel_at_period_end else None
                if (not cancel_at_period_end or end_date is not None) and model.end_date != end_date:
                    model.end_date = end_date
                    model = await subscriptions.save(model)
                    logger.info(
                        f"Subscription {external_subscription_ref} scheduled to end on {end_date}"
                    )

            return SubscriptionRepository.to_domain(model)

        return await self._in_transaction("sync_subscription", work)

    async def sweep_expired(self) -> int:
        """
        Expire current subscriptions whose end date has passed.

        Works in batches of SWEEP_BATCH_SIZE, one short transaction each.
        Running it again right away transitions nothing.

        Returns:
            Number of subscriptions moved to EXPIRED
        """
        today = self.today()
        batch_size = self._settings.sweep_batch_size
        total = 0

        while True:
            async with self._session_scope() as session:
                subscriptions = SubscriptionRepository(session)
                ids = await subscriptions.find_expirable_ids(today, batch_size)
                expired = await subscriptions.expire(ids, today)

            total += expired
            if len(ids) < batch_size or expired == 0:
                break

        logger.info(f"Expiry sweep marked {total} subscriptions as expired")
        return total

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_subscription(self, user_id: "str | UUID") -> Optional[Subscription]:
        """Get the user's current subscription, if any."""
        try:
            user_uuid = as_uuid(user_id)
        except ValueError:
            raise UserNotFoundError(user_id)

        async with self._session_scope() as session:
            model = await SubscriptionRepository(session).get_current_for_user(user_uuid)
            return SubscriptionRepository.to_domain(model) if model else None

    async def list_subscriptions(self, user_id: "str | UUID") -> List[Subscription]:
        """Get every plan period of a user, oldest first."""
        try:
            user_uuid = as_uuid(user_id)
        except ValueError:
            raise UserNotFoundError(user_id)

        async with self._session_scope() as session:
            models = await SubscriptionRepository(session).list_for_user(user_uuid)
            return [SubscriptionRepository.to_domain(m) for m in models]

    async def find_user_id_by_customer_ref(self, external_customer_ref: str) -> Optional[str]:
        """Resolve a Stripe customer ID to the local user that owns it."""
        async with self._session_scope() as session:
            model = await SubscriptionRepository(session).get_latest_by_customer_ref(
                external_customer_ref
            )
            return str(model.user_id) if model else None

    async def is_active(self, user_id: "str | UUID") -> bool:
        subscription = await self.get_subscription(user_id)
        return subscription is not None and subscription.is_active

    async def can_create_prompt(self, user_id: "str | UUID") -> bool:
        """
        Check whether the user may create another prompt.

        Requires an ACTIVE subscription. When a usage counter is configured
        the prompts created since the period started are checked against
        the plan's prompt limit.
        """
        subscription = await self.get_subscription(user_id)
        if subscription is None or not subscription.is_active:
            return False

        plan = get_plan(subscription.plan_id, self._settings)
        if self._usage_counter is None or plan.is_unlimited:
            return True

        used = await self._usage_counter.count_prompts_since(
            subscription.user_id, subscription.start_date
        )
        return used < plan.prompt_limit

    async def get_current_plan(self, user_id: "str | UUID") -> Plan:
        """Plan of the current subscription, or the free plan."""
        subscription = await self.get_subscription(user_id)
        if subscription is None:
            return get_free_plan(self._settings)
        return get_plan(subscription.plan_id, self._settings)

    async def prompt_limit(self, user_id: "str | UUID") -> int:
        return (await self.get_current_plan(user_id)).prompt_limit

    async def has_custom_prompts(self, user_id: "str | UUID") -> bool:
        return (await self.get_current_plan(user_id)).has_custom_prompts

    async def has_priority_support(self, user_id: "str | UUID") -> bool:
        return (await self.get_current_plan(user_id)).has_priority_support

    async def can_upgrade(self, user_id: "str | UUID", target_plan: "str | PlanId") -> bool:
        """
        Check the upgrade hierarchy free -> premium -> pro.

        Allowed when the user has no subscription or an inactive one;
        otherwise only to a strictly higher tier.
        """
        try:
            target = parse_plan_id(target_plan)
        except UnknownPlanReferenceError:
            return False

        subscription = await self.get_subscription(user_id)
        if subscription is None or not subscription.is_active:
            return True
        return tier_rank(target) > tier_rank(subscription.plan_id)

    async def can_downgrade(self, user_id: "str | UUID", target_plan: "str | PlanId") -> bool:
        """
        Check the downgrade hierarchy pro -> premium -> free.

        Never allowed without a subscription; allowed from an inactive one;
        otherwise only to a strictly lower tier.
        """
        try:
            target = parse_plan_id(target_plan)
        except UnknownPlanReferenceError:
            return False

        subscription = await self.get_subscription(user_id)
        if subscription is None:
            return False
        if not subscription.is_active:
            return True
        return tier_rank(target) < tier_rank(subscription.plan_id)

    def list_plans(self) -> List[Plan]:
        return list_plans(self._settings)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _new_free_row(self, user_id: UUID) -> SubscriptionModel:
        return SubscriptionModel(
            user_id=user_id,
            plan_id=PlanId.FREE.value,
            status=SubscriptionStatus.ACTIVE.value,
            is_current=True,
            start_date=self.today(),
            end_date=None,
        )

    @staticmethod
    def _parse_status(new_status: "str | SubscriptionStatus") -> SubscriptionStatus:
        try:
            return SubscriptionStatus.parse(new_status)
        except ValueError:
            raise ValidationError(
                f"Unknown subscription status: {new_status}",
                details={"status": str(new_status)},
            )

    def _apply_status(self, model: SubscriptionModel, status: SubscriptionStatus) -> None:
        model.status = status.value
        if status in (SubscriptionStatus.CANCELED, SubscriptionStatus.UNPAID):
            model.end_date = self.today()
        elif status == SubscriptionStatus.ACTIVE:
            model.end_date = None

    @staticmethod
    async def _record_event(
        session: AsyncSession,
        event_id: Optional[str],
        event_type: Optional[str],
    ) -> None:
        """Mark a billing event applied within the caller's transaction."""
        if not event_id:
            return
        if not await ProcessedEventRepository(session).mark_processed(
            event_id, event_type or "unknown"
        ):
            raise DuplicateEventError(event_id)

    @staticmethod
    async def _lock_by_ref(
        subscriptions: SubscriptionRepository,
        external_subscription_ref: str,
        status: Optional[SubscriptionStatus] = None,
    ) -> SubscriptionModel:
        """
        Lock the row bound to a Stripe subscription ID.

        A closed plan period is returned as is when no status is being
        applied or the status is CANCELED; any other status is refused.
        """
        model = await subscriptions.get_by_external_subscription_ref(
            external_subscription_ref, for_update=True
        )
        if model is None:
            raise SubscriptionNotFoundError(external_subscription_ref)

        if (
            not model.is_current
            and status is not None
            and status != SubscriptionStatus.CANCELED
        ):
            logger.warning(
                f"Refusing {status.value} for Stripe subscription "
                f"{external_subscription_ref}: its plan period was superseded"
            )
            raise SupersededSubscriptionError(external_subscription_ref)

        return model

    async def _open_period(
        self,
        subscriptions: SubscriptionRepository,
        user_id: UUID,
        current: Optional[SubscriptionModel],
        plan_id: PlanId,
        external_subscription_ref: Optional[str],
        external_customer_ref: Optional[str],
        external_price_ref: Optional[str],
    ) -> SubscriptionModel:
        """Close the current plan period, if any, and open a new ACTIVE one."""
        today = self.today()

        if current is not None:
            current.status = SubscriptionStatus.CANCELED.value
            current.end_date = today
            current.is_current = False
            await subscriptions.save(current)
            logger.info(f"Closed {current.plan_id} subscription for user: {user_id}")

        return await subscriptions.add(
            SubscriptionModel(
                user_id=user_id,
                plan_id=plan_id.value,
                status=SubscriptionStatus.ACTIVE.value,
                is_current=True,
                external_subscription_ref=external_subscription_ref,
                external_customer_ref=external_customer_ref,
                external_price_ref=external_price_ref,
                start_date=today,
                end_date=None,
            )
        )
