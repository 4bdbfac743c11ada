"""
Integration Tests for the Subscription Lifecycle Service

Runs against a SQLite database. Verifies:
- Free enrollment idempotence
- Plan ordering predicates
- Activation superseding the previous plan period
- Cancel / reactivate transitions
- Superseded plan periods refusing late Stripe statuses
- In-place plan changes on one Stripe subscription
- Event ID idempotency
- Expiry sweep convergence
- Entitlement derivation and quota checks
- Write-conflict retries
"""

from datetime import date, timedelta
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.domain.subscription import PlanId, SubscriptionStatus, UNLIMITED
from app.domain.subscription_service import PromptUsageCounter, SubscriptionService
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.repositories.processed_event_repository import ProcessedEventRepository
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


async def count_rows(session_scope, user_id=None) -> int:
    async with session_scope() as session:
        stmt = select(func.count()).select_from(SubscriptionModel)
        if user_id is not None:
            stmt = stmt.where(SubscriptionModel.user_id == UUID(str(user_id)))
        return (await session.execute(stmt)).scalar_one()


async def activate_premium(service, user_id, sub_ref="sub_premium", customer_ref="cus_1"):
    return await service.activate(user_id, sub_ref, customer_ref, "price_premium_monthly")


class TestRegistration:

    @pytest.mark.asyncio
    async def test_register_creates_user_and_free_subscription(self, service, clock):
        user, subscription = await service.register_user("ada@example.com", "Ada")

        assert user.email == "ada@example.com"
        assert subscription.user_id == user.id
        assert subscription.plan_id == PlanId.FREE
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.start_date == clock.today
        assert subscription.end_date is None

    @pytest.mark.asyncio
    async def test_register_rejects_duplicate_email(self, service):
        await service.register_user("dup@example.com")

        with pytest.raises(ValidationError):
            await service.register_user("dup@example.com")


class TestCreateFreeSubscription:

    @pytest.mark.asyncio
    async def test_creates_free_active_subscription(self, service, make_user, clock):
        user_id = await make_user()

        subscription = await service.create_free_subscription(user_id)

        assert subscription.plan_id == PlanId.FREE
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.start_date == clock.today

    @pytest.mark.asyncio
    async def test_is_idempotent(self, service, make_user, session_scope):
        user_id = await make_user()

        first = await service.create_free_subscription(user_id)
        second = await service.create_free_subscription(user_id)

        assert first.id == second.id
        assert await count_rows(session_scope) == 1

    @pytest.mark.asyncio
    async def test_returns_existing_paid_subscription_unchanged(self, service, register_user):
        user_id = await register_user()
        premium = await activate_premium(service, user_id)

        result = await service.create_free_subscription(user_id)

        assert result.id == premium.id
        assert result.plan_id == PlanId.PREMIUM

    @pytest.mark.asyncio
    async def test_unknown_user(self, service):
        with pytest.raises(UserNotFoundError):
            await service.create_free_subscription(str(uuid4()))

    @pytest.mark.asyncio
    async def test_malformed_user_id(self, service):
        with pytest.raises(UserNotFoundError):
            await service.create_free_subscription("not-a-uuid")


class TestActivate:

    @pytest.mark.asyncio
    async def test_activation_supersedes_prior_plan(self, service, register_user, session_scope, clock):
        user_id = await register_user()
        await activate_premium(service, user_id)

        pro = await service.activate(user_id, "sub_pro", "cus_1", "price_pro_monthly")

        history = await service.list_subscriptions(user_id)
        active = [s for s in history if s.status == SubscriptionStatus.ACTIVE]
        assert len(active) == 1
        assert active[0].id == pro.id
        assert active[0].plan_id == PlanId.PRO

        premium = next(s for s in history if s.plan_id == PlanId.PREMIUM)
        assert premium.status == SubscriptionStatus.CANCELED
        assert premium.end_date == clock.today
        assert premium.is_current is False

    @pytest.mark.asyncio
    async def test_new_period_carries_external_refs(self, service, register_user, clock):
        user_id = await register_user()

        subscription = await service.activate(user_id, "sub_1", "cus_1", "price_pro_monthly")

        assert subscription.external_subscription_ref == "sub_1"
        assert subscription.external_customer_ref == "cus_1"
        assert subscription.external_price_ref == "price_pro_monthly"
        assert subscription.start_date == clock.today
        assert subscription.end_date is None

    @pytest.mark.asyncio
    async def test_activation_without_prior_subscription(self, service, make_user, session_scope):
        user_id = await make_user()

        subscription = await activate_premium(service, user_id)

        assert subscription.plan_id == PlanId.PREMIUM
        assert await count_rows(session_scope) == 1

    @pytest.mark.asyncio
    async def test_duplicate_activation_is_idempotent(self, service, register_user, session_scope):
        user_id = await register_user()

        first = await activate_premium(service, user_id)
        second = await activate_premium(service, user_id)

        assert first.id == second.id
        # free period + one premium period
        assert await count_rows(session_scope) == 2

    @pytest.mark.asyncio
    async def test_unknown_user(self, service):
        with pytest.raises(UserNotFoundError):
            await activate_premium(service, str(uuid4()))

    @pytest.mark.asyncio
    async def test_unknown_price_falls_back_to_free(self, service, register_user):
        user_id = await register_user()

        subscription = await service.activate(user_id, "sub_x", "cus_x", "price_enterprise")

        assert subscription.plan_id == PlanId.FREE
        assert subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_price_rejected_when_strict(
        self, session_scope, test_settings, clock, register_user
    ):
        strict = test_settings.model_copy(update={"strict_price_mapping": True})
        service = SubscriptionService(session_scope=session_scope, settings=strict, clock=clock)
        user_id = await register_user()

        with pytest.raises(UnknownPlanReferenceError):
            await service.activate(user_id, "sub_x", "cus_x", "price_enterprise")

        current = await service.get_subscription(user_id)
        assert current.plan_id == PlanId.FREE


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_is_terminal_until_reactivated(self, service, register_user, clock):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")

        canceled = await service.cancel(user_id)
        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.end_date == clock.today
        assert await service.is_active(user_id) is False

        with pytest.raises(AlreadyCanceledError):
            await service.cancel(user_id)

        reactivated = await service.update_status("sub_1", "active")
        assert reactivated.status == SubscriptionStatus.ACTIVE
        assert reactivated.end_date is None
        assert await service.is_active(user_id) is True

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, service, make_user):
        user_id = await make_user()

        with pytest.raises(NoActiveSubscriptionError):
            await service.cancel(user_id)

    @pytest.mark.asyncio
    async def test_cancel_keeps_plan_entitlements(self, service, register_user):
        user_id = await register_user()
        await activate_premium(service, user_id)

        await service.cancel(user_id)

        assert await service.has_custom_prompts(user_id) is True
        assert await service.prompt_limit(user_id) == 100


class TestUpdateStatus:

    @pytest.mark.asyncio
    async def test_unknown_ref_reports_not_found(self, service, session_scope):
        with pytest.raises(SubscriptionNotFoundError):
            await service.update_status("ref-does-not-exist", "active")

        assert await count_rows(session_scope) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [SubscriptionStatus.CANCELED, SubscriptionStatus.UNPAID])
    async def test_terminal_statuses_set_end_date(self, service, register_user, clock, status):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")

        updated = await service.update_status("sub_1", status)

        assert updated.status == status
        assert updated.end_date == clock.today

    @pytest.mark.asyncio
    async def test_past_due_keeps_end_date(self, service, register_user):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")

        updated = await service.update_status("sub_1", "PAST_DUE")

        assert updated.status == SubscriptionStatus.PAST_DUE
        assert updated.end_date is None
        assert await service.can_create_prompt(user_id) is False

    @pytest.mark.asyncio
    async def test_reapplying_status_is_a_no_op(self, service, register_user, clock):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        first = await service.update_status("sub_1", "canceled")

        clock.advance(3)
        second = await service.update_status("sub_1", "CANCELED")

        assert second.end_date == first.end_date
        assert second.updated_at == first.updated_at

    @pytest.mark.asyncio
    async def test_last_processed_status_wins(self, service, register_user):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")

        await service.update_status("sub_1", "PAST_DUE")
        await service.update_status("sub_1", "ACTIVE")
        assert await service.is_active(user_id) is True

        await service.update_status("sub_1", "ACTIVE")
        await service.update_status("sub_1", "PAST_DUE")
        assert await service.is_active(user_id) is False

    @pytest.mark.asyncio
    async def test_rejects_unknown_status(self, service, register_user):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")

        with pytest.raises(ValidationError):
            await service.update_status("sub_1", "paused")

    @pytest.mark.asyncio
    async def test_superseded_period_refuses_reactivation(self, service, register_user, clock):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        await service.activate(user_id, "sub_2", "cus_1", "price_pro_monthly")

        with pytest.raises(SupersededSubscriptionError):
            await service.update_status("sub_1", "active")

        history = await service.list_subscriptions(user_id)
        assert [s.status for s in history].count(SubscriptionStatus.ACTIVE) == 1
        premium = next(s for s in history if s.external_subscription_ref == "sub_1")
        assert premium.status == SubscriptionStatus.CANCELED
        assert premium.end_date == clock.today

    @pytest.mark.asyncio
    async def test_superseded_period_accepts_cancellation_without_change(
        self, service, register_user, clock
    ):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        await service.activate(user_id, "sub_2", "cus_1", "price_pro_monthly")
        closed_on = clock.today

        clock.advance(2)
        result = await service.update_status("sub_1", "canceled")

        assert result.is_current is False
        assert result.end_date == closed_on
        assert (await service.get_subscription(user_id)).external_subscription_ref == "sub_2"

    @pytest.mark.asyncio
    async def test_superseded_period_error_is_a_not_found(self, service, register_user):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        await service.activate(user_id, "sub_2", "cus_1", "price_pro_monthly")

        with pytest.raises(SubscriptionNotFoundError):
            await service.update_status("sub_1", "past_due")


class TestScheduleEnd:

    @pytest.mark.asyncio
    async def test_schedules_and_clears_end_date(self, service, register_user, clock):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        period_end = clock.today + timedelta(days=30)

        scheduled = await service.schedule_end("sub_1", period_end)
        assert scheduled.status == SubscriptionStatus.ACTIVE
        assert scheduled.end_date == period_end

        cleared = await service.schedule_end("sub_1", None)
        assert cleared.end_date is None

    @pytest.mark.asyncio
    async def test_ignored_for_inactive_rows(self, service, register_user, clock):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        await service.cancel(user_id)

        result = await service.schedule_end("sub_1", clock.today + timedelta(days=30))

        assert result.end_date == clock.today

    @pytest.mark.asyncio
    async def test_scheduled_end_expires_after_period(self, service, register_user, clock):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        await service.schedule_end("sub_1", clock.today + timedelta(days=5))

        clock.advance(5)
        assert await service.sweep_expired() == 0

        clock.advance(1)
        assert await service.sweep_expired() == 1
        assert (await service.get_subscription(user_id)).status == SubscriptionStatus.EXPIRED


class TestSyncSubscription:

    @pytest.mark.asyncio
    async def test_price_change_opens_period_on_same_ref(self, service, register_user, clock):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        clock.advance(10)

        pro = await service.sync_subscription("sub_1", "ACTIVE", external_price_ref="price_pro_monthly")

        assert pro.plan_id == PlanId.PRO
        assert pro.external_subscription_ref == "sub_1"
        assert pro.external_customer_ref == "cus_1"
        assert pro.start_date == clock.today

        history = await service.list_subscriptions(user_id)
        assert [s.plan_id for s in history] == [PlanId.FREE, PlanId.PREMIUM, PlanId.PRO]
        premium = history[1]
        assert premium.status == SubscriptionStatus.CANCELED
        assert premium.is_current is False
        assert premium.end_date == clock.today

    @pytest.mark.asyncio
    async def test_same_price_only_syncs_status(self, service, register_user, session_scope):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        rows = await count_rows(session_scope, user_id)

        result = await service.sync_subscription(
            "sub_1", "PAST_DUE", external_price_ref="price_premium_monthly"
        )

        assert result.status == SubscriptionStatus.PAST_DUE
        assert result.plan_id == PlanId.PREMIUM
        assert await count_rows(session_scope, user_id) == rows

    @pytest.mark.asyncio
    async def test_reactivation_with_new_price(self, service, register_user):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        await service.update_status("sub_1", "PAST_DUE")

        result = await service.sync_subscription(
            "sub_1", "ACTIVE", external_price_ref="price_pro_monthly"
        )

        assert result.plan_id == PlanId.PRO
        assert result.status == SubscriptionStatus.ACTIVE
        assert await service.is_active(user_id) is True

    @pytest.mark.asyncio
    async def test_period_end_cancellation(self, service, register_user, clock):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        period_end = clock.today + timedelta(days=30)

        scheduled = await service.sync_subscription(
            "sub_1", "ACTIVE", cancel_at_period_end=True, period_end=period_end
        )
        assert scheduled.end_date == period_end

        cleared = await service.sync_subscription("sub_1", "ACTIVE", cancel_at_period_end=False)
        assert cleared.end_date is None

    @pytest.mark.asyncio
    async def test_unknown_price_under_strict_mapping(
        self, session_scope, test_settings, clock, register_user
    ):
        strict = SubscriptionService(
            session_scope=session_scope,
            settings=test_settings.model_copy(update={"strict_price_mapping": True}),
            clock=clock,
        )
        user_id = await register_user()
        await activate_premium(strict, user_id, sub_ref="sub_1")

        with pytest.raises(UnknownPlanReferenceError):
            await strict.sync_subscription("sub_1", "ACTIVE", external_price_ref="price_mystery")

        assert (await strict.get_subscription(user_id)).plan_id == PlanId.PREMIUM

    @pytest.mark.asyncio
    async def test_superseded_ref_is_refused(self, service, register_user):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        await service.activate(user_id, "sub_2", "cus_1", "price_pro_monthly")

        with pytest.raises(SupersededSubscriptionError):
            await service.sync_subscription("sub_1", "ACTIVE", external_price_ref="price_premium_monthly")

        assert (await service.get_subscription(user_id)).plan_id == PlanId.PRO

    @pytest.mark.asyncio
    async def test_unknown_ref(self, service):
        with pytest.raises(SubscriptionNotFoundError):
            await service.sync_subscription("ref-does-not-exist", "ACTIVE")


class TestProcessedEvents:

    @pytest.mark.asyncio
    async def test_event_id_is_applied_once(self, service, register_user, session_scope):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")

        await service.update_status("sub_1", "PAST_DUE", event_id="evt_1", event_type="invoice.payment_failed")
        with pytest.raises(DuplicateEventError):
            await service.update_status("sub_1", "ACTIVE", event_id="evt_1", event_type="invoice.payment_failed")

        assert (await service.get_subscription(user_id)).status == SubscriptionStatus.PAST_DUE
        async with session_scope() as session:
            recorded = await ProcessedEventRepository(session).get_by_id("evt_1")
        assert recorded.event_type == "invoice.payment_failed"

    @pytest.mark.asyncio
    async def test_redelivered_activation_is_refused(self, service, register_user):
        user_id = await register_user()
        await service.activate(user_id, "sub_1", "cus_1", "price_premium_monthly", event_id="evt_created_1")
        await service.activate(user_id, "sub_2", "cus_1", "price_pro_monthly", event_id="evt_created_2")

        with pytest.raises(DuplicateEventError):
            await service.activate(user_id, "sub_1", "cus_1", "price_premium_monthly", event_id="evt_created_1")

        assert (await service.get_subscription(user_id)).plan_id == PlanId.PRO

    @pytest.mark.asyncio
    async def test_rejected_event_is_not_recorded(self, service, session_scope):
        with pytest.raises(SubscriptionNotFoundError):
            await service.update_status("ref-does-not-exist", "ACTIVE", event_id="evt_lost")

        async with session_scope() as session:
            assert await ProcessedEventRepository(session).is_processed("evt_lost") is False

    @pytest.mark.asyncio
    async def test_mark_processed_reports_first_write(self, session_scope):
        async with session_scope() as session:
            events = ProcessedEventRepository(session)
            assert await events.mark_processed("evt_9", "customer.subscription.updated") is True
            assert await events.mark_processed("evt_9", "customer.subscription.updated") is False


class TestSweepExpired:

    @pytest.mark.asyncio
    async def test_sweep_converges_and_is_idempotent(self, service, register_user, clock):
        # batch size is 2, so five rows take several batches
        user_ids = [await register_user() for _ in range(5)]
        for i, user_id in enumerate(user_ids):
            await activate_premium(service, user_id, sub_ref=f"sub_{i}", customer_ref=f"cus_{i}")
            await service.schedule_end(f"sub_{i}", clock.today)

        clock.advance(1)

        assert await service.sweep_expired() == 5
        assert await service.sweep_expired() == 0

        for user_id in user_ids:
            subscription = await service.get_subscription(user_id)
            assert subscription.status == SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_leaves_open_ended_and_future_rows(self, service, register_user, clock):
        open_ended = await register_user()
        future = await register_user()
        await activate_premium(service, future, sub_ref="sub_future")
        await service.schedule_end("sub_future", clock.today + timedelta(days=10))

        clock.advance(1)

        assert await service.sweep_expired() == 0
        assert await service.is_active(open_ended)
        assert await service.is_active(future)

    @pytest.mark.asyncio
    async def test_past_due_rows_are_not_expired(self, service, register_user, clock):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        await service.schedule_end("sub_1", clock.today)
        await service.update_status("sub_1", "past_due")

        clock.advance(1)

        assert await service.sweep_expired() == 0
        assert (await service.get_subscription(user_id)).status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_superseded_rows_are_not_expired(self, service, register_user, clock):
        user_id = await register_user()
        await activate_premium(service, user_id)
        await service.activate(user_id, "sub_pro", "cus_1", "price_pro_monthly")

        clock.advance(1)

        assert await service.sweep_expired() == 0
        history = await service.list_subscriptions(user_id)
        assert [s.status for s in history].count(SubscriptionStatus.EXPIRED) == 0


class TestPlanChanges:

    @pytest.mark.asyncio
    async def test_ordering_for_premium_user(self, service, register_user):
        user_id = await register_user()
        await activate_premium(service, user_id)

        assert await service.can_upgrade(user_id, "pro") is True
        assert await service.can_upgrade(user_id, "free") is False
        assert await service.can_downgrade(user_id, "free") is True
        assert await service.can_downgrade(user_id, "pro") is False

    @pytest.mark.asyncio
    async def test_same_tier_is_neither(self, service, register_user):
        user_id = await register_user()
        await activate_premium(service, user_id)

        assert await service.can_upgrade(user_id, PlanId.PREMIUM) is False
        assert await service.can_downgrade(user_id, PlanId.PREMIUM) is False

    @pytest.mark.asyncio
    async def test_without_subscription(self, service, make_user):
        user_id = await make_user()

        assert await service.can_upgrade(user_id, "premium") is True
        assert await service.can_upgrade(user_id, "free") is True
        assert await service.can_downgrade(user_id, "free") is False

    @pytest.mark.asyncio
    async def test_inactive_subscription_allows_any_change(self, service, register_user):
        user_id = await register_user()
        await activate_premium(service, user_id, sub_ref="sub_1")
        await service.update_status("sub_1", "unpaid")

        assert await service.can_upgrade(user_id, "free") is True
        assert await service.can_downgrade(user_id, "pro") is True

    @pytest.mark.asyncio
    async def test_unknown_target_plan(self, service, register_user):
        user_id = await register_user()

        assert await service.can_upgrade(user_id, "enterprise") is False
        assert await service.can_downgrade(user_id, "enterprise") is False


class TestEntitlements:

    @pytest.mark.asyncio
    async def test_free_plan_values_without_subscription(self, service, make_user):
        user_id = await make_user()

        assert (await service.get_current_plan(user_id)).id == PlanId.FREE
        assert await service.prompt_limit(user_id) == 10
        assert await service.has_custom_prompts(user_id) is False
        assert await service.has_priority_support(user_id) is False
        assert await service.is_active(user_id) is False
        assert await service.can_create_prompt(user_id) is False

    @pytest.mark.asyncio
    async def test_pro_entitlements(self, service, register_user):
        user_id = await register_user()
        await service.activate(user_id, "sub_1", "cus_1", "price_pro_monthly")

        assert await service.prompt_limit(user_id) == UNLIMITED
        assert await service.has_custom_prompts(user_id) is True
        assert await service.has_priority_support(user_id) is True
        assert await service.can_create_prompt(user_id) is True

    @pytest.mark.asyncio
    async def test_quota_is_advisory_without_counter(self, service, register_user):
        user_id = await register_user()

        assert await service.can_create_prompt(user_id) is True

    @pytest.mark.asyncio
    async def test_quota_enforced_with_usage_counter(self, session_scope, test_settings, clock, register_user):
        counter = AsyncMock(spec=PromptUsageCounter)
        service = SubscriptionService(
            session_scope=session_scope,
            settings=test_settings,
            usage_counter=counter,
            clock=clock,
        )
        user_id = await register_user()

        counter.count_prompts_since.return_value = 9
        assert await service.can_create_prompt(user_id) is True

        counter.count_prompts_since.return_value = 10
        assert await service.can_create_prompt(user_id) is False

        counter.count_prompts_since.assert_awaited_with(user_id, clock.today)

    @pytest.mark.asyncio
    async def test_unlimited_plan_skips_counting(self, session_scope, test_settings, clock, register_user):
        counter = AsyncMock(spec=PromptUsageCounter)
        service = SubscriptionService(
            session_scope=session_scope,
            settings=test_settings,
            usage_counter=counter,
            clock=clock,
        )
        user_id = await register_user()
        await service.activate(user_id, "sub_1", "cus_1", "price_pro_monthly")

        assert await service.can_create_prompt(user_id) is True
        counter.count_prompts_since.assert_not_awaited()


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_second_current_row_is_rejected(self, session_scope, make_user):
        user_id = await make_user()

        with pytest.raises(IntegrityError):
            async with session_scope() as session:
                for _ in range(2):
                    session.add(SubscriptionModel(
                        user_id=UUID(user_id),
                        plan_id="free",
                        status="ACTIVE",
                        is_current=True,
                        start_date=date(2026, 3, 1),
                    ))
                await session.flush()

    @pytest.mark.asyncio
    async def test_conflicts_are_retried(self, service):
        work = AsyncMock(side_effect=[
            IntegrityError("INSERT", {}, Exception("duplicate current row")),
            "done",
        ])

        assert await service._in_transaction("activate", work) == "done"
        assert work.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_conflicts_surface_as_transient_error(self, service, test_settings):
        work = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("duplicate current row")))

        with pytest.raises(ConcurrentUpdateError) as exc_info:
            await service._in_transaction("activate", work)

        assert work.await_count == test_settings.max_retries
        assert exc_info.value.details["attempts"] == test_settings.max_retries


class TestScenario:

    @pytest.mark.asyncio
    async def test_registration_checkout_cancel_expire(self, service, make_user, clock):
        user_a = await make_user("user-a@example.com")

        free = await service.create_free_subscription(user_a)
        assert free.plan_id == PlanId.FREE
        assert free.status == SubscriptionStatus.ACTIVE

        premium = await service.activate(user_a, "sub_1", "cus_1", "price_premium")
        assert premium.plan_id == PlanId.PREMIUM
        assert premium.status == SubscriptionStatus.ACTIVE
        history = await service.list_subscriptions(user_a)
        assert history[0].id == free.id
        assert history[0].status == SubscriptionStatus.CANCELED

        canceled = await service.cancel(user_a)
        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.end_date == clock.today

        clock.advance(1)
        assert await service.sweep_expired() == 1
        assert (await service.get_subscription(user_a)).status == SubscriptionStatus.EXPIRED
