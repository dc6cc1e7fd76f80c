"""Tests for the subscription lifecycle service."""

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subplans.billing.locking import KeyedLocks
from subplans.billing.models import (
    Plan,
    PlanSubscription,
    PlanSubscriptionUsage,
    SubscriptionModel,
    SubscriptionState,
)
from subplans.billing.quota_manager import QuotaManager
from subplans.billing.service import SubscriptionService
from subplans.billing.signals import SubscriptionEvent
from subplans.billing.subscribers import SubscriberRef, SubscriberRegistry
from subplans.core.config import Settings
from subplans.core.exceptions import (
    InvalidStateError,
    SubscriberNotFoundError,
    SubscriptionNotFoundError,
)
from tests.conftest import Account, ManualClock, SignalRecorder


async def count_active(session: AsyncSession, ref: SubscriberRef) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(PlanSubscription)
        .where(
            PlanSubscription.subscriber_type == ref.kind,
            PlanSubscription.subscriber_id == ref.id,
            PlanSubscription.is_active.is_(True),
            PlanSubscription.deleted_at.is_(None),
        )
    )
    return result.scalar_one()


async def count_usage(session: AsyncSession, subscription: PlanSubscription) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(PlanSubscriptionUsage)
        .where(PlanSubscriptionUsage.subscription_id == subscription.id)
    )
    return result.scalar_one()


class TestCreateSubscription:
    """Tests for subscribing to a plan."""

    async def test_monthly_plan_without_trial(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        account: Account,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)

        assert subscription.starts_at == datetime(2025, 1, 1, tzinfo=UTC)
        assert subscription.ends_at == datetime(2025, 2, 1, tzinfo=UTC)
        assert subscription.trial_ends_at == subscription.starts_at
        assert subscription.is_active
        assert subscription.subscriber_type == "account"
        assert subscription.subscriber_id == "1"
        assert subscription.subscription_type == SubscriptionModel.FIXED
        assert subscription.name == "Basic"
        assert subscription.slug == "basic"

    async def test_trial_delays_billing_period(
        self,
        subscription_service: SubscriptionService,
        trial_plan: Plan,
        account: Account,
        clock: ManualClock,
    ) -> None:
        subscription = await subscription_service.create(account, trial_plan)

        assert subscription.trial_ends_at == datetime(2025, 1, 15, tzinfo=UTC)
        assert subscription.starts_at == datetime(2025, 1, 15, tzinfo=UTC)
        assert subscription.ends_at == datetime(2025, 2, 15, tzinfo=UTC)
        assert subscription.state(clock()) == SubscriptionState.TRIAL

        clock.advance(days=20)
        assert subscription_service.status(subscription).state == SubscriptionState.ACTIVE

    async def test_explicit_start_and_name(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        account: Account,
    ) -> None:
        start = datetime(2025, 1, 31, tzinfo=UTC)

        subscription = await subscription_service.create(
            account, monthly_plan, start=start, name="Main Seat"
        )

        assert subscription.starts_at == start
        assert subscription.ends_at == datetime(2025, 2, 28, tzinfo=UTC)
        assert subscription.slug == "main-seat"

    async def test_new_subscription_cancels_active_one(
        self,
        db_session: AsyncSession,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        yearly_plan: Plan,
        account: Account,
        clock: ManualClock,
        recorder: SignalRecorder,
    ) -> None:
        first = await subscription_service.create(account, monthly_plan)
        clock.advance(days=3)

        second = await subscription_service.create(account, yearly_plan)

        assert not first.is_active
        assert first.canceled_at == clock()
        assert first.ends_at == clock()
        assert second.is_active
        assert await count_active(db_session, account.subscriber_ref) == 1
        assert recorder.of(SubscriptionEvent.CREATED) == [str(first.id), str(second.id)]
        assert str(first.id) in recorder.of(SubscriptionEvent.UPDATED)

    async def test_slugs_unique_per_subscriber(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        account: Account,
        other_account: Account,
    ) -> None:
        first = await subscription_service.create(account, monthly_plan)
        second = await subscription_service.create(account, monthly_plan)
        third = await subscription_service.create(account, monthly_plan)
        other = await subscription_service.create(other_account, monthly_plan)

        assert [first.slug, second.slug, third.slug] == ["basic", "basic-2", "basic-3"]
        assert other.slug == "basic"

    async def test_subscribers_are_independent(
        self,
        db_session: AsyncSession,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        account: Account,
        other_account: Account,
    ) -> None:
        mine = await subscription_service.create(account, monthly_plan)
        await subscription_service.create(other_account, monthly_plan)

        assert mine.is_active
        assert await count_active(db_session, account.subscriber_ref) == 1
        assert await count_active(db_session, other_account.subscriber_ref) == 1

    async def test_subscriber_reference_accepted(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
    ) -> None:
        ref = SubscriberRef(kind="team", id=42)

        subscription = await subscription_service.create(ref, monthly_plan)

        assert subscription.subscriber_ref == SubscriberRef(kind="team", id="42")


class TestSingleActiveSubscription:
    """Tests for the one-active-subscription-per-subscriber rule."""

    async def test_concurrent_creates_leave_one_active(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        monthly_plan: Plan,
        clock: ManualClock,
        settings: Settings,
        account: Account,
    ) -> None:
        locks = KeyedLocks()

        async def subscribe() -> PlanSubscription:
            async with session_factory() as session:
                service = SubscriptionService(session, clock=clock, locks=locks, settings=settings)
                return await service.create(account, monthly_plan)

        first, second = await asyncio.gather(subscribe(), subscribe())

        async with session_factory() as session:
            assert await count_active(session, account.subscriber_ref) == 1
        assert first.id != second.id
        assert len(locks) == 0

    async def test_unique_index_rejects_second_active_row(
        self,
        db_session: AsyncSession,
        monthly_plan: Plan,
        clock: ManualClock,
    ) -> None:
        for slug in ("one", "two"):
            db_session.add(
                PlanSubscription(
                    subscriber_type="account",
                    subscriber_id="9",
                    plan_id=monthly_plan.id,
                    slug=slug,
                    name=slug,
                    starts_at=clock(),
                    ends_at=clock() + timedelta(days=30),
                    is_active=True,
                )
            )

        with pytest.raises(IntegrityError):
            await db_session.flush()
        await db_session.rollback()

    async def test_activate_deactivates_siblings(
        self,
        db_session: AsyncSession,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        yearly_plan: Plan,
        account: Account,
    ) -> None:
        first = await subscription_service.create(account, monthly_plan)
        await subscription_service.deactivate(first)
        second = await subscription_service.create(account, yearly_plan)

        await subscription_service.activate(first)

        assert first.is_active
        assert not second.is_active
        assert await count_active(db_session, account.subscriber_ref) == 1

    async def test_activate_twice_is_noop(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        account: Account,
        recorder: SignalRecorder,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)

        await subscription_service.activate(subscription)

        assert recorder.of(SubscriptionEvent.UPDATED) == []


class TestCancel:
    """Tests for canceling subscriptions."""

    async def test_cancel_at_period_end(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        account: Account,
        clock: ManualClock,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)
        clock.advance(days=10)

        await subscription_service.cancel(subscription)

        assert subscription.canceled_at == clock()
        assert subscription.ends_at == datetime(2025, 2, 1, tzinfo=UTC)
        assert not subscription.is_active
        assert subscription.canceled(clock())
        assert not subscription.ended(clock())
        assert subscription.state(clock()) == SubscriptionState.CANCELED_PENDING

    async def test_cancel_immediately_ends_period(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        account: Account,
        clock: ManualClock,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)
        clock.advance(days=10)

        await subscription_service.cancel(subscription, immediately=True)

        assert subscription.ends_at == subscription.canceled_at == clock()
        assert subscription.ended(clock())
        assert subscription_service.status(subscription).state == SubscriptionState.ENDED

    async def test_cancel_twice_keeps_first_instant(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        account: Account,
        clock: ManualClock,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)
        clock.advance(days=1)
        await subscription_service.cancel(subscription)
        first_cancel = subscription.canceled_at
        clock.advance(days=1)

        await subscription_service.cancel(subscription)

        assert subscription.canceled_at == first_cancel
        assert not subscription.is_active


class TestRenew:
    """Tests for renewing subscriptions."""

    async def test_renew_canceled_and_ended_fails(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        account: Account,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)
        await subscription_service.cancel(subscription, immediately=True)

        with pytest.raises(InvalidStateError):
            await subscription_service.renew(subscription)

    async def test_renew_after_period_end(
        self,
        db_session: AsyncSession,
        subscription_service: SubscriptionService,
        quota_manager: QuotaManager,
        monthly_plan: Plan,
        account: Account,
        clock: ManualClock,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)
        await quota_manager.record_usage(subscription, "api-calls", 4)
        clock.set(datetime(2025, 3, 1, tzinfo=UTC))
        assert subscription.ended(clock())

        await subscription_service.renew(subscription)

        assert subscription.starts_at == datetime(2025, 3, 1, tzinfo=UTC)
        assert subscription.ends_at == datetime(2025, 4, 1, tzinfo=UTC)
        assert subscription.canceled_at is None
        assert subscription.is_active
        assert await count_usage(db_session, subscription) == 0
        assert await quota_manager.get_usage(subscription, "api-calls") == 0

    async def test_renew_clears_pending_cancellation(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        account: Account,
        clock: ManualClock,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)
        clock.advance(days=5)
        await subscription_service.cancel(subscription)

        await subscription_service.renew(subscription)

        assert subscription.canceled_at is None
        assert subscription.is_active
        assert subscription.starts_at == clock()

    async def test_renew_deactivates_siblings(
        self,
        db_session: AsyncSession,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        yearly_plan: Plan,
        account: Account,
    ) -> None:
        first = await subscription_service.create(account, monthly_plan)
        await subscription_service.cancel(first)
        second = await subscription_service.create(account, yearly_plan)

        await subscription_service.renew(first)

        assert first.is_active
        assert not second.is_active
        assert await count_active(db_session, account.subscriber_ref) == 1


class TestChangePlan:
    """Tests for switching plans."""

    async def test_same_cadence_keeps_usage(
        self,
        db_session: AsyncSession,
        subscription_service: SubscriptionService,
        quota_manager: QuotaManager,
        monthly_plan: Plan,
        trial_plan: Plan,
        account: Account,
        clock: ManualClock,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)
        await quota_manager.record_usage(subscription, "api-calls", 2)
        clock.advance(days=10)

        await subscription_service.change_plan(subscription, trial_plan)

        assert subscription.plan_id == trial_plan.id
        assert subscription.starts_at == datetime(2025, 1, 1, tzinfo=UTC)
        assert subscription.ends_at == datetime(2025, 2, 1, tzinfo=UTC)
        assert await count_usage(db_session, subscription) == 1
        assert await quota_manager.get_usage(subscription, "api-calls") == 2

    async def test_same_cadence_drops_features_missing_from_new_plan(
        self,
        db_session: AsyncSession,
        subscription_service: SubscriptionService,
        quota_manager: QuotaManager,
        monthly_plan: Plan,
        trial_plan: Plan,
        account: Account,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)
        await quota_manager.record_usage(subscription, "projects", 2)
        await quota_manager.set_additional_quantity(subscription, "api-calls", 4)

        await subscription_service.change_plan(subscription, trial_plan)

        assert await count_usage(db_session, subscription) == 0
        assert await quota_manager.get_additional_quantity(subscription, "api-calls") == 4
        assert await quota_manager.get_total_balance(subscription, "api-calls") == 104

    async def test_new_cadence_restarts_period(
        self,
        db_session: AsyncSession,
        subscription_service: SubscriptionService,
        quota_manager: QuotaManager,
        monthly_plan: Plan,
        yearly_plan: Plan,
        account: Account,
        clock: ManualClock,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)
        await quota_manager.record_usage(subscription, "api-calls", 2)
        clock.set(datetime(2025, 1, 10, tzinfo=UTC))

        await subscription_service.change_plan(subscription, yearly_plan)

        assert subscription.plan_id == yearly_plan.id
        assert subscription.starts_at == datetime(2025, 1, 10, tzinfo=UTC)
        assert subscription.ends_at == datetime(2026, 1, 10, tzinfo=UTC)
        assert await count_usage(db_session, subscription) == 0


class TestDeleteAndRestore:
    """Tests for soft deletion."""

    async def test_delete_removes_usage(
        self,
        db_session: AsyncSession,
        subscription_service: SubscriptionService,
        quota_manager: QuotaManager,
        monthly_plan: Plan,
        account: Account,
        recorder: SignalRecorder,
    ) -> None:
        subscription = await subscription_service.create(account, monthly_plan)
        await quota_manager.record_usage(subscription, "api-calls")

        await subscription_service.delete(subscription)

        assert subscription.trashed
        assert subscription.state(subscription_service.clock()) == SubscriptionState.DELETED
        assert await count_usage(db_session, subscription) == 0
        assert await subscription_service.get_active_subscription(account) is None
        assert recorder.of(SubscriptionEvent.DELETED) == [str(subscription.id)]
        with pytest.raises(SubscriptionNotFoundError):
            await subscription_service.get_subscription(subscription.id)
        restored = await subscription_service.get_subscription(subscription.id, with_trashed=True)
        assert restored is subscription

    async def test_restore_takes_over_active_slot(
        self,
        db_session: AsyncSession,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        yearly_plan: Plan,
        account: Account,
        recorder: SignalRecorder,
    ) -> None:
        first = await subscription_service.create(account, monthly_plan)
        await subscription_service.delete(first)
        second = await subscription_service.create(account, yearly_plan)
        assert first.is_active

        await subscription_service.restore(first)

        assert first.deleted_at is None
        assert not second.is_active
        assert await count_active(db_session, account.subscriber_ref) == 1
        assert recorder.of(SubscriptionEvent.RESTORED) == [str(first.id)]

    async def test_restore_inactive_keeps_current(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        yearly_plan: Plan,
        account: Account,
    ) -> None:
        first = await subscription_service.create(account, monthly_plan)
        second = await subscription_service.create(account, yearly_plan)
        await subscription_service.delete(first)

        await subscription_service.restore(first)

        assert not first.is_active
        assert second.is_active

    async def test_delete_subscriber_subscriptions(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        yearly_plan: Plan,
        account: Account,
        other_account: Account,
    ) -> None:
        await subscription_service.create(account, monthly_plan)
        await subscription_service.create(account, yearly_plan)
        await subscription_service.create(other_account, monthly_plan)

        deleted = await subscription_service.delete_subscriber_subscriptions(account)

        assert deleted == 2
        assert await subscription_service.list_subscriptions(account) == []
        assert len(await subscription_service.list_subscriptions(other_account)) == 1


class TestSubscriberQueries:
    """Tests for subscriber-side lookups."""

    async def test_lookups(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        yearly_plan: Plan,
        account: Account,
    ) -> None:
        first = await subscription_service.create(account, monthly_plan)
        second = await subscription_service.create(account, yearly_plan)

        assert await subscription_service.list_subscriptions(account) == [first, second]
        assert await subscription_service.active_subscriptions(account) == [second]
        assert await subscription_service.get_active_subscription(account) is second
        assert await subscription_service.get_subscription_by_slug(account, "basic") is first
        assert await subscription_service.subscribed_plans(account) == [yearly_plan]
        assert await subscription_service.subscribed_to(account, yearly_plan.id)
        assert not await subscription_service.subscribed_to(account, monthly_plan.id)

    async def test_no_subscription(
        self,
        subscription_service: SubscriptionService,
        account: Account,
    ) -> None:
        assert await subscription_service.get_active_subscription(account) is None
        assert await subscription_service.subscribed_plans(account) == []
        with pytest.raises(SubscriptionNotFoundError):
            await subscription_service.get_subscription(uuid4())

    async def test_get_subscriber_through_registry(
        self,
        db_session: AsyncSession,
        clock: ManualClock,
        settings: Settings,
        monthly_plan: Plan,
        account: Account,
    ) -> None:
        registry = SubscriberRegistry()
        accounts = {"1": account}
        registry.register("account", accounts.get)
        service = SubscriptionService(
            db_session,
            clock=clock,
            locks=KeyedLocks(),
            registry=registry,
            settings=settings,
        )
        subscription = await service.create(account, monthly_plan)

        assert await service.get_subscriber(subscription) is account

        accounts.clear()
        with pytest.raises(SubscriberNotFoundError):
            await service.get_subscriber(subscription)


class TestSweepQueries:
    """Tests for the predicates batch jobs run."""

    async def test_trial_and_period_windows(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        trial_plan: Plan,
        account: Account,
        other_account: Account,
        clock: ManualClock,
    ) -> None:
        on_trial = await subscription_service.create(account, trial_plan)
        monthly = await subscription_service.create(other_account, monthly_plan)

        clock.set(datetime(2025, 1, 13, tzinfo=UTC))
        assert await subscription_service.find_ending_trial() == [on_trial]
        assert await subscription_service.find_ended_trial() == [monthly]
        assert await subscription_service.find_ending_trial(day_range=1) == []

        clock.set(datetime(2025, 1, 30, tzinfo=UTC))
        assert await subscription_service.find_ending_period() == [monthly]
        assert await subscription_service.find_ended_period() == []

        clock.set(datetime(2025, 2, 20, tzinfo=UTC))
        assert await subscription_service.find_ended_period() == [monthly]
        assert await subscription_service.find_ending_period(day_range=0) == []

    async def test_active_and_by_plan(
        self,
        subscription_service: SubscriptionService,
        monthly_plan: Plan,
        yearly_plan: Plan,
        account: Account,
        other_account: Account,
    ) -> None:
        canceled = await subscription_service.create(account, monthly_plan)
        current = await subscription_service.create(account, yearly_plan)
        other = await subscription_service.create(other_account, monthly_plan)

        assert await subscription_service.find_active() == [current, other]
        assert await subscription_service.find_by_plan(monthly_plan.id) == [canceled, other]
