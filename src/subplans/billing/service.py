"""Subscription lifecycle service.

Every operation that can leave a subscription active runs the same sequence:
take the subscriber's in-process lock, row-lock the subscriber's active
subscriptions, deactivate them and only then activate the target, all inside
one unit of work. The partial unique index on ``plan_subscriptions`` rejects
whatever slips past both locks.
"""

from collections.abc import Hashable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from subplans.billing.locking import KeyedLocks, default_locks
from subplans.billing.models import (
    Plan,
    PlanFeature,
    PlanModule,
    PlanSubscription,
    PlanSubscriptionFeature,
    PlanSubscriptionUsage,
)
from subplans.billing.schemas import SubscriptionStatus
from subplans.billing.signals import SubscriptionEvent, SubscriptionSignals
from subplans.billing.slugs import slugify
from subplans.billing.subscribers import SubscriberCapable, SubscriberRef, SubscriberRegistry
from subplans.core.clock import Clock, utc_now
from subplans.core.config import Settings, get_settings
from subplans.core.database import transaction
from subplans.core.exceptions import (
    InvalidStateError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
)
from subplans.core.logging import LoggerMixin

Subscriber = SubscriberCapable | SubscriberRef


def subscriber_lock_key(ref: SubscriberRef) -> Hashable:
    """Key under which activation sequences of one subscriber serialise."""
    return ("subscriber", ref.kind, ref.id)


class SubscriptionService(LoggerMixin):
    """Service for creating and transitioning plan subscriptions."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock = utc_now,
        signals: SubscriptionSignals | None = None,
        locks: KeyedLocks | None = None,
        registry: SubscriberRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize subscription service.

        Args:
            db: Database session
            clock: Current instant provider
            signals: Lifecycle signal registry
            locks: Per-subscriber locks shared by services of this process
            registry: Resolves stored subscriber references to entities
            settings: Settings override (defaults to the cached settings)
        """
        self.db = db
        self.clock = clock
        self.signals = signals or SubscriptionSignals()
        self.locks = locks if locks is not None else default_locks
        self.registry = registry or SubscriberRegistry()
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def create(
        self,
        subscriber: Subscriber,
        plan: Plan,
        start: datetime | None = None,
        name: str | None = None,
        *,
        description: str | None = None,
    ) -> PlanSubscription:
        """Subscribe a subscriber to a plan.

        Every active subscription of the subscriber is canceled immediately.
        The trial starts at ``start`` (or now) and the billing period starts
        where the trial ends.

        Args:
            subscriber: Subscriber entity or reference
            plan: Plan to subscribe to
            start: Trial anchor, defaults to the clock's now
            name: Subscription name, defaults to the plan's name
            description: Optional description

        Returns:
            The new active subscription
        """
        ref = SubscriberRef.of(subscriber)
        now = self.clock()
        trial = plan.trial(start or now)
        period = plan.billing_period(trial.end)
        name = name or plan.name

        async with self.locks.hold(subscriber_lock_key(ref)):
            async with transaction(self.db):
                canceled = await self._lock_active_subscriptions(ref)
                for sibling in canceled:
                    self._cancel(sibling, immediately=True, now=now)
                # Siblings must be inactive before the insert hits the unique index
                await self.db.flush()

                subscription = PlanSubscription(
                    subscriber_type=ref.kind,
                    subscriber_id=ref.id,
                    plan_id=plan.id,
                    slug=await self._unique_slug(ref, name),
                    name=name,
                    description=description,
                    subscription_type=plan.subscription_model,
                    trial_ends_at=trial.end,
                    starts_at=period.start,
                    ends_at=period.end,
                    is_active=True,
                    is_paid=False,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(subscription)
                await self.db.flush()

        for sibling in canceled:
            await self.signals.send(SubscriptionEvent.UPDATED, sibling)
        await self.signals.send(SubscriptionEvent.CREATED, subscription)

        self.logger.info(
            "subscription_created",
            subscription_id=str(subscription.id),
            subscriber=str(ref),
            plan_id=str(plan.id),
            trial_ends_at=subscription.trial_ends_at.isoformat(),
            ends_at=subscription.ends_at.isoformat(),
            canceled_siblings=len(canceled),
        )
        return subscription

    async def cancel(
        self,
        subscription: PlanSubscription,
        immediately: bool = False,
    ) -> PlanSubscription:
        """Cancel a subscription.

        Canceling twice keeps the first cancellation instant.

        Args:
            subscription: Subscription to cancel
            immediately: End the billing period at the cancellation instant

        Returns:
            The canceled subscription
        """
        async with transaction(self.db):
            self._cancel(subscription, immediately=immediately, now=self.clock())

        await self.signals.send(SubscriptionEvent.UPDATED, subscription)

        self.logger.info(
            "subscription_canceled",
            subscription_id=str(subscription.id),
            immediately=immediately,
            canceled_at=subscription.canceled_at.isoformat(),
        )
        return subscription

    async def renew(self, subscription: PlanSubscription) -> PlanSubscription:
        """Start a fresh billing period from now and reactivate.

        Usage recorded under the previous period is discarded.

        Raises:
            InvalidStateError: If the subscription has both ended and been canceled
        """
        now = self.clock()
        if subscription.ended(now) and subscription.canceled(now):
            raise InvalidStateError(
                "Unable to renew canceled ended subscription",
                details={"subscription_id": str(subscription.id)},
            )

        async with self.locks.hold(subscriber_lock_key(subscription.subscriber_ref)):
            async with transaction(self.db):
                deactivated = await self._deactivate_other_subscriptions(subscription)
                await self._delete_usage(subscription)

                plan = await self._get_plan(subscription.plan_id)
                period = plan.billing_period(now)
                subscription.starts_at = period.start
                subscription.ends_at = period.end
                subscription.canceled_at = None
                subscription.is_active = True

        await self._announce_updates(deactivated, subscription)

        self.logger.info(
            "subscription_renewed",
            subscription_id=str(subscription.id),
            starts_at=subscription.starts_at.isoformat(),
            ends_at=subscription.ends_at.isoformat(),
        )
        return subscription

    async def change_plan(
        self,
        subscription: PlanSubscription,
        new_plan: Plan,
    ) -> PlanSubscription:
        """Move a subscription to another plan.

        A plan with a different billing cadence starts a new billing period
        from now and discards recorded usage. Otherwise usage and purchased
        quantities carry over to the new plan's features of the same slug.
        """
        now = self.clock()

        async with transaction(self.db):
            current_plan = await self._get_plan(subscription.plan_id)
            cadence_changed = not current_plan.has_same_cadence(new_plan)

            if cadence_changed:
                period = new_plan.billing_period(now)
                subscription.starts_at = period.start
                subscription.ends_at = period.end
                await self._delete_usage(subscription)
            elif current_plan.id != new_plan.id:
                await self._carry_usage_over(subscription, new_plan)

            subscription.plan_id = new_plan.id

        await self.signals.send(SubscriptionEvent.UPDATED, subscription)

        self.logger.info(
            "subscription_plan_changed",
            subscription_id=str(subscription.id),
            old_plan_id=str(current_plan.id),
            new_plan_id=str(new_plan.id),
            cadence_changed=cadence_changed,
        )
        return subscription

    async def activate(self, subscription: PlanSubscription) -> PlanSubscription:
        """Set the active flag, deactivating the subscriber's other subscriptions."""
        if subscription.is_active:
            return subscription

        async with self.locks.hold(subscriber_lock_key(subscription.subscriber_ref)):
            async with transaction(self.db):
                deactivated = await self._deactivate_other_subscriptions(subscription)
                subscription.is_active = True

        await self._announce_updates(deactivated, subscription)

        self.logger.info(
            "subscription_activated",
            subscription_id=str(subscription.id),
            deactivated=len(deactivated),
        )
        return subscription

    async def deactivate(self, subscription: PlanSubscription) -> PlanSubscription:
        if not subscription.is_active:
            return subscription

        async with transaction(self.db):
            subscription.is_active = False

        await self.signals.send(SubscriptionEvent.UPDATED, subscription)
        self.logger.info("subscription_deactivated", subscription_id=str(subscription.id))
        return subscription

    async def delete(self, subscription: PlanSubscription) -> None:
        """Soft-delete a subscription and delete its usage entries."""
        if subscription.deleted_at is not None:
            return

        async with transaction(self.db):
            await self._delete_usage(subscription)
            subscription.deleted_at = self.clock()

        await self.signals.send(SubscriptionEvent.DELETED, subscription)
        self.logger.info("subscription_deleted", subscription_id=str(subscription.id))

    async def restore(self, subscription: PlanSubscription) -> PlanSubscription:
        """Undo a soft delete.

        A restored subscription that is still flagged active takes over from
        the subscriber's other active subscriptions.
        """
        if subscription.deleted_at is None:
            return subscription

        async with self.locks.hold(subscriber_lock_key(subscription.subscriber_ref)):
            async with transaction(self.db):
                deactivated: list[PlanSubscription] = []
                if subscription.is_active:
                    deactivated = await self._deactivate_other_subscriptions(subscription)
                subscription.deleted_at = None

        for sibling in deactivated:
            await self.signals.send(SubscriptionEvent.UPDATED, sibling)
        await self.signals.send(SubscriptionEvent.RESTORED, subscription)

        self.logger.info(
            "subscription_restored",
            subscription_id=str(subscription.id),
            active=subscription.is_active,
        )
        return subscription

    async def delete_subscriber_subscriptions(self, subscriber: Subscriber) -> int:
        """Soft-delete every subscription of a subscriber.

        Returns:
            Number of subscriptions deleted
        """
        ref = SubscriberRef.of(subscriber)
        now = self.clock()

        async with transaction(self.db):
            subscriptions = await self.list_subscriptions(ref)
            for subscription in subscriptions:
                await self._delete_usage(subscription)
                subscription.deleted_at = now

        for subscription in subscriptions:
            await self.signals.send(SubscriptionEvent.DELETED, subscription)

        self.logger.info(
            "subscriber_subscriptions_deleted",
            subscriber=str(ref),
            count=len(subscriptions),
        )
        return len(subscriptions)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_subscription(
        self,
        subscription_id: UUID,
        *,
        with_trashed: bool = False,
    ) -> PlanSubscription:
        """Get a subscription by ID.

        Raises:
            SubscriptionNotFoundError: If no such subscription exists
        """
        query = select(PlanSubscription).where(PlanSubscription.id == subscription_id)
        if not with_trashed:
            query = query.where(PlanSubscription.deleted_at.is_(None))

        result = await self.db.execute(query)
        subscription = result.scalar_one_or_none()

        if subscription is None:
            raise SubscriptionNotFoundError(
                resource_type="subscription",
                resource_id=str(subscription_id),
            )
        return subscription

    async def list_subscriptions(self, subscriber: Subscriber) -> list[PlanSubscription]:
        ref = SubscriberRef.of(subscriber)
        result = await self.db.execute(
            self._of_subscriber(ref).order_by(PlanSubscription.created_at),
        )
        return list(result.scalars().all())

    async def active_subscriptions(self, subscriber: Subscriber) -> list[PlanSubscription]:
        ref = SubscriberRef.of(subscriber)
        result = await self.db.execute(
            self._of_subscriber(ref)
            .where(PlanSubscription.is_active.is_(True))
            .order_by(PlanSubscription.created_at),
        )
        return list(result.scalars().all())

    async def get_active_subscription(self, subscriber: Subscriber) -> PlanSubscription | None:
        """Get the subscriber's active subscription, if any."""
        ref = SubscriberRef.of(subscriber)
        result = await self.db.execute(
            self._of_subscriber(ref)
            .where(PlanSubscription.is_active.is_(True))
            .order_by(PlanSubscription.created_at.desc())
            .limit(1),
        )
        return result.scalar_one_or_none()

    async def get_subscription_by_slug(
        self,
        subscriber: Subscriber,
        slug: str,
    ) -> PlanSubscription | None:
        ref = SubscriberRef.of(subscriber)
        result = await self.db.execute(
            self._of_subscriber(ref).where(PlanSubscription.slug == slug).limit(1),
        )
        return result.scalar_one_or_none()

    async def subscribed_plans(self, subscriber: Subscriber) -> list[Plan]:
        """Plans behind the subscriber's active subscriptions."""
        plan_ids = {s.plan_id for s in await self.active_subscriptions(subscriber)}
        if not plan_ids:
            return []

        result = await self.db.execute(
            select(Plan).where(Plan.id.in_(plan_ids)).order_by(Plan.sort_order),
        )
        return list(result.scalars().all())

    async def subscribed_to(self, subscriber: Subscriber, plan_id: UUID) -> bool:
        """Check if the subscriber holds an active subscription to a plan."""
        return any(
            s.plan_id == plan_id for s in await self.active_subscriptions(subscriber)
        )

    async def module_enabled(self, subscriber: Subscriber, module: str) -> bool:
        """Check whether the subscriber's active plan unlocks a module."""
        subscription = await self.get_active_subscription(subscriber)
        if subscription is None:
            return False
        return await self.plan_has_module(subscription.plan_id, module)

    async def plan_has_module(self, plan_id: UUID, module: str) -> bool:
        result = await self.db.execute(
            select(PlanModule.id)
            .where(
                PlanModule.plan_id == plan_id,
                PlanModule.module == module,
                PlanModule.deleted_at.is_(None),
            )
            .limit(1),
        )
        return result.scalar_one_or_none() is not None

    async def get_subscriber(self, subscription: PlanSubscription) -> Any:
        """Load the entity that holds a subscription.

        Raises:
            SubscriberNotFoundError: If the reference cannot be resolved
        """
        return await self.registry.resolve(subscription.subscriber_ref)

    def status(self, subscription: PlanSubscription) -> SubscriptionStatus:
        """Evaluate the derived lifecycle predicates at the clock's now."""
        now = self.clock()
        return SubscriptionStatus(
            subscription_id=subscription.id,
            state=subscription.state(now),
            active=subscription.active(),
            on_trial=subscription.on_trial(now),
            canceled=subscription.canceled(now),
            ended=subscription.ended(now),
            evaluated_at=now,
        )

    # ------------------------------------------------------------------
    # Sweep queries for external batch jobs
    # ------------------------------------------------------------------

    async def find_ending_trial(self, day_range: int | None = None) -> list[PlanSubscription]:
        """Subscriptions whose trial ends within ``day_range`` days from now."""
        now = self.clock()
        days = self.settings.ending_days_range if day_range is None else day_range
        return await self._find(
            PlanSubscription.trial_ends_at.between(now, now + timedelta(days=days)),
        )

    async def find_ended_trial(self) -> list[PlanSubscription]:
        return await self._find(PlanSubscription.trial_ends_at <= self.clock())

    async def find_ending_period(self, day_range: int | None = None) -> list[PlanSubscription]:
        """Subscriptions whose billing period ends within ``day_range`` days from now."""
        now = self.clock()
        days = self.settings.ending_days_range if day_range is None else day_range
        return await self._find(
            PlanSubscription.ends_at.between(now, now + timedelta(days=days)),
        )

    async def find_ended_period(self) -> list[PlanSubscription]:
        return await self._find(PlanSubscription.ends_at <= self.clock())

    async def find_active(self) -> list[PlanSubscription]:
        return await self._find(PlanSubscription.is_active.is_(True))

    async def find_by_plan(self, plan_id: UUID) -> list[PlanSubscription]:
        return await self._find(PlanSubscription.plan_id == plan_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _find(self, *conditions: Any) -> list[PlanSubscription]:
        result = await self.db.execute(
            select(PlanSubscription)
            .where(PlanSubscription.deleted_at.is_(None), *conditions)
            .order_by(PlanSubscription.created_at),
        )
        return list(result.scalars().all())

    @staticmethod
    def _of_subscriber(ref: SubscriberRef) -> Any:
        return select(PlanSubscription).where(
            PlanSubscription.subscriber_type == ref.kind,
            PlanSubscription.subscriber_id == ref.id,
            PlanSubscription.deleted_at.is_(None),
        )

    async def _lock_active_subscriptions(
        self,
        ref: SubscriberRef,
        exclude: UUID | None = None,
    ) -> list[PlanSubscription]:
        query = self._of_subscriber(ref).where(PlanSubscription.is_active.is_(True))
        if exclude is not None:
            query = query.where(PlanSubscription.id != exclude)

        result = await self.db.execute(query.with_for_update())
        return list(result.scalars().all())

    async def _deactivate_other_subscriptions(
        self,
        subscription: PlanSubscription,
    ) -> list[PlanSubscription]:
        """Flip every other active subscription of the subscriber to inactive.

        Must run inside the caller's unit of work and under the subscriber
        lock. Flushes so the target can be activated afterwards.
        """
        others = await self._lock_active_subscriptions(
            subscription.subscriber_ref,
            exclude=subscription.id,
        )
        for other in others:
            other.is_active = False
        await self.db.flush()

        if others:
            self.logger.debug(
                "sibling_subscriptions_deactivated",
                subscription_id=str(subscription.id),
                deactivated=[str(o.id) for o in others],
            )
        return others

    def _cancel(self, subscription: PlanSubscription, *, immediately: bool, now: datetime) -> None:
        if subscription.canceled_at is None:
            subscription.canceled_at = now
        subscription.is_active = False
        if immediately:
            subscription.ends_at = subscription.canceled_at

    async def _delete_usage(self, subscription: PlanSubscription) -> None:
        await self.db.execute(
            delete(PlanSubscriptionUsage).where(
                PlanSubscriptionUsage.subscription_id == subscription.id,
            ),
        )

    async def _carry_usage_over(self, subscription: PlanSubscription, new_plan: Plan) -> None:
        """Re-point ledger and add-on rows at the new plan's features.

        Rows for slugs the new plan does not define are deleted.
        """
        result = await self.db.execute(
            select(PlanFeature.slug, PlanFeature.id).where(PlanFeature.plan_id == new_plan.id),
        )
        new_features = {slug: feature_id for slug, feature_id in result}

        for model in (PlanSubscriptionUsage, PlanSubscriptionFeature):
            rows = await self.db.execute(
                select(model, PlanFeature.slug)
                .join(PlanFeature, PlanFeature.id == model.feature_id)
                .where(model.subscription_id == subscription.id),
            )
            for row, slug in rows.all():
                feature_id = new_features.get(slug)
                if feature_id is None:
                    await self.db.delete(row)
                else:
                    row.feature_id = feature_id

    async def _get_plan(self, plan_id: UUID) -> Plan:
        plan = await self.db.get(Plan, plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found")
        return plan

    async def _unique_slug(self, ref: SubscriberRef, name: str) -> str:
        base = slugify(name) or "subscription"
        result = await self.db.execute(
            select(PlanSubscription.slug).where(
                PlanSubscription.subscriber_type == ref.kind,
                PlanSubscription.subscriber_id == ref.id,
                PlanSubscription.slug.startswith(base),
            ),
        )
        taken = set(result.scalars().all())

        slug, suffix = base, 1
        while slug in taken:
            suffix += 1
            slug = f"{base}-{suffix}"
        return slug

    async def _announce_updates(
        self,
        deactivated: list[PlanSubscription],
        subscription: PlanSubscription,
    ) -> None:
        for sibling in deactivated:
            await self.signals.send(SubscriptionEvent.UPDATED, sibling)
        await self.signals.send(SubscriptionEvent.UPDATED, subscription)
