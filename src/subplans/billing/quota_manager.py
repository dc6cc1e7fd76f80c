"""Feature quota accounting for subscriptions.

Usage of a feature is kept in one ledger row per (subscription, feature).
Features with a reset cadence roll their counter over lazily: the first
record anchors the cycle on the subscription's creation instant and every
later rollover chains from the previous boundary.
"""

from collections.abc import Hashable
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subplans.billing.locking import KeyedLocks, default_locks
from subplans.billing.models import (
    PlanFeature,
    PlanSubscription,
    PlanSubscriptionFeature,
    PlanSubscriptionUsage,
)
from subplans.billing.plans import PlanService
from subplans.billing.schemas import UsageSummary
from subplans.billing.signals import SubscriptionEvent, SubscriptionSignals
from subplans.core.clock import Clock, utc_now
from subplans.core.config import Settings, get_settings
from subplans.core.database import transaction
from subplans.core.exceptions import ValidationError
from subplans.core.logging import LoggerMixin

UNLIMITED = -1


def usage_lock_key(subscription_id: UUID, feature_slug: str) -> Hashable:
    """Key under which read-modify-write of one ledger row serialises."""
    return ("usage", subscription_id, feature_slug)


class QuotaManager(LoggerMixin):
    """Records, reduces and checks feature usage of subscriptions."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock = utc_now,
        signals: SubscriptionSignals | None = None,
        locks: KeyedLocks | None = None,
        plans: PlanService | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize quota manager.

        Args:
            db: Database session
            clock: Current instant provider
            signals: Receives usage reset events
            locks: Per-ledger-row locks shared by services of this process
            plans: Plan service used to look features up by slug
            settings: Settings override (defaults to the cached settings)
        """
        self.db = db
        self.clock = clock
        self.signals = signals or SubscriptionSignals()
        self.locks = locks if locks is not None else default_locks
        self.settings = settings or get_settings()
        self.plans = plans or PlanService(
            db,
            clock=clock,
            signals=self.signals,
            settings=self.settings,
        )

    def get_reset_date(self, feature: PlanFeature, from_instant: datetime) -> datetime:
        """End of the reset cycle that starts at ``from_instant``."""
        return feature.get_reset_date(from_instant)

    def is_expired(self, usage: PlanSubscriptionUsage) -> bool:
        return usage.expired(self.clock())

    async def record_usage(
        self,
        subscription: PlanSubscription,
        feature_slug: str,
        uses: int = 1,
        incremental: bool = True,
    ) -> PlanSubscriptionUsage:
        """Record usage of a feature.

        An expired entry is reset to zero and its boundary advanced by one
        cycle before the new usage is applied. No ceiling is enforced here;
        check ``can_use`` first.

        Args:
            subscription: Subscription consuming the feature
            feature_slug: Feature slug on the subscription's plan
            uses: Amount to add, or the new total when not incremental
            incremental: Add ``uses`` instead of overwriting the counter

        Returns:
            The updated ledger entry

        Raises:
            FeatureNotFoundError: If the plan does not define the slug
        """
        self._check_amount(uses)
        now = self.clock()
        rolled_over = False

        async with self.locks.hold(usage_lock_key(subscription.id, feature_slug)):
            async with transaction(self.db):
                feature = await self._feature(subscription, feature_slug)
                usage = await self._entry(subscription.id, feature.id, for_update=True)
                if usage is None:
                    usage = PlanSubscriptionUsage(
                        subscription_id=subscription.id,
                        feature_id=feature.id,
                        used=0,
                        valid_until=None,
                        created_at=now,
                        updated_at=now,
                    )
                    self.db.add(usage)

                if feature.resets:
                    if usage.valid_until is None:
                        usage.valid_until = self.get_reset_date(feature, subscription.created_at)
                    elif self.settings.auto_reset_usage and usage.expired(now):
                        usage.valid_until = self.get_reset_date(feature, usage.valid_until)
                        usage.used = 0
                        rolled_over = True

                usage.used = usage.used + uses if incremental else uses
                await self.db.flush()

        if rolled_over:
            await self.signals.send(SubscriptionEvent.USAGE_RESET, subscription)

        self.logger.info(
            "feature_usage_recorded",
            subscription_id=str(subscription.id),
            feature=feature_slug,
            uses=uses,
            incremental=incremental,
            used=usage.used,
            rolled_over=rolled_over,
        )
        return usage

    async def reduce_usage(
        self,
        subscription: PlanSubscription,
        feature_slug: str,
        uses: int = 1,
    ) -> PlanSubscriptionUsage | None:
        """Give back usage of a feature, never going below zero.

        Returns:
            The updated ledger entry, or None if nothing was recorded yet

        Raises:
            FeatureNotFoundError: If the plan does not define the slug
        """
        self._check_amount(uses)

        async with self.locks.hold(usage_lock_key(subscription.id, feature_slug)):
            async with transaction(self.db):
                feature = await self._feature(subscription, feature_slug)
                usage = await self._entry(subscription.id, feature.id, for_update=True)
                if usage is None:
                    return None

                usage.used = max(usage.used - uses, 0)
                await self.db.flush()

        self.logger.info(
            "feature_usage_reduced",
            subscription_id=str(subscription.id),
            feature=feature_slug,
            uses=uses,
            used=usage.used,
        )
        return usage

    async def get_usage(self, subscription: PlanSubscription, feature_slug: str) -> int:
        """Current usage; expired or missing entries count as zero."""
        feature = await self._feature(subscription, feature_slug)
        usage = await self._entry(subscription.id, feature.id)
        if usage is None:
            return 0
        if self.settings.auto_reset_usage and self.is_expired(usage):
            return 0
        return usage.used

    async def get_feature_value(self, subscription: PlanSubscription, feature_slug: str) -> int:
        feature = await self._feature(subscription, feature_slug)
        return feature.value

    async def get_additional_quantity(
        self,
        subscription: PlanSubscription,
        feature_slug: str,
    ) -> int:
        """Quantity purchased on top of the plan's quota."""
        feature = await self._feature(subscription, feature_slug)
        return await self._additional_quantity(subscription.id, feature.id)

    async def get_total_balance(self, subscription: PlanSubscription, feature_slug: str) -> int:
        """Plan quota plus purchased quantity; -1 when unlimited."""
        feature = await self._feature(subscription, feature_slug)
        if feature.is_unlimited:
            return UNLIMITED
        return feature.value + await self._additional_quantity(subscription.id, feature.id)

    async def get_remaining(self, subscription: PlanSubscription, feature_slug: str) -> int:
        """Quota left in the current cycle.

        Negative when usage has overrun the quota; -1 for unlimited features,
        which have no remaining amount to report.
        """
        feature = await self._feature(subscription, feature_slug)
        if feature.is_unlimited:
            return UNLIMITED
        return await self._quota(subscription, feature) - await self.get_usage(
            subscription, feature_slug
        )

    async def can_use(self, subscription: PlanSubscription, feature_slug: str) -> bool:
        """Check whether the feature has quota left.

        A feature with value 0 is disabled unless purchased quantity counts
        toward its quota and some was bought.

        Raises:
            FeatureNotFoundError: If the plan does not define the slug
        """
        feature = await self._feature(subscription, feature_slug)
        if feature.is_unlimited:
            return True
        if await self._quota(subscription, feature) <= 0:
            return False
        return await self.get_remaining(subscription, feature_slug) > 0

    async def set_additional_quantity(
        self,
        subscription: PlanSubscription,
        feature_slug: str,
        quantity: int,
        source: str | None = None,
    ) -> PlanSubscriptionFeature:
        """Set the purchased add-on quantity of a feature.

        Raises:
            FeatureNotFoundError: If the plan does not define the slug
            ValidationError: If the quantity is negative
        """
        if quantity < 0:
            raise ValidationError(
                "Purchased quantity must not be negative",
                field="quantity",
                value=quantity,
            )
        async with transaction(self.db):
            feature = await self._feature(subscription, feature_slug)
            result = await self.db.execute(
                select(PlanSubscriptionFeature).where(
                    PlanSubscriptionFeature.subscription_id == subscription.id,
                    PlanSubscriptionFeature.feature_id == feature.id,
                ),
            )
            addon = result.scalar_one_or_none()
            if addon is None:
                now = self.clock()
                addon = PlanSubscriptionFeature(
                    subscription_id=subscription.id,
                    feature_id=feature.id,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(addon)

            addon.quantity = quantity
            addon.source = source
            await self.db.flush()

        self.logger.info(
            "additional_quantity_set",
            subscription_id=str(subscription.id),
            feature=feature_slug,
            quantity=quantity,
            source=source,
        )
        return addon

    async def get_usage_summary(
        self,
        subscription: PlanSubscription,
        feature_slug: str | None = None,
    ) -> list[UsageSummary]:
        """Usage report for one feature or for every feature of the plan.

        Remaining amounts are clamped at zero for display.
        """
        if feature_slug is not None:
            features = [await self._feature(subscription, feature_slug)]
        else:
            features = await self.plans.list_features(subscription.plan_id)

        summaries = []
        for feature in features:
            usage = await self._entry(subscription.id, feature.id)
            used = await self.get_usage(subscription, feature.slug)
            remaining = await self.get_remaining(subscription, feature.slug)
            summaries.append(
                UsageSummary(
                    feature_slug=feature.slug,
                    used=used,
                    quota_limit=feature.value,
                    additional_quantity=await self._additional_quantity(
                        subscription.id, feature.id
                    ),
                    remaining=UNLIMITED if feature.is_unlimited else max(remaining, 0),
                    is_unlimited=feature.is_unlimited,
                    can_use=await self.can_use(subscription, feature.slug),
                    reset_at=usage.valid_until if usage is not None else None,
                )
            )
        return summaries

    async def reset_expired_usage(self, dry_run: bool = False) -> list[PlanSubscriptionUsage]:
        """Reset every expired ledger entry.

        Each entry's boundary is advanced in whole cycles from its previous
        value until it lies in the future, so cycles stay anchored. Every
        entry is re-read under its usage lock and a row lock before it is
        touched, and skipped if a concurrent record already rolled it over.
        Meant for periodic batch jobs.

        Args:
            dry_run: Only report the expired entries

        Returns:
            The expired entries (reset unless ``dry_run``)
        """
        now = self.clock()

        async with transaction(self.db):
            result = await self.db.execute(
                select(PlanSubscriptionUsage, PlanFeature, PlanSubscription)
                .join(PlanFeature, PlanFeature.id == PlanSubscriptionUsage.feature_id)
                .join(
                    PlanSubscription,
                    PlanSubscription.id == PlanSubscriptionUsage.subscription_id,
                )
                .where(
                    PlanSubscriptionUsage.valid_until.is_not(None),
                    PlanSubscriptionUsage.valid_until <= now,
                )
                .order_by(PlanSubscriptionUsage.valid_until),
            )
            candidates = result.all()

        self.logger.info("expired_usage_found", count=len(candidates), dry_run=dry_run)
        if dry_run:
            return [usage for usage, _, _ in candidates]

        expired: list[PlanSubscriptionUsage] = []
        touched: dict[UUID, PlanSubscription] = {}
        for candidate, feature, subscription in candidates:
            key = usage_lock_key(candidate.subscription_id, feature.slug)
            async with self.locks.hold(key):
                async with transaction(self.db):
                    usage = await self._entry(
                        candidate.subscription_id,
                        feature.id,
                        for_update=True,
                    )
                    if usage is None or not usage.expired(now):
                        continue

                    if feature.resets:
                        boundary = usage.valid_until
                        while boundary <= now:
                            boundary = self.get_reset_date(feature, boundary)
                        usage.valid_until = boundary
                    else:
                        usage.valid_until = None
                    usage.used = 0
                    await self.db.flush()
                    expired.append(usage)
                    touched[subscription.id] = subscription

        for subscription in touched.values():
            await self.signals.send(SubscriptionEvent.USAGE_RESET, subscription)

        self.logger.info(
            "expired_usage_reset",
            count=len(expired),
            skipped=len(candidates) - len(expired),
        )
        return expired

    async def _feature(self, subscription: PlanSubscription, feature_slug: str) -> PlanFeature:
        return await self.plans.get_feature(subscription.plan_id, feature_slug)

    async def _entry(
        self,
        subscription_id: UUID,
        feature_id: UUID,
        *,
        for_update: bool = False,
    ) -> PlanSubscriptionUsage | None:
        query = select(PlanSubscriptionUsage).where(
            PlanSubscriptionUsage.subscription_id == subscription_id,
            PlanSubscriptionUsage.feature_id == feature_id,
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _additional_quantity(self, subscription_id: UUID, feature_id: UUID) -> int:
        result = await self.db.execute(
            select(PlanSubscriptionFeature.quantity).where(
                PlanSubscriptionFeature.subscription_id == subscription_id,
                PlanSubscriptionFeature.feature_id == feature_id,
            ),
        )
        return result.scalar_one_or_none() or 0

    async def _quota(self, subscription: PlanSubscription, feature: PlanFeature) -> int:
        if not self.settings.include_purchased_quantity:
            return feature.value
        return feature.value + await self._additional_quantity(subscription.id, feature.id)

    @staticmethod
    def _check_amount(uses: int) -> None:
        if uses < 0:
            raise ValidationError(
                "Usage amount must not be negative",
                field="uses",
                value=uses,
            )
