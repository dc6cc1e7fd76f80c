"""Feature usage facade.

Resolves the current subscriber to its active subscription and answers
quota questions for it. Usage of resources tracked outside the ledger is
measured by counters registered on the facade's configuration.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from subplans.billing.cache import SubscriptionCache
from subplans.billing.models import PlanSubscription
from subplans.billing.quota_manager import UNLIMITED, QuotaManager
from subplans.billing.service import Subscriber, SubscriptionService
from subplans.billing.subscribers import SubscriberRef
from subplans.core.exceptions import SubscriptionNotFoundError
from subplans.core.logging import LoggerMixin

SubscriberResolver = Callable[[], Any | Awaitable[Any]]
UsageCounter = Callable[[Any], int | Awaitable[int]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class FeatureUsageConfig:
    """Subscriber resolver and external usage counters of one facade.

    Attributes:
        subscriber_resolver: Returns the current subscriber, or None
        counters: Feature slug to a callable returning the subscriber's
            current count of an externally tracked resource
    """

    subscriber_resolver: SubscriberResolver | None = None
    counters: dict[str, UsageCounter] = field(default_factory=dict)

    def set_subscriber_resolver(self, resolver: SubscriberResolver | None) -> None:
        self.subscriber_resolver = resolver

    def register_counter(self, feature_slug: str, counter: UsageCounter) -> None:
        self.counters[feature_slug] = counter

    def remove_counter(self, feature_slug: str) -> None:
        self.counters.pop(feature_slug, None)


class FeatureUsageManager(LoggerMixin):
    """Quota checks and usage recording for the current subscriber."""

    def __init__(
        self,
        subscriptions: SubscriptionService,
        quotas: QuotaManager,
        config: FeatureUsageConfig | None = None,
        cache: SubscriptionCache | None = None,
    ) -> None:
        """Initialize the facade.

        Args:
            subscriptions: Subscription service used to find active subscriptions
            quotas: Quota manager the checks delegate to
            config: Resolver and counters for this facade
            cache: Optional cache of active subscription ids for read paths
        """
        self.subscriptions = subscriptions
        self.quotas = quotas
        self.config = config or FeatureUsageConfig()
        self.cache = cache

    async def resolve_subscriber(self, subscriber: Subscriber | None = None) -> Any:
        """Explicit subscriber, or whatever the configured resolver returns."""
        if subscriber is not None:
            return subscriber
        if self.config.subscriber_resolver is None:
            return None
        return await _maybe_await(self.config.subscriber_resolver())

    async def get_active_subscription(
        self,
        subscriber: Subscriber | None = None,
    ) -> PlanSubscription | None:
        """Active subscription read from storage."""
        resolved = await self.resolve_subscriber(subscriber)
        if resolved is None:
            return None
        return await self.subscriptions.get_active_subscription(resolved)

    async def has_active_subscription(self, subscriber: Subscriber | None = None) -> bool:
        return await self.get_active_subscription(subscriber) is not None

    async def can_use(self, feature_slug: str, subscriber: Subscriber | None = None) -> bool:
        """Check whether the subscriber may use a feature.

        Features with a registered counter compare the total balance, plan
        quota plus purchased quantity, against the counter. Everything else
        is decided by the subscription's usage ledger.

        Raises:
            FeatureNotFoundError: If the active plan does not define the slug
        """
        resolved = await self.resolve_subscriber(subscriber)
        if resolved is None:
            return False

        subscription = await self._active_for_read(resolved)
        if subscription is None:
            return False

        counter = self.config.counters.get(feature_slug)
        if counter is None:
            return await self.quotas.can_use(subscription, feature_slug)

        balance = await self.quotas.get_total_balance(subscription, feature_slug)
        if balance == UNLIMITED:
            return True
        count = await _maybe_await(counter(resolved))
        return balance > count

    async def module_enabled(self, module: str, subscriber: Subscriber | None = None) -> bool:
        """Check whether the subscriber's active plan unlocks a module.

        With a cache configured the answer is memoised per subscriber until a
        signal of one of its subscriptions drops it.
        """
        resolved = await self.resolve_subscriber(subscriber)
        if resolved is None:
            return False

        if self.cache is not None:
            cached = await self.cache.get_module(SubscriberRef.of(resolved), module)
            if cached is not None:
                return cached

        subscription = await self._active_for_read(resolved)
        enabled = subscription is not None and await self.subscriptions.plan_has_module(
            subscription.plan_id, module
        )

        if self.cache is not None:
            await self.cache.set_module(SubscriberRef.of(resolved), module, enabled)
        return enabled

    async def record_usage(
        self,
        feature_slug: str,
        subscriber: Subscriber | None = None,
        uses: int = 1,
    ) -> bool:
        """Record usage against the subscriber's active subscription.

        Returns:
            False when there is no active subscription to record against
        """
        subscription = await self.get_active_subscription(subscriber)
        if subscription is None:
            self.logger.debug(
                "feature_usage_skipped",
                feature=feature_slug,
                reason="no_subscription",
            )
            return False

        await self.quotas.record_usage(subscription, feature_slug, uses)
        return True

    async def decrease_usage(
        self,
        feature_slug: str,
        subscriber: Subscriber | None = None,
        amount: int = 1,
    ) -> bool:
        """Give usage back to the subscriber's active subscription.

        Returns:
            False when there is no active subscription or nothing was recorded
        """
        subscription = await self.get_active_subscription(subscriber)
        if subscription is None:
            return False

        usage = await self.quotas.reduce_usage(subscription, feature_slug, amount)
        return usage is not None

    async def _active_for_read(self, subscriber: Any) -> PlanSubscription | None:
        if self.cache is None:
            return await self.subscriptions.get_active_subscription(subscriber)

        ref = SubscriberRef.of(subscriber)
        cached_id = await self.cache.get(ref)
        if cached_id is not None:
            try:
                subscription = await self.subscriptions.get_subscription(cached_id)
            except SubscriptionNotFoundError:
                subscription = None
            if subscription is not None and subscription.active():
                return subscription
            await self.cache.invalidate(ref)

        subscription = await self.subscriptions.get_active_subscription(ref)
        if subscription is not None:
            await self.cache.set(ref, subscription.id)
        return subscription
