"""Active subscription and module cache using Redis."""

from uuid import UUID

from redis.asyncio import Redis

from subplans.billing.models import PlanSubscription
from subplans.billing.signals import SubscriptionEvent, SubscriptionSignals
from subplans.billing.subscribers import SubscriberRef
from subplans.core.config import get_settings
from subplans.core.logging import LoggerMixin


class SubscriptionCache(LoggerMixin):
    """Memoises which subscription is active for a subscriber.

    Module checks are kept in one hash per subscriber next to the active
    subscription id. Only read paths consult the cache. Both entries are
    dropped whenever a subscription of the subscriber emits a signal.
    """

    key_prefix = "subplans:active_subscription"
    modules_key_prefix = "subplans:modules"

    def __init__(self, redis_client: Redis, ttl_seconds: int | None = None) -> None:
        """Initialize cache.

        Args:
            redis_client: Redis client instance
            ttl_seconds: Entry lifetime (defaults to ``cache_ttl_seconds``)
        """
        self.redis = redis_client
        self.ttl_seconds = (
            get_settings().cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        )

    def key(self, ref: SubscriberRef) -> str:
        return f"{self.key_prefix}:{ref.kind}:{ref.id}"

    def modules_key(self, ref: SubscriberRef) -> str:
        return f"{self.modules_key_prefix}:{ref.kind}:{ref.id}"

    async def get(self, ref: SubscriberRef) -> UUID | None:
        """Cached active subscription id of a subscriber, if any."""
        value = await self.redis.get(self.key(ref))
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode()
        return UUID(value)

    async def set(self, ref: SubscriberRef, subscription_id: UUID) -> None:
        if self.ttl_seconds == 0:
            return
        await self.redis.setex(self.key(ref), self.ttl_seconds, str(subscription_id))

    async def get_module(self, ref: SubscriberRef, module: str) -> bool | None:
        """Cached module check of a subscriber, None when not cached."""
        value = await self.redis.hget(self.modules_key(ref), module)
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode()
        return value == "1"

    async def set_module(self, ref: SubscriberRef, module: str, enabled: bool) -> None:
        if self.ttl_seconds == 0:
            return
        key = self.modules_key(ref)
        await self.redis.hset(key, module, "1" if enabled else "0")
        await self.redis.expire(key, self.ttl_seconds)

    async def invalidate(self, ref: SubscriberRef) -> None:
        await self.redis.delete(self.key(ref), self.modules_key(ref))
        self.logger.debug("subscription_cache_invalidated", subscriber=str(ref))

    async def handle_signal(
        self,
        event: SubscriptionEvent,
        subscription: PlanSubscription,
    ) -> None:
        """Signal receiver dropping the subscriber's entries."""
        await self.invalidate(subscription.subscriber_ref)

    def connect(self, signals: SubscriptionSignals) -> None:
        """Invalidate on every event of ``signals``."""
        signals.connect_all(self.handle_signal)
