"""Tests for lifecycle signals and the active subscription cache."""

from types import SimpleNamespace
from uuid import uuid4

from subplans.billing.cache import SubscriptionCache
from subplans.billing.signals import SubscriptionEvent, SubscriptionSignals
from subplans.billing.subscribers import SubscriberRef
from tests.conftest import StatefulRedisMock


def fake_subscription(kind: str = "account", subscriber_id: str = "1") -> SimpleNamespace:
    return SimpleNamespace(
        id=uuid4(),
        subscriber_ref=SubscriberRef(kind=kind, id=subscriber_id),
    )


class TestSubscriptionSignals:
    """Tests for receiver registration and delivery."""

    async def test_sync_and_async_receivers_in_order(self) -> None:
        signals = SubscriptionSignals()
        received: list[str] = []

        def first(event: SubscriptionEvent, subscription: object) -> None:
            received.append("first")

        async def second(event: SubscriptionEvent, subscription: object) -> None:
            received.append("second")

        signals.connect(SubscriptionEvent.CREATED, first)
        signals.connect(SubscriptionEvent.CREATED, second)

        await signals.send(SubscriptionEvent.CREATED, fake_subscription())  # type: ignore[arg-type]

        assert received == ["first", "second"]

    async def test_connect_twice_is_noop(self) -> None:
        signals = SubscriptionSignals()
        received: list[SubscriptionEvent] = []

        def receiver(event: SubscriptionEvent, subscription: object) -> None:
            received.append(event)

        signals.connect(SubscriptionEvent.DELETED, receiver)
        signals.connect(SubscriptionEvent.DELETED, receiver)

        await signals.send(SubscriptionEvent.DELETED, fake_subscription())  # type: ignore[arg-type]

        assert received == [SubscriptionEvent.DELETED]

    async def test_disconnect(self) -> None:
        signals = SubscriptionSignals()
        received: list[SubscriptionEvent] = []
        signals.connect_all(lambda event, subscription: received.append(event))
        [receiver] = signals.receivers(SubscriptionEvent.UPDATED)

        signals.disconnect(SubscriptionEvent.UPDATED, receiver)
        await signals.send(SubscriptionEvent.UPDATED, fake_subscription())  # type: ignore[arg-type]
        await signals.send(SubscriptionEvent.RESTORED, fake_subscription())  # type: ignore[arg-type]

        assert received == [SubscriptionEvent.RESTORED]

    async def test_send_without_receivers(self) -> None:
        await SubscriptionSignals().send(
            SubscriptionEvent.USAGE_RESET,
            fake_subscription(),  # type: ignore[arg-type]
        )


class TestSubscriptionCache:
    """Tests for the Redis-backed active subscription pointer."""

    async def test_set_and_get(self, redis_client: StatefulRedisMock) -> None:
        cache = SubscriptionCache(redis_client, ttl_seconds=120)  # type: ignore[arg-type]
        ref = SubscriberRef(kind="account", id="1")
        subscription_id = uuid4()

        await cache.set(ref, subscription_id)

        assert await cache.get(ref) == subscription_id
        assert await redis_client.ttl("subplans:active_subscription:account:1") == 120

    async def test_get_decodes_bytes(self, redis_client: StatefulRedisMock) -> None:
        cache = SubscriptionCache(redis_client, ttl_seconds=120)  # type: ignore[arg-type]
        ref = SubscriberRef(kind="team", id="7")
        subscription_id = uuid4()
        await redis_client.set(cache.key(ref), str(subscription_id).encode())

        assert await cache.get(ref) == subscription_id

    async def test_zero_ttl_disables_writes(self, redis_client: StatefulRedisMock) -> None:
        cache = SubscriptionCache(redis_client, ttl_seconds=0)  # type: ignore[arg-type]
        ref = SubscriberRef(kind="account", id="1")

        await cache.set(ref, uuid4())

        assert await cache.get(ref) is None

    async def test_default_ttl_from_settings(self, redis_client: StatefulRedisMock) -> None:
        cache = SubscriptionCache(redis_client)  # type: ignore[arg-type]

        assert cache.ttl_seconds == 1800

    async def test_signal_invalidates_only_that_subscriber(
        self,
        redis_client: StatefulRedisMock,
    ) -> None:
        signals = SubscriptionSignals()
        cache = SubscriptionCache(redis_client, ttl_seconds=120)  # type: ignore[arg-type]
        cache.connect(signals)
        mine = fake_subscription(subscriber_id="1")
        theirs = fake_subscription(subscriber_id="2")
        await cache.set(mine.subscriber_ref, mine.id)
        await cache.set(theirs.subscriber_ref, theirs.id)

        await signals.send(SubscriptionEvent.UPDATED, mine)  # type: ignore[arg-type]

        assert await cache.get(mine.subscriber_ref) is None
        assert await cache.get(theirs.subscriber_ref) == theirs.id
