"""Subscription lifecycle signals.

Service operations emit these explicitly once their unit of work is done.
Receivers are registered by the caller, typically for cache invalidation or
notifications, and are never consumed by the core itself.
"""

from __future__ import annotations

import enum
import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from subplans.core.logging import LoggerMixin

if TYPE_CHECKING:
    from subplans.billing.models import PlanSubscription


class SubscriptionEvent(str, enum.Enum):
    """Events emitted by subscription and usage operations."""

    CREATED = "subscription.created"
    UPDATED = "subscription.updated"
    DELETED = "subscription.deleted"
    RESTORED = "subscription.restored"
    USAGE_RESET = "subscription.usage_reset"
    MODULES_CHANGED = "subscription.modules_changed"


Receiver = Callable[[SubscriptionEvent, "PlanSubscription"], Awaitable[None] | None]


class SubscriptionSignals(LoggerMixin):
    """Registry of receivers per subscription event."""

    def __init__(self) -> None:
        self._receivers: dict[SubscriptionEvent, list[Receiver]] = defaultdict(list)

    def connect(self, event: SubscriptionEvent, receiver: Receiver) -> None:
        """Register a receiver for an event. Registering twice is a no-op."""
        if receiver not in self._receivers[event]:
            self._receivers[event].append(receiver)

    def connect_all(self, receiver: Receiver) -> None:
        """Register a receiver for every event."""
        for event in SubscriptionEvent:
            self.connect(event, receiver)

    def disconnect(self, event: SubscriptionEvent, receiver: Receiver) -> None:
        if receiver in self._receivers[event]:
            self._receivers[event].remove(receiver)

    def receivers(self, event: SubscriptionEvent) -> list[Receiver]:
        return list(self._receivers[event])

    async def send(self, event: SubscriptionEvent, subscription: PlanSubscription) -> None:
        """Deliver an event to its receivers in registration order."""
        self.logger.debug(
            "subscription_signal_sent",
            signal=event.value,
            subscription_id=str(subscription.id),
            receivers=len(self._receivers[event]),
        )
        for receiver in list(self._receivers[event]):
            result = receiver(event, subscription)
            if inspect.isawaitable(result):
                await result
