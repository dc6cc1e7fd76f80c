"""Subscriber references and the capability interface subscribers implement."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from subplans.core.exceptions import SubscriberNotFoundError
from subplans.core.logging import LoggerMixin


@dataclass(frozen=True)
class SubscriberRef:
    """Tagged reference to any entity that can hold subscriptions."""

    kind: str
    id: str

    def __post_init__(self) -> None:
        if not self.kind:
            raise ValueError("Subscriber kind must not be empty")
        # Ids are opaque; ints and UUIDs are normalised to their string form
        object.__setattr__(self, "id", str(self.id))

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"

    @classmethod
    def of(cls, subscriber: SubscriberCapable | SubscriberRef) -> SubscriberRef:
        """Get the reference for a subscriber or pass a reference through."""
        if isinstance(subscriber, SubscriberRef):
            return subscriber
        return subscriber.subscriber_ref


@runtime_checkable
class SubscriberCapable(Protocol):
    """Implemented by any entity that can hold plan subscriptions."""

    @property
    def subscriber_ref(self) -> SubscriberRef: ...


SubscriberLookup = Callable[[str], Any | Awaitable[Any]]


class SubscriberRegistry(LoggerMixin):
    """Maps subscriber kinds to the lookup that loads the entity by id."""

    def __init__(self) -> None:
        self._lookups: dict[str, SubscriberLookup] = {}

    def register(self, kind: str, lookup: SubscriberLookup) -> None:
        """Register the lookup for a subscriber kind.

        Args:
            kind: Subscriber kind as stored on subscriptions
            lookup: Callable receiving the subscriber id, sync or async
        """
        self._lookups[kind] = lookup
        self.logger.debug("subscriber_kind_registered", kind=kind)

    def kinds(self) -> list[str]:
        return sorted(self._lookups)

    async def resolve(self, ref: SubscriberRef) -> Any:
        """Load the entity a reference points at.

        Raises:
            SubscriberNotFoundError: If the kind is unknown or the lookup finds nothing
        """
        lookup = self._lookups.get(ref.kind)
        if lookup is None:
            raise SubscriberNotFoundError(
                f"No lookup registered for subscriber kind {ref.kind!r}",
                resource_type="subscriber",
                resource_id=str(ref),
            )

        result = lookup(ref.id)
        if inspect.isawaitable(result):
            result = await result

        if result is None:
            raise SubscriberNotFoundError(
                resource_type="subscriber",
                resource_id=str(ref),
            )
        return result
