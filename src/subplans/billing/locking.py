"""In-process serialisation of read-modify-write sequences."""

import asyncio
from collections.abc import AsyncGenerator, Hashable
from contextlib import asynccontextmanager


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or awaits it.

    Storage row locks still guard writers in other processes; this keeps
    coroutines of the same process from interleaving on one key, which row
    locks alone cannot do when they share a connection.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncGenerator[None, None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def waiting(self, key: Hashable) -> int:
        """Number of coroutines holding or awaiting ``key``."""
        return self._waiters.get(key, 0)

    def __len__(self) -> int:
        return len(self._locks)


# Shared by services created without an explicit registry
default_locks = KeyedLocks()
