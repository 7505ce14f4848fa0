"""Per-key asyncio locks that are dropped once idle.

A long-running orchestrator sees an unbounded stream of batch ids and user
ids. KeyedLocks keeps a lock only while some coroutine holds it or waits on
it, so the map stays as small as the work currently in flight.

Usage:
    locks = KeyedLocks()
    async with locks.hold(batch_id):
        ...
"""

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class KeyedLocks:
    """Mutual exclusion per key with reference-counted cleanup."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Holders and waiters both count, so a lock is never replaced
            # while anyone still relies on it
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks
