"""Per-key async locks for serializing work on a single organization.

Webhook handlers and admin batch jobs both mutate organization-scoped rows
(failure counter, subscription status, organization status). Within one
process they serialize on an ``asyncio.Lock`` per organization id; across
processes the row lock taken by ``organization_ops.get_for_update`` does the
same job. Different organizations never share a lock.
"""

import asyncio
import uuid as uuid_pkg
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class KeyedLock:
    """A registry of asyncio locks keyed by an arbitrary hashable id.

    Entries are reference counted and dropped once no coroutine holds or
    waits on them, so the registry does not grow with every org ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


organization_locks = KeyedLock()


def organization_lock(organization_id: uuid_pkg.UUID):
    """Async context manager serializing in-process work for one organization."""
    return organization_locks.acquire(organization_id)
