'''
Process-local keyed locks.

Payment application and item mutation are serialized per invoice id,
reconciliation and incremental balance updates per guardian id. Row-level
`SELECT ... FOR UPDATE` covers the multi-process case on PostgreSQL.
'''
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLock:
    """A registry of asyncio locks, one per key."""
    def __init__(self, name: str):
        self.name = name
        self._locks: dict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        self._waiters[key] += 1
        lock = self._locks[key]
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # nobody else queued on this key, drop it
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def is_held(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


invoice_locks = KeyedLock("invoice")
guardian_locks = KeyedLock("guardian")
class_locks = KeyedLock("class")
