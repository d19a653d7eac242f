# services/keyed_locks.py
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Dict, Iterable, Set


class KeyedLocks:
    """
    One asyncio.Lock per key. A lock is created on first use and dropped as
    soon as its last holder or waiter leaves, so the map only holds keys that
    are in use.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def active_keys(self) -> Set[str]:
        return set(self._locks)

    @asynccontextmanager
    async def _hold_one(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            self._users[key] = 0
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]):
        # Sorted acquisition keeps multi-key holders from deadlocking each other
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self._hold_one(key))
            yield
