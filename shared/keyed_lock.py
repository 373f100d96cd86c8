"""Per-key asyncio locks."""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Dict, Hashable


class KeyedLock:
    """Serialize coroutines that share a key; distinct keys never contend.

    Locks are created on demand and dropped once nobody holds or waits on
    them, so the map stays bounded by the number of in-flight keys.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
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

    @asynccontextmanager
    async def hold_many(self, *keys: Hashable) -> AsyncIterator[None]:
        """Hold several keys at once; always acquired in sorted order."""

        async with AsyncExitStack() as stack:
            for key in sorted(set(keys), key=str):
                await stack.enter_async_context(self.hold(key))
            yield

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks
