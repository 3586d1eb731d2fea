"""
Keyed asyncio locks.

Serializes work per key (a stream id, a brain id) inside one process.
Locks are reference counted and dropped once nobody holds or waits on
them, so the registry does not grow with the number of keys ever seen.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Hashable, Iterable
from contextlib import AsyncExitStack, asynccontextmanager

logger = logging.getLogger(__name__)


class KeyedLockRegistry:
    """Per-key asyncio.Lock registry."""

    def __init__(self, name: str = "locks"):
        self.name = name
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._refs: dict[Hashable, int] = {}

    def _acquire_ref(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        return lock

    def _release_ref(self, key: Hashable) -> None:
        self._refs[key] -= 1
        if self._refs[key] == 0:
            del self._refs[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Hold the lock for a single key."""
        lock = self._acquire_ref(key)
        try:
            async with lock:
                yield
        finally:
            self._release_ref(key)

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[Hashable]) -> AsyncIterator[None]:
        """Hold several locks, always acquired in sorted key order."""
        ordered = sorted(set(keys), key=str)
        async with AsyncExitStack() as stack:
            for key in ordered:
                await stack.enter_async_context(self.hold(key))
            yield

    def __len__(self) -> int:
        return len(self._locks)
