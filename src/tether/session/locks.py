"""Per-key asyncio locks for single-writer processing."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLocks:
    """One asyncio.Lock per key, created on demand.

    Waiters on the same key are served in arrival order; different keys
    never block each other. ``acquire``/``release`` allow a lock to be
    held across calls; ``hold`` is the scoped form.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    def get_lock(self, key: Hashable) -> asyncio.Lock:
        """Get the lock for a key."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_busy(self, key: Hashable) -> bool:
        """Check if a key is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    async def acquire(self, key: Hashable) -> None:
        """Wait for and take the lock for ``key``."""
        lock = self.get_lock(key)
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(key, lock)
            raise

    def release(self, key: Hashable) -> None:
        """Release a lock taken with ``acquire``."""
        lock = self._locks[key]
        lock.release()
        self._forget(key, lock)

    def _forget(self, key: Hashable, lock: asyncio.Lock) -> None:
        self._waiters[key] -= 1
        if self._waiters[key] == 0:
            # Nobody else is queued on this key; drop the lock.
            del self._waiters[key]
            if not lock.locked():
                self._locks.pop(key, None)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        await self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    def __len__(self) -> int:
        return len(self._locks)
