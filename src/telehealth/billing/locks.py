"""
Per-key asyncio locks.

Serializes read-then-write sections on one subscription inside a process.
Cross-process safety comes from the version compare-and-swap in the
repositories; this registry only avoids needless conflicts locally.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class LockRegistry:
    """Hands out one ``asyncio.Lock`` per key, dropping idle ones."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
