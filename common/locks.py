"""
Per-key asyncio locks
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable
import logging

logger = logging.getLogger(__name__)

class KeyedLocks:
    """One asyncio.Lock per key, so work on different keys never contends"""

    def __init__(self, name: str):
        self.name = name
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
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
                # Nobody queued behind us, drop the lock so the map stays small
                del self._waiters[key]
                del self._locks[key]

    def is_held(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
