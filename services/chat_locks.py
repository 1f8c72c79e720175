"""
Netyora Chat - Per-Chat Locks
Serializes every mutation of one chat inside this process
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class ChatLockRegistry:
    """
    One asyncio.Lock per chat id, created on demand and dropped when the
    last holder or waiter leaves. Locks are not re-entrant.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        key = str(key)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(str(key))
        return bool(lock and lock.locked())

    def reset(self):
        self._locks.clear()
        self._holders.clear()


# Singleton instance
chat_locks = ChatLockRegistry()
