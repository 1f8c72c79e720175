"""
Netyora Chat - Inbox Cache
Process-wide read-through cache of chat listings per (user, filter)
"""
import time
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, Tuple

from core.config import settings


class InboxCache:
    """
    Entries live at most `ttl` seconds (never more than 5) and are dropped
    as soon as any chat the user takes part in is written to.
    Invalidation is local to this process.
    """

    def __init__(self, ttl: float = None):
        self.ttl = min(ttl if ttl is not None else settings.inbox_cache_ttl, 5.0)
        # user_id -> {filter_key: (value, expires_at)}
        self._entries: Dict[str, Dict[Hashable, Tuple[Any, float]]] = {}

    def get(self, user_id: str, key: Hashable):
        entry = self._entries.get(str(user_id), {}).get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            self._entries[str(user_id)].pop(key, None)
            return None
        return value

    def set(self, user_id: str, key: Hashable, value: Any):
        if self.ttl <= 0:
            return
        self._entries.setdefault(str(user_id), {})[key] = (value, time.monotonic() + self.ttl)

    async def get_or_load(self, user_id: str, key: Hashable, loader: Callable[[], Awaitable[Any]]):
        cached = self.get(user_id, key)
        if cached is not None:
            return cached
        value = await loader()
        self.set(user_id, key, value)
        return value

    def invalidate_user(self, user_id: str):
        self._entries.pop(str(user_id), None)

    def invalidate_users(self, user_ids: Iterable[str]):
        for user_id in user_ids:
            self.invalidate_user(user_id)

    def clear(self):
        self._entries.clear()


# Singleton instance
inbox_cache = InboxCache()
