"""
Netyora Chat - Presence Registry
In-memory map of which users have live authenticated connections

State transitions are computed under a per-shard mutex and broadcast
to listeners only after the mutex is released. Idempotent calls
(same status, unknown connection) broadcast nothing.
"""

import threading
import zlib
from collections import OrderedDict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from core.errors import InvalidArgumentError
from core.logging import get_logger

logger = get_logger("netyora.chat.presence")

SETTABLE_STATUSES = ("online", "away", "busy")
SHARD_COUNT = 16
# Offline users remembered for lastSeen, per shard; the oldest are forgotten first
LAST_SEEN_PER_SHARD = 5000

PresenceListener = Callable[[Dict[str, Any]], Awaitable[None]]


class UserPresence:
    __slots__ = ("status", "last_seen", "connections")

    def __init__(self, status: str, last_seen: datetime):
        self.status = status
        self.last_seen = last_seen
        self.connections: Set[str] = set()

    @property
    def is_online(self) -> bool:
        return bool(self.connections)


class PresenceRegistry:
    """
    Per-process presence map, sharded by user id.

    Every method body touching the map is non-suspending; only listener
    delivery awaits.
    """

    def __init__(self, shards: int = SHARD_COUNT):
        self._shard_locks = [threading.Lock() for _ in range(shards)]
        self._shards: List[Dict[str, UserPresence]] = [{} for _ in range(shards)]
        # Users who disconnected, kept for lastSeen
        self._last_seen: List[OrderedDict] = [OrderedDict() for _ in range(shards)]
        self._listeners: List[PresenceListener] = []

    def _shard(self, user_id: str) -> int:
        return zlib.crc32(str(user_id).encode("utf-8")) % len(self._shards)

    def _remember_offline(self, index: int, user_id: str, when: datetime):
        """Caller holds the shard lock"""
        offline = self._last_seen[index]
        offline[user_id] = when
        offline.move_to_end(user_id)
        while len(offline) > LAST_SEEN_PER_SHARD:
            offline.popitem(last=False)

    # ==========================================
    # LISTENERS
    # ==========================================

    def add_listener(self, listener: PresenceListener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: PresenceListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _broadcast(self, event: Dict[str, Any]):
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                logger.error(
                    f"Presence listener failed: {e}",
                    action="presence_listener_failed",
                    user_id=event.get("userId"),
                )

    @staticmethod
    def _event(user_id: str, status: str, last_seen: datetime, connection_id: Optional[str]) -> Dict[str, Any]:
        return {
            "userId": user_id,
            "isOnline": status != "offline",
            "status": status,
            "lastSeen": last_seen.isoformat(),
            "connectionId": connection_id,
        }

    # ==========================================
    # TRANSITIONS
    # ==========================================

    async def attach(self, user_id: str, connection_id: str, status: str = "online") -> bool:
        """
        Register a live connection. Broadcasts when the user comes online
        or the requested status differs from the current one.
        """
        user_id = str(user_id)
        if status not in SETTABLE_STATUSES:
            raise InvalidArgumentError(f"Invalid status: {status}")

        index = self._shard(user_id)
        now = datetime.utcnow()
        with self._shard_locks[index]:
            shard = self._shards[index]
            presence = shard.get(user_id)
            if presence is None:
                presence = shard[user_id] = UserPresence(status, now)
                changed = True
            else:
                changed = presence.status != status
                presence.status = status
            presence.connections.add(connection_id)
            presence.last_seen = now
            self._last_seen[index].pop(user_id, None)
            event = self._event(user_id, presence.status, now, connection_id)

        if changed:
            logger.info("User online", action="presence_online", user_id=user_id, status=status)
            await self._broadcast(event)
        return changed

    async def set_status(self, user_id: str, status: str, connection_id: Optional[str] = None) -> bool:
        """Change the status of a connected user"""
        user_id = str(user_id)
        if status not in SETTABLE_STATUSES:
            raise InvalidArgumentError(f"Invalid status: {status}")

        index = self._shard(user_id)
        now = datetime.utcnow()
        with self._shard_locks[index]:
            presence = self._shards[index].get(user_id)
            if presence is None or presence.status == status:
                return False
            presence.status = status
            presence.last_seen = now
            event = self._event(user_id, status, now, connection_id)

        logger.info("User status changed", action="presence_status", user_id=user_id, status=status)
        await self._broadcast(event)
        return True

    async def detach(self, user_id: str, connection_id: str, now: Optional[datetime] = None) -> bool:
        """
        Drop a connection. The user goes offline, with lastSeen = now,
        when it was the last one.
        """
        user_id = str(user_id)
        index = self._shard(user_id)
        now = now or datetime.utcnow()
        with self._shard_locks[index]:
            shard = self._shards[index]
            presence = shard.get(user_id)
            if presence is None or connection_id not in presence.connections:
                return False
            presence.connections.discard(connection_id)
            if presence.connections:
                return False
            del shard[user_id]
            self._remember_offline(index, user_id, now)
            event = self._event(user_id, "offline", now, connection_id)

        logger.info("User offline", action="presence_offline", user_id=user_id)
        await self._broadcast(event)
        return True

    # ==========================================
    # QUERIES
    # ==========================================

    def snapshot(self, user_id: str) -> Dict[str, Any]:
        """{isOnline, status, lastSeen} of a user"""
        user_id = str(user_id)
        index = self._shard(user_id)
        with self._shard_locks[index]:
            presence = self._shards[index].get(user_id)
            if presence is not None:
                return {
                    "isOnline": True,
                    "status": presence.status,
                    "lastSeen": presence.last_seen.isoformat(),
                }
            last_seen = self._last_seen[index].get(user_id)
        return {
            "isOnline": False,
            "status": "offline",
            "lastSeen": last_seen.isoformat() if last_seen else None,
        }

    def is_online(self, user_id: str) -> bool:
        user_id = str(user_id)
        index = self._shard(user_id)
        with self._shard_locks[index]:
            return user_id in self._shards[index]

    def get_online_users(self) -> List[Dict[str, Any]]:
        users = []
        for lock, shard in zip(self._shard_locks, self._shards):
            with lock:
                for user_id, presence in shard.items():
                    users.append({
                        "userId": user_id,
                        "status": presence.status,
                        "lastSeen": presence.last_seen.isoformat(),
                        "connections": len(presence.connections),
                    })
        return users

    def reset(self):
        for lock, shard, offline in zip(self._shard_locks, self._shards, self._last_seen):
            with lock:
                shard.clear()
                offline.clear()


# Singleton instance
presence_registry = PresenceRegistry()
