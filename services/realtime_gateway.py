"""
Netyora Chat - Realtime Gateway
Connection registry, chat rooms and event fan-out for the chat websocket

Each connection owns an outbound queue drained by a single writer task,
so events reach a socket in the order they were enqueued. Chat messages
are enqueued while the chat's lock is held, which keeps room delivery in
persisted order. Advisory events (typing, recording) are dropped when a
connection falls behind; messages and presence are never dropped.

With PRESENCE_BUS_URL set, events are also relayed through redis pub/sub
so that connections held by other processes receive them.
"""
import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import redis.asyncio as aioredis

from core.config import settings
from core.logging import get_logger

logger = get_logger("netyora.chat.realtime")

ADVISORY_QUEUE_LIMIT = 100
BUS_CHANNEL = "netyora:chat:events"


class GatewayConnection:
    """One authenticated websocket"""

    def __init__(self, websocket, user_id: str):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = str(user_id)
        self.rooms: Set[str] = set()
        self.connected_at = datetime.utcnow()
        self.missed_pings = 0
        self.closed = False
        self.queue: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    def start(self):
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def enqueue(self, event: Dict[str, Any], advisory: bool = False) -> bool:
        if self.closed:
            return False
        if advisory and self.queue.qsize() >= ADVISORY_QUEUE_LIMIT:
            return False
        self.queue.put_nowait(event)
        return True

    async def _drain(self):
        while True:
            event = await self.queue.get()
            if event is None:
                break
            try:
                await self.websocket.send_json(event)
            except Exception as e:
                logger.warning(
                    f"Failed to send to WebSocket: {e}",
                    action="ws_send_failed",
                    user_id=self.user_id,
                )
                self.closed = True
                break

    async def close(self):
        self.closed = True
        if self._writer is None:
            return
        self.queue.put_nowait(None)
        try:
            await asyncio.wait_for(self._writer, timeout=5.0)
        except asyncio.TimeoutError:
            self._writer.cancel()


class RealtimeGateway:
    """
    Manages WebSocket connections for the chat.

    Rooms are chat ids; membership is checked by the caller before join.
    """

    def __init__(self):
        self.node_id = uuid.uuid4().hex
        # connection_id -> connection
        self.connections: Dict[str, GatewayConnection] = {}
        # chat_id -> connection ids
        self.rooms: Dict[str, Set[str]] = {}
        self._bus = None
        self._bus_task: Optional[asyncio.Task] = None

    # ==========================================
    # CONNECTIONS & ROOMS
    # ==========================================

    def register(self, websocket, user_id: str) -> GatewayConnection:
        """Register an already-accepted WebSocket connection."""
        connection = GatewayConnection(websocket, user_id)
        self.connections[connection.id] = connection
        connection.start()
        logger.info(
            f"WebSocket connected for user {user_id}",
            action="ws_connected",
            user_id=connection.user_id,
            connection_count=len(self.connections),
        )
        return connection

    async def unregister(self, connection: GatewayConnection):
        """Remove a WebSocket connection and leave all its rooms."""
        for chat_id in list(connection.rooms):
            self.leave_room(connection, chat_id)
        self.connections.pop(connection.id, None)
        await connection.close()
        logger.info(
            f"WebSocket disconnected for user {connection.user_id}",
            action="ws_disconnected",
            user_id=connection.user_id,
        )

    def join_room(self, connection: GatewayConnection, chat_id: str):
        chat_id = str(chat_id)
        self.rooms.setdefault(chat_id, set()).add(connection.id)
        connection.rooms.add(chat_id)

    def leave_room(self, connection: GatewayConnection, chat_id: str):
        chat_id = str(chat_id)
        members = self.rooms.get(chat_id)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self.rooms[chat_id]
        connection.rooms.discard(chat_id)

    def room_connections(self, chat_id: str) -> List[GatewayConnection]:
        return [
            self.connections[cid]
            for cid in self.rooms.get(str(chat_id), ())
            if cid in self.connections
        ]

    def user_connections(self, user_id: str) -> List[GatewayConnection]:
        return [c for c in self.connections.values() if c.user_id == str(user_id)]

    # ==========================================
    # LOCAL DELIVERY
    # ==========================================

    def _deliver(self, targets: Iterable[GatewayConnection], event: Dict[str, Any],
                 exclude: Optional[str] = None, advisory: bool = False) -> int:
        delivered = 0
        for connection in targets:
            if connection.id == exclude:
                continue
            if connection.enqueue(event, advisory=advisory):
                delivered += 1
        return delivered

    def _deliver_envelope(self, envelope: Dict[str, Any]) -> int:
        if envelope.get("scope") == "room":
            targets = self.room_connections(envelope["chatId"])
        else:
            targets = list(self.connections.values())
        return self._deliver(
            targets,
            envelope["event"],
            exclude=envelope.get("exclude"),
            advisory=envelope.get("advisory", False),
        )

    async def send_to_room(self, chat_id: str, event: Dict[str, Any],
                           exclude: Optional[str] = None, advisory: bool = False) -> int:
        """Fan an event out to a chat room, here and on other nodes"""
        envelope = {
            "scope": "room",
            "chatId": str(chat_id),
            "event": event,
            "exclude": exclude,
            "advisory": advisory,
        }
        delivered = self._deliver_envelope(envelope)
        await self._relay(envelope)
        return delivered

    async def broadcast(self, event: Dict[str, Any], exclude: Optional[str] = None,
                        advisory: bool = False) -> int:
        """Send an event to every connection"""
        envelope = {"scope": "all", "event": event, "exclude": exclude, "advisory": advisory}
        delivered = self._deliver_envelope(envelope)
        await self._relay(envelope)
        return delivered

    def send_to_connection(self, connection: GatewayConnection, event: Dict[str, Any]) -> bool:
        return connection.enqueue(event)

    # ==========================================
    # DOMAIN EVENT HANDLERS
    # ==========================================

    async def handle_chat_event(self, event: Dict[str, Any]):
        """Chat store listener, fans persisted changes out to the chat room"""
        chat_id = event.get("chatId")
        if event.get("type") == "message":
            message = event["message"]
            outbound = {
                "type": "voiceMessage" if message.get("kind") == "voice" else "message",
                "chatId": chat_id,
                "message": message,
            }
        else:
            outbound = dict(event)
        await self.send_to_room(chat_id, outbound)

    async def handle_presence_event(self, event: Dict[str, Any]):
        """Presence listener, announces transitions to every other connection"""
        outbound = {
            "type": "userOnlineStatus",
            "userId": event["userId"],
            "isOnline": event["isOnline"],
            "status": event["status"],
            "lastSeen": event["lastSeen"],
        }
        await self.broadcast(outbound, exclude=event.get("connectionId"))

    # ==========================================
    # PRESENCE BUS
    # ==========================================

    async def start_bus(self, url: Optional[str] = None):
        """Subscribe to the cross-process event bus."""
        url = url or settings.PRESENCE_BUS_URL
        if not url or self._bus is not None:
            return
        try:
            self._bus = aioredis.from_url(url, decode_responses=True)
            await self._bus.ping()
        except Exception as e:
            logger.warning(
                f"Presence bus not available, fan-out stays local: {e}",
                action="presence_bus_unavailable",
            )
            self._bus = None
            return

        self._bus_task = asyncio.create_task(self._listen())
        logger.info("Presence bus connected", action="presence_bus_connected")

    async def stop_bus(self):
        if self._bus_task is not None:
            self._bus_task.cancel()
            try:
                await self._bus_task
            except asyncio.CancelledError:
                pass
            self._bus_task = None
        if self._bus is not None:
            await self._bus.aclose()
            self._bus = None

    async def _relay(self, envelope: Dict[str, Any]):
        if self._bus is None:
            return
        try:
            await self._bus.publish(BUS_CHANNEL, json.dumps({**envelope, "origin": self.node_id}))
        except Exception as e:
            logger.warning(f"Presence bus publish failed: {e}", action="presence_bus_publish_failed")

    async def _listen(self):
        pubsub = self._bus.pubsub()
        await pubsub.subscribe(BUS_CHANNEL)
        try:
            async for item in pubsub.listen():
                if item.get("type") != "message":
                    continue
                try:
                    envelope = json.loads(item["data"])
                except (TypeError, ValueError):
                    continue
                if envelope.get("origin") == self.node_id:
                    continue
                self._deliver_envelope(envelope)
        finally:
            await pubsub.aclose()

    async def reset(self):
        for connection in list(self.connections.values()):
            await connection.close()
        self.connections.clear()
        self.rooms.clear()


# Singleton instance
realtime_gateway = RealtimeGateway()
