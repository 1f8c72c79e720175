"""
Netyora Chat - Real-Time API
WebSocket endpoint for chat events, presence and indicators
"""
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from typing import Any, Optional
import json
import asyncio
from datetime import datetime

from core.config import settings
from core.database import get_session_factory
from core.errors import ChatError, UnauthenticatedError, ForbiddenError, InvalidArgumentError
from core.sentry import capture_exception
from core.security import authenticate_token
from core.logging import get_logger, log_security_event
from services.chat_service import chat_service
from services.presence_service import presence_registry
from services.realtime_gateway import realtime_gateway, GatewayConnection

logger = get_logger("netyora.chat.realtime.api")

router = APIRouter(prefix="/chat/ws", tags=["Chat Real-Time"])

# Pings sent without any client traffic before the connection is reaped
MAX_MISSED_PINGS = 2


@router.websocket("")
async def chat_websocket(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token"),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    WebSocket endpoint for realtime chat.

    Connect with: ws://host/api/v1/chat/ws?token=<jwt_token>

    Messages received:
    - {"type": "message" | "voiceMessage", "chatId", "message": {...}}
    - {"type": "userOnlineStatus", "userId", "isOnline", "status", "lastSeen"}
    - {"type": "typing" | "voiceRecordingStarted" | "voiceRecordingStopped", "chatId", "userId"}
    - {"type": "voiceMessagePlayed", "chatId", "messageId", "userId"}
    - {"type": "error", "code", "message"}

    Messages you can send:
    - authenticate, updateStatus, joinChat, leaveChat, sendMessage, typing,
      startVoiceRecording, stopVoiceRecording, sendVoiceMessage,
      voiceMessagePlayed, ping
    """
    # Accept connection first to avoid 1006 errors
    await websocket.accept()

    user = authenticate_token(token)
    if not user:
        log_security_event("ws_token_rejected", success=False)
        await websocket.close(code=4001, reason="Invalid or expired token")
        return

    user_id = user["id"]
    connection = realtime_gateway.register(websocket, user_id)

    try:
        await presence_registry.attach(user_id, connection.id)
        realtime_gateway.send_to_connection(connection, {
            "type": "connected",
            "userId": user_id,
            "connectionId": connection.id,
            "timestamp": datetime.utcnow().isoformat(),
        })

        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(),
                    timeout=settings.WS_LIVENESS_TIMEOUT_SECONDS,
                )
                connection.missed_pings = 0

            except asyncio.TimeoutError:
                connection.missed_pings += 1
                if connection.missed_pings > MAX_MISSED_PINGS:
                    logger.info(
                        "Reaping unresponsive WebSocket",
                        action="ws_reaped",
                        user_id=user_id,
                    )
                    break
                realtime_gateway.send_to_connection(connection, {"type": "ping"})
                continue

            except WebSocketDisconnect:
                break

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                realtime_gateway.send_to_connection(connection, {
                    "type": "error",
                    "code": "invalid_argument",
                    "message": "Invalid JSON",
                })
                continue

            try:
                # One short session per command
                async with session_factory() as db:
                    await handle_client_message(connection, message, db)
            except UnauthenticatedError as e:
                await websocket.close(code=4001, reason=e.message)
                break

    except WebSocketDisconnect:
        pass

    except Exception as e:
        logger.error(f"WebSocket error: {e}", action="ws_error", user_id=user_id)

    finally:
        await realtime_gateway.unregister(connection)
        await presence_registry.detach(user_id, connection.id)


def _require_room(connection: GatewayConnection, chat_id: Optional[str]) -> str:
    if not chat_id:
        raise InvalidArgumentError("chatId is required")
    if str(chat_id) not in connection.rooms:
        raise ForbiddenError("Join the chat first")
    return str(chat_id)


def _whole_number(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidArgumentError(f"{name} must be a non-negative integer")
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        raise InvalidArgumentError(f"{name} must be a non-negative integer")
    if number < 0:
        raise InvalidArgumentError(f"{name} must be a non-negative integer")
    return number


def _duration_ms(value: Any) -> int:
    return 0 if value is None else _whole_number(value, "duration")


def _file_size(value: Any) -> Optional[int]:
    return None if value is None else _whole_number(value, "fileSize")


async def handle_client_message(connection: GatewayConnection, message: dict, db: AsyncSession):
    """
    Handle an incoming WebSocket message from the client.

    Every failure is answered with an error event and the connection stays
    open; only UnauthenticatedError propagates, so the caller closes the socket.
    """
    if not isinstance(message, dict):
        realtime_gateway.send_to_connection(connection, {
            "type": "error",
            "code": "invalid_argument",
            "message": "Message must be a JSON object",
        })
        return

    msg_type = message.get("type")
    user_id = connection.user_id

    try:
        if msg_type == "ping":
            realtime_gateway.send_to_connection(connection, {"type": "pong"})

        elif msg_type == "authenticate":
            if message.get("token"):
                user = authenticate_token(message["token"])
                if not user or user["id"] != user_id:
                    raise UnauthenticatedError("Invalid or expired token")
            await presence_registry.attach(user_id, connection.id, message.get("status", "online"))
            realtime_gateway.send_to_connection(connection, {"type": "authenticated", "userId": user_id})

        elif msg_type == "updateStatus":
            await presence_registry.set_status(user_id, message.get("status"), connection.id)

        elif msg_type == "joinChat":
            chat = await chat_service.get_chat(db, message.get("chatId"), user_id)
            realtime_gateway.join_room(connection, chat.id)
            realtime_gateway.send_to_connection(connection, {"type": "joinedChat", "chatId": chat.id})

        elif msg_type == "leaveChat":
            chat_id = message.get("chatId")
            if chat_id:
                realtime_gateway.leave_room(connection, chat_id)
            realtime_gateway.send_to_connection(connection, {"type": "leftChat", "chatId": chat_id})

        elif msg_type == "sendMessage":
            kind = message.get("kind", "text")
            if kind != "text":
                raise InvalidArgumentError("Only text messages can be sent over the socket")
            sent = await chat_service.append_message(
                db, message.get("chatId"), user_id, "text", content=message.get("content"),
            )
            realtime_gateway.send_to_connection(connection, {
                "type": "messageSent",
                "chatId": sent.chat_id,
                "messageId": sent.id,
                "clientId": message.get("clientId"),
            })

        elif msg_type == "typing":
            chat_id = _require_room(connection, message.get("chatId"))
            await realtime_gateway.send_to_room(
                chat_id,
                {
                    "type": "typing",
                    "chatId": chat_id,
                    "userId": user_id,
                    "isTyping": bool(message.get("isTyping", True)),
                },
                exclude=connection.id,
                advisory=True,
            )

        elif msg_type in ("startVoiceRecording", "stopVoiceRecording"):
            chat_id = _require_room(connection, message.get("chatId"))
            event_type = (
                "voiceRecordingStarted" if msg_type == "startVoiceRecording"
                else "voiceRecordingStopped"
            )
            await realtime_gateway.send_to_room(
                chat_id,
                {"type": event_type, "chatId": chat_id, "userId": user_id},
                exclude=connection.id,
                advisory=True,
            )

        elif msg_type == "sendVoiceMessage":
            payload = message.get("msg") or {}
            if not isinstance(payload, dict):
                raise InvalidArgumentError("msg must be an object")
            duration = message.get("duration")
            if duration is None:
                duration = payload.get("duration")
            sent = await chat_service.append_message(
                db, message.get("chatId"), user_id, "voice",
                voice={
                    "url": payload.get("url") or message.get("url"),
                    "duration_ms": _duration_ms(duration),
                    "file_size": _file_size(payload.get("fileSize")),
                },
            )
            realtime_gateway.send_to_connection(connection, {
                "type": "messageSent",
                "chatId": sent.chat_id,
                "messageId": sent.id,
                "clientId": message.get("clientId"),
            })

        elif msg_type == "voiceMessagePlayed":
            chat_id = _require_room(connection, message.get("chatId"))
            await realtime_gateway.send_to_room(
                chat_id,
                {
                    "type": "voiceMessagePlayed",
                    "chatId": chat_id,
                    "messageId": message.get("messageId"),
                    "userId": user_id,
                },
                exclude=connection.id,
            )

        else:
            raise InvalidArgumentError(f"Unknown message type: {msg_type}")

    except UnauthenticatedError:
        raise

    except ChatError as e:
        logger.info(
            f"Realtime command rejected: {e.message}",
            action="ws_command_rejected",
            user_id=user_id,
            command=msg_type,
            code=e.code,
        )
        realtime_gateway.send_to_connection(connection, {
            "type": "error",
            "code": e.code,
            "message": e.message,
        })

    except Exception as e:
        await db.rollback()
        logger.error(
            f"Realtime command failed: {e}",
            action="ws_command_failed",
            user_id=user_id,
            command=msg_type,
        )
        capture_exception(e)
        realtime_gateway.send_to_connection(connection, {
            "type": "error",
            "code": "internal",
            "message": "Command failed",
        })
