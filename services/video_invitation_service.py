"""
Netyora Chat - Video Invitation Coordinator
Lifecycle of video-call invitations embedded in chats

    (none) --create--> active --cancel--> cancelled
                          |---timeout--> timedOut
                          |---end------> ended

An invitation's status lives both in the message content (serialized)
and in invitation_data; both are rewritten in the same commit.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from models.chat_models import Chat, ChatMessage
from services.chat_service import chat_service
from services.video_token_service import video_token_service
from services import chat_notifications
from integrations.swap_client import swap_client
from core.config import settings
from core.errors import (
    ForbiddenError, NotFoundError, InvalidArgumentError,
    StructuralError, UpstreamError, DataCorruptionError,
)
from core.logging import get_logger

logger = get_logger("netyora.chat.video")

SYSTEM_TEXT = {
    "joinedVideo": "🎥 {name} joined the video session",
    "leftVideo": "👋 {name} left the video session",
    "cancelledVideo": "📵 {name} cancelled the video call",
    "callEnded": "📞 {name} ended the video call",
    "timedOut": "⏱️ Video call was not answered",
}

TRANSITION_ACTIONS = {
    "cancelled": "cancelledVideo",
    "ended": "callEnded",
    "timedOut": "timedOut",
}

Mutation = Callable[[Chat], Awaitable[Tuple[Any, List[ChatMessage], List[ChatMessage]]]]


class VideoInvitationService:
    """
    Video invitation coordinator.
    Every rewrite runs under the chat lock through _mutate.
    """

    # ==========================================
    # HELPERS
    # ==========================================

    @staticmethod
    def _actor_name(chat: Chat, user_id: str) -> str:
        participant = chat.participant(user_id)
        if participant is not None and participant.display_name:
            return participant.display_name
        return "User"

    def _stage_system(self, db: AsyncSession, chat: Chat, action: str, room_id: str, actor_id: str) -> ChatMessage:
        actor_name = self._actor_name(chat, actor_id)
        return chat_service.stage_message(
            db, chat, actor_id, "system",
            content=SYSTEM_TEXT[action].format(name=actor_name),
            system={
                "action": action,
                "roomId": room_id,
                "actorId": str(actor_id),
                "actorName": actor_name,
            },
        )

    @staticmethod
    def _rewrite(message: ChatMessage, status: str) -> Dict[str, Any]:
        invitation = dict(message.invitation_data or {})
        invitation["status"] = status
        invitation["isActive"] = status == "active"
        # Reassign, JSON columns do not track in-place changes
        message.invitation_data = invitation
        message.content = json.dumps(invitation)
        return invitation

    async def _invitations(self, db: AsyncSession, chat_id: str, room_id: str) -> List[ChatMessage]:
        result = await db.execute(
            select(ChatMessage)
            .where(and_(ChatMessage.chat_id == chat_id, ChatMessage.kind == "videoInvitation"))
            .order_by(ChatMessage.created_at, ChatMessage.seq)
            .execution_options(populate_existing=True)
        )
        return [
            m for m in result.scalars().all()
            if (m.invitation_data or {}).get("roomId") == room_id
        ]

    async def _room_members(self, db: AsyncSession, chat_id: str, room_id: str) -> set:
        """Users who joined the room and have not left it"""
        result = await db.execute(
            select(ChatMessage)
            .where(and_(ChatMessage.chat_id == chat_id, ChatMessage.kind == "system"))
            .order_by(ChatMessage.created_at, ChatMessage.seq)
        )
        members = set()
        for message in result.scalars().all():
            meta = message.system_meta or {}
            if meta.get("roomId") != room_id:
                continue
            if meta.get("action") == "joinedVideo":
                members.add(meta.get("actorId"))
            elif meta.get("action") == "leftVideo":
                members.discard(meta.get("actorId"))
        return members

    async def _mutate(self, db: AsyncSession, chat_id: str, mutation: Mutation):
        """
        Run a mutation under the chat lock and commit it.

        Chats holding messages of an unknown kind are cleaned once and the
        mutation retried; a second failure is reported as data corruption.
        """
        try:
            async with chat_service.locked_chat(db, chat_id) as chat:
                await chat_service.ensure_valid_messages(db, chat)
                result, appended, edited = await mutation(chat)
                await chat_service.commit_messages(db, chat, appended, edited=edited)
                return result
        except StructuralError as e:
            logger.warning(
                f"Invitation save failed, cleaning legacy messages: {e.message}",
                action="invitation_legacy_cleanup",
                chat_id=chat_id,
            )

        try:
            async with chat_service.locked_chat(db, chat_id) as chat:
                await chat_service.purge_invalid_messages(db, chat)
                await db.flush()
                await chat_service.ensure_valid_messages(db, chat)
                result, appended, edited = await mutation(chat)
                await chat_service.commit_messages(db, chat, appended, edited=edited)
                return result
        except StructuralError as e:
            logger.error(
                f"Invitation save failed after cleanup: {e.message}",
                action="invitation_data_corruption",
                chat_id=chat_id,
            )
            raise DataCorruptionError("Chat data is corrupted and could not be repaired") from e

    async def _issue_token(self, user_id: str, room_id: str) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(
                video_token_service.issue(user_id, room_id),
                timeout=settings.VIDEO_TOKEN_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            logger.error(
                f"Video token request timed out for room {room_id}",
                action="video_token_timeout",
                user_id=user_id,
            )
            raise UpstreamError("Video token request timed out", service="video_token") from e

    # ==========================================
    # START
    # ==========================================

    async def start_invitation_for_chat(
        self,
        db: AsyncSession,
        chat_id: str,
        caller_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        banner_url: Optional[str] = None,
        room_id: Optional[str] = None,
        swap_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create an invitation: token first, then the invitation and a
        joinedVideo system message in one commit.

        Raises:
            UpstreamError: token issuance failed or timed out, nothing appended
        """
        caller_id = str(caller_id)
        chat = await chat_service.get_chat(db, chat_id, caller_id)
        room_id = room_id or f"chat_{chat.id}_{int(time.time() * 1000)}"

        token = await self._issue_token(caller_id, room_id)

        invitation = {
            "roomId": room_id,
            "status": "active",
            "isActive": True,
            "title": title or "Video Call",
            "description": description or "",
            "bannerUrl": banner_url,
            "joinUrl": video_token_service.get_join_url(room_id),
            "createdBy": caller_id,
            "maxParticipants": 2 if chat.kind == "personal" else len(chat.participant_ids),
            "chatId": chat.id,
            "swapId": swap_id,
        }

        async def create(locked: Chat):
            message = chat_service.stage_message(
                db, locked, caller_id, "videoInvitation",
                content=json.dumps(invitation),
                invitation=invitation,
            )
            joined = self._stage_system(db, locked, "joinedVideo", room_id, caller_id)
            return message, [message, joined], []

        message = await self._mutate(db, chat.id, create)

        logger.info(
            f"Video invitation created for room {room_id}",
            action="video_invitation_created",
            chat_id=chat.id,
            user_id=caller_id,
        )
        await chat_notifications.notify_video_transition(
            chat, invitation, "active", caller_id, message_id=message.id,
        )

        return {
            "chatId": chat.id,
            "roomId": room_id,
            "joinUrl": invitation["joinUrl"],
            "token": token["token"],
            "appID": token["appID"],
            "userID": token["userID"],
            "expiresIn": token["expiresIn"],
            "invitation": message.to_dict(),
        }

    async def start_invitation_for_swap(
        self,
        db: AsyncSession,
        swap_id: str,
        caller_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        banner_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Start a call between the two parties of a swap, in their personal chat"""
        caller_id = str(caller_id)
        requester, provider = await swap_client.get_parties(swap_id)
        if caller_id not in (requester, provider):
            raise ForbiddenError("Not a party to this swap")
        peer_id = provider if caller_id == requester else requester

        chat = await chat_service.open_or_find_personal_chat(db, caller_id, peer_id)
        return await self.start_invitation_for_chat(
            db, chat.id, caller_id,
            title=title,
            description=description,
            banner_url=banner_url,
            room_id=str(swap_id),
            swap_id=str(swap_id),
        )

    # ==========================================
    # TRANSITIONS
    # ==========================================

    async def _transition(
        self,
        db: AsyncSession,
        chat_id: str,
        room_id: str,
        status: str,
        caller_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Move every active invitation for the room to `status` and append the
        matching system message. Nothing changes when none is active.
        """
        transitioned: List[Dict[str, Any]] = []
        scope: Dict[str, Chat] = {}

        async def apply(chat: Chat):
            transitioned.clear()
            scope["chat"] = chat
            if caller_id is not None:
                chat_service.require_participant(chat, caller_id)
            invitations = await self._invitations(db, chat.id, room_id)
            if not invitations:
                raise NotFoundError("Video invitation not found")

            active = [m for m in invitations if (m.invitation_data or {}).get("status") == "active"]
            if not active:
                return {"changed": False, "invitation": invitations[-1].to_dict()}, [], []

            for message in active:
                transitioned.append(self._rewrite(message, status))

            actor_id = caller_id or active[-1].invitation_data.get("createdBy")
            system = self._stage_system(db, chat, TRANSITION_ACTIONS[status], room_id, actor_id)
            return {"changed": True, "invitation": active[-1].to_dict()}, [system], active

        result = await self._mutate(db, chat_id, apply)

        if result["changed"]:
            logger.info(
                f"Video invitation {status} for room {room_id}",
                action=f"video_invitation_{status}",
                chat_id=chat_id,
                user_id=caller_id,
            )
            await chat_notifications.notify_video_transition(
                scope["chat"], transitioned[-1], status, caller_id,
                message_id=result["invitation"]["id"],
            )
        return result

    async def cancel(self, db: AsyncSession, chat_id: str, caller_id: str, room_id: str) -> Dict[str, Any]:
        """Cancel the room's active invitations. Repeating it changes nothing."""
        return await self._transition(db, chat_id, room_id, "cancelled", caller_id=str(caller_id))

    async def end(self, db: AsyncSession, chat_id: str, caller_id: str, room_id: str) -> Dict[str, Any]:
        return await self._transition(db, chat_id, room_id, "ended", caller_id=str(caller_id))

    async def timeout(self, db: AsyncSession, chat_id: str, room_id: str,
                      caller_id: Optional[str] = None) -> Dict[str, Any]:
        """Unanswered call, from either party's timer or a server timer"""
        return await self._transition(
            db, chat_id, room_id, "timedOut",
            caller_id=str(caller_id) if caller_id else None,
        )

    # ==========================================
    # PARTICIPANTS
    # ==========================================

    async def on_participant_joined(
        self,
        db: AsyncSession,
        chat_id: str,
        room_id: str,
        user_id: str,
    ) -> Dict[str, Any]:
        """Record a join and hand out a room token for the joiner"""
        user_id = str(user_id)
        chat = await chat_service.get_chat(db, chat_id, user_id)
        invitations = await self._invitations(db, chat.id, room_id)
        if not invitations:
            raise NotFoundError("Video invitation not found")
        if not any((m.invitation_data or {}).get("status") == "active" for m in invitations):
            raise InvalidArgumentError("Video session is no longer active")

        token = await self._issue_token(user_id, room_id)

        async def join(locked: Chat):
            joined = self._stage_system(db, locked, "joinedVideo", room_id, user_id)
            return joined, [joined], []

        message = await self._mutate(db, chat.id, join)
        return {
            "chatId": chat.id,
            "roomId": room_id,
            "joinUrl": video_token_service.get_join_url(room_id),
            "token": token["token"],
            "appID": token["appID"],
            "userID": token["userID"],
            "expiresIn": token["expiresIn"],
            "system": message.to_dict(),
        }

    async def on_participant_left(
        self,
        db: AsyncSession,
        chat_id: str,
        room_id: str,
        user_id: str,
    ) -> Dict[str, Any]:
        """Record a leave; the call ends once nobody is left in the room"""
        user_id = str(user_id)
        ended: List[Dict[str, Any]] = []
        scope: Dict[str, Chat] = {}

        async def leave(chat: Chat):
            ended.clear()
            scope["chat"] = chat
            chat_service.require_participant(chat, user_id)
            left = self._stage_system(db, chat, "leftVideo", room_id, user_id)
            await db.flush()

            members = await self._room_members(db, chat.id, room_id)
            edited = []
            if not members:
                for message in await self._invitations(db, chat.id, room_id):
                    if (message.invitation_data or {}).get("status") == "active":
                        ended.append(self._rewrite(message, "ended"))
                        edited.append(message)
            return {"system": left.to_dict(), "ended": bool(edited)}, [left], edited

        result = await self._mutate(db, chat_id, leave)

        logger.info(
            f"User left video room {room_id}",
            action="video_participant_left",
            chat_id=chat_id,
            user_id=user_id,
            ended=result["ended"],
        )
        if ended:
            await chat_notifications.notify_video_transition(scope["chat"], ended[-1], "ended", user_id)
        return result


# Singleton instance
video_invitation_service = VideoInvitationService()
