"""
Netyora Chat - Chat Service
Authoritative store for chats and messages

Key Features:
- Personal chats, unique per pair of users
- Group and community chats
- Polymorphic messages (text, attachments, voice, video invitations, system)
- Per-chat serialized mutations with monotone message ordering
- Chat-level read tracking and unread counts
- Domain events for realtime fan-out, published in persisted order
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, and_, or_, func, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.chat_models import (
    Chat, ChatParticipant, ChatMessage, MessageAttachment,
    ATTACHMENT_KINDS, MESSAGE_KINDS, SYSTEM_ACTIONS, personal_key_for,
)
from integrations.identity_client import identity_client
from services.chat_locks import chat_locks
from services.inbox_cache import inbox_cache
from core.errors import (
    NotFoundError, ForbiddenError, InvalidArgumentError, StructuralError,
    SelfChatForbiddenError, PeerNotFoundError, InvalidMembershipError,
    DataCorruptionError,
)
from core.logging import get_logger

logger = get_logger("netyora.chat.store")

PREVIEW_MAX_LENGTH = 120

PREVIEW_BY_KIND = {
    "image": "Image sent",
    "pdf": "PDF sent",
    "document": "Document sent",
    "file": "File sent",
    "voice": "Voice message",
    "videoInvitation": "Video call invitation sent",
}

REQUIRED_ATTACHMENT_FIELDS = ("url", "file_name", "file_size", "mime_type", "public_id", "expires_at")

ChatListener = Callable[[Dict[str, Any]], Awaitable[None]]


def preview_for(message: ChatMessage) -> str:
    """Inbox preview of a message"""
    if message.kind == "text":
        return (message.content or "")[:PREVIEW_MAX_LENGTH]
    if message.kind == "system":
        return message.content or ""
    return PREVIEW_BY_KIND.get(message.kind, "")


class ChatService:
    """
    Main service class for chat functionality.
    Every mutation of a chat runs under its per-chat lock.
    """

    def __init__(self):
        self._listeners: List[ChatListener] = []

    # ==========================================
    # DOMAIN EVENTS
    # ==========================================

    def add_listener(self, listener: ChatListener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ChatListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def publish(self, event: Dict[str, Any]):
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                logger.error(
                    f"Chat event listener failed: {e}",
                    action="chat_event_listener_failed",
                    chat_id=event.get("chatId"),
                    event_type=event.get("type"),
                )

    # ==========================================
    # LOADING & LOCKING
    # ==========================================

    async def _load_chat(self, db: AsyncSession, chat_id: str, for_update: bool = False) -> Optional[Chat]:
        query = (
            select(Chat)
            .where(Chat.id == str(chat_id))
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()

    @asynccontextmanager
    async def locked_chat(self, db: AsyncSession, chat_id: str):
        """
        Hold the per-chat lock and yield the freshly loaded chat.
        The session is rolled back if the body raises.
        """
        async with chat_locks.hold(chat_id):
            chat = await self._load_chat(db, chat_id, for_update=True)
            if chat is None:
                raise NotFoundError("Chat not found")
            try:
                yield chat
            except Exception:
                await db.rollback()
                raise

    @staticmethod
    def require_participant(chat: Chat, user_id: str):
        if not chat.is_participant(user_id):
            raise ForbiddenError("Not a participant in this chat")

    async def get_chat(self, db: AsyncSession, chat_id: str, user_id: str) -> Chat:
        """Get a chat the caller takes part in"""
        chat = await self._load_chat(db, chat_id)
        if chat is None:
            raise NotFoundError("Chat not found")
        self.require_participant(chat, user_id)
        return chat

    async def get_message(self, db: AsyncSession, chat_id: str, message_id: str) -> Optional[ChatMessage]:
        result = await db.execute(
            select(ChatMessage)
            .where(and_(ChatMessage.chat_id == str(chat_id), ChatMessage.id == str(message_id)))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def newest_message(self, db: AsyncSession, chat_id: str) -> Optional[ChatMessage]:
        result = await db.execute(
            select(ChatMessage)
            .where(ChatMessage.chat_id == str(chat_id))
            .order_by(desc(ChatMessage.created_at), desc(ChatMessage.seq))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _profile(self, user_id: str, known: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if known:
            return known
        profile = await identity_client.get_user(user_id)
        if profile is None:
            raise PeerNotFoundError(f"User {user_id} not found")
        return profile

    def invalidate_inbox(self, chat: Chat, extra_user_ids: Optional[List[str]] = None):
        user_ids = [p.user_id for p in chat.participants]
        if extra_user_ids:
            user_ids.extend(extra_user_ids)
        inbox_cache.invalidate_users(user_ids)

    # ==========================================
    # CHAT MANAGEMENT
    # ==========================================

    async def open_or_find_personal_chat(
        self,
        db: AsyncSession,
        user_id: str,
        peer_id: str,
        user_profile: Optional[Dict[str, Any]] = None,
    ) -> Chat:
        """
        Return the personal chat for {user, peer}, creating it if needed.

        Raises:
            SelfChatForbiddenError: user and peer are the same
            PeerNotFoundError: peer does not exist
        """
        user_id, peer_id = str(user_id), str(peer_id)
        if user_id == peer_id:
            raise SelfChatForbiddenError()

        key = personal_key_for(user_id, peer_id)

        async with chat_locks.hold(f"personal:{key}"):
            existing = await self._find_personal_chat(db, key)
            if existing:
                await self._unhide(db, existing, user_id)
                return existing

            peer_profile = await identity_client.get_user(peer_id)
            if peer_profile is None:
                raise PeerNotFoundError("Recipient user not found")
            user_profile = await self._profile(user_id, user_profile)

            chat = Chat(
                kind="personal",
                personal_key=key,
                created_by=user_id,
                read_by=[user_id],
            )
            db.add(chat)
            try:
                await db.flush()
                for uid, profile in ((user_id, user_profile), (peer_id, peer_profile)):
                    db.add(ChatParticipant(
                        chat_id=chat.id,
                        user_id=uid,
                        display_name=profile.get("displayName"),
                        avatar_url=profile.get("avatarUrl"),
                    ))
                await db.commit()
            except IntegrityError:
                # Another process created the pair first, return the winner
                await db.rollback()
                winner = await self._find_personal_chat(db, key)
                if winner is None:
                    raise
                logger.info(
                    "Personal chat creation lost race, returning existing chat",
                    action="personal_chat_conflict",
                    chat_id=winner.id,
                )
                return winner
            chat = await self._load_chat(db, chat.id)

        inbox_cache.invalidate_users([user_id, peer_id])
        logger.info(
            "Personal chat created",
            action="chat_created",
            chat_id=chat.id,
            user_id=user_id,
            kind="personal",
        )
        return chat

    async def _find_personal_chat(self, db: AsyncSession, key: str) -> Optional[Chat]:
        result = await db.execute(
            select(Chat)
            .where(and_(Chat.kind == "personal", Chat.personal_key == key))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _unhide(self, db: AsyncSession, chat: Chat, user_id: str):
        participant = chat.participant(user_id)
        if participant is not None and participant.hidden_at is not None:
            participant.hidden_at = None
            await db.commit()
            inbox_cache.invalidate_user(user_id)

    async def create_group_chat(
        self,
        db: AsyncSession,
        creator_id: str,
        title: str,
        participant_ids: List[str],
        avatar_url: Optional[str] = None,
        creator_profile: Optional[Dict[str, Any]] = None,
        kind: str = "group",
        community_id: Optional[str] = None,
    ) -> Chat:
        """
        Create a group (or community) chat. The creator is always a member.

        Raises:
            InvalidArgumentError: missing title
            InvalidMembershipError: fewer than two members after normalization
            PeerNotFoundError: a participant does not exist
        """
        creator_id = str(creator_id)
        if kind not in ("group", "community"):
            raise InvalidArgumentError("Invalid chat type")
        if not title or not title.strip():
            raise InvalidArgumentError("Title is required for group chat")

        members = self._normalize_members(participant_ids, creator_id)
        if len(members) < 2:
            raise InvalidMembershipError("A group chat needs at least two participants")

        profiles = {creator_id: await self._profile(creator_id, creator_profile)}
        for uid in members:
            if uid not in profiles:
                profiles[uid] = await self._profile(uid)

        chat = Chat(
            kind=kind,
            title=title.strip(),
            avatar_url=avatar_url,
            community_id=community_id,
            created_by=creator_id,
            read_by=[creator_id],
        )
        db.add(chat)
        await db.flush()

        for uid in members:
            db.add(ChatParticipant(
                chat_id=chat.id,
                user_id=uid,
                display_name=profiles[uid].get("displayName"),
                avatar_url=profiles[uid].get("avatarUrl"),
            ))
        await db.commit()

        inbox_cache.invalidate_users(members)
        logger.info(
            f"Group chat created with {len(members)} participants",
            action="chat_created",
            chat_id=chat.id,
            user_id=creator_id,
            kind=kind,
        )
        return await self._load_chat(db, chat.id)

    @staticmethod
    def _normalize_members(participant_ids: List[str], creator_id: Optional[str] = None) -> List[str]:
        members: List[str] = []
        for uid in participant_ids or []:
            uid = str(uid).strip()
            if uid and uid not in members:
                members.append(uid)
        if creator_id and creator_id not in members:
            members.insert(0, creator_id)
        return members

    async def update_group_chat(
        self,
        db: AsyncSession,
        chat_id: str,
        user_id: str,
        title: Optional[str] = None,
        participant_ids: Optional[List[str]] = None,
        avatar_url: Optional[str] = None,
    ) -> Chat:
        """Update title, avatar or membership of a group chat"""
        async with self.locked_chat(db, chat_id) as chat:
            self.require_participant(chat, user_id)
            if chat.kind == "personal":
                raise InvalidArgumentError("Can only update group chats")

            previous_members = list(chat.participant_ids)

            if title is not None:
                if not title.strip():
                    raise InvalidArgumentError("Title can not be empty")
                chat.title = title.strip()
            if avatar_url is not None:
                chat.avatar_url = avatar_url

            if participant_ids is not None:
                members = self._normalize_members(participant_ids)
                if len(members) < 2:
                    raise InvalidMembershipError("A group chat needs at least two participants")
                now = datetime.utcnow()
                rows = {p.user_id: p for p in chat.participants}
                for uid, row in rows.items():
                    if uid not in members and row.left_at is None:
                        row.left_at = now
                for uid in members:
                    row = rows.get(uid)
                    if row is not None:
                        row.left_at = None
                        continue
                    profile = await self._profile(uid)
                    db.add(ChatParticipant(
                        chat_id=chat.id,
                        user_id=uid,
                        display_name=profile.get("displayName"),
                        avatar_url=profile.get("avatarUrl"),
                    ))
                chat.read_by = [uid for uid in (chat.read_by or []) if uid in members]

            chat.updated_at = max(datetime.utcnow(), chat.updated_at or datetime.min)
            await db.commit()
            chat = await self._load_chat(db, chat.id)
            self.invalidate_inbox(chat, previous_members)

        logger.info("Group chat updated", action="chat_updated", chat_id=chat.id, user_id=user_id)
        await self.publish({"type": "chatUpdated", "chatId": chat.id, "chat": chat.to_dict()})
        return chat

    async def leave_chat(self, db: AsyncSession, chat_id: str, user_id: str) -> Dict[str, Any]:
        """
        Participant-visible removal of a chat.

        Personal chats are hidden from the caller's inbox until the next
        message. Group chats are left; the chat itself is never destroyed.
        """
        async with self.locked_chat(db, chat_id) as chat:
            self.require_participant(chat, user_id)
            participant = chat.participant(user_id)
            now = datetime.utcnow()

            if chat.kind == "personal":
                participant.hidden_at = now
                outcome = {"chatId": chat.id, "hidden": True, "left": False}
            else:
                participant.left_at = now
                chat.read_by = [uid for uid in (chat.read_by or []) if uid != str(user_id)]
                outcome = {"chatId": chat.id, "hidden": False, "left": True}

            await db.commit()
            self.invalidate_inbox(chat)

        logger.info(
            "Chat left" if outcome["left"] else "Chat hidden",
            action="chat_left" if outcome["left"] else "chat_hidden",
            chat_id=chat_id,
            user_id=user_id,
        )
        return outcome

    async def get_chats_for_user(
        self,
        db: AsyncSession,
        user_id: str,
        cursor: Optional[str] = None,
        limit: int = 20,
        search: Optional[str] = None,
    ) -> Tuple[List[Chat], Optional[str]]:
        """
        Chats of a user, newest activity first.

        The cursor is the id of the last chat of the previous page.
        """
        user_id = str(user_id)
        query = (
            select(Chat)
            .join(ChatParticipant, ChatParticipant.chat_id == Chat.id)
            .where(
                and_(
                    ChatParticipant.user_id == user_id,
                    ChatParticipant.left_at.is_(None),
                    ChatParticipant.hidden_at.is_(None),
                )
            )
        )

        if search:
            term = f"%{search.strip()}%"
            query = query.where(
                or_(
                    Chat.title.ilike(term),
                    Chat.participants.any(
                        and_(
                            ChatParticipant.user_id != user_id,
                            ChatParticipant.display_name.ilike(term),
                        )
                    ),
                )
            )

        if cursor:
            anchor = await db.execute(select(Chat.updated_at).where(Chat.id == str(cursor)))
            anchor_updated_at = anchor.scalar_one_or_none()
            if anchor_updated_at is not None:
                query = query.where(
                    or_(
                        Chat.updated_at < anchor_updated_at,
                        and_(Chat.updated_at == anchor_updated_at, Chat.id < str(cursor)),
                    )
                )

        query = query.order_by(desc(Chat.updated_at), desc(Chat.id)).limit(limit + 1)
        result = await db.execute(query)
        chats = list(result.scalars().unique().all())

        has_more = len(chats) > limit
        chats = chats[:limit]
        next_cursor = chats[-1].id if has_more and chats else None
        return chats, next_cursor

    async def get_inbox(
        self,
        db: AsyncSession,
        user_id: str,
        cursor: Optional[str] = None,
        limit: int = 20,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Chat listing with unread counts, served from the inbox cache"""
        user_id = str(user_id)

        async def load():
            chats, next_cursor = await self.get_chats_for_user(db, user_id, cursor, limit, search)
            counts = await self.unread_counts(db, user_id, chats)
            return {
                "chats": [dict(chat.to_dict(), unreadCount=counts[chat.id]) for chat in chats],
                "nextCursor": next_cursor,
            }

        return await inbox_cache.get_or_load(user_id, ("chats", cursor, limit, search or None), load)

    async def unread_counts(self, db: AsyncSession, user_id: str, chats: List[Chat]) -> Dict[str, int]:
        """
        Unread messages per chat: messages from others, counted only when
        the caller is not in the chat's readBy set.
        """
        user_id = str(user_id)
        unread_chat_ids = [c.id for c in chats if user_id not in (c.read_by or [])]
        counts = {c.id: 0 for c in chats}
        if not unread_chat_ids:
            return counts

        result = await db.execute(
            select(ChatMessage.chat_id, func.count(ChatMessage.id))
            .where(
                and_(
                    ChatMessage.chat_id.in_(unread_chat_ids),
                    ChatMessage.sender_id != user_id,
                )
            )
            .group_by(ChatMessage.chat_id)
        )
        for chat_id, count in result.all():
            counts[chat_id] = count
        return counts

    async def unread_count_for(self, db: AsyncSession, user_id: str, chat: Chat) -> int:
        counts = await self.unread_counts(db, user_id, [chat])
        return counts[chat.id]

    # ==========================================
    # MESSAGES
    # ==========================================

    async def get_messages(
        self,
        db: AsyncSession,
        chat_id: str,
        user_id: str,
        before: Optional[str] = None,
        limit: int = 20,
    ) -> List[ChatMessage]:
        """
        Up to `limit` messages strictly older than `before` (or the newest),
        returned in chronological order.

        Raises:
            DataCorruptionError: a stored message has an unknown kind
        """
        await self.get_chat(db, chat_id, user_id)

        query = select(ChatMessage).where(ChatMessage.chat_id == str(chat_id))

        if before:
            anchor = await self.get_message(db, chat_id, before)
            if anchor is None:
                raise NotFoundError("Message not found")
            query = query.where(
                or_(
                    ChatMessage.created_at < anchor.created_at,
                    and_(ChatMessage.created_at == anchor.created_at, ChatMessage.seq < anchor.seq),
                )
            )

        query = (
            query.order_by(desc(ChatMessage.created_at), desc(ChatMessage.seq))
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(query)
        messages = list(reversed(result.scalars().all()))

        invalid = [m.id for m in messages if m.kind not in MESSAGE_KINDS]
        if invalid:
            logger.error(
                f"Chat contains {len(invalid)} messages of unknown kind",
                action="chat_data_corruption",
                chat_id=chat_id,
                message_ids=invalid,
            )
            raise DataCorruptionError(message_ids=invalid)

        return messages

    def stage_message(
        self,
        db: AsyncSession,
        chat: Chat,
        sender_id: str,
        kind: str,
        content: Optional[str] = None,
        attachment: Optional[Dict[str, Any]] = None,
        voice: Optional[Dict[str, Any]] = None,
        invitation: Optional[Dict[str, Any]] = None,
        system: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        """
        Validate and add a message to a chat the caller holds the lock of.
        Nothing is committed here; see commit_messages.

        Raises:
            ForbiddenError: sender is not a participant
            InvalidArgumentError: unknown kind or empty text
            StructuralError: attachment / voice payload missing required fields
        """
        sender_id = str(sender_id)
        self.require_participant(chat, sender_id)

        if kind not in MESSAGE_KINDS:
            raise InvalidArgumentError(f"Unsupported message kind: {kind}")

        message = ChatMessage(chat_id=chat.id, sender_id=sender_id, kind=kind, attachment=None)

        if kind == "text":
            if not content or not content.strip():
                raise InvalidArgumentError("Message content is required")
            message.content = content

        elif kind in ATTACHMENT_KINDS:
            missing = [f for f in REQUIRED_ATTACHMENT_FIELDS if not (attachment or {}).get(f)]
            if missing:
                raise StructuralError(
                    "Attachment is missing required fields",
                    missing=missing,
                )
            message.content = content or attachment["file_name"]
            message.attachment = MessageAttachment(
                chat_id=chat.id,
                url=attachment["url"],
                file_name=attachment["file_name"],
                file_size=attachment["file_size"],
                mime_type=attachment["mime_type"],
                public_id=attachment["public_id"],
                width=attachment.get("width"),
                height=attachment.get("height"),
                expires_at=attachment["expires_at"],
                is_deleted=False,
                downloads=[],
            )

        elif kind == "voice":
            if not (voice or {}).get("url"):
                raise StructuralError("Voice message is missing its url", missing=["url"])
            message.content = content
            message.voice_url = voice["url"]
            try:
                message.voice_duration_ms = int(voice.get("duration_ms") or 0)
            except (TypeError, ValueError, OverflowError):
                raise InvalidArgumentError("Voice duration must be a number of milliseconds")
            message.voice_file_size = voice.get("file_size")

        elif kind == "videoInvitation":
            if not invitation or not invitation.get("roomId") or not invitation.get("joinUrl"):
                raise InvalidArgumentError("Invitation requires roomId and joinUrl")
            message.content = content
            message.invitation_data = dict(invitation)

        elif kind == "system":
            if not system or system.get("action") not in SYSTEM_ACTIONS:
                raise InvalidArgumentError("System message requires a known action")
            if not content:
                raise InvalidArgumentError("System message requires content")
            message.content = content
            message.system_meta = dict(system)

        # Append order equals timestamp order
        timestamp = datetime.utcnow()
        if chat.updated_at and timestamp < chat.updated_at:
            timestamp = chat.updated_at
        chat.message_seq = (chat.message_seq or 0) + 1
        message.seq = chat.message_seq
        message.created_at = timestamp

        chat.read_by = [sender_id]
        chat.last_message_preview = preview_for(message)
        chat.updated_at = timestamp
        for participant in chat.active_participants:
            participant.hidden_at = None

        db.add(message)
        return message

    async def commit_messages(
        self,
        db: AsyncSession,
        chat: Chat,
        messages: List[ChatMessage],
        edited: Optional[List[ChatMessage]] = None,
    ):
        """Commit staged messages and publish them in append order"""
        await db.commit()
        self.invalidate_inbox(chat)
        for message in edited or []:
            await self.publish({
                "type": "messageEdited",
                "chatId": chat.id,
                "message": message.to_dict(),
            })
        for message in messages:
            logger.info(
                f"Message appended ({message.kind})",
                action="message_appended",
                chat_id=chat.id,
                user_id=message.sender_id,
                message_id=message.id,
                seq=message.seq,
            )
            await self.publish({
                "type": "message",
                "chatId": chat.id,
                "message": message.to_dict(),
            })

    async def append_message(
        self,
        db: AsyncSession,
        chat_id: str,
        sender_id: str,
        kind: str,
        content: Optional[str] = None,
        attachment: Optional[Dict[str, Any]] = None,
        voice: Optional[Dict[str, Any]] = None,
        invitation: Optional[Dict[str, Any]] = None,
        system: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        """Append one message to a chat"""
        async with self.locked_chat(db, chat_id) as chat:
            message = self.stage_message(
                db, chat, sender_id, kind,
                content=content,
                attachment=attachment,
                voice=voice,
                invitation=invitation,
                system=system,
            )
            await self.commit_messages(db, chat, [message])
        return message

    async def edit_message(
        self,
        db: AsyncSession,
        chat_id: str,
        user_id: str,
        message_id: str,
        content: str,
    ) -> ChatMessage:
        """Edit a text message; only its sender may do so"""
        if not content or not content.strip():
            raise InvalidArgumentError("Message content is required")

        async with self.locked_chat(db, chat_id) as chat:
            self.require_participant(chat, user_id)
            message = await self.get_message(db, chat_id, message_id)
            if message is None:
                raise NotFoundError("Message not found")
            if message.sender_id != str(user_id):
                raise ForbiddenError("Can only edit your own messages")
            if message.kind != "text":
                raise InvalidArgumentError("Only text messages can be edited")

            message.content = content
            message.edited = True
            message.edited_at = datetime.utcnow()

            newest = await self.newest_message(db, chat_id)
            if newest is not None and newest.id == message.id:
                chat.last_message_preview = preview_for(message)

            await db.commit()
            self.invalidate_inbox(chat)
            logger.info("Message edited", action="message_edited", chat_id=chat.id, user_id=user_id)
            await self.publish({"type": "messageEdited", "chatId": chat.id, "message": message.to_dict()})
        return message

    async def delete_message(
        self,
        db: AsyncSession,
        chat_id: str,
        user_id: str,
        message_id: str,
    ) -> Dict[str, Any]:
        """
        Remove a message; only its sender may do so.

        Returns:
            Snapshot of the removed message (attachment state included)
        """
        async with self.locked_chat(db, chat_id) as chat:
            self.require_participant(chat, user_id)
            message = await self.get_message(db, chat_id, message_id)
            if message is None:
                raise NotFoundError("Message not found")
            if message.sender_id != str(user_id):
                raise ForbiddenError("Can only delete your own messages")

            snapshot = message.to_dict()
            await db.delete(message)
            await db.flush()

            newest = await self.newest_message(db, chat_id)
            chat.last_message_preview = preview_for(newest) if newest else None

            await db.commit()
            self.invalidate_inbox(chat)
            logger.info("Message deleted", action="message_deleted", chat_id=chat.id, user_id=user_id)
            await self.publish({"type": "messageDeleted", "chatId": chat.id, "messageId": snapshot["id"]})
        return snapshot

    async def mark_read(self, db: AsyncSession, chat_id: str, user_id: str) -> bool:
        """Add the caller to readBy. Returns False when it already was there."""
        user_id = str(user_id)
        async with self.locked_chat(db, chat_id) as chat:
            self.require_participant(chat, user_id)
            if user_id in (chat.read_by or []):
                return False
            chat.read_by = list(chat.read_by or []) + [user_id]
            await db.commit()
            inbox_cache.invalidate_user(user_id)

        logger.debug("Chat marked read", action="chat_read", chat_id=chat_id, user_id=user_id)
        return True

    # ==========================================
    # LEGACY DATA
    # ==========================================

    async def find_invalid_messages(self, db: AsyncSession, chat_id: str) -> List[ChatMessage]:
        """Messages whose kind is outside the accepted set"""
        result = await db.execute(
            select(ChatMessage).where(
                and_(
                    ChatMessage.chat_id == str(chat_id),
                    ChatMessage.kind.notin_(MESSAGE_KINDS),
                )
            )
        )
        return list(result.scalars().all())

    async def ensure_valid_messages(self, db: AsyncSession, chat: Chat):
        """
        Raises:
            StructuralError: the chat holds messages of an unknown kind
        """
        invalid = await self.find_invalid_messages(db, chat.id)
        if invalid:
            raise StructuralError(
                "Chat contains messages of an unsupported kind",
                message_ids=[m.id for m in invalid],
            )

    async def purge_invalid_messages(self, db: AsyncSession, chat: Chat) -> int:
        """Drop messages of unknown kind from a locked chat. Not committed."""
        invalid = await self.find_invalid_messages(db, chat.id)
        for message in invalid:
            await db.delete(message)
        if invalid:
            logger.warning(
                f"Dropped {len(invalid)} messages of unknown kind",
                action="chat_legacy_cleanup",
                chat_id=chat.id,
            )
        return len(invalid)


# Singleton instance
chat_service = ChatService()
