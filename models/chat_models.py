"""
Netyora Chat - Chat Database Models
Chats, participants, polymorphic messages and ephemeral attachments

Models:
- Chat: personal, group or community conversation
- ChatParticipant: membership with denormalized display data
- ChatMessage: tagged message record, `kind` selects the payload
- MessageAttachment: externally stored file with expiry and delete state
- AttachmentDownload: one row per user who downloaded an attachment
"""

from sqlalchemy import (
    Column, String, Boolean, Integer, BigInteger, Text, DateTime,
    ForeignKey, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid

from core.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


def iso(value):
    return value.isoformat() if value else None


# ==========================================
# MESSAGE KINDS
# ==========================================

CHAT_KINDS = ("personal", "group", "community")

ATTACHMENT_KINDS = ("file", "image", "pdf", "document")
MESSAGE_KINDS = ("text",) + ATTACHMENT_KINDS + ("voice", "videoInvitation", "system")

INVITATION_STATUSES = ("active", "cancelled", "ended", "timedOut")
SYSTEM_ACTIONS = ("joinedVideo", "leftVideo", "cancelledVideo", "callEnded", "timedOut")


def personal_key_for(a: str, b: str) -> str:
    """Sorted participant pair used by the personal chat unique index"""
    first, second = sorted((str(a), str(b)))
    return f"{first}:{second}"


class Chat(Base):
    """
    A conversation with an ordered message sequence.

    Personal chats carry `personal_key` (the sorted participant pair) under
    a unique constraint so that at most one exists per pair of users.
    """
    __tablename__ = "chats"
    __table_args__ = (
        UniqueConstraint('personal_key', name='uq_chats_personal_key'),
        Index('idx_chats_kind', 'kind'),
        Index('idx_chats_updated', 'updated_at'),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    kind = Column(String(20), nullable=False)

    # Set for personal chats only
    personal_key = Column(String(200))

    # Group / community info
    title = Column(String(255))
    avatar_url = Column(Text)
    community_id = Column(String(64))
    created_by = Column(String(64), nullable=False)

    # Insertion counter, breaks timestamp ties
    message_seq = Column(Integer, nullable=False, default=0)

    last_message_preview = Column(String(200))
    read_by = Column(JSON, default=list)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    participants = relationship(
        "ChatParticipant", back_populates="chat",
        cascade="all, delete-orphan", lazy="selectin",
    )

    def __repr__(self):
        return f"<Chat(id={self.id}, kind={self.kind})>"

    @property
    def active_participants(self):
        return [p for p in self.participants if p.left_at is None]

    @property
    def participant_ids(self):
        return [p.user_id for p in self.active_participants]

    def is_participant(self, user_id) -> bool:
        return str(user_id) in self.participant_ids

    def participant(self, user_id):
        for p in self.active_participants:
            if p.user_id == str(user_id):
                return p
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "avatarUrl": self.avatar_url,
            "communityId": self.community_id,
            "createdBy": self.created_by,
            "participants": [p.to_dict() for p in self.active_participants],
            "lastMessagePreview": self.last_message_preview,
            "readBy": list(self.read_by or []),
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class ChatParticipant(Base):
    """
    Chat membership.
    `left_at` ends group membership, `hidden_at` hides a personal chat
    from the user's inbox until the next message arrives.
    """
    __tablename__ = "chat_participants"
    __table_args__ = (
        UniqueConstraint('chat_id', 'user_id', name='uq_chat_participants_chat_user'),
        Index('idx_chat_participants_user', 'user_id'),
        Index('idx_chat_participants_chat', 'chat_id'),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False)

    # Denormalized from the identity directory
    display_name = Column(String(255))
    avatar_url = Column(Text)

    joined_at = Column(DateTime, default=datetime.utcnow)
    hidden_at = Column(DateTime)
    left_at = Column(DateTime)

    chat = relationship("Chat", back_populates="participants")

    def __repr__(self):
        return f"<ChatParticipant(chat={self.chat_id}, user={self.user_id})>"

    def to_dict(self):
        return {
            "id": self.user_id,
            "displayName": self.display_name,
            "avatarUrl": self.avatar_url,
        }


class ChatMessage(Base):
    """
    A message. `kind` selects which payload is populated:
    attachment (file kinds), voice_* columns, invitation_data or system_meta.
    """
    __tablename__ = "chat_messages"
    __table_args__ = (
        Index('idx_chat_messages_chat_order', 'chat_id', 'created_at', 'seq'),
        Index('idx_chat_messages_kind', 'kind'),
        Index('idx_chat_messages_sender', 'sender_id'),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    seq = Column(Integer, nullable=False)

    sender_id = Column(String(64), nullable=False)
    kind = Column(String(30), nullable=False)
    content = Column(Text)

    edited = Column(Boolean, default=False)
    edited_at = Column(DateTime)

    # Voice
    voice_url = Column(Text)
    voice_duration_ms = Column(Integer)
    voice_file_size = Column(BigInteger)

    # Video invitation: roomId, status, bannerUrl, joinUrl, createdBy, maxParticipants, swapId
    invitation_data = Column(JSON)

    # System: action, roomId, actorId, actorName
    system_meta = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    attachment = relationship(
        "MessageAttachment", back_populates="message", uselist=False,
        cascade="all, delete-orphan", lazy="selectin",
    )

    def __repr__(self):
        return f"<ChatMessage(id={self.id}, kind={self.kind}, seq={self.seq})>"

    def to_dict(self):
        data = {
            "id": self.id,
            "chatId": self.chat_id,
            "sender": self.sender_id,
            "kind": self.kind,
            "content": self.content,
            "timestamp": iso(self.created_at),
            "edited": bool(self.edited),
            "editedAt": iso(self.edited_at),
        }
        if self.attachment is not None:
            data["attachment"] = self.attachment.to_dict()
        if self.kind == "voice":
            data["voice"] = {
                "url": self.voice_url,
                "durationMs": self.voice_duration_ms,
                "fileSize": self.voice_file_size,
            }
        if self.invitation_data is not None:
            data["invitation"] = dict(self.invitation_data)
        if self.system_meta is not None:
            data["system"] = dict(self.system_meta)
        return data


class MessageAttachment(Base):
    """
    Externally stored attachment of a file/image/pdf/document message.
    The blob is destroyed exactly once, on the first flip of `is_deleted`.
    """
    __tablename__ = "chat_attachments"
    __table_args__ = (
        UniqueConstraint('message_id', name='uq_chat_attachments_message'),
        Index('idx_chat_attachments_expiry', 'is_deleted', 'expires_at'),
        Index('idx_chat_attachments_chat', 'chat_id'),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    message_id = Column(String(36), ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False)
    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)

    url = Column(Text, nullable=False)
    file_name = Column(String(255), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    mime_type = Column(String(100), nullable=False)
    public_id = Column(String(500), nullable=False)

    width = Column(Integer)
    height = Column(Integer)

    expires_at = Column(DateTime, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime)
    deletion_reason = Column(String(30))

    created_at = Column(DateTime, default=datetime.utcnow)

    message = relationship("ChatMessage", back_populates="attachment")
    downloads = relationship(
        "AttachmentDownload", back_populates="attachment",
        cascade="all, delete-orphan", lazy="selectin",
        order_by="AttachmentDownload.downloaded_at",
    )

    def __repr__(self):
        return f"<MessageAttachment(id={self.id}, file={self.file_name})>"

    @property
    def downloaded_by(self):
        return [d.user_id for d in self.downloads]

    def to_dict(self):
        return {
            "url": self.url,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "publicId": self.public_id,
            "width": self.width,
            "height": self.height,
            "expiresAt": iso(self.expires_at),
            "isDeleted": bool(self.is_deleted),
            "downloadedBy": self.downloaded_by,
        }


class AttachmentDownload(Base):
    """Receipt of a completed download, at most one per user"""
    __tablename__ = "chat_attachment_downloads"
    __table_args__ = (
        UniqueConstraint('attachment_id', 'user_id', name='uq_attachment_downloads_user'),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    attachment_id = Column(String(36), ForeignKey("chat_attachments.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False)
    via_redirect = Column(Boolean, default=False)
    downloaded_at = Column(DateTime, default=datetime.utcnow)

    attachment = relationship("MessageAttachment", back_populates="downloads")
