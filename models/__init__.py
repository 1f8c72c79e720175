"""
Netyora Chat - Database Models
"""
from .chat_models import (
    Chat,
    ChatParticipant,
    ChatMessage,
    MessageAttachment,
    AttachmentDownload,
)

__all__ = [
    "Chat",
    "ChatParticipant",
    "ChatMessage",
    "MessageAttachment",
    "AttachmentDownload",
]
