"""
Netyora Chat - Notifications
Builds notification records for chat events and hands them to the Notification Sink.
Delivery problems are logged and never fail the command that caused them.
"""

from typing import Any, Dict, Iterable, List, Optional

from models.chat_models import Chat, ChatMessage, MessageAttachment, iso
from integrations.notify.notify_client import notify_client
from core.logging import get_logger

logger = get_logger("netyora.chat.notifications")

VIDEO_NOTIFICATION_TYPES = {
    "active": "video_invitation",
    "cancelled": "video_cancelled",
    "ended": "video_ended",
    "timedOut": "video_timed_out",
}


def _record(
    user_id: str,
    type_: str,
    sender_id: Optional[str],
    chat_id: str,
    action: str,
    metadata: Dict[str, Any],
) -> Dict[str, Any]:
    return {
        "user": user_id,
        "type": type_,
        "sender": sender_id,
        "context": chat_id,
        "action": action,
        "metadata": metadata,
    }


async def _deliver(records: List[Dict[str, Any]], chat_id: str):
    if not records:
        return
    try:
        result = await notify_client.send_bulk(records)
    except Exception as e:
        logger.warning(
            f"Notification delivery failed: {e}",
            action="notify_failed",
            chat_id=chat_id,
        )
        return
    if isinstance(result, dict) and result.get("error"):
        logger.warning(
            f"Notification delivery failed: {result.get('error')}",
            action="notify_failed",
            chat_id=chat_id,
        )


def _recipients(chat: Chat, exclude: Optional[str] = None) -> Iterable[str]:
    return [uid for uid in chat.participant_ids if uid != exclude]


async def notify_attachment_shared(chat: Chat, message: ChatMessage):
    """Tell the other participants a file or image was shared"""
    attachment = message.attachment
    type_ = "image_shared" if message.kind == "image" else "file_shared"
    metadata = {
        "chatId": chat.id,
        "messageId": message.id,
        "fileName": attachment.file_name,
        "fileType": message.kind,
        "expiresAt": iso(attachment.expires_at),
    }
    records = [
        _record(uid, type_, message.sender_id, chat.id, "file_shared", metadata)
        for uid in _recipients(chat, exclude=message.sender_id)
    ]
    await _deliver(records, chat.id)


async def notify_attachment_deleted(
    chat: Chat,
    message_id: str,
    kind: str,
    attachment: MessageAttachment,
    reason: str,
    actor_id: Optional[str] = None,
):
    """Tell every participant an attachment is gone"""
    type_ = "image_deleted" if kind == "image" else "file_deleted"
    metadata = {
        "chatId": chat.id,
        "messageId": message_id,
        "fileName": attachment.file_name,
        "fileType": kind,
        "expiresAt": iso(attachment.expires_at),
        "deletionReason": reason,
    }
    records = [
        _record(uid, type_, actor_id, chat.id, "file_deleted", metadata)
        for uid in _recipients(chat)
    ]
    await _deliver(records, chat.id)


async def notify_video_transition(
    chat: Chat,
    invitation: Dict[str, Any],
    status: str,
    actor_id: Optional[str],
    message_id: Optional[str] = None,
):
    """Video invitation lifecycle notification to everyone but the actor"""
    type_ = VIDEO_NOTIFICATION_TYPES.get(status)
    if type_ is None:
        return
    metadata = {
        "chatId": chat.id,
        "messageId": message_id,
        "roomId": invitation.get("roomId"),
        "joinUrl": invitation.get("joinUrl"),
        "status": status,
        "swapId": invitation.get("swapId"),
    }
    records = [
        _record(uid, type_, actor_id, chat.id, type_, metadata)
        for uid in _recipients(chat, exclude=actor_id)
    ]
    await _deliver(records, chat.id)
