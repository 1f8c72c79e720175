"""
Netyora Chat - Chat API
REST endpoints for chats, messages, attachments and video sessions

Endpoints:
- Chats: list, create, get, update, leave
- Messages: list, send (text, file, voice), edit, delete, mark read, typing
- Attachments: at-most-once download, manual purge
- Video sessions: start, cancel, end, join, leave, timeout (chat and swap scoped)
"""

import os
from urllib.parse import quote

from fastapi import APIRouter, Depends, UploadFile, File, Form, Query, Request, status
from fastapi.responses import StreamingResponse, RedirectResponse
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Union
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.security import get_current_user, get_user_context
from core.errors import InvalidArgumentError
from core.logging import get_logger
from integrations.blob_store import BlobDownload
from middleware.rate_limit import limiter, RateLimits
from services.chat_service import chat_service
from services.attachment_service import attachment_service, DownloadGrant
from services.video_invitation_service import video_invitation_service
from services.presence_service import presence_registry
from services.realtime_gateway import realtime_gateway

logger = get_logger("netyora.chat.api")

router = APIRouter(prefix="/chat", tags=["Chat"])
swap_router = APIRouter(prefix="/swap", tags=["Chat"])

DOWNLOAD_CACHE_CONTROL = "public, max-age=31536000"


# ===========================================
# SCHEMAS
# ===========================================

class CreateChatRequest(BaseModel):
    kind: str = "personal"  # personal, group, community
    recipient: Optional[str] = None
    participants: List[str] = []
    title: Optional[str] = None
    avatar: Optional[str] = None
    communityId: Optional[str] = None


class UpdateChatRequest(BaseModel):
    title: Optional[str] = None
    participants: Optional[List[str]] = None
    avatar: Optional[str] = None


class SendMessageRequest(BaseModel):
    kind: str = "text"  # text, videoInvitation
    content: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    bannerUrl: Optional[str] = None


class EditMessageRequest(BaseModel):
    content: str


class TypingRequest(BaseModel):
    isTyping: bool = True


class StartVideoSessionRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    bannerUrl: Optional[str] = None


class VideoRoomRequest(BaseModel):
    roomId: str = Field(..., min_length=1)


# ===========================================
# HELPERS
# ===========================================

def project_participants(participants: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Minimal participant projection with live presence"""
    return [
        {
            "id": p["id"],
            "displayName": p.get("displayName"),
            "avatarUrl": p.get("avatarUrl"),
            "onlineStatus": presence_registry.snapshot(p["id"]),
        }
        for p in participants
    ]


def project_chat(chat: Dict[str, Any]) -> Dict[str, Any]:
    return dict(chat, participants=project_participants(chat.get("participants", [])))


def creator_profile(ctx: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": ctx["user_id"], "displayName": ctx["name"], "avatarUrl": ctx["avatar"]}


def _header_safe(value: str) -> str:
    return "".join(c for c in value if 32 <= ord(c) < 127 and c not in '"\\')


def content_disposition(file_name: str) -> str:
    """
    Attachment header for a file name. Names that are not plain ASCII get an
    ASCII fallback plus the exact name in `filename*` (RFC 6266).
    """
    if _header_safe(file_name) == file_name:
        return f'attachment; filename="{file_name}"'
    stem, ext = os.path.splitext(file_name)
    fallback = (_header_safe(stem).strip() or "download") + _header_safe(ext)
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(file_name, safe='')}"


class AttachmentStreamResponse(StreamingResponse):
    """Streams a granted download. A body that never finishes gives the grant back."""

    def __init__(self, grant: DownloadGrant, download: BlobDownload, **kwargs):
        super().__init__(attachment_service.stream(grant, download), **kwargs)
        self.grant = grant
        self.download = download

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            await attachment_service.abandon(self.grant, self.download)


# ===========================================
# CHATS
# ===========================================

@router.get("/online-users")
async def get_online_users(
    current_user: dict = Depends(get_current_user),
):
    """Users with at least one live realtime connection."""
    users = presence_registry.get_online_users()
    return {"users": users, "count": len(users)}


@router.get("")
@limiter.limit(RateLimits.DEFAULT)
async def list_chats(
    request: Request,
    cursor: Optional[str] = Query(None, description="Id of the last chat of the previous page"),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Get the caller's chats, newest activity first.

    - **cursor**: continue after this chat id
    - **search**: match on group title or participant name
    """
    ctx = get_user_context(current_user)
    inbox = await chat_service.get_inbox(db, ctx["user_id"], cursor=cursor, limit=limit, search=search)
    return {
        "chats": [project_chat(chat) for chat in inbox["chats"]],
        "nextCursor": inbox["nextCursor"],
    }


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(RateLimits.CHAT_CREATE)
async def create_chat(
    request: Request,
    data: CreateChatRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Open a personal chat with `recipient` (returns the existing one if any),
    or create a group / community chat.
    """
    ctx = get_user_context(current_user)

    if data.kind == "personal":
        if not data.recipient:
            raise InvalidArgumentError("Recipient is required for personal chat")
        chat = await chat_service.open_or_find_personal_chat(
            db, ctx["user_id"], data.recipient, user_profile=creator_profile(ctx),
        )
    elif data.kind in ("group", "community"):
        chat = await chat_service.create_group_chat(
            db,
            ctx["user_id"],
            data.title,
            data.participants,
            avatar_url=data.avatar,
            creator_profile=creator_profile(ctx),
            kind=data.kind,
            community_id=data.communityId,
        )
    else:
        raise InvalidArgumentError("Invalid chat type")

    return project_chat(chat.to_dict())


@router.get("/{chat_id}")
async def get_chat(
    chat_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Chat metadata and membership."""
    ctx = get_user_context(current_user)
    chat = await chat_service.get_chat(db, chat_id, ctx["user_id"])
    unread = await chat_service.unread_count_for(db, ctx["user_id"], chat)
    return dict(project_chat(chat.to_dict()), unreadCount=unread)


@router.patch("/{chat_id}")
async def update_chat(
    chat_id: str,
    data: UpdateChatRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Update title, avatar or participants of a group chat."""
    ctx = get_user_context(current_user)
    chat = await chat_service.update_group_chat(
        db, chat_id, ctx["user_id"],
        title=data.title,
        participant_ids=data.participants,
        avatar_url=data.avatar,
    )
    return project_chat(chat.to_dict())


@router.delete("/{chat_id}")
async def leave_chat(
    chat_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Remove a chat from the caller's view.
    Personal chats are hidden until the next message, group chats are left.
    """
    ctx = get_user_context(current_user)
    outcome = await chat_service.leave_chat(db, chat_id, ctx["user_id"])
    return {"success": True, **outcome}


# ===========================================
# MESSAGES
# ===========================================

@router.get("/{chat_id}/messages")
async def get_messages(
    chat_id: str,
    before: Optional[str] = Query(None, description="Return messages older than this message id"),
    limit: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Messages in chronological order."""
    ctx = get_user_context(current_user)
    messages = await chat_service.get_messages(db, chat_id, ctx["user_id"], before=before, limit=limit)
    return {
        "messages": [m.to_dict() for m in messages],
        "count": len(messages),
        "hasMore": len(messages) == limit,
    }


@router.post("/{chat_id}/message", status_code=status.HTTP_201_CREATED)
@limiter.limit(RateLimits.CHAT_SEND)
async def send_message(
    request: Request,
    chat_id: str,
    data: SendMessageRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Send a text message, or a video call invitation."""
    ctx = get_user_context(current_user)

    if data.kind == "text":
        message = await chat_service.append_message(
            db, chat_id, ctx["user_id"], "text", content=data.content,
        )
        return message.to_dict()

    if data.kind == "videoInvitation":
        session = await video_invitation_service.start_invitation_for_chat(
            db, chat_id, ctx["user_id"],
            title=data.title,
            description=data.description,
            banner_url=data.bannerUrl,
        )
        return session["invitation"]

    raise InvalidArgumentError("Only text and videoInvitation messages can be sent here")


@router.post("/{chat_id}/message/file", status_code=status.HTTP_201_CREATED)
@limiter.limit(RateLimits.FILE_UPLOAD)
async def send_file_message(
    request: Request,
    chat_id: str,
    file: Union[UploadFile, str, None] = File(None),
    caption: Optional[str] = Form(None),
    kind: Optional[str] = Form(None, description="image, pdf, document or file; derived from the type when omitted"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Upload a file and send it as an attachment message.
    Images expire after 7 days, other files after 30 days.
    """
    ctx = get_user_context(current_user)

    if file is None or isinstance(file, str):
        # A part without a filename arrives as a plain form field
        content = (file or "").encode("utf-8")
        file_name, mime_type = None, None
    else:
        content = await file.read()
        file_name = (file.filename or "").strip() or None
        mime_type = file.content_type or None

    message = await attachment_service.send_attachment(
        db, chat_id, ctx["user_id"],
        content=content,
        file_name=file_name,
        mime_type=mime_type,
        caption=caption,
        target_kind=kind,
    )
    return message.to_dict()


@router.post("/{chat_id}/message/voice", status_code=status.HTTP_201_CREATED)
@limiter.limit(RateLimits.FILE_UPLOAD)
async def send_voice_message(
    request: Request,
    chat_id: str,
    audio: UploadFile = File(...),
    duration: int = Form(0, ge=0, description="Duration in milliseconds"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Upload a voice recording and send it as a voice message."""
    ctx = get_user_context(current_user)
    content = await audio.read()

    message = await attachment_service.send_voice(
        db, chat_id, ctx["user_id"],
        content=content,
        file_name=audio.filename,
        mime_type=audio.content_type,
        duration_ms=duration,
    )
    return message.to_dict()


@router.put("/{chat_id}/message/{message_id}")
async def edit_message(
    chat_id: str,
    message_id: str,
    data: EditMessageRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Edit a text message (sender only)."""
    ctx = get_user_context(current_user)
    message = await chat_service.edit_message(db, chat_id, ctx["user_id"], message_id, data.content)
    return message.to_dict()


@router.delete("/{chat_id}/message/{message_id}")
async def delete_message(
    chat_id: str,
    message_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete a message (sender only). A live attachment blob is destroyed with it."""
    ctx = get_user_context(current_user)
    snapshot = await chat_service.delete_message(db, chat_id, ctx["user_id"], message_id)

    attachment = snapshot.get("attachment")
    if attachment and not attachment["isDeleted"]:
        await attachment_service.discard_blob(attachment["publicId"])

    return {"success": True, "messageId": snapshot["id"]}


@router.delete("/{chat_id}/message/{message_id}/file")
async def delete_message_file(
    chat_id: str,
    message_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Purge a message's attachment from storage. Any participant may do this."""
    ctx = get_user_context(current_user)
    message = await attachment_service.manual_delete(db, chat_id, message_id, ctx["user_id"])
    return {"success": True, "message": message}


@router.get("/{chat_id}/message/{message_id}/download")
@limiter.limit(RateLimits.FILE_DOWNLOAD)
async def download_file(
    request: Request,
    chat_id: str,
    message_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Download an attachment. Each participant gets one download;
    deleted or expired attachments answer 410.
    """
    ctx = get_user_context(current_user)
    grant = await attachment_service.authorize_download(db, chat_id, message_id, ctx["user_id"])

    download = None
    try:
        outcome = await attachment_service.open_download(db, grant)
        download = outcome.download

        headers = {"Cache-Control": DOWNLOAD_CACHE_CONTROL}
        if outcome.redirect_url:
            return RedirectResponse(outcome.redirect_url, status_code=status.HTTP_302_FOUND, headers=headers)

        headers["Content-Disposition"] = content_disposition(grant.file_name)
        if download.content_length:
            headers["Content-Length"] = download.content_length

        return AttachmentStreamResponse(grant, download, media_type=grant.mime_type, headers=headers)
    except BaseException:
        # Includes cancellation when the client goes away before the body starts
        await attachment_service.abandon(grant, download)
        raise


@router.post("/{chat_id}/read")
async def mark_read(
    chat_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Mark the chat as read by the caller."""
    ctx = get_user_context(current_user)
    changed = await chat_service.mark_read(db, chat_id, ctx["user_id"])
    return {"success": True, "changed": changed}


@router.post("/{chat_id}/typing")
async def send_typing(
    chat_id: str,
    data: TypingRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Typing indicator for clients without a realtime connection."""
    ctx = get_user_context(current_user)
    await chat_service.get_chat(db, chat_id, ctx["user_id"])
    await realtime_gateway.send_to_room(
        chat_id,
        {
            "type": "typing",
            "chatId": chat_id,
            "userId": ctx["user_id"],
            "userName": ctx["name"],
            "isTyping": data.isTyping,
        },
        advisory=True,
    )
    return {"success": True}


# ===========================================
# VIDEO SESSIONS
# ===========================================

@router.post("/{chat_id}/video-session", status_code=status.HTTP_201_CREATED)
@limiter.limit(RateLimits.CHAT_SEND)
async def start_video_session(
    request: Request,
    chat_id: str,
    data: Optional[StartVideoSessionRequest] = None,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Start a video call: invitation message plus a room token for the caller."""
    ctx = get_user_context(current_user)
    data = data or StartVideoSessionRequest()
    return await video_invitation_service.start_invitation_for_chat(
        db, chat_id, ctx["user_id"],
        title=data.title,
        description=data.description,
        banner_url=data.bannerUrl,
    )


@router.post("/{chat_id}/video-session/cancel")
async def cancel_video_session(
    chat_id: str,
    data: VideoRoomRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_user_context(current_user)
    return await video_invitation_service.cancel(db, chat_id, ctx["user_id"], data.roomId)


@router.post("/{chat_id}/video-session/end")
async def end_video_session(
    chat_id: str,
    data: VideoRoomRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    ctx = get_user_context(current_user)
    return await video_invitation_service.end(db, chat_id, ctx["user_id"], data.roomId)


@router.post("/{chat_id}/video-session/timeout")
async def timeout_video_session(
    chat_id: str,
    data: VideoRoomRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Reported by a client-side timer when the call went unanswered."""
    ctx = get_user_context(current_user)
    return await video_invitation_service.timeout(db, chat_id, data.roomId, caller_id=ctx["user_id"])


@router.post("/{chat_id}/video-session/join")
async def join_video_session(
    chat_id: str,
    data: VideoRoomRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Join an active call and receive a room token."""
    ctx = get_user_context(current_user)
    return await video_invitation_service.on_participant_joined(db, chat_id, data.roomId, ctx["user_id"])


@router.post("/{chat_id}/video-session/leave")
async def leave_video_session(
    chat_id: str,
    data: VideoRoomRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Leave a call; it ends when the last participant leaves."""
    ctx = get_user_context(current_user)
    return await video_invitation_service.on_participant_left(db, chat_id, data.roomId, ctx["user_id"])


@swap_router.post("/{swap_id}/video-session", status_code=status.HTTP_201_CREATED)
@limiter.limit(RateLimits.CHAT_SEND)
async def start_swap_video_session(
    request: Request,
    swap_id: str,
    data: Optional[StartVideoSessionRequest] = None,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Start a video call between the two parties of a swap; the room id is the swap id."""
    ctx = get_user_context(current_user)
    data = data or StartVideoSessionRequest()
    return await video_invitation_service.start_invitation_for_swap(
        db, swap_id, ctx["user_id"],
        title=data.title,
        description=data.description,
        banner_url=data.bannerUrl,
    )
