"""
Netyora Chat - Attachment Lifecycle
Ingest, download and deletion of ephemeral chat attachments

Rules:
- Every attachment expires: images after 7 days, other files after 30 days
- Each participant may download an attachment at most once
- A blob is destroyed exactly once, on the first transition to deleted
- Voice messages are stored the same way but never expire
"""

import asyncio
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from models.chat_models import (
    ChatMessage, MessageAttachment, AttachmentDownload, ATTACHMENT_KINDS,
)
from integrations.blob_store import blob_store, BlobDownload
from services.chat_service import chat_service
from services import chat_notifications
from core.config import settings
from core.database import AsyncSessionLocal
from core.errors import (
    ChatError, NotFoundError, ForbiddenError, GoneError,
    InvalidArgumentError, StructuralError, UpstreamError,
)
from core.logging import get_logger

logger = get_logger("netyora.chat.attachments")

BLOB_FOLDERS = {
    "image": "chat-images",
    "voice": "chat-voice",
}
DEFAULT_BLOB_FOLDER = "chat-files"


def classify_mime(mime_type: str) -> str:
    """Attachment kind for a mime type"""
    mime_type = (mime_type or "").lower()
    if mime_type.startswith("image/"):
        return "image"
    if mime_type == "application/pdf":
        return "pdf"
    if "document" in mime_type or "word" in mime_type:
        return "document"
    return "file"


def expiry_for(kind: str, created_at: Optional[datetime] = None) -> datetime:
    created_at = created_at or datetime.utcnow()
    if kind == "image":
        return created_at + timedelta(days=settings.IMAGE_RETENTION_DAYS)
    return created_at + timedelta(days=settings.FILE_RETENTION_DAYS)


def partition_of(chat_id: str, partitions: int) -> int:
    """Stable partition index of a chat, identical across processes"""
    return zlib.crc32(str(chat_id).encode("utf-8")) % partitions


@dataclass
class DownloadGrant:
    """An authorized, not yet recorded, download"""
    chat_id: str
    message_id: str
    attachment_id: str
    user_id: str
    url: str
    file_name: str
    mime_type: str
    file_size: int
    # Set once the reservation is recorded or released
    settled: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.attachment_id, self.user_id)


@dataclass
class DownloadOutcome:
    """Either an open stream, or a redirect to the blob url"""
    grant: DownloadGrant
    download: Optional[BlobDownload] = None
    redirect_url: Optional[str] = None


class AttachmentService:
    """
    Attachment lifecycle manager.

    Download receipts and deletion flags are only written while the
    chat's lock is held.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] = AsyncSessionLocal):
        self.session_factory = session_factory
        # (attachment_id, user_id) pairs currently streaming
        self._in_flight: Set[Tuple[str, str]] = set()

    def reset(self):
        self._in_flight.clear()

    # ==========================================
    # INGEST
    # ==========================================

    async def ingest(
        self,
        chat_id: str,
        content: bytes,
        file_name: Optional[str],
        mime_type: Optional[str],
        target_kind: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[str, Dict[str, Any]]:
        """
        Upload a file and describe the attachment to persist.

        Returns:
            (kind, attachment fields)

        Raises:
            StructuralError: name, type or content missing
            InvalidArgumentError: unsupported kind or file too large
            UpstreamError: blob store upload failed
        """
        missing = [
            name for name, value in (
                ("file_name", file_name),
                ("mime_type", mime_type),
                ("file_size", content),
            ) if not value
        ]
        if missing:
            raise StructuralError("File is missing required fields", missing=missing)

        kind = target_kind or classify_mime(mime_type)
        if kind not in ATTACHMENT_KINDS:
            raise InvalidArgumentError(f"Unsupported attachment kind: {kind}")

        max_size = settings.MAX_IMAGE_SIZE if kind == "image" else settings.MAX_FILE_SIZE
        if len(content) > max_size:
            raise InvalidArgumentError(
                f"File too large. Maximum size is {max_size // (1024 * 1024)}MB"
            )

        uploaded = await blob_store.upload(
            content,
            file_name,
            mime_type,
            chat_id,
            folder=BLOB_FOLDERS.get(kind, DEFAULT_BLOB_FOLDER),
        )

        return kind, {
            "url": uploaded["url"],
            "file_name": file_name,
            "file_size": uploaded["bytes"],
            "mime_type": mime_type,
            "public_id": uploaded["publicId"],
            "width": uploaded.get("width"),
            "height": uploaded.get("height"),
            "expires_at": expiry_for(kind, now),
        }

    async def send_attachment(
        self,
        db: AsyncSession,
        chat_id: str,
        sender_id: str,
        content: bytes,
        file_name: Optional[str],
        mime_type: Optional[str],
        caption: Optional[str] = None,
        target_kind: Optional[str] = None,
    ) -> ChatMessage:
        """
        Upload a file and append it as an attachment message.
        Nothing is persisted when the upload fails.
        """
        chat = await chat_service.get_chat(db, chat_id, sender_id)
        kind, attachment = await self.ingest(chat.id, content, file_name, mime_type, target_kind)

        try:
            message = await chat_service.append_message(
                db, chat.id, sender_id, kind,
                content=caption,
                attachment=attachment,
            )
        except ChatError:
            await self.discard_blob(attachment["public_id"])
            raise

        await chat_notifications.notify_attachment_shared(chat, message)
        return message

    async def send_voice(
        self,
        db: AsyncSession,
        chat_id: str,
        sender_id: str,
        content: bytes,
        file_name: Optional[str],
        mime_type: Optional[str],
        duration_ms: int,
    ) -> ChatMessage:
        """Upload a voice recording and append it as a voice message"""
        chat = await chat_service.get_chat(db, chat_id, sender_id)
        if not content:
            raise StructuralError("Voice message is empty", missing=["file_size"])
        if not mime_type or not mime_type.startswith("audio/"):
            raise InvalidArgumentError("Voice messages must be audio")
        if len(content) > settings.MAX_FILE_SIZE:
            raise InvalidArgumentError("Voice message too large")

        uploaded = await blob_store.upload(
            content,
            file_name or "voice.webm",
            mime_type,
            chat.id,
            folder=BLOB_FOLDERS["voice"],
        )
        try:
            return await chat_service.append_message(
                db, chat.id, sender_id, "voice",
                voice={
                    "url": uploaded["url"],
                    "duration_ms": duration_ms,
                    "file_size": uploaded["bytes"],
                },
            )
        except ChatError:
            await self.discard_blob(uploaded["publicId"])
            raise

    async def discard_blob(self, public_id: str) -> bool:
        """Best effort destroy for blobs no attachment row points at"""
        try:
            await blob_store.destroy(public_id)
            logger.info(f"Discarded blob {public_id}", action="blob_discarded")
            return True
        except UpstreamError:
            logger.warning(
                f"Could not discard blob {public_id}",
                action="blob_discard_failed",
            )
            return False

    # ==========================================
    # DOWNLOAD
    # ==========================================

    async def _has_downloaded(self, db: AsyncSession, attachment_id: str, user_id: str) -> bool:
        result = await db.execute(
            select(AttachmentDownload.id).where(
                and_(
                    AttachmentDownload.attachment_id == attachment_id,
                    AttachmentDownload.user_id == str(user_id),
                )
            )
        )
        return result.first() is not None

    async def authorize_download(
        self,
        db: AsyncSession,
        chat_id: str,
        message_id: str,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> DownloadGrant:
        """
        Check the download policy and reserve the download for the caller.

        Raises:
            NotFoundError: chat, message or attachment missing
            ForbiddenError: not a participant, or already downloaded
            GoneError: attachment deleted or expired
        """
        user_id = str(user_id)
        now = now or datetime.utcnow()

        async with chat_service.locked_chat(db, chat_id) as chat:
            chat_service.require_participant(chat, user_id)

            message = await chat_service.get_message(db, chat.id, message_id)
            if message is None or message.attachment is None:
                raise NotFoundError("File not found")

            attachment = message.attachment
            if attachment.is_deleted or now >= attachment.expires_at:
                raise GoneError("File has expired or been deleted")

            key = (attachment.id, user_id)
            if key in self._in_flight or await self._has_downloaded(db, attachment.id, user_id):
                raise ForbiddenError("File already downloaded")

            self._in_flight.add(key)
            grant = DownloadGrant(
                chat_id=chat.id,
                message_id=message.id,
                attachment_id=attachment.id,
                user_id=user_id,
                url=attachment.url,
                file_name=attachment.file_name,
                mime_type=attachment.mime_type,
                file_size=attachment.file_size,
            )
            await db.commit()

        return grant

    def release(self, grant: DownloadGrant):
        """Drop a reservation without recording the download. Idempotent."""
        if grant.settled:
            return
        grant.settled = True
        self._in_flight.discard(grant.key)

    async def abandon(self, grant: DownloadGrant, download: Optional[BlobDownload] = None):
        """
        Give up on a download that never reached its last chunk: the
        reservation is released and the upstream response closed.
        """
        if not grant.settled:
            self.release(grant)
            logger.info(
                "Attachment download abandoned",
                action="download_abandoned",
                chat_id=grant.chat_id,
                user_id=grant.user_id,
            )
        if download is not None:
            await download.aclose()

    async def record_download(self, db: AsyncSession, grant: DownloadGrant, via_redirect: bool = False) -> bool:
        """
        Persist the download receipt and release the reservation.
        Returns False when the attachment was deleted in the meantime.
        """
        try:
            async with chat_service.locked_chat(db, grant.chat_id):
                result = await db.execute(
                    select(MessageAttachment)
                    .where(MessageAttachment.id == grant.attachment_id)
                    .execution_options(populate_existing=True)
                )
                attachment = result.scalar_one_or_none()
                if attachment is None or attachment.is_deleted:
                    await db.commit()
                    return False
                if await self._has_downloaded(db, attachment.id, grant.user_id):
                    await db.commit()
                    return True

                db.add(AttachmentDownload(
                    attachment_id=attachment.id,
                    user_id=grant.user_id,
                    via_redirect=via_redirect,
                ))
                await db.commit()
        finally:
            self.release(grant)

        logger.info(
            "Attachment download recorded",
            action="download_recorded",
            chat_id=grant.chat_id,
            user_id=grant.user_id,
            message_id=grant.message_id,
            via_redirect=via_redirect,
        )
        return True

    async def open_download(self, db: AsyncSession, grant: DownloadGrant) -> DownloadOutcome:
        """
        Open the upstream stream. When the blob store can not be reached the
        caller is redirected to the blob url and the download counts as done.
        """
        try:
            download = await blob_store.open_download(grant.url)
        except UpstreamError:
            logger.warning(
                "Streaming failed, redirecting to blob url",
                action="download_redirect",
                chat_id=grant.chat_id,
                user_id=grant.user_id,
            )
            await self.record_download(db, grant, via_redirect=True)
            return DownloadOutcome(grant=grant, redirect_url=grant.url)
        except Exception:
            self.release(grant)
            raise
        return DownloadOutcome(grant=grant, download=download)

    async def stream(self, grant: DownloadGrant, download: BlobDownload) -> AsyncIterator[bytes]:
        """
        Relay the blob to the client. The receipt is written only after the
        last chunk; a cancelled stream just releases the reservation.
        """
        completed = False
        try:
            async for chunk in download.iter_bytes():
                yield chunk
            completed = True
        finally:
            if completed:
                async with self.session_factory() as session:
                    await self.record_download(session, grant)
            else:
                self.release(grant)
                logger.info(
                    "Attachment download cancelled",
                    action="download_cancelled",
                    chat_id=grant.chat_id,
                    user_id=grant.user_id,
                )

    # ==========================================
    # DELETION
    # ==========================================

    def _mark_deleted(self, attachment: MessageAttachment, reason: str, now: datetime):
        attachment.is_deleted = True
        attachment.deleted_at = now
        attachment.deletion_reason = reason

    async def manual_delete(
        self,
        db: AsyncSession,
        chat_id: str,
        message_id: str,
        user_id: str,
    ) -> Dict[str, Any]:
        """
        Participant-triggered purge of an attachment.

        Raises:
            NotFoundError: nothing left to delete
            UpstreamError: blob delete failed, the attachment stays live
        """
        now = datetime.utcnow()
        async with chat_service.locked_chat(db, chat_id) as chat:
            chat_service.require_participant(chat, user_id)
            message = await chat_service.get_message(db, chat.id, message_id)
            if message is None or message.attachment is None or message.attachment.is_deleted:
                raise NotFoundError("No file found to delete")

            attachment = message.attachment
            await blob_store.destroy(attachment.public_id)
            self._mark_deleted(attachment, "manual", now)
            await db.commit()
            chat_service.invalidate_inbox(chat)

            logger.info(
                "Attachment deleted by participant",
                action="attachment_deleted",
                chat_id=chat.id,
                user_id=user_id,
                message_id=message.id,
            )
            await chat_service.publish({
                "type": "attachmentDeleted",
                "chatId": chat.id,
                "messageId": message.id,
                "reason": "manual",
            })

        await chat_notifications.notify_attachment_deleted(
            chat, message.id, message.kind, attachment, "manual", actor_id=str(user_id),
        )
        return message.to_dict()

    async def expired_chat_ids(self, db: AsyncSession, now: datetime) -> List[str]:
        result = await db.execute(
            select(MessageAttachment.chat_id)
            .where(
                and_(
                    MessageAttachment.is_deleted.is_(False),
                    MessageAttachment.expires_at <= now,
                )
            )
            .distinct()
        )
        return [row[0] for row in result.all()]

    async def _sweep_chat(self, db: AsyncSession, chat_id: str, now: datetime) -> Dict[str, int]:
        deleted: List[Tuple[str, str, MessageAttachment]] = []
        failed = 0

        try:
            async with chat_service.locked_chat(db, chat_id) as chat:
                result = await db.execute(
                    select(MessageAttachment, ChatMessage.kind)
                    .join(ChatMessage, ChatMessage.id == MessageAttachment.message_id)
                    .where(
                        and_(
                            MessageAttachment.chat_id == chat.id,
                            MessageAttachment.is_deleted.is_(False),
                            MessageAttachment.expires_at <= now,
                        )
                    )
                    .execution_options(populate_existing=True)
                )
                for attachment, kind in result.all():
                    try:
                        await blob_store.destroy(attachment.public_id)
                    except UpstreamError:
                        # Left live, the next sweep retries
                        failed += 1
                        continue
                    self._mark_deleted(attachment, "auto_deletion", now)
                    await db.commit()
                    deleted.append((attachment.message_id, kind, attachment))
                await db.commit()
                if deleted:
                    chat_service.invalidate_inbox(chat)
        except NotFoundError:
            return {"deleted": 0, "failed": 0}

        for message_id, kind, attachment in deleted:
            await chat_service.publish({
                "type": "attachmentDeleted",
                "chatId": chat.id,
                "messageId": message_id,
                "reason": "auto_deletion",
            })
            await chat_notifications.notify_attachment_deleted(
                chat, message_id, kind, attachment, "auto_deletion",
            )

        return {"deleted": len(deleted), "failed": failed}

    async def sweep(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
        partition: Optional[Tuple[int, int]] = None,
    ) -> Dict[str, int]:
        """
        Delete every attachment with expiresAt <= now.

        Args:
            partition: (index, count), restrict the pass to one share of the chats

        Returns:
            {"chats", "deleted", "failed"}
        """
        now = now or datetime.utcnow()
        chat_ids = await self.expired_chat_ids(db, now)
        if partition is not None:
            index, count = partition
            chat_ids = [cid for cid in chat_ids if partition_of(cid, count) == index]

        report = {"chats": 0, "deleted": 0, "failed": 0}
        for chat_id in chat_ids:
            outcome = await self._sweep_chat(db, chat_id, now)
            report["chats"] += 1
            report["deleted"] += outcome["deleted"]
            report["failed"] += outcome["failed"]

        if chat_ids:
            logger.info(
                f"Sweep finished: {report['deleted']} deleted, {report['failed']} failed",
                action="attachment_sweep",
                **report,
            )
        return report

    async def run_partitioned_sweep(
        self,
        now: Optional[datetime] = None,
        workers: Optional[int] = None,
    ) -> Dict[str, int]:
        """Run one sweep with parallel workers, each owning a share of the chats"""
        now = now or datetime.utcnow()
        workers = max(1, workers or settings.SWEEP_WORKERS)

        async def run_worker(index: int) -> Dict[str, int]:
            async with self.session_factory() as session:
                return await self.sweep(session, now=now, partition=(index, workers))

        reports = await asyncio.gather(*(run_worker(i) for i in range(workers)))
        total = {"chats": 0, "deleted": 0, "failed": 0}
        for report in reports:
            for key in total:
                total[key] += report[key]
        return total


# Singleton instance
attachment_service = AttachmentService()
