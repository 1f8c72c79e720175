#!/usr/bin/env python3
"""
Find chats holding messages of an unknown kind or attachments with empty
required fields. Dry run by default, pass --apply to drop them.

Usage:
    python scripts/repair_chat_messages.py [--apply] [--chat CHAT_ID]
"""
import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from sqlalchemy import select, or_

from core.database import AsyncSessionLocal
from models.chat_models import ChatMessage, MessageAttachment, MESSAGE_KINDS
from services.chat_service import chat_service


async def broken_attachment_message_ids(db, chat_id: str):
    """Messages whose attachment row lost one of its required values"""
    result = await db.execute(
        select(MessageAttachment.message_id).where(
            MessageAttachment.chat_id == chat_id,
            or_(
                MessageAttachment.url == "",
                MessageAttachment.file_name == "",
                MessageAttachment.mime_type == "",
                MessageAttachment.public_id == "",
            ),
        )
    )
    return [row[0] for row in result.all()]


async def affected_chat_ids(db, only_chat: str = None):
    query = (
        select(ChatMessage.chat_id)
        .where(ChatMessage.kind.notin_(MESSAGE_KINDS))
        .union(
            select(MessageAttachment.chat_id).where(
                or_(
                    MessageAttachment.url == "",
                    MessageAttachment.file_name == "",
                    MessageAttachment.mime_type == "",
                    MessageAttachment.public_id == "",
                )
            )
        )
    )
    result = await db.execute(query)
    chat_ids = sorted({row[0] for row in result.all()})
    if only_chat:
        chat_ids = [c for c in chat_ids if c == only_chat]
    return chat_ids


async def repair(apply: bool, only_chat: str = None) -> int:
    total = 0
    async with AsyncSessionLocal() as db:
        chat_ids = await affected_chat_ids(db, only_chat)

    print(f"Chats needing repair: {len(chat_ids)}")

    for chat_id in chat_ids:
        async with AsyncSessionLocal() as db:
            invalid = await chat_service.find_invalid_messages(db, chat_id)
            broken = await broken_attachment_message_ids(db, chat_id)
            print(f"  {chat_id}: {len(invalid)} unknown kind, {len(broken)} broken attachments")
            total += len(invalid) + len(broken)

            if not apply:
                continue

            async with chat_service.locked_chat(db, chat_id) as chat:
                await chat_service.purge_invalid_messages(db, chat)
                for message_id in broken:
                    message = await db.get(ChatMessage, message_id)
                    if message is not None:
                        await db.delete(message)
                await db.commit()
                chat_service.invalidate_inbox(chat)

    action = "Removed" if apply else "Would remove"
    print(f"{action} {total} messages")
    return total


def main():
    parser = argparse.ArgumentParser(description="Repair chats with unreadable messages")
    parser.add_argument("--apply", action="store_true", help="Delete the offending messages")
    parser.add_argument("--chat", help="Only inspect this chat")
    args = parser.parse_args()

    asyncio.run(repair(args.apply, args.chat))


if __name__ == "__main__":
    main()
