"""
Chat Service Unit Tests
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from core.errors import (
    DataCorruptionError, ForbiddenError, InvalidArgumentError, InvalidMembershipError,
    NotFoundError, PeerNotFoundError, SelfChatForbiddenError, StructuralError,
)
from models.chat_models import Chat, ChatMessage
from services.chat_service import chat_service, preview_for
from services.inbox_cache import inbox_cache

pytestmark = pytest.mark.unit


def attachment_fields(**overrides):
    fields = {
        "url": "https://blobs.test/chat/a/report.pdf",
        "file_name": "report.pdf",
        "file_size": 1024,
        "mime_type": "application/pdf",
        "public_id": "chat/a/chat-files/report.pdf",
        "expires_at": datetime.utcnow() + timedelta(days=30),
    }
    fields.update(overrides)
    return fields


class TestPersonalChats:
    """Opening personal chats."""

    @pytest.mark.asyncio
    async def test_open_creates_chat_with_both_participants(self, db_session, alice, bob):
        chat = await chat_service.open_or_find_personal_chat(db_session, alice["id"], bob["id"])

        assert chat.kind == "personal"
        assert sorted(chat.participant_ids) == sorted([alice["id"], bob["id"]])

    @pytest.mark.asyncio
    async def test_open_is_symmetric(self, db_session, alice, bob):
        first = await chat_service.open_or_find_personal_chat(db_session, alice["id"], bob["id"])
        second = await chat_service.open_or_find_personal_chat(db_session, bob["id"], alice["id"])

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_concurrent_opens_yield_one_chat(self, db_session, alice, bob):
        results = await asyncio.gather(*(
            chat_service.open_or_find_personal_chat(db_session, alice["id"], bob["id"])
            for _ in range(5)
        ))

        assert len({chat.id for chat in results}) == 1

    @pytest.mark.asyncio
    async def test_self_chat_rejected(self, db_session, alice):
        with pytest.raises(SelfChatForbiddenError):
            await chat_service.open_or_find_personal_chat(db_session, alice["id"], alice["id"])

    @pytest.mark.asyncio
    async def test_unknown_peer_rejected(self, db_session, alice):
        with pytest.raises(PeerNotFoundError):
            await chat_service.open_or_find_personal_chat(db_session, alice["id"], "missing-user")

    @pytest.mark.asyncio
    async def test_reopening_unhides_chat(self, db_session, personal_chat, alice, bob):
        await chat_service.leave_chat(db_session, personal_chat.id, alice["id"])
        inbox = await chat_service.get_inbox(db_session, alice["id"])
        assert inbox["chats"] == []

        await chat_service.open_or_find_personal_chat(db_session, alice["id"], bob["id"])

        inbox = await chat_service.get_inbox(db_session, alice["id"])
        assert [c["id"] for c in inbox["chats"]] == [personal_chat.id]


class TestGroupChats:
    """Group creation and updates."""

    @pytest.mark.asyncio
    async def test_creator_always_member(self, db_session, alice, bob):
        chat = await chat_service.create_group_chat(db_session, alice["id"], "Pair", [bob["id"]])

        assert alice["id"] in chat.participant_ids
        assert chat.title == "Pair"

    @pytest.mark.asyncio
    async def test_needs_two_members(self, db_session, alice):
        with pytest.raises(InvalidMembershipError):
            await chat_service.create_group_chat(db_session, alice["id"], "Solo", [alice["id"]])

    @pytest.mark.asyncio
    async def test_needs_title(self, db_session, alice, bob):
        with pytest.raises(InvalidArgumentError):
            await chat_service.create_group_chat(db_session, alice["id"], "  ", [bob["id"]])

    @pytest.mark.asyncio
    async def test_update_membership(self, db_session, group_chat, alice, bob, carol, make_user, chat_events):
        dave = make_user(name="Dave")

        chat = await chat_service.update_group_chat(
            db_session, group_chat.id, alice["id"],
            title="Renamed",
            participant_ids=[alice["id"], bob["id"], dave["id"]],
        )

        assert chat.title == "Renamed"
        assert sorted(chat.participant_ids) == sorted([alice["id"], bob["id"], dave["id"]])
        assert not chat.is_participant(carol["id"])
        assert chat_events[-1]["type"] == "chatUpdated"

    @pytest.mark.asyncio
    async def test_personal_chat_can_not_be_updated(self, db_session, personal_chat, alice):
        with pytest.raises(InvalidArgumentError):
            await chat_service.update_group_chat(db_session, personal_chat.id, alice["id"], title="x")

    @pytest.mark.asyncio
    async def test_leaving_group_removes_access(self, db_session, group_chat, carol):
        outcome = await chat_service.leave_chat(db_session, group_chat.id, carol["id"])

        assert outcome["left"] is True
        with pytest.raises(ForbiddenError):
            await chat_service.get_chat(db_session, group_chat.id, carol["id"])


class TestMessages:
    """Appending, listing, editing and deleting messages."""

    @pytest.mark.asyncio
    async def test_append_text_updates_chat(self, db_session, personal_chat, alice, chat_events):
        message = await chat_service.append_message(
            db_session, personal_chat.id, alice["id"], "text", content="hello",
        )

        chat = await chat_service.get_chat(db_session, personal_chat.id, alice["id"])
        assert message.seq == 1
        assert chat.last_message_preview == "hello"
        assert chat.read_by == [alice["id"]]
        assert chat_events[-1]["type"] == "message"
        assert chat_events[-1]["message"]["id"] == message.id

    @pytest.mark.asyncio
    async def test_non_participant_can_not_append(self, db_session, personal_chat, carol):
        with pytest.raises(ForbiddenError):
            await chat_service.append_message(
                db_session, personal_chat.id, carol["id"], "text", content="hi",
            )

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, db_session, personal_chat, alice):
        with pytest.raises(InvalidArgumentError):
            await chat_service.append_message(db_session, personal_chat.id, alice["id"], "text", content="   ")

    @pytest.mark.asyncio
    async def test_unknown_kind_rejected(self, db_session, personal_chat, alice):
        with pytest.raises(InvalidArgumentError):
            await chat_service.append_message(db_session, personal_chat.id, alice["id"], "sticker", content="x")

    @pytest.mark.asyncio
    async def test_voice_duration_must_be_numeric(self, db_session, personal_chat, alice):
        chat_id = personal_chat.id

        with pytest.raises(InvalidArgumentError):
            await chat_service.append_message(
                db_session, chat_id, alice["id"], "voice",
                voice={"url": "https://blobs.test/v.webm", "duration_ms": "abc"},
            )

        assert await chat_service.get_messages(db_session, chat_id, alice["id"]) == []

    @pytest.mark.asyncio
    async def test_attachment_without_public_id_is_structural(self, db_session, personal_chat, alice):
        chat_id = personal_chat.id

        with pytest.raises(StructuralError):
            await chat_service.append_message(
                db_session, chat_id, alice["id"], "pdf",
                attachment=attachment_fields(public_id=None),
            )

        messages = await chat_service.get_messages(db_session, chat_id, alice["id"])
        assert messages == []

    @pytest.mark.asyncio
    async def test_attachment_preview_by_kind(self, db_session, personal_chat, alice):
        await chat_service.append_message(
            db_session, personal_chat.id, alice["id"], "pdf", attachment=attachment_fields(),
        )

        chat = await chat_service.get_chat(db_session, personal_chat.id, alice["id"])
        assert chat.last_message_preview == "PDF sent"

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_order(self, db_session, personal_chat, alice, bob):
        senders = [alice["id"], bob["id"]] * 5

        await asyncio.gather(*(
            chat_service.append_message(db_session, personal_chat.id, sender, "text", content=f"m{i}")
            for i, sender in enumerate(senders)
        ))

        messages = await chat_service.get_messages(db_session, personal_chat.id, alice["id"], limit=50)
        assert [m.seq for m in messages] == list(range(1, 11))
        timestamps = [m.created_at for m in messages]
        assert timestamps == sorted(timestamps)

    @pytest.mark.asyncio
    async def test_pagination_before(self, db_session, personal_chat, alice):
        sent = []
        for i in range(5):
            sent.append(await chat_service.append_message(
                db_session, personal_chat.id, alice["id"], "text", content=f"m{i}",
            ))

        page = await chat_service.get_messages(
            db_session, personal_chat.id, alice["id"], before=sent[3].id, limit=2,
        )

        assert [m.content for m in page] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_pagination_unknown_anchor(self, db_session, personal_chat, alice):
        with pytest.raises(NotFoundError):
            await chat_service.get_messages(db_session, personal_chat.id, alice["id"], before="nope")

    @pytest.mark.asyncio
    async def test_unknown_stored_kind_is_corruption(self, db_session, personal_chat, alice):
        db_session.add(ChatMessage(
            chat_id=personal_chat.id, seq=99, sender_id=alice["id"],
            kind="legacyCall", content="?", created_at=datetime.utcnow(),
        ))
        await db_session.commit()

        with pytest.raises(DataCorruptionError):
            await chat_service.get_messages(db_session, personal_chat.id, alice["id"])

    @pytest.mark.asyncio
    async def test_edit_by_sender_only(self, db_session, personal_chat, alice, bob, chat_events):
        chat_id = personal_chat.id
        message = await chat_service.append_message(
            db_session, chat_id, alice["id"], "text", content="helo",
        )
        message_id = message.id

        with pytest.raises(ForbiddenError):
            await chat_service.edit_message(db_session, chat_id, bob["id"], message_id, "hacked")

        edited = await chat_service.edit_message(
            db_session, chat_id, alice["id"], message_id, "hello",
        )
        assert edited.edited is True
        assert edited.content == "hello"
        assert chat_events[-1]["type"] == "messageEdited"

    @pytest.mark.asyncio
    async def test_delete_recomputes_preview(self, db_session, personal_chat, alice):
        await chat_service.append_message(db_session, personal_chat.id, alice["id"], "text", content="first")
        last = await chat_service.append_message(
            db_session, personal_chat.id, alice["id"], "text", content="second",
        )

        snapshot = await chat_service.delete_message(db_session, personal_chat.id, alice["id"], last.id)

        chat = await chat_service.get_chat(db_session, personal_chat.id, alice["id"])
        assert snapshot["id"] == last.id
        assert chat.last_message_preview == "first"

    @pytest.mark.asyncio
    async def test_message_unhides_chat_for_peer(self, db_session, personal_chat, alice, bob):
        await chat_service.leave_chat(db_session, personal_chat.id, bob["id"])

        await chat_service.append_message(db_session, personal_chat.id, alice["id"], "text", content="ping")

        inbox = await chat_service.get_inbox(db_session, bob["id"])
        assert [c["id"] for c in inbox["chats"]] == [personal_chat.id]


class TestReadTracking:
    """readBy and unread counts."""

    @pytest.mark.asyncio
    async def test_unread_counts_messages_from_others(self, db_session, personal_chat, alice, bob):
        await chat_service.append_message(db_session, personal_chat.id, alice["id"], "text", content="a")
        await chat_service.append_message(db_session, personal_chat.id, alice["id"], "text", content="b")

        inbox = await chat_service.get_inbox(db_session, bob["id"])
        assert inbox["chats"][0]["unreadCount"] == 2

        assert await chat_service.mark_read(db_session, personal_chat.id, bob["id"]) is True
        assert await chat_service.mark_read(db_session, personal_chat.id, bob["id"]) is False

        inbox = await chat_service.get_inbox(db_session, bob["id"])
        assert inbox["chats"][0]["unreadCount"] == 0

    @pytest.mark.asyncio
    async def test_sender_is_never_unread(self, db_session, personal_chat, alice):
        await chat_service.append_message(db_session, personal_chat.id, alice["id"], "text", content="a")

        inbox = await chat_service.get_inbox(db_session, alice["id"])
        assert inbox["chats"][0]["unreadCount"] == 0


class TestInbox:
    """Inbox listing and caching."""

    @pytest.mark.asyncio
    async def test_newest_activity_first(self, db_session, alice, bob, carol):
        with_bob = await chat_service.open_or_find_personal_chat(db_session, alice["id"], bob["id"])
        with_carol = await chat_service.open_or_find_personal_chat(db_session, alice["id"], carol["id"])

        await chat_service.append_message(db_session, with_carol.id, alice["id"], "text", content="c")
        await chat_service.append_message(db_session, with_bob.id, alice["id"], "text", content="b")

        inbox = await chat_service.get_inbox(db_session, alice["id"])
        assert [c["id"] for c in inbox["chats"]] == [with_bob.id, with_carol.id]

    @pytest.mark.asyncio
    async def test_cursor_pages(self, db_session, alice, bob, carol):
        await chat_service.open_or_find_personal_chat(db_session, alice["id"], bob["id"])
        await chat_service.open_or_find_personal_chat(db_session, alice["id"], carol["id"])

        first = await chat_service.get_inbox(db_session, alice["id"], limit=1)
        second = await chat_service.get_inbox(db_session, alice["id"], cursor=first["nextCursor"], limit=1)

        assert first["nextCursor"] is not None
        assert len(second["chats"]) == 1
        assert second["chats"][0]["id"] != first["chats"][0]["id"]
        assert second["nextCursor"] is None

    @pytest.mark.asyncio
    async def test_write_invalidates_cached_listing(self, db_session, personal_chat, alice, bob):
        before = await chat_service.get_inbox(db_session, bob["id"])
        assert inbox_cache.get(bob["id"], ("chats", None, 20, None)) is not None

        await chat_service.append_message(db_session, personal_chat.id, alice["id"], "text", content="new")

        after = await chat_service.get_inbox(db_session, bob["id"])
        assert before["chats"][0]["lastMessagePreview"] is None
        assert after["chats"][0]["lastMessagePreview"] == "new"

    @pytest.mark.asyncio
    async def test_search_matches_group_title(self, db_session, group_chat, personal_chat, alice):
        inbox = await chat_service.get_inbox(db_session, alice["id"], search="study")

        assert [c["id"] for c in inbox["chats"]] == [group_chat.id]

    @pytest.mark.asyncio
    async def test_search_matches_participant_name(self, db_session, personal_chat, alice, carol):
        with_carol = await chat_service.open_or_find_personal_chat(db_session, alice["id"], carol["id"])
        carol_name = with_carol.participant(carol["id"]).display_name

        inbox = await chat_service.get_inbox(db_session, alice["id"], search=carol_name)

        assert [c["id"] for c in inbox["chats"]] == [with_carol.id]


class TestPreview:

    def test_text_is_truncated(self):
        message = ChatMessage(kind="text", content="x" * 500)
        assert len(preview_for(message)) == 120

    def test_voice(self):
        assert preview_for(ChatMessage(kind="voice")) == "Voice message"


class TestMapping:

    def test_chat_loads_participants_only(self):
        assert set(Chat.__mapper__.relationships.keys()) == {"participants"}
