"""
Video Invitation Unit Tests
"""

import asyncio
from datetime import datetime

import pytest

from core.errors import (
    DataCorruptionError, ForbiddenError, InvalidArgumentError,
    NotFoundError, UpstreamError,
)
from models.chat_models import ChatMessage
from services.chat_service import chat_service
from services.video_invitation_service import video_invitation_service

pytestmark = pytest.mark.unit


async def history(db, chat_id, user_id):
    return [m.to_dict() for m in await chat_service.get_messages(db, chat_id, user_id, limit=100)]


def system_actions(messages):
    return [m["system"]["action"] for m in messages if m["kind"] == "system"]


class TestStart:

    @pytest.mark.asyncio
    async def test_start_appends_invitation_and_join(self, db_session, personal_chat, alice, chat_events):
        chat_id = personal_chat.id

        result = await video_invitation_service.start_invitation_for_chat(
            db_session, chat_id, alice["id"], title="Pairing",
        )

        assert result["token"] == f"token-{alice['id']}-{result['roomId']}"
        assert result["appID"] == "test-app"
        assert result["roomId"].startswith(f"chat_{chat_id}_")
        assert result["joinUrl"].endswith(f"/video-session/{result['roomId']}")

        invitation = result["invitation"]["invitation"]
        assert invitation["status"] == "active"
        assert invitation["isActive"] is True
        assert invitation["maxParticipants"] == 2

        messages = await history(db_session, chat_id, alice["id"])
        assert [m["kind"] for m in messages] == ["videoInvitation", "system"]
        assert system_actions(messages) == ["joinedVideo"]
        assert [e["message"]["kind"] for e in chat_events if e["type"] == "message"] == [
            "videoInvitation", "system",
        ]

    @pytest.mark.asyncio
    async def test_non_participant_cannot_start(self, db_session, personal_chat, carol, mock_video_tokens):
        with pytest.raises(ForbiddenError):
            await video_invitation_service.start_invitation_for_chat(
                db_session, personal_chat.id, carol["id"],
            )

        mock_video_tokens.assert_not_called()

    @pytest.mark.asyncio
    async def test_token_failure_appends_nothing(self, db_session, personal_chat, alice, mock_video_tokens):
        chat_id = personal_chat.id
        mock_video_tokens.side_effect = UpstreamError("issuer down", service="video_token")

        with pytest.raises(UpstreamError):
            await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])

        assert await history(db_session, chat_id, alice["id"]) == []

    @pytest.mark.asyncio
    async def test_token_timeout_appends_nothing(self, db_session, personal_chat, alice, mock_video_tokens, mocker):
        chat_id = personal_chat.id
        mocker.patch("services.video_invitation_service.settings.VIDEO_TOKEN_TIMEOUT_SECONDS", 0.01)

        async def slow_issue(user_id, room_id, ttl_seconds=None):
            await asyncio.sleep(1)

        mock_video_tokens.side_effect = slow_issue

        with pytest.raises(UpstreamError):
            await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])

        assert await history(db_session, chat_id, alice["id"]) == []

    @pytest.mark.asyncio
    async def test_legacy_messages_cleaned_then_saved(self, db_session, personal_chat, alice):
        chat_id = personal_chat.id
        db_session.add(ChatMessage(
            chat_id=chat_id, seq=50, sender_id=alice["id"],
            kind="legacyCall", content="?", created_at=datetime.utcnow(),
        ))
        await db_session.commit()

        result = await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])

        assert result["invitation"]["kind"] == "videoInvitation"
        assert await chat_service.find_invalid_messages(db_session, chat_id) == []
        messages = await history(db_session, chat_id, alice["id"])
        assert [m["kind"] for m in messages] == ["videoInvitation", "system"]

    @pytest.mark.asyncio
    async def test_unrepairable_chat_is_corruption(self, db_session, personal_chat, alice, mocker):
        chat_id = personal_chat.id
        db_session.add(ChatMessage(
            chat_id=chat_id, seq=50, sender_id=alice["id"],
            kind="legacyCall", content="?", created_at=datetime.utcnow(),
        ))
        await db_session.commit()
        mocker.patch.object(
            chat_service, "purge_invalid_messages", new_callable=mocker.AsyncMock, return_value=0,
        )

        with pytest.raises(DataCorruptionError):
            await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])

        invalid = await chat_service.find_invalid_messages(db_session, chat_id)
        assert [m.kind for m in invalid] == ["legacyCall"]


class TestTransitions:

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, db_session, personal_chat, alice, bob):
        chat_id = personal_chat.id
        started = await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])
        room_id = started["roomId"]

        first = await video_invitation_service.cancel(db_session, chat_id, alice["id"], room_id)
        second = await video_invitation_service.cancel(db_session, chat_id, alice["id"], room_id)

        assert first["changed"] is True
        assert first["invitation"]["invitation"]["status"] == "cancelled"
        assert first["invitation"]["invitation"]["isActive"] is False
        assert second["changed"] is False

        messages = await history(db_session, chat_id, bob["id"])
        assert system_actions(messages) == ["joinedVideo", "cancelledVideo"]

    @pytest.mark.asyncio
    async def test_end_after_cancel_changes_nothing(self, db_session, personal_chat, alice):
        chat_id = personal_chat.id
        started = await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])
        room_id = started["roomId"]

        await video_invitation_service.cancel(db_session, chat_id, alice["id"], room_id)
        ended = await video_invitation_service.end(db_session, chat_id, alice["id"], room_id)
        timed_out = await video_invitation_service.timeout(db_session, chat_id, room_id)

        assert ended["changed"] is False
        assert timed_out["changed"] is False
        assert ended["invitation"]["invitation"]["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_server_timeout(self, db_session, personal_chat, alice, mock_notify):
        chat_id = personal_chat.id
        started = await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])

        result = await video_invitation_service.timeout(db_session, chat_id, started["roomId"])

        assert result["changed"] is True
        assert result["invitation"]["invitation"]["status"] == "timedOut"
        messages = await history(db_session, chat_id, alice["id"])
        assert system_actions(messages)[-1] == "timedOut"
        assert messages[-1]["content"] == "⏱️ Video call was not answered"

    @pytest.mark.asyncio
    async def test_message_content_follows_status(self, db_session, personal_chat, alice):
        chat_id = personal_chat.id
        started = await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])

        await video_invitation_service.end(db_session, chat_id, alice["id"], started["roomId"])

        messages = await history(db_session, chat_id, alice["id"])
        invitation = next(m for m in messages if m["kind"] == "videoInvitation")
        assert '"status": "ended"' in invitation["content"]
        assert invitation["invitation"]["status"] == "ended"

    @pytest.mark.asyncio
    async def test_unknown_room(self, db_session, personal_chat, alice):
        with pytest.raises(NotFoundError):
            await video_invitation_service.cancel(db_session, personal_chat.id, alice["id"], "no-such-room")

    @pytest.mark.asyncio
    async def test_outsider_cannot_cancel(self, db_session, personal_chat, alice, carol):
        chat_id = personal_chat.id
        started = await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])

        with pytest.raises(ForbiddenError):
            await video_invitation_service.cancel(db_session, chat_id, carol["id"], started["roomId"])


class TestParticipants:

    @pytest.mark.asyncio
    async def test_join_issues_token(self, db_session, personal_chat, alice, bob):
        chat_id = personal_chat.id
        started = await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])

        joined = await video_invitation_service.on_participant_joined(
            db_session, chat_id, started["roomId"], bob["id"],
        )

        assert joined["token"] == f"token-{bob['id']}-{started['roomId']}"
        assert joined["system"]["system"]["action"] == "joinedVideo"
        assert joined["system"]["system"]["actorId"] == bob["id"]

    @pytest.mark.asyncio
    async def test_join_inactive_call(self, db_session, personal_chat, alice, bob):
        chat_id = personal_chat.id
        started = await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])
        await video_invitation_service.cancel(db_session, chat_id, alice["id"], started["roomId"])

        with pytest.raises(InvalidArgumentError):
            await video_invitation_service.on_participant_joined(
                db_session, chat_id, started["roomId"], bob["id"],
            )

    @pytest.mark.asyncio
    async def test_last_leave_ends_call(self, db_session, personal_chat, alice, bob):
        chat_id = personal_chat.id
        started = await video_invitation_service.start_invitation_for_chat(db_session, chat_id, alice["id"])
        room_id = started["roomId"]
        await video_invitation_service.on_participant_joined(db_session, chat_id, room_id, bob["id"])

        first = await video_invitation_service.on_participant_left(db_session, chat_id, room_id, alice["id"])
        last = await video_invitation_service.on_participant_left(db_session, chat_id, room_id, bob["id"])

        assert first["ended"] is False
        assert last["ended"] is True

        messages = await history(db_session, chat_id, alice["id"])
        invitation = next(m for m in messages if m["kind"] == "videoInvitation")
        assert invitation["invitation"]["status"] == "ended"
        assert system_actions(messages) == ["joinedVideo", "joinedVideo", "leftVideo", "leftVideo"]


class TestSwapCalls:

    @pytest.mark.asyncio
    async def test_swap_call_uses_personal_chat(self, db_session, alice, bob, mocker):
        mocker.patch(
            "integrations.swap_client.swap_client.get_parties",
            new_callable=mocker.AsyncMock,
            return_value=(alice["id"], bob["id"]),
        )

        result = await video_invitation_service.start_invitation_for_swap(db_session, "swap-42", bob["id"])

        assert result["roomId"] == "swap-42"
        assert result["invitation"]["invitation"]["swapId"] == "swap-42"
        chat = await chat_service.get_chat(db_session, result["chatId"], alice["id"])
        assert chat.kind == "personal"
        assert sorted(chat.participant_ids) == sorted([alice["id"], bob["id"]])

    @pytest.mark.asyncio
    async def test_outsider_cannot_start_swap_call(self, db_session, alice, bob, carol, mocker):
        mocker.patch(
            "integrations.swap_client.swap_client.get_parties",
            new_callable=mocker.AsyncMock,
            return_value=(alice["id"], bob["id"]),
        )

        with pytest.raises(ForbiddenError):
            await video_invitation_service.start_invitation_for_swap(db_session, "swap-42", carol["id"])
