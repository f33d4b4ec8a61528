"""Tests for ChatService."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from persona.core.exceptions import CharacterNotFoundError, ConversationNotFoundError
from persona.models.character import Character
from persona.models.chat import Chat, ChatMember, MemberType, Message
from persona.services.chat_service import ChatService, make_preview


def scalars_result(items):
    result = MagicMock()
    result.scalars.return_value.first.return_value = items[0] if items else None
    result.scalars.return_value.all.return_value = list(items)
    result.scalars.return_value.unique.return_value.all.return_value = list(items)
    return result


class TestMakePreview:
    @pytest.mark.parametrize(
        ("text", "length", "expected"),
        [
            ("Hello   there\n\nfriend", 50, "Hello there friend"),
            ("  padded  ", 50, "padded"),
            ("abcdefghij", 4, "abcd"),
            ("", 50, ""),
            (None, 50, ""),
        ],
    )
    def test_preview(self, text, length, expected) -> None:
        assert make_preview(text, length) == expected


class TestMembership:
    async def test_missing_chat(self, mock_db) -> None:
        mock_db.get.return_value = None
        with pytest.raises(ConversationNotFoundError):
            await ChatService(mock_db).get_chat("nope")

    async def test_non_member_sees_not_found(self, mock_db) -> None:
        mock_db.get.return_value = Chat(id="chat-1", owner_id="someone")
        result = MagicMock()
        result.first.return_value = None
        mock_db.execute.return_value = result

        with pytest.raises(ConversationNotFoundError):
            await ChatService(mock_db).get_member_chat("chat-1", "intruder")

    async def test_member_gets_chat(self, mock_db) -> None:
        chat = Chat(id="chat-1", owner_id="user-1")
        mock_db.get.return_value = chat
        result = MagicMock()
        result.first.return_value = ("member-1",)
        mock_db.execute.return_value = result

        assert await ChatService(mock_db).get_member_chat("chat-1", "user-1") is chat


class TestPrivateChat:
    async def test_unknown_character(self, mock_db) -> None:
        mock_db.get.return_value = None
        with pytest.raises(CharacterNotFoundError):
            await ChatService(mock_db).get_or_create_private_chat("user-1", "ghost")

    async def test_existing_chat_is_reused(self, mock_db) -> None:
        mock_db.get.return_value = Character(id="char-1", name="Aria")
        existing = Chat(id="chat-1", owner_id="user-1", name="Aria")
        mock_db.execute.return_value = scalars_result([existing])

        chat, created = await ChatService(mock_db).get_or_create_private_chat("user-1", "char-1")

        assert (chat, created) == (existing, False)
        mock_db.add.assert_not_called()

    async def test_new_chat_gets_both_members(self, mock_db) -> None:
        mock_db.get.return_value = Character(id="char-1", name="Aria")
        mock_db.execute.return_value = scalars_result([])

        def assign_id():
            mock_db.add.call_args.args[0].id = "chat-new"

        mock_db.flush.side_effect = assign_id

        chat, created = await ChatService(mock_db).get_or_create_private_chat("user-1", "char-1")

        assert created is True
        assert chat.name == "Aria"
        assert chat.owner_id == "user-1"
        assert chat.is_group is False
        members = mock_db.add_all.call_args.args[0]
        assert [(m.chat_id, m.member_type) for m in members] == [
            ("chat-new", MemberType.USER.value),
            ("chat-new", MemberType.CHARACTER.value),
        ]
        assert members[0].profile_id == "user-1"
        assert members[1].character_id == "char-1"
        mock_db.commit.assert_awaited_once()


class TestMessages:
    async def test_full_page_returns_cursor_and_chronological_order(self, mock_db) -> None:
        now = datetime.now(UTC)
        newest_first = [
            Message(id=f"m{i}", chat_id="chat-1", created_at=now - timedelta(minutes=i)) for i in range(3)
        ]
        mock_db.execute.return_value = scalars_result(newest_first)

        rows, cursor = await ChatService(mock_db).list_messages("chat-1", limit=3)

        assert [m.id for m in rows] == ["m2", "m1", "m0"]
        assert cursor == now - timedelta(minutes=2)

    async def test_short_page_has_no_cursor(self, mock_db) -> None:
        mock_db.execute.return_value = scalars_result([Message(id="m0", chat_id="chat-1")])
        rows, cursor = await ChatService(mock_db).list_messages("chat-1", limit=20, before=datetime.now(UTC))
        assert len(rows) == 1
        assert cursor is None

    async def test_recent_history_is_oldest_first(self, mock_db) -> None:
        mock_db.execute.return_value = scalars_result([Message(id="new"), Message(id="old")])
        history = await ChatService(mock_db).get_recent_history("chat-1", 2)
        assert [m.id for m in history] == ["old", "new"]

    async def test_save_user_message(self, mock_db) -> None:
        content = [{"type": "text", "text": "hi"}]
        message = await ChatService(mock_db).save_user_message("chat-1", "user-1", content)
        assert message.is_from_user
        assert message.content == content
        mock_db.add.assert_called_once_with(message)
        mock_db.commit.assert_awaited_once()

    async def test_save_character_message(self, mock_db) -> None:
        message = await ChatService(mock_db).save_character_message("chat-1", "char-1", "Greetings")
        assert not message.is_from_user
        assert message.text_content() == "Greetings"

    async def test_update_last_message_uses_preview(self, mock_db) -> None:
        await ChatService(mock_db).update_last_message("chat-1", "A   long\nreply", length=6)
        stmt = mock_db.execute.await_args.args[0]
        assert stmt.compile().params["last_message"] == "A long"
        mock_db.commit.assert_awaited_once()


class TestReadModel:
    async def test_knowledge_base_ids_skip_nulls(self, mock_db) -> None:
        mock_db.execute.return_value = scalars_result(["kb-2", None, "kb-1"])
        assert await ChatService(mock_db).get_subscribed_knowledge_base_ids("char-1") == ["kb-2", "kb-1"]

    async def test_member_helpers(self) -> None:
        assert ChatMember.for_user("c", "u").profile_id == "u"
        assert ChatMember.for_character("c", "x").character_id == "x"
