"""Tests for the message sender constraint on the chat models."""

import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.exc import IntegrityError

from persona.models.chat import MemberType, Message


@pytest.fixture
def engine():
    # Foreign keys are not enforced by SQLite unless enabled, so only the CHECK applies
    engine = create_engine("sqlite://")
    Message.__table__.create(engine)
    yield engine
    engine.dispose()


def insert_message(engine, **sender) -> None:
    with engine.begin() as conn:
        conn.execute(insert(Message.__table__).values(chat_id="chat-1", content=[], **sender))


class TestMessageSender:
    def test_character_sender_is_required(self) -> None:
        constraint = next(c for c in Message.__table__.constraints if c.name == "ck_messages_sender")
        assert "sender_type = 'character' AND sender_profile_id IS NULL AND sender_character_id IS NOT NULL" in str(
            constraint.sqltext
        )

    def test_deleting_a_character_deletes_its_messages(self) -> None:
        (foreign_key,) = Message.__table__.c.sender_character_id.foreign_keys
        assert foreign_key.ondelete == "CASCADE"

    def test_character_message_without_character_is_rejected(self, engine) -> None:
        with pytest.raises(IntegrityError):
            insert_message(engine, sender_type=MemberType.CHARACTER.value)

    def test_user_message_with_character_is_rejected(self, engine) -> None:
        with pytest.raises(IntegrityError):
            insert_message(
                engine, sender_type=MemberType.USER.value, sender_profile_id="user-1", sender_character_id="char-1"
            )

    @pytest.mark.parametrize(
        "sender",
        [
            {"sender_type": MemberType.USER.value, "sender_profile_id": "user-1"},
            {"sender_type": MemberType.CHARACTER.value, "sender_character_id": "char-1"},
        ],
    )
    def test_valid_senders_are_stored(self, engine, sender) -> None:
        insert_message(engine, **sender)
