"""Chat, ChatMember and Message models.

A member and a message sender are each exactly one of a user profile or a
character; CHECK constraints enforce the union at the database level.
"""

from enum import Enum

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship

from .base import BaseModel


class MemberType(str, Enum):
    USER = "user"
    CHARACTER = "character"


class Chat(BaseModel):
    __tablename__ = "chats"

    owner_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    is_group = Column(Boolean, default=False, nullable=False)
    last_message = Column(Text, nullable=True)

    members = relationship("ChatMember", back_populates="chat", cascade="all, delete-orphan", passive_deletes=True)
    messages = relationship("Message", back_populates="chat", cascade="all, delete-orphan", passive_deletes=True)


class ChatMember(BaseModel):
    __tablename__ = "chat_members"

    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    member_type = Column(String(16), nullable=False)
    profile_id = Column(String(36), nullable=True)
    character_id = Column(String(36), ForeignKey("characters.id", ondelete="CASCADE"), nullable=True)

    chat = relationship("Chat", back_populates="members")
    character = relationship("Character")

    __table_args__ = (
        CheckConstraint(
            "(member_type = 'user' AND profile_id IS NOT NULL AND character_id IS NULL) OR "
            "(member_type = 'character' AND character_id IS NOT NULL AND profile_id IS NULL)",
            name="ck_chat_members_identity",
        ),
    )

    @classmethod
    def for_user(cls, chat_id: str, profile_id: str) -> "ChatMember":
        return cls(chat_id=chat_id, member_type=MemberType.USER.value, profile_id=profile_id)

    @classmethod
    def for_character(cls, chat_id: str, character_id: str) -> "ChatMember":
        return cls(chat_id=chat_id, member_type=MemberType.CHARACTER.value, character_id=character_id)


class Message(BaseModel):
    """A chat message; content is a list of typed parts."""

    __tablename__ = "messages"

    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    sender_type = Column(String(16), nullable=False)
    sender_profile_id = Column(String(36), nullable=True)
    sender_character_id = Column(String(36), ForeignKey("characters.id", ondelete="CASCADE"), nullable=True)
    content = Column(JSON, nullable=False, default=list)

    chat = relationship("Chat", back_populates="messages")

    __table_args__ = (
        CheckConstraint(
            "(sender_type = 'user' AND sender_profile_id IS NOT NULL AND sender_character_id IS NULL) OR "
            "(sender_type = 'character' AND sender_profile_id IS NULL AND sender_character_id IS NOT NULL)",
            name="ck_messages_sender",
        ),
        Index("ix_messages_chat_created", "chat_id", "created_at"),
    )

    @classmethod
    def from_user(cls, chat_id: str, profile_id: str, content: list[dict]) -> "Message":
        return cls(chat_id=chat_id, sender_type=MemberType.USER.value, sender_profile_id=profile_id, content=content)

    @classmethod
    def from_character(cls, chat_id: str, character_id: str, text: str) -> "Message":
        return cls(
            chat_id=chat_id,
            sender_type=MemberType.CHARACTER.value,
            sender_character_id=character_id,
            content=[{"type": "text", "text": text}],
        )

    @property
    def is_from_user(self) -> bool:
        return self.sender_type == MemberType.USER.value

    def text_content(self) -> str:
        """Concatenate the text parts of the message."""
        return "".join(part.get("text", "") for part in (self.content or []) if part.get("type") == "text")
