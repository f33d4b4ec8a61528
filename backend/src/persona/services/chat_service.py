"""Chat persistence: private chats, message history and the read model the
conversation orchestrator needs (character, knowledge bases, plugins).
"""

import re
from datetime import datetime
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..core.exceptions import CharacterNotFoundError, ConversationNotFoundError
from ..core.logging import get_logger
from ..models.character import Character
from ..models.chat import Chat, ChatMember, MemberType, Message
from ..models.knowledge_base import KnowledgeSubscription
from ..models.plugin import Plugin, PluginStatus, PluginSubscription

logger = get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def make_preview(text: str, length: int = 50) -> str:
    """Collapse whitespace and cut to ``length`` characters."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()[:length]


class ChatService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_chat(self, chat_id: str) -> Chat:
        chat = await self.db.get(Chat, chat_id)
        if chat is None:
            raise ConversationNotFoundError(chat_id)
        return chat

    async def is_member(self, chat_id: str, profile_id: str) -> bool:
        result = await self.db.execute(
            select(ChatMember.id).where(
                ChatMember.chat_id == chat_id,
                ChatMember.member_type == MemberType.USER.value,
                ChatMember.profile_id == profile_id,
            )
        )
        return result.first() is not None

    async def get_member_chat(self, chat_id: str, profile_id: str) -> Chat:
        """Return the chat if *profile_id* belongs to it; otherwise not found."""
        chat = await self.get_chat(chat_id)
        if not await self.is_member(chat_id, profile_id):
            raise ConversationNotFoundError(chat_id)
        return chat

    async def get_or_create_private_chat(self, profile_id: str, character_id: str) -> tuple[Chat, bool]:
        """Find the user's one-on-one chat with a character, creating it if needed.

        Returns:
            The chat and whether it was created by this call.

        """
        character = await self.db.get(Character, character_id)
        if character is None:
            raise CharacterNotFoundError(character_id)

        user_member = aliased(ChatMember)
        character_member = aliased(ChatMember)
        existing = await self.db.execute(
            select(Chat)
            .join(
                user_member,
                and_(
                    user_member.chat_id == Chat.id,
                    user_member.member_type == MemberType.USER.value,
                    user_member.profile_id == profile_id,
                ),
            )
            .join(
                character_member,
                and_(
                    character_member.chat_id == Chat.id,
                    character_member.member_type == MemberType.CHARACTER.value,
                    character_member.character_id == character_id,
                ),
            )
            .where(Chat.is_group.is_(False))
            .order_by(Chat.created_at)
            .limit(1)
        )
        chat = existing.scalars().first()
        if chat is not None:
            return chat, False

        chat = Chat(owner_id=profile_id, name=character.name, is_group=False)
        self.db.add(chat)
        await self.db.flush()
        self.db.add_all(
            [
                ChatMember.for_user(chat.id, profile_id),
                ChatMember.for_character(chat.id, character_id),
            ]
        )
        await self.db.commit()
        await self.db.refresh(chat)
        logger.info(
            "Created private chat",
            extra={"chat_id": chat.id, "profile_id": profile_id, "character_id": character_id},
        )
        return chat, True

    async def list_user_chats(self, profile_id: str) -> list[Chat]:
        result = await self.db.execute(
            select(Chat)
            .join(ChatMember, ChatMember.chat_id == Chat.id)
            .where(ChatMember.member_type == MemberType.USER.value, ChatMember.profile_id == profile_id)
            .order_by(Chat.updated_at.desc())
        )
        return list(result.scalars().unique().all())

    async def list_messages(
        self, chat_id: str, limit: int = 20, before: datetime | None = None
    ) -> tuple[list[Message], datetime | None]:
        """Page backwards through a chat.

        Returns the page in chronological order plus the cursor for the next
        (older) page, or None when this page is the last.
        """
        stmt = select(Message).where(Message.chat_id == chat_id)
        if before is not None:
            stmt = stmt.where(Message.created_at < before)
        stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)
        rows = list((await self.db.execute(stmt)).scalars().all())
        next_cursor = rows[-1].created_at if len(rows) == limit else None
        rows.reverse()
        return rows, next_cursor

    async def save_user_message(self, chat_id: str, profile_id: str, content: list[dict[str, Any]]) -> Message:
        message = Message.from_user(chat_id, profile_id, content)
        self.db.add(message)
        await self.db.commit()
        return message

    async def save_character_message(self, chat_id: str, character_id: str, text: str) -> Message:
        message = Message.from_character(chat_id, character_id, text)
        self.db.add(message)
        await self.db.commit()
        return message

    async def update_last_message(self, chat_id: str, text: str, length: int = 50) -> None:
        await self.db.execute(
            update(Chat)
            .where(Chat.id == chat_id)
            .values(last_message=make_preview(text, length))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def get_chat_character(self, chat_id: str) -> Character | None:
        result = await self.db.execute(
            select(Character)
            .join(ChatMember, ChatMember.character_id == Character.id)
            .where(ChatMember.chat_id == chat_id, ChatMember.member_type == MemberType.CHARACTER.value)
            .order_by(ChatMember.created_at)
            .limit(1)
        )
        return result.scalars().first()

    async def get_recent_history(self, chat_id: str, limit: int = 20) -> list[Message]:
        """The last ``limit`` messages, oldest first."""
        result = await self.db.execute(
            select(Message)
            .where(Message.chat_id == chat_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        messages = list(result.scalars().all())
        messages.reverse()
        return messages

    async def get_subscribed_knowledge_base_ids(self, character_id: str) -> list[str]:
        result = await self.db.execute(
            select(KnowledgeSubscription.knowledge_base_id)
            .where(KnowledgeSubscription.character_id == character_id)
            .order_by(KnowledgeSubscription.priority.desc(), KnowledgeSubscription.created_at)
        )
        return [kb_id for kb_id in result.scalars().all() if kb_id]

    async def get_active_plugins(self, profile_id: str) -> list[Plugin]:
        """Approved plugins the user has an active subscription to."""
        result = await self.db.execute(
            select(Plugin)
            .join(PluginSubscription, PluginSubscription.plugin_id == Plugin.id)
            .where(
                PluginSubscription.user_id == profile_id,
                PluginSubscription.is_active.is_(True),
                Plugin.status == PluginStatus.APPROVED.value,
            )
            .order_by(PluginSubscription.created_at)
        )
        return list(result.scalars().all())
