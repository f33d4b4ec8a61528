"""Database models for the Persona backend."""

from .base import BaseModel, TimestampMixin, UUIDMixin
from .character import Character
from .chat import Chat, ChatMember, MemberType, Message
from .knowledge_base import (
    EMBEDDING_DIMENSION,
    KnowledgeBase,
    KnowledgeChunk,
    KnowledgeFile,
    KnowledgeFileStatus,
    KnowledgeSubscription,
    Visibility,
)
from .plugin import Plugin, PluginStatus, PluginSubscription


def register_all_models() -> None:
    """Ensure every model is attached to Base.metadata.

    Importing this package already does so; the function gives callers such
    as Alembic's env.py an explicit hook.
    """
    return None


__all__ = [
    "EMBEDDING_DIMENSION",
    "BaseModel",
    "Character",
    "Chat",
    "ChatMember",
    "KnowledgeBase",
    "KnowledgeChunk",
    "KnowledgeFile",
    "KnowledgeFileStatus",
    "KnowledgeSubscription",
    "MemberType",
    "Message",
    "Plugin",
    "PluginStatus",
    "PluginSubscription",
    "TimestampMixin",
    "UUIDMixin",
    "Visibility",
    "register_all_models",
]
