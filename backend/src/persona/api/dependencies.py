"""
FastAPI dependencies for the Persona backend.

This module provides reusable dependencies for database sessions, the
caller's identity and the services the routers use.
"""

from collections.abc import AsyncGenerator, Callable

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import get_settings_instance
from ..core.database import get_async_session_local
from ..core.database import get_db as core_get_db
from ..core.exceptions import AuthenticationError
from ..llm.chat_client import get_chat_client
from ..llm.embedding_client import get_embedding_client
from ..plugins.sandbox import get_plugin_sandbox
from ..plugins.tool_registry import ToolRegistry
from ..services.chat_service import ChatService
from ..services.conversation_orchestrator import ConversationOrchestrator
from ..services.knowledge_base_service import KnowledgeBaseService
from ..services.plugin_service import PluginService
from ..services.retrieval_service import RetrievalService
from ..storage.blob_storage import get_blob_storage


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session dependency."""
    async for session in core_get_db():
        yield session


async def get_current_profile_id(x_profile_id: str | None = Header(None, alias="X-Profile-Id")) -> str:
    """Profile id of the caller, resolved upstream and passed in a trusted header."""
    if not x_profile_id or not x_profile_id.strip():
        raise AuthenticationError("Missing X-Profile-Id header")
    return x_profile_id.strip()


def get_knowledge_base_service(db: AsyncSession = Depends(get_db)) -> KnowledgeBaseService:
    return KnowledgeBaseService(db, get_blob_storage(), max_upload_size=get_settings_instance().max_upload_size)


def get_retrieval_service(db: AsyncSession = Depends(get_db)) -> RetrievalService:
    return RetrievalService(db, get_embedding_client())


def get_chat_service(db: AsyncSession = Depends(get_db)) -> ChatService:
    return ChatService(db)


def get_plugin_service(db: AsyncSession = Depends(get_db)) -> PluginService:
    return PluginService(db)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for work that outlives the request scope, such as response streams."""
    return get_async_session_local()


def build_conversation_orchestrator(db: AsyncSession) -> ConversationOrchestrator:
    registry = ToolRegistry(RetrievalService(db, get_embedding_client()), get_plugin_sandbox())
    return ConversationOrchestrator(ChatService(db), registry, get_chat_client())


def get_orchestrator_builder() -> Callable[[AsyncSession], ConversationOrchestrator]:
    return build_conversation_orchestrator
