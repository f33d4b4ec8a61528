"""
Pydantic schemas for the Persona backend.

This package contains Pydantic models for request/response validation
and serialization.
"""

from .chat import (
    ChatResponse,
    CreatePrivateChatRequest,
    MessagePage,
    MessageResponse,
    SendMessageRequest,
)
from .knowledge_base import (
    KnowledgeBaseCreate,
    KnowledgeBaseResponse,
    KnowledgeFileResponse,
    KnowledgeLinkRequest,
    SearchRequest,
    SearchResponse,
    SearchResult,
)
from .plugin import PluginCreate, PluginResponse, PluginUpdate

__all__ = [
    "ChatResponse",
    "CreatePrivateChatRequest",
    "KnowledgeBaseCreate",
    "KnowledgeBaseResponse",
    "KnowledgeFileResponse",
    "KnowledgeLinkRequest",
    "MessagePage",
    "MessageResponse",
    "PluginCreate",
    "PluginResponse",
    "PluginUpdate",
    "SearchRequest",
    "SearchResponse",
    "SearchResult",
    "SendMessageRequest",
]
