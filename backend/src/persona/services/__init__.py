"""
Services package for the Persona backend.

Business logic for knowledge bases, ingestion, retrieval, chats and plugins.
The conversation orchestrator lives in ``conversation_orchestrator`` and is
imported from there directly.
"""

from .chat_service import ChatService
from .ingestion_service import IngestionService
from .knowledge_base_service import KnowledgeBaseService
from .plugin_service import PluginService
from .retrieval_service import RetrievalService, RetrievedChunk

__all__ = [
    "ChatService",
    "IngestionService",
    "KnowledgeBaseService",
    "PluginService",
    "RetrievalService",
    "RetrievedChunk",
]
