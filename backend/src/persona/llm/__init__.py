"""
Model provider clients for the Persona backend.

- Embedding client for the ingestion and retrieval paths
- Streaming chat client with tool calling for the conversation path
"""

from .chat_client import ChatModelClient, ContentDelta, ToolCall, ToolCallsRequested
from .embedding_client import EmbeddingClient

__all__ = [
    "ChatModelClient",
    "ContentDelta",
    "EmbeddingClient",
    "ToolCall",
    "ToolCallsRequested",
]
