"""Custom exceptions for the Persona backend.

This module defines all custom exceptions used throughout the application.
"""

from typing import Any


class PersonaException(Exception):
    """Base exception class for the Persona backend."""

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Ingestion Exceptions
class UnsupportedFormatError(PersonaException):
    """Raised when an uploaded file type cannot be parsed."""

    def __init__(self, message: str, file_name: str | None = None, mime_type: str | None = None):
        super().__init__(
            message=message,
            error_code="UNSUPPORTED_FORMAT",
            status_code=415,
            details={"file_name": file_name, "mime_type": mime_type},
        )


class ParseError(PersonaException):
    """Raised when a supported file is corrupt or cannot be read."""

    def __init__(self, file_name: str, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Failed to parse '{file_name}': {reason}",
            error_code="PARSE_ERROR",
            status_code=422,
            details=details or {"file_name": file_name, "reason": reason},
        )


class EmptyContentError(PersonaException):
    """Raised when parsed content has nothing left to chunk."""

    def __init__(self, message: str = "No content to process after parsing"):
        super().__init__(message=message, error_code="EMPTY_CONTENT", status_code=422)


class EmbeddingProviderError(PersonaException):
    """Raised when the embedding provider fails (network, auth, quota, bad response)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="EMBEDDING_PROVIDER_ERROR",
            status_code=502,
            details=details,
        )


class StoreError(PersonaException):
    """Raised when a read or write against the relational/vector store fails."""

    def __init__(self, operation: str, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Store operation '{operation}' failed: {reason}",
            error_code="STORE_ERROR",
            status_code=500,
            details=details or {"operation": operation},
        )


class BlobStorageError(PersonaException):
    """Raised when blob storage cannot read, write or delete an object."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="BLOB_STORAGE_ERROR",
            status_code=500,
            details=details,
        )


# Plugin Exceptions
class PluginTimeoutError(PersonaException):
    """Raised when sandboxed plugin code exceeds its wall-clock budget."""

    def __init__(self, timeout_ms: int):
        super().__init__(
            message=f"Plugin execution timed out after {timeout_ms}ms",
            error_code="PLUGIN_TIMEOUT",
            status_code=504,
            details={"timeout_ms": timeout_ms},
        )


class PluginExecutionError(PersonaException):
    """Raised when sandboxed plugin code fails. The message is the plugin's own."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="PLUGIN_EXECUTION_ERROR",
            status_code=500,
            details=details,
        )


# Database Exceptions
class DatabaseConnectionError(PersonaException):
    """Raised when database connection fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Database connection failed: {message}",
            error_code="DATABASE_CONNECTION_ERROR",
            status_code=503,
            details=details,
        )


class DatabaseSessionError(PersonaException):
    """Raised when database session management fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Database session error: {message}",
            error_code="DATABASE_SESSION_ERROR",
            status_code=500,
            details=details,
        )


# Generic API Exceptions
class NotFoundError(PersonaException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="NOT_FOUND",
            status_code=404,
            details=details,
        )


class ConflictError(PersonaException):
    """Raised when there's a conflict with the current state."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="CONFLICT",
            status_code=409,
            details=details,
        )


class AuthenticationError(PersonaException):
    """Raised when the caller identity is missing."""

    def __init__(self, message: str = "Authentication required", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="AUTHENTICATION_ERROR",
            status_code=401,
            details=details,
        )


class AuthorizationError(PersonaException):
    """Raised when the caller may not act on a resource."""

    def __init__(self, message: str = "Forbidden", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="AUTHORIZATION_ERROR",
            status_code=403,
            details=details,
        )


class ValidationError(PersonaException):
    """Raised when caller input has the wrong shape or range."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            status_code=400,
            details=details,
        )


class KnowledgeBaseNotFoundError(NotFoundError):
    """Raised when a knowledge base is not found."""

    def __init__(self, knowledge_base_id: str):
        super().__init__(
            message=f"Knowledge base '{knowledge_base_id}' not found",
            details={"knowledge_base_id": knowledge_base_id},
        )
        self.error_code = "KNOWLEDGE_BASE_NOT_FOUND"


class KnowledgeFileNotFoundError(NotFoundError):
    """Raised when a knowledge file is not found."""

    def __init__(self, file_id: str):
        super().__init__(
            message=f"Knowledge file '{file_id}' not found",
            details={"file_id": file_id},
        )
        self.error_code = "KNOWLEDGE_FILE_NOT_FOUND"


class ConversationNotFoundError(NotFoundError):
    """Raised when a chat is not found."""

    def __init__(self, chat_id: str):
        super().__init__(
            message=f"Chat '{chat_id}' not found",
            details={"chat_id": chat_id},
        )
        self.error_code = "CONVERSATION_NOT_FOUND"


class CharacterNotFoundError(NotFoundError):
    """Raised when a character is not found."""

    def __init__(self, character_id: str):
        super().__init__(
            message=f"Character '{character_id}' not found",
            details={"character_id": character_id},
        )
        self.error_code = "CHARACTER_NOT_FOUND"


class PluginNotFoundError(NotFoundError):
    """Raised when a plugin is not found."""

    def __init__(self, plugin_id: str):
        super().__init__(
            message=f"Plugin '{plugin_id}' not found",
            details={"plugin_id": plugin_id},
        )
        self.error_code = "PLUGIN_NOT_FOUND"


# LLM Exceptions
class LLMError(PersonaException):
    """Base exception for chat model errors."""


class LLMProviderError(LLMError):
    """Raised when the chat model provider returns an error."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="LLM_PROVIDER_ERROR",
            status_code=502,
            details=details,
        )


class LLMTimeoutError(LLMError):
    """Raised when the chat model provider times out."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="LLM_TIMEOUT",
            status_code=504,
            details=details,
        )
