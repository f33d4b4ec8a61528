"""
Pydantic schemas for knowledge base operations.

This module defines the request/response schemas for knowledge bases,
their files, character links and similarity search.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class KnowledgeBaseVisibility(str, Enum):
    """Knowledge base visibility options."""
    PUBLIC = "public"
    PRIVATE = "private"


class KnowledgeBaseCreate(BaseModel):
    """Schema for creating a new knowledge base."""

    name: str = Field(..., min_length=1, max_length=255, description="Knowledge base name")
    description: Optional[str] = Field(None, description="Knowledge base description")
    visibility: KnowledgeBaseVisibility = Field(KnowledgeBaseVisibility.PRIVATE, description="Who can link it")


class KnowledgeBaseResponse(BaseModel):
    """Schema for knowledge base responses."""

    id: str
    owner_id: str
    name: str
    description: Optional[str] = None
    visibility: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class KnowledgeFileResponse(BaseModel):
    """An uploaded file and where it is in ingestion."""

    id: str
    knowledge_base_id: str
    declared_name: str
    size: Optional[int] = None
    mime_type: Optional[str] = None
    status: str = Field(..., description="pending, processing, completed or failed")
    error_message: Optional[str] = None
    chunk_count: int = 0
    processing_started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class KnowledgeLinkRequest(BaseModel):
    """Schema for linking a knowledge base to a character."""

    knowledge_base_id: str = Field(..., min_length=1)
    priority: int = Field(0, description="Higher priority knowledge bases are listed first")


class SearchRequest(BaseModel):
    """Schema for a similarity search across knowledge bases."""

    query: str = Field(..., min_length=1, description="Text to search for")
    knowledge_base_ids: List[str] = Field(..., description="Knowledge bases to search")
    threshold: Optional[float] = Field(None, ge=0.0, le=1.0, description="Minimum similarity, exclusive")
    limit: Optional[int] = Field(None, ge=1, le=50, description="Maximum number of results")

    @field_validator("query")
    @classmethod
    def validate_query(cls, v):
        """Reject queries that are only whitespace."""
        if not v.strip():
            raise ValueError("query must not be blank")
        return v


class SearchResult(BaseModel):
    """A retrieved chunk with its similarity score."""

    chunk_id: str
    knowledge_base_id: str
    file_id: Optional[str] = None
    content: str
    similarity: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    """Schema for search results."""

    query: str
    results: List[SearchResult]
    total: int
