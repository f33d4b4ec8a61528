"""Knowledge base models for the Persona backend.

A knowledge base owns uploaded files; the ingestion worker turns each file
into embedded chunks. Characters subscribe to knowledge bases to ground their
conversations.
"""

from enum import Enum

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, CheckConstraint, Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import relationship

from ..core.config import get_settings_instance
from .base import BaseModel

# Fixed system-wide; query vectors must have the same length
EMBEDDING_DIMENSION = get_settings_instance().embedding_dimension


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class KnowledgeFileStatus(str, Enum):
    """Ingestion state of an uploaded file.

    pending -> processing -> completed | failed, and failed -> pending on re-ingestion.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class KnowledgeBase(BaseModel):
    """A named collection of files and their chunks."""

    __tablename__ = "knowledge_bases"

    owner_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    visibility = Column(String(16), default=Visibility.PRIVATE.value, nullable=False)

    files = relationship(
        "KnowledgeFile", back_populates="knowledge_base", cascade="all, delete-orphan", passive_deletes=True
    )
    chunks = relationship(
        "KnowledgeChunk", back_populates="knowledge_base", cascade="all, delete-orphan", passive_deletes=True
    )
    subscriptions = relationship(
        "KnowledgeSubscription", back_populates="knowledge_base", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (CheckConstraint("visibility IN ('public', 'private')", name="ck_knowledge_bases_visibility"),)

    @property
    def is_public(self) -> bool:
        return self.visibility == Visibility.PUBLIC.value


class KnowledgeFile(BaseModel):
    """An uploaded file and its ingestion state."""

    __tablename__ = "knowledge_files"

    knowledge_base_id = Column(
        String(36), ForeignKey("knowledge_bases.id", ondelete="CASCADE"), nullable=False, index=True
    )
    storage_path = Column(String(1024), nullable=False)
    declared_name = Column(String(512), nullable=False)
    size = Column(Integer, nullable=True)
    mime_type = Column(String(255), nullable=True)

    status = Column(String(16), default=KnowledgeFileStatus.PENDING.value, nullable=False)
    error_message = Column(Text, nullable=True)
    chunk_count = Column(Integer, default=0, nullable=False)
    processing_started_at = Column(TIMESTAMP(timezone=True), nullable=True)
    processed_at = Column(TIMESTAMP(timezone=True), nullable=True)

    knowledge_base = relationship("KnowledgeBase", back_populates="files")
    chunks = relationship("KnowledgeChunk", back_populates="file", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')", name="ck_knowledge_files_status"
        ),
        # Claim query scans pending files oldest-first
        Index("ix_knowledge_files_status_created", "status", "created_at"),
    )


class KnowledgeChunk(BaseModel):
    """A chunk of file content with its embedding vector."""

    __tablename__ = "knowledge_chunks"

    knowledge_base_id = Column(
        String(36), ForeignKey("knowledge_bases.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Null for chunks that did not come from an uploaded file
    file_id = Column(String(36), ForeignKey("knowledge_files.id", ondelete="CASCADE"), nullable=True, index=True)
    content = Column(Text, nullable=False)
    chunk_metadata = Column("metadata", JSON, nullable=False, default=dict)
    embedding = Column(Vector(EMBEDDING_DIMENSION), nullable=True)

    knowledge_base = relationship("KnowledgeBase", back_populates="chunks")
    file = relationship("KnowledgeFile", back_populates="chunks")


class KnowledgeSubscription(BaseModel):
    """Links a character to a knowledge base it may consult."""

    __tablename__ = "knowledge_subscriptions"

    character_id = Column(String(36), ForeignKey("characters.id", ondelete="CASCADE"), nullable=False, index=True)
    knowledge_base_id = Column(
        String(36), ForeignKey("knowledge_bases.id", ondelete="CASCADE"), nullable=False, index=True
    )
    priority = Column(Integer, default=0, nullable=False)

    knowledge_base = relationship("KnowledgeBase", back_populates="subscriptions")

    __table_args__ = (
        UniqueConstraint("character_id", "knowledge_base_id", name="uq_knowledge_subscriptions_character_kb"),
    )
