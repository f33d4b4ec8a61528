"""Vector similarity search over knowledge chunks.

Similarity is ``1 - cosine distance`` as computed by pgvector's ``<=>``
operator; only chunks strictly above the threshold are returned.
"""

import math
from dataclasses import asdict, dataclass
from typing import Any

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, Float, String, Text, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import StoreError, ValidationError
from ..core.logging import get_logger
from ..llm.embedding_client import EmbeddingClient
from ..models.knowledge_base import EMBEDDING_DIMENSION

logger = get_logger(__name__)

# Ties on similarity are broken by chunk id so repeated searches agree
_SIMILARITY_SQL = text(
    """
    SELECT
        kc.id,
        kc.knowledge_base_id,
        kc.file_id,
        kc.content,
        kc.metadata,
        1 - (kc.embedding <=> :query_embedding) AS similarity
    FROM knowledge_chunks kc
    WHERE kc.knowledge_base_id IN :knowledge_base_ids
    AND kc.embedding IS NOT NULL
    AND 1 - (kc.embedding <=> :query_embedding) > :threshold
    ORDER BY kc.embedding <=> :query_embedding, kc.id
    LIMIT :limit
    """
).bindparams(
    bindparam("query_embedding", type_=Vector(EMBEDDING_DIMENSION)),
    bindparam("knowledge_base_ids", expanding=True),
).columns(
    id=String,
    knowledge_base_id=String,
    file_id=String,
    content=Text,
    metadata=JSON,
    similarity=Float,
)


@dataclass
class RetrievedChunk:
    chunk_id: str
    content: str
    similarity: float
    metadata: dict[str, Any]
    knowledge_base_id: str
    file_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RetrievalService:
    """Rank chunks from a set of knowledge bases against a query."""

    def __init__(self, db: AsyncSession, embedder: EmbeddingClient) -> None:
        self.db = db
        self.embedder = embedder

    async def search(
        self,
        query: str,
        knowledge_base_ids: list[str],
        threshold: float = 0.5,
        limit: int = 5,
    ) -> list[RetrievedChunk]:
        """Return up to ``limit`` chunks with similarity above ``threshold``, best first.

        Raises:
            ValidationError: blank query, threshold outside [0, 1], or non-positive limit.
            EmbeddingProviderError: the query could not be embedded.
            StoreError: the similarity query failed.

        """
        if not query or not query.strip():
            raise ValidationError("Search query must not be empty")
        if threshold is None or math.isnan(threshold) or not 0.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be between 0 and 1", details={"threshold": threshold})
        if limit <= 0:
            raise ValidationError("limit must be positive", details={"limit": limit})

        # No similarity can exceed 1, so nothing could match
        if not knowledge_base_ids or threshold >= 1.0:
            return []

        query_embedding = await self.embedder.embed_query(query)

        try:
            result = await self.db.execute(
                _SIMILARITY_SQL,
                {
                    "query_embedding": query_embedding,
                    "knowledge_base_ids": list(dict.fromkeys(knowledge_base_ids)),
                    "threshold": threshold,
                    "limit": limit,
                },
            )
            rows = result.fetchall()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Similarity search failed",
                extra={"knowledge_base_ids": knowledge_base_ids, "error": str(e)},
            )
            raise StoreError("similarity_search", str(e)) from e

        chunks = [
            RetrievedChunk(
                chunk_id=row["id"],
                content=row["content"],
                similarity=float(row["similarity"]),
                metadata=row["metadata"] or {},
                knowledge_base_id=row["knowledge_base_id"],
                file_id=row["file_id"],
            )
            for row in (r._mapping for r in rows)
        ]
        logger.debug(
            "Similarity search complete",
            extra={
                "knowledge_base_count": len(knowledge_base_ids),
                "threshold": threshold,
                "limit": limit,
                "results": len(chunks),
            },
        )
        return chunks
