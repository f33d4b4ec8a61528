"""Ingestion service: turns pending knowledge files into embedded chunks.

The ``knowledge_files`` table is the work queue. A worker claims the oldest
``pending`` row with an atomic conditional update, then downloads, parses,
chunks and embeds it, and finally writes all chunks and the ``completed``
status in one transaction. Every failure is recorded on the row as
``failed`` with a message; nothing escapes to the polling loop.
"""

from collections.abc import Callable
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.exceptions import (
    ConflictError,
    EmbeddingProviderError,
    EmptyContentError,
    KnowledgeFileNotFoundError,
    PersonaException,
    StoreError,
)
from ..core.logging import get_logger
from ..llm.embedding_client import EmbeddingClient
from ..models.base import utcnow
from ..models.knowledge_base import KnowledgeChunk, KnowledgeFile, KnowledgeFileStatus
from ..processors.chunker import TextChunk, TextChunker
from ..processors.document_parser import DocumentParser, ParsedBlock
from ..storage.blob_storage import BlobStorage

logger = get_logger(__name__)

BLOCK_SEPARATOR = "\n\n"


def build_claim_statement(now=None):
    """UPDATE ... RETURNING that moves the oldest pending file to processing.

    The candidate row is locked with ``FOR UPDATE SKIP LOCKED`` and the
    outer ``status = 'pending'`` predicate makes the move a compare-and-set,
    so two pollers never claim the same file.
    """
    candidate = (
        select(KnowledgeFile.id)
        .where(KnowledgeFile.status == KnowledgeFileStatus.PENDING.value)
        .order_by(KnowledgeFile.created_at, KnowledgeFile.id)
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    return (
        update(KnowledgeFile)
        .where(KnowledgeFile.id == candidate, KnowledgeFile.status == KnowledgeFileStatus.PENDING.value)
        .values(
            status=KnowledgeFileStatus.PROCESSING.value,
            processing_started_at=now or utcnow(),
            error_message=None,
        )
        .returning(KnowledgeFile)
        .execution_options(synchronize_session=False)
    )


def _claim_predicate(file: KnowledgeFile) -> tuple:
    """WHERE clauses matching *file* only while this worker's claim still holds.

    A requeued and reclaimed file gets a new ``processing_started_at``, so the
    claim timestamp acts as a fencing token between the old and new worker.
    """
    return (
        KnowledgeFile.id == file.id,
        KnowledgeFile.status == KnowledgeFileStatus.PROCESSING.value,
        KnowledgeFile.processing_started_at == file.processing_started_at,
    )


def _block_spans(blocks: list[ParsedBlock]) -> list[tuple[int, int, dict[str, Any]]]:
    """Character range of each block inside the joined document text."""
    spans = []
    offset = 0
    for block in blocks:
        spans.append((offset, offset + len(block.text), block.metadata))
        offset += len(block.text) + len(BLOCK_SEPARATOR)
    return spans


def build_chunk_metadata(
    chunk: TextChunk,
    total_chunks: int,
    file: KnowledgeFile,
    spans: list[tuple[int, int, dict[str, Any]]],
) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "chunk_index": chunk.index,
        "total_chunks": total_chunks,
        "file_name": file.declared_name,
        "source": file.storage_path,
        "start_char": chunk.start_char,
        "end_char": chunk.end_char,
    }
    pages = sorted(
        {
            span_meta["page"]
            for start, end, span_meta in spans
            if "page" in span_meta and start < chunk.end_char and end > chunk.start_char
        }
    )
    if pages:
        metadata["page_numbers"] = pages
    return metadata


class IngestionService:
    """Claims and processes pending knowledge files."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | async_sessionmaker[AsyncSession],
        storage: BlobStorage,
        parser: DocumentParser,
        chunker: TextChunker,
        embedder: EmbeddingClient,
        stale_after_seconds: int = 900,
    ) -> None:
        self._session_factory = session_factory
        self._storage = storage
        self._parser = parser
        self._chunker = chunker
        self._embedder = embedder
        self._stale_after = timedelta(seconds=stale_after_seconds)

    async def claim_next_file(self) -> KnowledgeFile | None:
        """Atomically claim the oldest pending file, or return None."""
        async with self._session_factory() as session:
            result = await session.execute(build_claim_statement())
            file = result.scalars().first()
            await session.commit()

        if file is not None:
            logger.info(
                "Claimed knowledge file",
                extra={"file_id": file.id, "knowledge_base_id": file.knowledge_base_id, "file_name": file.declared_name},
            )
        return file

    async def run_once(self) -> bool:
        """Claim and process one file. Returns False when nothing was pending."""
        file = await self.claim_next_file()
        if file is None:
            return False
        await self.process_file(file)
        return True

    async def process_file(self, file: KnowledgeFile) -> bool:
        """Run the pipeline for a claimed file. Returns True on completion."""
        try:
            content = await self._storage.download(file.storage_path)
            blocks = await self._parser.parse(content, file.mime_type, file.declared_name)
            if not blocks:
                raise EmptyContentError()

            text = BLOCK_SEPARATOR.join(block.text for block in blocks)
            chunks = self._chunker.split(text)
            if not chunks:
                raise EmptyContentError("No content to process after splitting")

            vectors = await self._embedder.embed([chunk.content for chunk in chunks])
            if len(vectors) != len(chunks):
                raise EmbeddingProviderError(
                    f"Embedding provider returned {len(vectors)} vectors for {len(chunks)} chunks"
                )

            spans = _block_spans(blocks)
            rows = [
                KnowledgeChunk(
                    knowledge_base_id=file.knowledge_base_id,
                    file_id=file.id,
                    content=chunk.content,
                    chunk_metadata=build_chunk_metadata(chunk, len(chunks), file, spans),
                    embedding=vector,
                )
                for chunk, vector in zip(chunks, vectors, strict=True)
            ]
            await self._persist_chunks(file, rows)
        except PersonaException as e:
            logger.warning(
                "Knowledge file ingestion failed",
                extra={"file_id": file.id, "error_code": e.error_code, "error": e.message},
            )
            await self._mark_failed(file, e.message)
            return False
        except Exception as e:
            logger.error(
                "Unexpected error while ingesting knowledge file",
                extra={"file_id": file.id, "error": str(e)},
                exc_info=True,
            )
            await self._mark_failed(file, str(e) or type(e).__name__)
            return False

        logger.info(
            "Knowledge file ingested",
            extra={"file_id": file.id, "knowledge_base_id": file.knowledge_base_id, "chunk_count": len(rows)},
        )
        return True

    async def _persist_chunks(self, file: KnowledgeFile, rows: list[KnowledgeChunk]) -> None:
        """Replace the file's chunks and mark it completed, all in one transaction."""
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    await session.execute(delete(KnowledgeChunk).where(KnowledgeChunk.file_id == file.id))
                    session.add_all(rows)
                    await session.flush()
                    result = await session.execute(
                        update(KnowledgeFile)
                        .where(*_claim_predicate(file))
                        .values(
                            status=KnowledgeFileStatus.COMPLETED.value,
                            chunk_count=len(rows),
                            error_message=None,
                            processed_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise StoreError("complete_file", "file is no longer claimed by this worker")
            except SQLAlchemyError as e:
                raise StoreError("persist_chunks", str(e), details={"file_id": file.id}) from e

    async def _mark_failed(self, file: KnowledgeFile, error_message: str) -> None:
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    update(KnowledgeFile)
                    .where(*_claim_predicate(file))
                    .values(
                        status=KnowledgeFileStatus.FAILED.value,
                        chunk_count=0,
                        error_message=error_message,
                        processed_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            except SQLAlchemyError as e:
                # The row stays in processing; requeue_stale_files picks it up later
                await session.rollback()
                logger.error(
                    "Failed to record ingestion failure",
                    extra={"file_id": file.id, "error": str(e)},
                    exc_info=True,
                )
                return
        if result.rowcount != 1:
            logger.warning("Ingestion failure not recorded, claim was lost", extra={"file_id": file.id})

    async def requeue_stale_files(self) -> int:
        """Return files stuck in processing (crashed worker) to pending."""
        cutoff = utcnow() - self._stale_after
        async with self._session_factory() as session:
            result = await session.execute(
                update(KnowledgeFile)
                .where(
                    KnowledgeFile.status == KnowledgeFileStatus.PROCESSING.value,
                    KnowledgeFile.processing_started_at < cutoff,
                )
                .values(status=KnowledgeFileStatus.PENDING.value, processing_started_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        count = result.rowcount or 0
        if count:
            logger.warning("Requeued stale knowledge files", extra={"count": count})
        return count


async def enqueue_file(
    db: AsyncSession,
    knowledge_base_id: str,
    storage_path: str,
    declared_name: str,
    size: int | None = None,
    mime_type: str | None = None,
) -> KnowledgeFile:
    """Create a pending file row; a worker picks it up on its next poll."""
    file = KnowledgeFile(
        knowledge_base_id=knowledge_base_id,
        storage_path=storage_path,
        declared_name=declared_name,
        size=size,
        mime_type=mime_type,
        status=KnowledgeFileStatus.PENDING.value,
        chunk_count=0,
    )
    db.add(file)
    await db.commit()
    await db.refresh(file)
    logger.info(
        "Enqueued knowledge file",
        extra={"file_id": file.id, "knowledge_base_id": knowledge_base_id, "file_name": declared_name},
    )
    return file


async def reingest_file(db: AsyncSession, file_id: str, knowledge_base_id: str | None = None) -> KnowledgeFile:
    """Move a failed file back to pending."""
    stmt = select(KnowledgeFile).where(KnowledgeFile.id == file_id)
    if knowledge_base_id is not None:
        stmt = stmt.where(KnowledgeFile.knowledge_base_id == knowledge_base_id)
    file = (await db.execute(stmt)).scalar_one_or_none()
    if file is None:
        raise KnowledgeFileNotFoundError(file_id)
    if file.status != KnowledgeFileStatus.FAILED.value:
        raise ConflictError(
            f"Only failed files can be re-ingested; file '{file_id}' is {file.status}",
            details={"file_id": file_id, "status": file.status},
        )

    result = await db.execute(
        update(KnowledgeFile)
        .where(KnowledgeFile.id == file_id, KnowledgeFile.status == KnowledgeFileStatus.FAILED.value)
        .values(
            status=KnowledgeFileStatus.PENDING.value,
            error_message=None,
            chunk_count=0,
            processing_started_at=None,
            processed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise ConflictError(f"File '{file_id}' changed state during re-ingestion", details={"file_id": file_id})
    await db.commit()
    await db.refresh(file)
    logger.info("Re-queued knowledge file", extra={"file_id": file_id})
    return file
