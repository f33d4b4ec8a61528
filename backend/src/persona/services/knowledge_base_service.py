"""Knowledge Base Service.

Business logic for knowledge bases: creation and deletion (with blob
cleanup), file uploads that feed the ingestion queue, and the links between
characters and the knowledge bases they draw on.
"""

import time

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import (
    AuthorizationError,
    CharacterNotFoundError,
    ConflictError,
    KnowledgeBaseNotFoundError,
    KnowledgeFileNotFoundError,
    NotFoundError,
    ValidationError,
)
from ..core.logging import get_logger
from ..ingestion.filetypes import resolve_parser_type
from ..models.character import Character
from ..models.knowledge_base import KnowledgeBase, KnowledgeFile, KnowledgeSubscription, Visibility
from ..storage.blob_storage import BlobStorage
from .ingestion_service import enqueue_file, reingest_file

logger = get_logger(__name__)


def build_storage_path(kb_id: str, file_name: str, now_ms: int | None = None) -> str:
    """Blob key for an upload: ``{kb_id}/{epoch_ms}_{file_name}``."""
    safe_name = file_name.replace("/", "_").replace("\\", "_").strip() or "upload"
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{kb_id}/{now_ms}_{safe_name}"


class KnowledgeBaseService:
    """Service for managing knowledge bases and their files."""

    def __init__(self, db: AsyncSession, storage: BlobStorage, max_upload_size: int | None = None):
        self.db = db
        self.storage = storage
        self.max_upload_size = max_upload_size

    async def get_knowledge_base(self, kb_id: str) -> KnowledgeBase:
        knowledge_base = await self.db.get(KnowledgeBase, kb_id)
        if knowledge_base is None:
            raise KnowledgeBaseNotFoundError(kb_id)
        return knowledge_base

    async def get_owned_knowledge_base(self, kb_id: str, owner_id: str) -> KnowledgeBase:
        knowledge_base = await self.get_knowledge_base(kb_id)
        if knowledge_base.owner_id != owner_id:
            raise AuthorizationError(details={"knowledge_base_id": kb_id})
        return knowledge_base

    async def list_knowledge_bases(self, owner_id: str) -> list[KnowledgeBase]:
        result = await self.db.execute(
            select(KnowledgeBase).where(KnowledgeBase.owner_id == owner_id).order_by(KnowledgeBase.created_at.desc())
        )
        return list(result.scalars().all())

    async def create_knowledge_base(
        self,
        owner_id: str,
        name: str,
        description: str | None = None,
        visibility: str = Visibility.PRIVATE.value,
    ) -> KnowledgeBase:
        if not name or not name.strip():
            raise ValidationError("Knowledge base name must not be empty")
        knowledge_base = KnowledgeBase(
            owner_id=owner_id, name=name.strip(), description=description, visibility=visibility
        )
        self.db.add(knowledge_base)
        await self.db.commit()
        await self.db.refresh(knowledge_base)
        logger.info("Created knowledge base", extra={"knowledge_base_id": knowledge_base.id, "owner_id": owner_id})
        return knowledge_base

    async def delete_knowledge_base(self, kb_id: str, owner_id: str) -> None:
        """Delete a knowledge base; files, chunks and subscriptions cascade.

        Stored blobs are left for :meth:`cleanup_storage`, which callers
        schedule once the deletion has been acknowledged.
        """
        knowledge_base = await self.get_owned_knowledge_base(kb_id, owner_id)
        await self.db.delete(knowledge_base)
        await self.db.commit()
        logger.info("Deleted knowledge base", extra={"knowledge_base_id": kb_id})

    async def cleanup_storage(self, kb_id: str) -> int:
        """Remove every blob under the knowledge base's prefix. Failures are logged, not raised."""
        try:
            keys = await self.storage.list(kb_id)
            if not keys:
                return 0
            removed = await self.storage.delete(keys)
            logger.info("Removed knowledge base blobs", extra={"knowledge_base_id": kb_id, "removed": removed})
            return removed
        except Exception as e:
            logger.error(
                "Failed to clean up knowledge base blobs",
                extra={"knowledge_base_id": kb_id, "error": str(e)},
                exc_info=True,
            )
            return 0

    async def upload_file(
        self,
        kb_id: str,
        owner_id: str,
        file_name: str,
        data: bytes,
        mime_type: str | None = None,
    ) -> KnowledgeFile:
        """Store the upload and queue it for ingestion as a pending file."""
        await self.get_owned_knowledge_base(kb_id, owner_id)
        if not data:
            raise ValidationError("Uploaded file is empty", details={"file_name": file_name})
        if self.max_upload_size and len(data) > self.max_upload_size:
            raise ValidationError(
                f"File exceeds maximum upload size of {self.max_upload_size} bytes",
                details={"file_name": file_name, "size": len(data)},
            )
        # Reject unsupported formats before anything is stored
        resolve_parser_type(mime_type, file_name)

        storage_path = build_storage_path(kb_id, file_name)
        await self.storage.upload(storage_path, data)
        try:
            file = await enqueue_file(self.db, kb_id, storage_path, file_name, size=len(data), mime_type=mime_type)
        except Exception:
            await self.db.rollback()
            await self.storage.delete([storage_path])
            raise
        logger.info(
            "Queued file for ingestion",
            extra={"knowledge_base_id": kb_id, "file_id": file.id, "file_name": file_name, "size": len(data)},
        )
        return file

    async def list_files(self, kb_id: str, owner_id: str) -> list[KnowledgeFile]:
        await self.get_owned_knowledge_base(kb_id, owner_id)
        result = await self.db.execute(
            select(KnowledgeFile)
            .where(KnowledgeFile.knowledge_base_id == kb_id)
            .order_by(KnowledgeFile.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_file(self, kb_id: str, file_id: str, owner_id: str) -> KnowledgeFile:
        await self.get_owned_knowledge_base(kb_id, owner_id)
        result = await self.db.execute(
            select(KnowledgeFile).where(KnowledgeFile.id == file_id, KnowledgeFile.knowledge_base_id == kb_id)
        )
        file = result.scalar_one_or_none()
        if file is None:
            raise KnowledgeFileNotFoundError(file_id)
        return file

    async def reingest_file(self, kb_id: str, file_id: str, owner_id: str) -> KnowledgeFile:
        await self.get_owned_knowledge_base(kb_id, owner_id)
        return await reingest_file(self.db, file_id, knowledge_base_id=kb_id)

    async def readable_knowledge_base_ids(self, kb_ids: list[str], profile_id: str) -> list[str]:
        """Filter *kb_ids* down to those the profile owns or that are public."""
        if not kb_ids:
            return []
        result = await self.db.execute(
            select(KnowledgeBase.id, KnowledgeBase.owner_id, KnowledgeBase.visibility).where(
                KnowledgeBase.id.in_(kb_ids)
            )
        )
        readable = {
            row.id for row in result if row.owner_id == profile_id or row.visibility == Visibility.PUBLIC.value
        }
        return [kb_id for kb_id in kb_ids if kb_id in readable]

    async def link_to_character(
        self, character_id: str, kb_id: str, owner_id: str, priority: int = 0
    ) -> KnowledgeSubscription:
        """Subscribe a character to a knowledge base the caller can read."""
        character = await self.db.get(Character, character_id)
        if character is None:
            raise CharacterNotFoundError(character_id)
        if character.owner_id != owner_id:
            raise AuthorizationError(details={"character_id": character_id})
        knowledge_base = await self.get_knowledge_base(kb_id)
        if knowledge_base.owner_id != owner_id and not knowledge_base.is_public:
            raise AuthorizationError(details={"knowledge_base_id": kb_id})

        subscription = KnowledgeSubscription(character_id=character_id, knowledge_base_id=kb_id, priority=priority)
        self.db.add(subscription)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError(
                "Knowledge base is already linked to this character",
                details={"character_id": character_id, "knowledge_base_id": kb_id},
            ) from e
        await self.db.refresh(subscription)
        return subscription

    async def unlink_from_character(self, character_id: str, kb_id: str, owner_id: str) -> None:
        character = await self.db.get(Character, character_id)
        if character is None:
            raise CharacterNotFoundError(character_id)
        if character.owner_id != owner_id:
            raise AuthorizationError(details={"character_id": character_id})
        result = await self.db.execute(
            select(KnowledgeSubscription).where(
                KnowledgeSubscription.character_id == character_id,
                KnowledgeSubscription.knowledge_base_id == kb_id,
            )
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise NotFoundError(
                "Knowledge base is not linked to this character",
                details={"character_id": character_id, "knowledge_base_id": kb_id},
            )
        await self.db.delete(subscription)
        await self.db.commit()
