"""Tests for KnowledgeBaseService."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from persona.core.exceptions import (
    AuthorizationError,
    ConflictError,
    KnowledgeBaseNotFoundError,
    NotFoundError,
    UnsupportedFormatError,
    ValidationError,
)
from persona.models.character import Character
from persona.models.knowledge_base import KnowledgeBase, KnowledgeFileStatus, Visibility
from persona.services.knowledge_base_service import KnowledgeBaseService, build_storage_path


@pytest.fixture
def storage():
    blob = MagicMock()
    blob.upload = AsyncMock(side_effect=lambda key, data: key)
    blob.list = AsyncMock(return_value=[])
    blob.delete = AsyncMock(return_value=0)
    return blob


@pytest.fixture
def owned_kb(mock_db):
    kb = KnowledgeBase(id="kb-1", owner_id="user-1", name="Lore", visibility=Visibility.PRIVATE.value)
    mock_db.get.return_value = kb
    return kb


def make_service(mock_db, storage, max_upload_size=1024) -> KnowledgeBaseService:
    return KnowledgeBaseService(mock_db, storage, max_upload_size=max_upload_size)


class TestStoragePath:
    def test_layout(self) -> None:
        assert build_storage_path("kb-1", "notes.md", now_ms=1700000000000) == "kb-1/1700000000000_notes.md"

    def test_separators_are_neutralised(self) -> None:
        assert build_storage_path("kb-1", "../../etc/passwd", now_ms=1) == "kb-1/1_.._.._etc_passwd"

    def test_blank_name(self) -> None:
        assert build_storage_path("kb-1", "  ", now_ms=1) == "kb-1/1_upload"


class TestOwnership:
    async def test_missing_knowledge_base(self, mock_db, storage) -> None:
        mock_db.get.return_value = None
        with pytest.raises(KnowledgeBaseNotFoundError):
            await make_service(mock_db, storage).get_owned_knowledge_base("kb-x", "user-1")

    async def test_other_owner_is_forbidden(self, mock_db, storage, owned_kb) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            await make_service(mock_db, storage).get_owned_knowledge_base("kb-1", "user-2")
        assert exc_info.value.status_code == 403

    async def test_create_requires_name(self, mock_db, storage) -> None:
        with pytest.raises(ValidationError):
            await make_service(mock_db, storage).create_knowledge_base("user-1", "   ")

    async def test_create_strips_name(self, mock_db, storage) -> None:
        kb = await make_service(mock_db, storage).create_knowledge_base("user-1", "  Lore  ")
        assert kb.name == "Lore"
        mock_db.add.assert_called_once_with(kb)


class TestUpload:
    async def test_pending_file_is_queued(self, mock_db, storage, owned_kb) -> None:
        file = await make_service(mock_db, storage).upload_file("kb-1", "user-1", "notes.md", b"# Aria", "text/markdown")

        assert file.status == KnowledgeFileStatus.PENDING.value
        assert file.knowledge_base_id == "kb-1"
        assert file.declared_name == "notes.md"
        assert file.size == 6
        assert file.storage_path.startswith("kb-1/")
        assert file.storage_path.endswith("_notes.md")
        storage.upload.assert_awaited_once_with(file.storage_path, b"# Aria")

    async def test_empty_upload(self, mock_db, storage, owned_kb) -> None:
        with pytest.raises(ValidationError):
            await make_service(mock_db, storage).upload_file("kb-1", "user-1", "notes.md", b"")
        storage.upload.assert_not_awaited()

    async def test_oversized_upload(self, mock_db, storage, owned_kb) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await make_service(mock_db, storage, max_upload_size=4).upload_file("kb-1", "user-1", "a.txt", b"12345")
        assert exc_info.value.details["size"] == 5

    async def test_unsupported_format_is_not_stored(self, mock_db, storage, owned_kb) -> None:
        with pytest.raises(UnsupportedFormatError):
            await make_service(mock_db, storage).upload_file(
                "kb-1", "user-1", "old.doc", b"\xd0\xcf\x11\xe0", "application/msword"
            )
        storage.upload.assert_not_awaited()
        mock_db.add.assert_not_called()

    async def test_failed_enqueue_removes_blob(self, mock_db, storage, owned_kb) -> None:
        mock_db.commit.side_effect = RuntimeError("db down")
        with pytest.raises(RuntimeError):
            await make_service(mock_db, storage).upload_file("kb-1", "user-1", "a.txt", b"hello")
        mock_db.rollback.assert_awaited_once()
        stored_key = storage.upload.await_args.args[0]
        storage.delete.assert_awaited_once_with([stored_key])


class TestDeletion:
    async def test_delete_leaves_blobs_for_cleanup(self, mock_db, storage, owned_kb) -> None:
        await make_service(mock_db, storage).delete_knowledge_base("kb-1", "user-1")

        mock_db.delete.assert_awaited_once_with(owned_kb)
        mock_db.commit.assert_awaited_once()
        storage.list.assert_not_awaited()

    async def test_cleanup_removes_prefix(self, mock_db, storage) -> None:
        storage.list.return_value = ["kb-1/1_a.txt", "kb-1/2_b.txt"]
        storage.delete.return_value = 2

        assert await make_service(mock_db, storage).cleanup_storage("kb-1") == 2

        storage.list.assert_awaited_once_with("kb-1")
        storage.delete.assert_awaited_once_with(["kb-1/1_a.txt", "kb-1/2_b.txt"])

    async def test_cleanup_errors_are_swallowed(self, mock_db, storage) -> None:
        storage.list.side_effect = OSError("disk gone")
        assert await make_service(mock_db, storage).cleanup_storage("kb-1") == 0

    async def test_cleanup_with_nothing_stored(self, mock_db, storage) -> None:
        assert await make_service(mock_db, storage).cleanup_storage("kb-1") == 0
        storage.delete.assert_not_awaited()


class TestReadable:
    async def test_keeps_owned_and_public_in_order(self, mock_db, storage) -> None:
        rows = [
            MagicMock(id="kb-public", owner_id="other", visibility="public"),
            MagicMock(id="kb-private", owner_id="other", visibility="private"),
            MagicMock(id="kb-mine", owner_id="user-1", visibility="private"),
        ]
        result = MagicMock()
        result.__iter__.return_value = iter(rows)
        mock_db.execute.return_value = result

        readable = await make_service(mock_db, storage).readable_knowledge_base_ids(
            ["kb-mine", "kb-private", "kb-public"], "user-1"
        )
        assert readable == ["kb-mine", "kb-public"]

    async def test_empty_input_skips_query(self, mock_db, storage) -> None:
        assert await make_service(mock_db, storage).readable_knowledge_base_ids([], "user-1") == []
        mock_db.execute.assert_not_awaited()


class TestCharacterLinks:
    def _objects(self, mock_db, kb_owner="user-1", visibility="private"):
        character = Character(id="char-1", owner_id="user-1", name="Aria")
        kb = KnowledgeBase(id="kb-1", owner_id=kb_owner, name="Lore", visibility=visibility)
        mock_db.get.side_effect = lambda model, key: character if model is Character else kb
        return character, kb

    async def test_link(self, mock_db, storage) -> None:
        self._objects(mock_db)
        subscription = await make_service(mock_db, storage).link_to_character("char-1", "kb-1", "user-1", priority=3)
        assert (subscription.character_id, subscription.knowledge_base_id, subscription.priority) == ("char-1", "kb-1", 3)

    async def test_link_public_knowledge_base_of_other_owner(self, mock_db, storage) -> None:
        self._objects(mock_db, kb_owner="other", visibility="public")
        await make_service(mock_db, storage).link_to_character("char-1", "kb-1", "user-1")
        mock_db.commit.assert_awaited_once()

    async def test_link_private_knowledge_base_of_other_owner(self, mock_db, storage) -> None:
        self._objects(mock_db, kb_owner="other")
        with pytest.raises(AuthorizationError):
            await make_service(mock_db, storage).link_to_character("char-1", "kb-1", "user-1")

    async def test_link_foreign_character(self, mock_db, storage) -> None:
        self._objects(mock_db)
        with pytest.raises(AuthorizationError):
            await make_service(mock_db, storage).link_to_character("char-1", "kb-1", "user-2")

    async def test_duplicate_link_conflicts(self, mock_db, storage) -> None:
        self._objects(mock_db)
        mock_db.commit.side_effect = IntegrityError("insert", {}, Exception("duplicate key"))
        with pytest.raises(ConflictError):
            await make_service(mock_db, storage).link_to_character("char-1", "kb-1", "user-1")
        mock_db.rollback.assert_awaited_once()

    async def test_unlink_missing_link(self, mock_db, storage) -> None:
        self._objects(mock_db)
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        mock_db.execute.return_value = result
        with pytest.raises(NotFoundError):
            await make_service(mock_db, storage).unlink_from_character("char-1", "kb-1", "user-1")
