"""Blob storage for uploaded knowledge files.

Objects are addressed by slash-separated keys such as
``{kb_id}/{epoch_ms}_{file_name}``. ``LocalBlobStorage`` maps keys onto a
directory tree; any other backend only needs to satisfy ``BlobStorage``.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..core.config import get_settings_instance
from ..core.exceptions import BlobStorageError
from ..core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class BlobStorage(Protocol):
    async def upload(self, key: str, data: bytes) -> str: ...

    async def download(self, key: str) -> bytes: ...

    async def list(self, prefix: str) -> list[str]: ...

    async def delete(self, keys: list[str]) -> int: ...


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".part")
    with open(tmp_path, "wb") as f:
        f.write(data)
    os.replace(tmp_path, path)


def _read_file(path: Path) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class LocalBlobStorage:
    """Filesystem-backed blob storage.

    Args:
        root: Directory holding the objects (defaults to ``blob_storage_dir``).

    """

    def __init__(self, root: str | None = None) -> None:
        self._root = Path(root or get_settings_instance().blob_storage_dir).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, key: str) -> Path:
        if not key or key.startswith("/") or "\\" in key:
            raise BlobStorageError(f"Invalid storage key: {key!r}", details={"key": key})
        path = (self._root / key).resolve()
        if not path.is_relative_to(self._root):
            raise BlobStorageError(f"Storage key escapes storage root: {key!r}", details={"key": key})
        return path

    async def upload(self, key: str, data: bytes) -> str:
        path = self._path_for(key)
        try:
            await asyncio.get_running_loop().run_in_executor(None, _write_file, path, data)
        except OSError as e:
            raise BlobStorageError(f"Failed to store {key}: {e}", details={"key": key}) from e
        logger.debug("Stored blob", extra={"key": key, "size": len(data)})
        return key

    async def download(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.get_running_loop().run_in_executor(None, _read_file, path)
        except FileNotFoundError as e:
            raise BlobStorageError(f"Stored file not found: {key}", details={"key": key}) from e
        except OSError as e:
            raise BlobStorageError(f"Failed to read {key}: {e}", details={"key": key}) from e

    async def list(self, prefix: str) -> list[str]:
        def _list() -> list[str]:
            base = self._root / prefix.rstrip("/") if prefix else self._root
            if not base.resolve().is_relative_to(self._root) or not base.is_dir():
                return []
            return sorted(p.relative_to(self._root).as_posix() for p in base.rglob("*") if p.is_file())

        return await asyncio.get_running_loop().run_in_executor(None, _list)

    async def delete(self, keys: list[str]) -> int:
        """Delete objects; missing keys are ignored. Returns how many were removed."""

        def _delete() -> int:
            removed = 0
            for key in keys:
                path = self._path_for(key)
                try:
                    path.unlink()
                    removed += 1
                except FileNotFoundError:
                    continue
            return removed

        try:
            return await asyncio.get_running_loop().run_in_executor(None, _delete)
        except OSError as e:
            raise BlobStorageError(f"Failed to delete blobs: {e}", details={"keys": keys}) from e


_blob_storage: LocalBlobStorage | None = None


def get_blob_storage() -> BlobStorage:
    global _blob_storage  # noqa: PLW0603
    if _blob_storage is None:
        _blob_storage = LocalBlobStorage()
    return _blob_storage
