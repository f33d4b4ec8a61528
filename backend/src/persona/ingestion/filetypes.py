"""Central file-type registry for the Persona ingestion pipeline.

This module is the **single source of truth** for:

* Supported file extensions and their parser categories
* MIME-to-extension mappings
* Legacy formats that are rejected with an actionable message
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath

from ..core.exceptions import UnsupportedFormatError

# ---------------------------------------------------------------------------
# ParserType: the extractor category each extension maps to
# ---------------------------------------------------------------------------


class ParserType(str, Enum):
    """Extractor category for parser dispatch.

    Each supported file extension maps to exactly one ParserType.
    DocumentParser maps each ParserType to an extractor.
    """

    PLAIN_TEXT = "plain_text"
    CSV = "csv"
    JSON = "json"
    HTML = "html"
    PDF = "pdf"
    DOCX = "docx"


@dataclass(frozen=True)
class FileTypeEntry:
    """A single supported file type in the ingestion registry."""

    extension: str  # Dotted, lowercase, e.g. ".pdf"
    parser_type: ParserType


_REGISTRY: tuple[FileTypeEntry, ...] = (
    FileTypeEntry(".txt", ParserType.PLAIN_TEXT),
    FileTypeEntry(".md", ParserType.PLAIN_TEXT),
    FileTypeEntry(".markdown", ParserType.PLAIN_TEXT),
    FileTypeEntry(".csv", ParserType.CSV),
    FileTypeEntry(".json", ParserType.JSON),
    FileTypeEntry(".html", ParserType.HTML),
    FileTypeEntry(".htm", ParserType.HTML),
    FileTypeEntry(".pdf", ParserType.PDF),
    FileTypeEntry(".docx", ParserType.DOCX),
)

# Derived constants; edit _REGISTRY instead.
SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(e.extension for e in _REGISTRY)

EXT_TO_PARSER_TYPE: dict[str, ParserType] = {e.extension: e.parser_type for e in _REGISTRY}

MIME_TO_EXT: dict[str, str] = {
    "text/plain": ".txt",
    "text/markdown": ".md",
    "text/x-markdown": ".md",
    "text/csv": ".csv",
    "application/csv": ".csv",
    "application/json": ".json",
    "text/json": ".json",
    "text/html": ".html",
    "application/xhtml+xml": ".html",
    "application/pdf": ".pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    # Recognized only so they can be rejected with a useful message
    "application/msword": ".doc",
    "application/vnd.ms-powerpoint": ".ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
}

REJECTED_FORMATS: dict[str, str] = {
    ".doc": "Legacy .doc files are not supported; please convert to .docx or .pdf and re-upload.",
    ".ppt": "PowerPoint files are not supported; please convert to .pdf and re-upload.",
    ".pptx": "PowerPoint files are not supported; please convert to .pdf and re-upload.",
}

# MIME types that say nothing about the content; the extension decides
GENERIC_MIME_TYPES: frozenset[str] = frozenset(
    {"application/octet-stream", "binary/octet-stream", "application/unknown", ""}
)


def normalize_mime_type(mime_type: str | None) -> str:
    """Lower-case a MIME type and drop parameters such as ``; charset=utf-8``."""
    if not mime_type:
        return ""
    return mime_type.split(";", 1)[0].strip().lower()


def extension_of(file_name: str | None) -> str:
    """Return the dotted, lower-case extension of *file_name* (``""`` if none)."""
    if not file_name:
        return ""
    return PurePosixPath(file_name.replace("\\", "/")).suffix.lower()


def resolve_parser_type(mime_type: str | None, file_name: str | None) -> ParserType:
    """Pick the extractor for a file.

    The MIME type is consulted first; the file extension is the fallback when
    the MIME type is missing, generic, or unknown. Legacy Office formats raise
    :class:`UnsupportedFormatError` with conversion advice, as do unknown
    binary types. Unknown ``text/*`` types are read as plain text.
    """
    mime = normalize_mime_type(mime_type)
    ext = extension_of(file_name)

    mime_ext = MIME_TO_EXT.get(mime)
    for candidate in (mime_ext, ext):
        if candidate in REJECTED_FORMATS:
            raise UnsupportedFormatError(REJECTED_FORMATS[candidate], file_name=file_name, mime_type=mime_type)

    if mime_ext in EXT_TO_PARSER_TYPE:
        return EXT_TO_PARSER_TYPE[mime_ext]
    if ext in EXT_TO_PARSER_TYPE:
        return EXT_TO_PARSER_TYPE[ext]
    if mime.startswith("text/"):
        return ParserType.PLAIN_TEXT

    described = mime if mime not in GENERIC_MIME_TYPES else (ext or "unknown type")
    raise UnsupportedFormatError(
        f"Unsupported file format: {described}",
        file_name=file_name,
        mime_type=mime_type,
    )
