"""Document parser for the Persona ingestion pipeline.

Turns raw file bytes into text blocks. Dispatch goes through the file-type
registry in :mod:`persona.ingestion.filetypes`; each extractor runs in the
default executor so PDF/DOCX work never blocks the event loop.
"""

import asyncio
import csv
import io
import json
import re
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup

from ..core.exceptions import ParseError
from ..core.logging import get_logger
from ..ingestion.filetypes import ParserType, resolve_parser_type

logger = get_logger(__name__)


@dataclass
class ParsedBlock:
    """A unit of extracted text with positional metadata (page, row, pointer)."""

    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


def clean_text(text: str) -> str:
    """Clean extracted text by removing problematic characters."""
    if not text:
        return ""

    # NUL characters break PostgreSQL text columns
    cleaned = text.replace("\x00", "")
    # Keep \t, \n and \r; drop the other control characters
    cleaned = re.sub(r"[\x01-\x08\x0b-\x0c\x0e-\x1f\x7f]", "", cleaned)
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = re.sub(r"[ \t]+", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def _decode_text(content: bytes, file_name: str) -> str:
    try:
        # utf-8-sig tolerates a leading BOM
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ParseError(file_name, f"content is not valid UTF-8 text ({e.reason} at byte {e.start})") from e


def _extract_plain_text(content: bytes, file_name: str) -> list[ParsedBlock]:
    return [ParsedBlock(_decode_text(content, file_name))]


def _extract_csv(content: bytes, file_name: str) -> list[ParsedBlock]:
    text = _decode_text(content, file_name)
    reader = csv.reader(io.StringIO(text), strict=True)
    blocks: list[ParsedBlock] = []
    try:
        header = next(reader, None)
        if header is None:
            return []
        header = [h.strip() for h in header]
        for row_number, row in enumerate(reader, start=1):
            if not any(cell.strip() for cell in row):
                continue
            lines = []
            for index, value in enumerate(row):
                name = header[index] if index < len(header) and header[index] else f"column_{index + 1}"
                lines.append(f"{name}: {value.strip()}")
            blocks.append(ParsedBlock("\n".join(lines), {"row": row_number}))
    except csv.Error as e:
        raise ParseError(file_name, f"malformed CSV at line {reader.line_num}: {e}") from e
    return blocks


def _escape_pointer_token(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def _walk_json(node: Any, pointer: str, blocks: list[ParsedBlock]) -> None:
    if isinstance(node, str):
        blocks.append(ParsedBlock(node, {"pointer": pointer or "/"}))
    elif isinstance(node, dict):
        for key, value in node.items():
            _walk_json(value, f"{pointer}/{_escape_pointer_token(str(key))}", blocks)
    elif isinstance(node, list):
        for index, value in enumerate(node):
            _walk_json(value, f"{pointer}/{index}", blocks)


def _extract_json(content: bytes, file_name: str) -> list[ParsedBlock]:
    text = _decode_text(content, file_name)
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(file_name, f"malformed JSON: {e.msg} (line {e.lineno}, column {e.colno})") from e
    blocks: list[ParsedBlock] = []
    _walk_json(document, "", blocks)
    return blocks


def _extract_html(content: bytes, file_name: str) -> list[ParsedBlock]:
    text = _decode_text(content, file_name)
    soup = BeautifulSoup(text, "html.parser")
    for element in soup(["script", "style", "noscript"]):
        element.decompose()
    # Source indentation and line breaks are not content
    return [ParsedBlock(re.sub(r"\s+", " ", soup.get_text(separator=" ")).strip())]


def _extract_pdf(content: bytes, file_name: str) -> list[ParsedBlock]:
    import fitz

    try:
        doc = fitz.open(stream=content, filetype="pdf")
    except Exception as e:
        raise ParseError(file_name, f"unreadable PDF: {e}") from e

    blocks: list[ParsedBlock] = []
    try:
        total_pages = len(doc)
        for page_num in range(total_pages):
            page_text = doc[page_num].get_text()
            blocks.append(ParsedBlock(page_text, {"page": page_num + 1, "total_pages": total_pages}))
    except Exception as e:
        raise ParseError(file_name, f"failed reading PDF page: {e}") from e
    finally:
        doc.close()
    return blocks


def _extract_docx(content: bytes, file_name: str) -> list[ParsedBlock]:
    import docx

    try:
        doc = docx.Document(io.BytesIO(content))
    except Exception as e:
        raise ParseError(file_name, f"unreadable DOCX: {e}") from e

    lines = [paragraph.text for paragraph in doc.paragraphs if paragraph.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            # Empty cells are kept so columns stay aligned
            row_text = [cell.text.strip() for cell in row.cells]
            if any(row_text):
                lines.append(" | ".join(row_text))
    return [ParsedBlock("\n".join(lines))]


_EXTRACTORS = {
    ParserType.PLAIN_TEXT: _extract_plain_text,
    ParserType.CSV: _extract_csv,
    ParserType.JSON: _extract_json,
    ParserType.HTML: _extract_html,
    ParserType.PDF: _extract_pdf,
    ParserType.DOCX: _extract_docx,
}


class DocumentParser:
    """Extract text blocks from uploaded file bytes."""

    async def parse(self, content: bytes, mime_type: str | None, file_name: str) -> list[ParsedBlock]:
        """Parse *content* into cleaned, non-empty text blocks.

        Raises:
            UnsupportedFormatError: legacy or unknown binary formats.
            ParseError: the file claims a supported format but cannot be read.

        """
        parser_type = resolve_parser_type(mime_type, file_name)
        extractor = _EXTRACTORS[parser_type]

        raw_blocks = await asyncio.get_running_loop().run_in_executor(None, extractor, content, file_name)

        blocks = []
        for block in raw_blocks:
            text = clean_text(block.text)
            if text:
                blocks.append(ParsedBlock(text, block.metadata))

        logger.debug(
            "Parsed document",
            extra={
                "file_name": file_name,
                "parser": parser_type.value,
                "raw_blocks": len(raw_blocks),
                "blocks": len(blocks),
                "chars": sum(len(b.text) for b in blocks),
            },
        )
        return blocks
