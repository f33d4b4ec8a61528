"""Text chunker for the Persona ingestion pipeline.

Splits text into contiguous, overlapping spans. Each span ends on the most
natural boundary available in its window (paragraph, line, sentence, word)
and falls back to a hard cut only when none exists.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from ..core.exceptions import EmptyContentError

DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", "。", "！", "？", ".", "!", "?", " ")


@dataclass(frozen=True)
class TextChunk:
    """A contiguous span ``text[start_char:end_char]`` of the chunked input."""

    index: int
    content: str
    start_char: int
    end_char: int


class TextChunker:
    """Split text into chunks of at most ``chunk_size`` characters.

    Consecutive chunks share at most ``chunk_overlap`` characters, so
    stripping the shared prefix from every chunk after the first rebuilds the
    input exactly.
    """

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0:
            raise ValueError("chunk_overlap must not be negative")
        if chunk_overlap >= chunk_size:
            raise ValueError(f"chunk_overlap ({chunk_overlap}) must be smaller than chunk_size ({chunk_size})")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = tuple(s for s in separators if s)

    @classmethod
    def from_settings(cls, settings) -> "TextChunker":
        return cls(chunk_size=settings.default_chunk_size, chunk_overlap=settings.default_chunk_overlap)

    def split(self, text: str) -> list[TextChunk]:
        if not text or not text.strip():
            raise EmptyContentError("No content to process after splitting")

        chunks: list[TextChunk] = []
        length = len(text)
        start = 0
        while start < length:
            end = self._find_end(text, start)
            chunks.append(TextChunk(index=len(chunks), content=text[start:end], start_char=start, end_char=end))
            if end >= length:
                break
            start = self._next_start(text, start, end)
        return chunks

    def _find_end(self, text: str, start: int) -> int:
        hard_end = min(start + self.chunk_size, len(text))
        if hard_end == len(text):
            return hard_end

        # The break must land past start + overlap so the next chunk advances
        window_start = start + self.chunk_overlap
        for separator in self.separators:
            pos = text.rfind(separator, window_start, hard_end)
            if pos != -1:
                return pos + len(separator)
        return hard_end

    def _next_start(self, text: str, start: int, end: int) -> int:
        if self.chunk_overlap == 0:
            return end
        overlap_start = max(end - self.chunk_overlap, start + 1)
        # Begin the overlap at a word start when the overlap region has one
        for pos in range(overlap_start, end):
            if text[pos].isspace():
                return pos + 1
        return overlap_start
