"""
Processors package for the Persona backend.

Text extraction from uploaded documents and chunking for embedding.
"""

from .chunker import TextChunk, TextChunker
from .document_parser import DocumentParser, ParsedBlock

__all__ = [
    "DocumentParser",
    "ParsedBlock",
    "TextChunk",
    "TextChunker",
]
