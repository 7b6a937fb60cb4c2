"""Text chunking for the retrieval pipeline.

Two strategies:
- Bounded: one unit per page/slide reported by extraction
- Size-bounded: fixed character windows with overlap, snapped back to the
  nearest sentence terminator
"""
from typing import Iterable, List, Optional, Tuple
from dataclasses import dataclass
import structlog

from course_rag import config
from course_rag.rag.models import DocumentType, RetrievalUnit
from course_rag.rag.normalizer import normalize

logger = structlog.get_logger()

SENTENCE_TERMINATORS = frozenset(".!?。！？\n")


@dataclass
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int


class TextChunker:
    """Character-based text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Size of each chunk in characters (default from config)
            chunk_overlap: Overlap between chunks in characters (default from config)
        """
        self.chunk_size = chunk_size if chunk_size is not None else config.CHUNK_SIZE
        self.chunk_overlap = (
            chunk_overlap if chunk_overlap is not None else config.CHUNK_OVERLAP
        )

        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise ValueError(f"Overlap must not be negative, got {self.chunk_overlap}")

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def split(self, text: str) -> List[TextChunk]:
        """Split normalized text into overlapping windows.

        Args:
            text: Text to chunk (already normalized)

        Returns:
            List of TextChunk objects
        """
        if not text or not text.strip():
            return []

        text_length = len(text)

        # Handle text shorter than chunk size
        if text_length <= self.chunk_size:
            return [
                TextChunk(
                    content=text.strip(),
                    char_start=0,
                    char_end=text_length,
                    chunk_index=0,
                )
            ]

        chunks = []
        start = 0

        while start < text_length:
            end = min(start + self.chunk_size, text_length)

            # Only snap when the window does not already reach the end
            if end < text_length:
                end = self._snap_to_sentence(text, start, end)

            content = text[start:end].strip()
            if content:
                chunks.append(
                    TextChunk(
                        content=content,
                        char_start=start,
                        char_end=end,
                        chunk_index=len(chunks),
                    )
                )

            if end >= text_length:
                break

            # Overlap may be as large as the window; always move forward
            start = max(start + 1, end - self.chunk_overlap)

        logger.debug(
            "text_chunked",
            text_length=text_length,
            chunk_count=len(chunks),
        )

        return chunks

    @staticmethod
    def _snap_to_sentence(text: str, start: int, end: int) -> int:
        """Return the cut position for the window ``[start, end)``.

        Cuts just after the last sentence terminator that lies strictly after
        ``start``; falls back to the naive end.
        """
        for i in range(end - 1, start, -1):
            if text[i] in SENTENCE_TERMINATORS:
                return i + 1
        return end

    def chunk_document(
        self,
        source: str,
        document_type: DocumentType,
        segments: Iterable[Tuple[int, str]],
    ) -> List[RetrievalUnit]:
        """Turn extracted segments of one document into retrieval units.

        Args:
            source: Document identifier (file name)
            document_type: Type of the document
            segments: ``(locator, raw_text)`` pairs from extraction

        Returns:
            List of RetrievalUnit objects without embeddings
        """
        document_type = DocumentType(document_type)
        if document_type.is_bounded:
            units = self._chunk_bounded(source, document_type, segments)
        else:
            units = self._chunk_by_size(source, document_type, segments)

        logger.debug(
            "document_chunked",
            source=source,
            document_type=document_type.value,
            unit_count=len(units),
        )
        return units

    def _chunk_bounded(
        self,
        source: str,
        document_type: DocumentType,
        segments: Iterable[Tuple[int, str]],
    ) -> List[RetrievalUnit]:
        units = []
        for locator, raw_text in segments:
            text = normalize(raw_text)
            if not text:
                continue

            if len(text) <= self.chunk_size:
                pieces = [text]
            else:
                pieces = [
                    c.content for c in self.split(normalize(raw_text, collapse_whitespace=True))
                ]

            for index, piece in enumerate(pieces):
                units.append(
                    RetrievalUnit(
                        id=RetrievalUnit.make_id(source, locator, index),
                        text=piece,
                        source=source,
                        locator=locator,
                        document_type=document_type,
                    )
                )
        return units

    def _chunk_by_size(
        self,
        source: str,
        document_type: DocumentType,
        segments: Iterable[Tuple[int, str]],
    ) -> List[RetrievalUnit]:
        text = normalize(
            "\n".join(raw for _, raw in segments if raw), collapse_whitespace=True
        )
        units = []
        for locator, chunk in enumerate(self.split(text), 1):
            units.append(
                RetrievalUnit(
                    id=RetrievalUnit.make_id(source, locator, 0),
                    text=chunk.content,
                    source=source,
                    locator=locator,
                    document_type=document_type,
                )
            )
        return units

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of TextChunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }


# Singleton instance for convenience
_chunker_instance: Optional[TextChunker] = None


def get_chunker() -> TextChunker:
    """Get a singleton text chunker instance.

    Returns:
        TextChunker instance with default config
    """
    global _chunker_instance
    if _chunker_instance is None:
        _chunker_instance = TextChunker()
    return _chunker_instance
