"""Text chunking with overlap for RAG pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
"""
from dataclasses import dataclass
from typing import Iterator, List

import structlog

from article_rag import config
from article_rag.errors import ConfigurationError

logger = structlog.get_logger()


@dataclass
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int


class ChunkSequence:
    """Lazy sliding-window view over a text.

    Each iteration starts again from the beginning, so the sequence can be
    walked as many times as needed without holding every chunk in memory.
    """

    def __init__(self, text: str, chunk_size: int, chunk_overlap: int):
        self.text = text
        self.chunk_size = chunk_size
        self.step = chunk_size - chunk_overlap

    def __iter__(self) -> Iterator[TextChunk]:
        text_length = len(self.text)
        for chunk_index, start in enumerate(range(0, text_length, self.step)):
            end = min(start + self.chunk_size, text_length)
            yield TextChunk(
                content=self.text[start:end],
                char_start=start,
                char_end=end,
                chunk_index=chunk_index,
            )
            if end == text_length:
                break

    def __len__(self) -> int:
        text_length = len(self.text)
        if text_length == 0:
            return 0
        if text_length <= self.chunk_size:
            return 1
        overlap = self.chunk_size - self.step
        return -(-(text_length - overlap) // self.step)


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

        Raises:
            ConfigurationError: If overlap is not smaller than chunk size
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = (
            config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        )

        # A non-positive step would never advance
        if self.chunk_size <= 0:
            raise ConfigurationError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise ConfigurationError(
                f"Overlap must not be negative, got {self.chunk_overlap}"
            )
        if self.chunk_overlap >= self.chunk_size:
            raise ConfigurationError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )

        logger.info(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def iter_chunks(self, text: str) -> ChunkSequence:
        """Lazily split text into overlapping chunks.

        The last chunk is cut at the end of the text rather than padded.
        """
        return ChunkSequence(text or "", self.chunk_size, self.chunk_overlap)

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into overlapping chunks.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects
        """
        chunks = list(self.iter_chunks(text))

        logger.debug(
            "text_chunked",
            text_length=len(text or ""),
            chunk_count=len(chunks),
        )

        return chunks

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
