"""Text chunking with overlap for RAG pipeline.

Implements word-based windows so chunk boundaries never depend on a
tokenizer. Pure functions, no I/O.
"""
from typing import Iterable, List, Optional, Sequence
from dataclasses import dataclass
import structlog

from ollama_rag import config
from ollama_rag.errors import ConfigurationError

logger = structlog.get_logger()


@dataclass(frozen=True)
class TextBlock:
    """A passage extracted from a document, optionally tagged with its location."""

    text: str
    page: Optional[int] = None
    bbox: Optional[Sequence[float]] = None


@dataclass(frozen=True)
class Chunk:
    """A window of words from a document."""

    text: str
    index: int
    source_id: Optional[str] = None
    page: Optional[int] = None
    bbox: Optional[Sequence[float]] = None

    @property
    def key(self) -> str:
        """Storage key ``"{source_id}_{index}"``."""
        if self.source_id is None:
            raise ValueError("Chunk has no source_id")
        return chunk_key(self.source_id, self.index)


def chunk_key(source_id: str, index: int) -> str:
    """Build the composite vector store key for a chunk."""
    return f"{source_id}_{index}"


def validate_chunk_params(chunk_size: int, chunk_overlap: int) -> None:
    """Raise ConfigurationError unless 0 <= overlap < chunk_size."""
    if chunk_size <= 0:
        raise ConfigurationError(f"Chunk size must be positive, got {chunk_size}")
    if chunk_overlap < 0:
        raise ConfigurationError(f"Overlap must not be negative, got {chunk_overlap}")
    if chunk_overlap >= chunk_size:
        raise ConfigurationError(
            f"Overlap ({chunk_overlap}) must be less than "
            f"chunk size ({chunk_size})"
        )


def split_windows(words: Sequence[str], chunk_size: int, chunk_overlap: int) -> List[str]:
    """Split a word sequence into overlapping windows of joined text.

    The last window is the first one that reaches the final word, so no
    window is ever fully contained in its predecessor.
    """
    validate_chunk_params(chunk_size, chunk_overlap)

    windows = []
    step = chunk_size - chunk_overlap
    start = 0
    while start < len(words):
        windows.append(" ".join(words[start : start + chunk_size]))
        if start + chunk_size >= len(words):
            break
        start += step
    return windows


class TextChunker:
    """Word-based text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Words per chunk (default from config)
            chunk_overlap: Words shared by consecutive chunks (default from config)

        Raises:
            ConfigurationError: If the parameters can never advance the window
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap

        validate_chunk_params(self.chunk_size, self.chunk_overlap)

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def chunk_text(self, text: str, source_id: Optional[str] = None) -> List[Chunk]:
        """Split text into overlapping word windows.

        Args:
            text: Text to chunk
            source_id: Optional document id to stamp on each chunk

        Returns:
            List of Chunk objects in index order (empty for blank text)
        """
        words = text.split() if text else []
        if not words:
            return []

        windows = split_windows(words, self.chunk_size, self.chunk_overlap)
        chunks = [
            Chunk(text=window, index=i, source_id=source_id)
            for i, window in enumerate(windows)
        ]

        logger.debug(
            "text_chunked",
            word_count=len(words),
            chunk_count=len(chunks),
        )

        return chunks

    def chunk_blocks(
        self, blocks: Iterable[TextBlock], source_id: Optional[str] = None
    ) -> List[Chunk]:
        """Chunk each block separately, tagging chunks with the block's page/bbox.

        Chunks never span blocks. Indexes run across the whole document.
        """
        chunks: List[Chunk] = []
        for block in blocks:
            words = block.text.split() if block.text else []
            if not words:
                continue
            for window in split_windows(words, self.chunk_size, self.chunk_overlap):
                chunks.append(
                    Chunk(
                        text=window,
                        index=len(chunks),
                        source_id=source_id,
                        page=block.page,
                        bbox=tuple(block.bbox) if block.bbox is not None else None,
                    )
                )

        logger.debug("blocks_chunked", chunk_count=len(chunks))
        return chunks

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics (sizes in words)
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_words": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.text.split()) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_words": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }


def chunk_text(text: str, chunk_size: int, chunk_overlap: int) -> List[Chunk]:
    """Chunk text with explicit parameters (convenience function).

    Raises:
        ConfigurationError: If the parameters are invalid
    """
    return TextChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap).chunk_text(text)
