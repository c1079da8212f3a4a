"""Ingest pipeline for indexing documents.

Orchestrates:
- Text chunking
- Embedding generation
- Keyed vector upserts (``"{source_id}_{index}"``)
- Deletion of every chunk belonging to a document

Re-ingesting a document overwrites chunks with the same index. If the new
version produces fewer chunks, the trailing records of the old version stay
in the store unless ``replace=True`` is passed or ``delete_document`` is
called first.
"""
import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

import structlog

from ollama_rag import config
from ollama_rag.errors import PartialIngestionError
from ollama_rag.rag.chunker import Chunk, TextBlock, TextChunker, chunk_key
from ollama_rag.rag.embedder import Embedder, OllamaEmbedder
from ollama_rag.rag.pdf import extract_blocks
from ollama_rag.rag.store import VectorStore

logger = structlog.get_logger()

SUPPORTED_SUFFIXES = (".txt", ".md", ".pdf")


def chunk_metadata(chunk: Chunk, source_id: str) -> Dict[str, Any]:
    """Metadata payload stored next to a chunk's vector."""
    metadata: Dict[str, Any] = {"text": chunk.text, "source": source_id}
    if chunk.page is not None:
        metadata["page"] = chunk.page
    if chunk.bbox is not None:
        metadata["bbox"] = list(chunk.bbox)
    return metadata


def _committed_through(committed: Set[int]) -> int:
    """Highest index i such that chunks 0..i were all stored (-1 if none)."""
    i = -1
    while i + 1 in committed:
        i += 1
    return i


class IngestPipeline:
    """Pipeline for ingesting documents into a vector store."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Optional[Embedder] = None,
        embedding_model: str = None,
        chunk_size: int = None,
        chunk_overlap: int = None,
        concurrency: int = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            vector_store: Destination store
            embedder: Embedding backend (default: Ollama)
            embedding_model: Embedding model name (default from config)
            chunk_size: Words per chunk (default from config)
            chunk_overlap: Words shared by consecutive chunks (default from config)
            concurrency: Max chunks embedded/upserted at once (default from config)
        """
        self.vector_store = vector_store
        self.embedder = embedder or OllamaEmbedder()
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.chunker = TextChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        self.concurrency = max(1, concurrency or config.INGEST_CONCURRENCY)

        self.stats = self._empty_stats()

        logger.info(
            "ingest_pipeline_initialized",
            embedding_model=self.embedding_model,
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
            concurrency=self.concurrency,
        )

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "files_processed": 0,
            "files_failed": 0,
            "chunks_created": 0,
            "embeddings_generated": 0,
        }

    async def _store_chunk(self, source_id: str, chunk: Chunk) -> None:
        vector = await self.embedder.embed(chunk.text, model=self.embedding_model)
        self.stats["embeddings_generated"] += 1
        await self.vector_store.upsert(
            chunk_key(source_id, chunk.index),
            vector,
            chunk_metadata(chunk, source_id),
        )

    async def _store_sequential(self, source_id: str, chunks: List[Chunk]) -> None:
        committed: Set[int] = set()
        for chunk in chunks:
            try:
                await self._store_chunk(source_id, chunk)
            except Exception as e:
                raise self._partial_failure(source_id, chunk.index, committed, len(chunks), e) from e
            committed.add(chunk.index)

    async def _store_concurrent(self, source_id: str, chunks: List[Chunk]) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)
        committed: Set[int] = set()
        failures: Dict[int, Exception] = {}

        async def worker(chunk: Chunk) -> None:
            async with semaphore:
                # Don't start new chunks once one has failed
                if failures:
                    return
                try:
                    await self._store_chunk(source_id, chunk)
                except Exception as e:
                    failures[chunk.index] = e
                    return
                committed.add(chunk.index)

        await asyncio.gather(*(worker(chunk) for chunk in chunks))

        if failures:
            failed_index = min(failures)
            cause = failures[failed_index]
            raise self._partial_failure(source_id, failed_index, committed, len(chunks), cause) from cause

    def _partial_failure(
        self,
        source_id: str,
        failed_index: int,
        committed: Set[int],
        total: int,
        cause: Exception,
    ) -> PartialIngestionError:
        error = PartialIngestionError(
            source_id=source_id,
            failed_index=failed_index,
            committed=len(committed),
            total=total,
            committed_through=_committed_through(committed),
            cause=cause,
        )
        logger.error(
            "ingestion_partially_failed",
            error=str(cause),
            **error.context,
        )
        return error

    async def ingest_chunks(self, chunks: List[Chunk], source_id: str, replace: bool = False) -> int:
        """Embed and store already-chunked content.

        Args:
            chunks: Chunks in index order
            source_id: Document id used for keys and metadata
            replace: Delete the document's existing records first

        Returns:
            Number of chunks stored

        Raises:
            PartialIngestionError: If any chunk's embed or upsert failed
        """
        if replace:
            await self.delete_document(source_id)

        if not chunks:
            logger.warning("no_chunks_created", source_id=source_id)
            return 0

        if self.concurrency > 1:
            await self._store_concurrent(source_id, chunks)
        else:
            await self._store_sequential(source_id, chunks)

        self.stats["chunks_created"] += len(chunks)

        logger.info(
            "document_ingested",
            source_id=source_id,
            chunks_created=len(chunks),
        )

        return len(chunks)

    async def ingest(self, content: str, source_id: str, replace: bool = False) -> int:
        """Chunk, embed and store a text document.

        Returns:
            Number of chunks stored (0 for blank content)
        """
        chunks = self.chunker.chunk_text(content, source_id=source_id)
        return await self.ingest_chunks(chunks, source_id, replace=replace)

    async def ingest_blocks(
        self, blocks: Iterable[TextBlock], source_id: str, replace: bool = False
    ) -> int:
        """Ingest page/bbox tagged blocks; each chunk keeps its block's location."""
        chunks = self.chunker.chunk_blocks(blocks, source_id=source_id)
        return await self.ingest_chunks(chunks, source_id, replace=replace)

    async def delete_document(self, source_id: str) -> int:
        """Remove every stored chunk of a document.

        Safe for sources that were never ingested.

        Returns:
            Number of records removed
        """
        removed = await self.vector_store.delete_by_source(source_id)
        logger.info("document_deleted", source_id=source_id, removed=removed)
        return removed

    async def ingest_file(
        self, file_path: Path, source_id: str = None, replace: bool = False
    ) -> int:
        """Ingest a plain-text, markdown or PDF file.

        PDFs are ingested block by block, so each chunk keeps its page and
        bounding box.

        Args:
            file_path: Path to a .txt, .md or .pdf file
            source_id: Document id (default: the file name)
            replace: Delete the document's existing records first

        Returns:
            Number of chunks stored
        """
        file_path = Path(file_path)
        if file_path.suffix.lower() not in SUPPORTED_SUFFIXES:
            raise ValueError(f"Unsupported file type: {file_path.suffix}")

        logger.info("ingesting_file", path=str(file_path))

        source_id = source_id or file_path.name
        if file_path.suffix.lower() == ".pdf":
            blocks = await asyncio.to_thread(extract_blocks, file_path)
            return await self.ingest_blocks(blocks, source_id, replace=replace)

        content = file_path.read_text(encoding="utf-8")
        return await self.ingest(content, source_id, replace=replace)

    async def ingest_paths(
        self,
        files: Sequence[Path],
        base_dir: Path = None,
        replace: bool = False,
        progress_callback: Callable[[int, int, Path], None] = None,
    ) -> Dict[str, Any]:
        """Ingest several files, continuing past per-file failures.

        Args:
            files: Files to ingest
            base_dir: If given, source ids are paths relative to it
            replace: Delete each document's existing records first
            progress_callback: Optional callback function(current, total, file_path)

        Returns:
            Dictionary with ingestion statistics
        """
        self.stats = self._empty_stats()

        for idx, file_path in enumerate(files, 1):
            file_path = Path(file_path)
            if progress_callback:
                progress_callback(idx, len(files), file_path)

            source_id = (
                file_path.relative_to(base_dir).as_posix() if base_dir else file_path.name
            )
            try:
                await self.ingest_file(file_path, source_id=source_id, replace=replace)
                self.stats["files_processed"] += 1
            except (PartialIngestionError, OSError, ValueError) as e:
                logger.error(
                    "file_ingestion_failed",
                    path=str(file_path),
                    error=str(e),
                )
                self.stats["files_failed"] += 1
                # Continue with next file instead of failing entirely

        logger.info("ingest_paths_completed", stats=self.stats)

        return self.stats


def discover_files(directory: Path) -> List[Path]:
    """Find ingestible files under a directory, sorted for stable ordering.

    Raises:
        FileNotFoundError: If the directory doesn't exist
    """
    directory = Path(directory)
    if not directory.exists():
        raise FileNotFoundError(f"Directory not found: {directory}")

    files = sorted(
        p for p in directory.rglob("*") if p.is_file() and p.suffix.lower() in SUPPORTED_SUFFIXES
    )

    logger.info("files_discovered", count=len(files), directory=str(directory))
    return files
