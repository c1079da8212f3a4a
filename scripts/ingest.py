#!/usr/bin/env python
"""Ingest documents into the vector store, or delete them.

Usage:
    python scripts/ingest.py docs/                 # Ingest .txt/.md/.pdf files under docs/
    python scripts/ingest.py docs/ --replace       # Drop each document's old chunks first
    python scripts/ingest.py --delete guide.md     # Remove a document's chunks
"""
import argparse
import asyncio
import sys
import time
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from ollama_rag import config
from ollama_rag.errors import RagError
from ollama_rag.log import configure_logging
from ollama_rag.rag.ingest import IngestPipeline, discover_files
from ollama_rag.rag.embedder import OllamaEmbedder
from ollama_rag.rag.store_faiss import FAISSVectorStore
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Prints one line per file and a closing summary."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.started = time.monotonic()

    def update(self, current: int, total: int, file_path: Path):
        if self.verbose:
            print(f"  [{current}/{total}] {file_path}")

    def finish(self, stats: dict):
        elapsed = time.monotonic() - self.started
        print(
            f"  {stats['files_processed']} file(s) ingested, {stats['files_failed']} failed, "
            f"{stats['chunks_created']} chunk(s) stored in {elapsed:.1f}s"
        )
        if stats["files_failed"]:
            print("  Some files failed to ingest. Check logs for details.")


async def main():
    """Main entry point for ingest script."""
    parser = argparse.ArgumentParser(
        description="Ingest documents for the RAG pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "directory",
        type=Path,
        nargs="?",
        help="Directory of .txt, .md or .pdf files to ingest",
    )
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Delete each document's existing chunks before ingesting",
    )
    parser.add_argument(
        "--delete",
        metavar="SOURCE_ID",
        nargs="+",
        help="Delete the chunks of these source ids instead of ingesting",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )

    args = parser.parse_args()
    if not args.directory and not args.delete:
        parser.error("a directory or --delete is required")

    configure_logging()
    progress = ProgressReporter(verbose=args.verbose)

    embedder = OllamaEmbedder()
    store = FAISSVectorStore(embedder=embedder)
    pipeline = IngestPipeline(vector_store=store, embedder=embedder)

    try:
        await store.init_or_load()

        if args.delete:
            for source_id in args.delete:
                removed = await pipeline.delete_document(source_id)
                print(f"  {source_id}: {removed} chunk(s) removed")
            if store.index is not None:
                await store.save()
            return

        print("\nConfiguration:")
        print(f"   Directory:        {args.directory}")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   Chunk size:       {config.CHUNK_SIZE} words")
        print(f"   Chunk overlap:    {config.CHUNK_OVERLAP} words")
        print(f"   Collection:       {config.VECTOR_COLLECTION}")

        files = discover_files(args.directory)

        stats = await pipeline.ingest_paths(
            files,
            base_dir=args.directory,
            replace=args.replace,
            progress_callback=progress.update,
        )
        if store.index is not None:
            await store.save()
        progress.finish(stats)

        if stats["files_failed"] > 0:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\nIngestion cancelled by user.\n")
        sys.exit(1)

    except (FileNotFoundError, RagError) as e:
        print(f"\nError: {e}\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
