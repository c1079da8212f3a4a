"""FAISS vector store for semantic search.

Handles:
- Runtime embedding dimension detection
- Keyed upserts over an ID-mapped inner-product index (cosine similarity)
- Delete-by-source through the stored metadata
- Index and metadata persistence
"""
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import faiss
import numpy as np
import structlog

from ollama_rag import config
from ollama_rag.errors import ConfigurationError, DimensionMismatchError, RagError
from ollama_rag.rag.embedder import Embedder
from ollama_rag.rag.store import VectorMatch

logger = structlog.get_logger()


class FAISSVectorStore:
    """FAISS-based vector store with keyed upserts and metadata."""

    def __init__(
        self,
        index_dir: Path = None,
        collection: str = None,
        embedder: Optional[Embedder] = None,
        embedding_model: str = None,
    ):
        """Initialize the FAISS vector store.

        Args:
            index_dir: Directory to store index and metadata (default: DATA_DIR)
            collection: Collection name, used for file names (default from config)
            embedder: Optional embedder used to detect the model's dimension
            embedding_model: Embedding model name recorded with the index
        """
        self.index_dir = Path(index_dir or config.DATA_DIR)
        self.collection = collection or config.VECTOR_COLLECTION
        self.embedder = embedder
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL

        self.index_path = self.index_dir / f"{self.collection}.index"
        self.metadata_path = self.index_dir / f"{self.collection}.json"

        self.index: Optional[faiss.Index] = None
        self.dimension: Optional[int] = None

        # key -> faiss id, and faiss id -> {"key", "metadata"}
        self._ids: Dict[str, int] = {}
        self._records: Dict[int, Dict[str, Any]] = {}
        self._next_id = 0

        logger.info(
            "faiss_store_initialized",
            index_dir=str(self.index_dir),
            collection=self.collection,
        )

    def __len__(self) -> int:
        return len(self._ids)

    async def get_embedding_dimension(self) -> int:
        """Detect embedding dimension by embedding a test string.

        Raises:
            ConfigurationError: If no embedder was configured
        """
        if self.embedder is None:
            raise ConfigurationError(
                "Cannot detect embedding dimension without an embedder",
                {"collection": self.collection},
            )

        logger.info("detecting_embedding_dimension", model=self.embedding_model)
        embedding = await self.embedder.embed("test", model=self.embedding_model)
        dimension = len(embedding)
        logger.info("embedding_dimension_detected", dimension=dimension)
        return dimension

    def init_new_index(self, dimension: int) -> None:
        """Initialize a new, empty FAISS index of the given dimension."""
        if dimension <= 0:
            raise ConfigurationError(f"Invalid embedding dimension {dimension}")

        self.dimension = dimension
        # Exact search; vectors are L2-normalised so inner product is cosine similarity
        self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))
        self._ids = {}
        self._records = {}
        self._next_id = 0

        logger.info(
            "faiss_index_initialized",
            dimension=self.dimension,
            index_type="IndexIDMap2(IndexFlatIP)",
        )

    def _as_matrix(self, vector: Sequence[float], key: str = None) -> np.ndarray:
        matrix = np.array([vector], dtype=np.float32)
        if matrix.ndim != 2:
            raise ConfigurationError("Vector must be a flat sequence of numbers", {"key": key})
        if self.dimension is not None and matrix.shape[1] != self.dimension:
            raise DimensionMismatchError(
                self.dimension,
                matrix.shape[1],
                {"collection": self.collection, "key": key},
            )
        faiss.normalize_L2(matrix)
        return matrix

    async def upsert(self, key: str, vector: Sequence[float], metadata: Dict[str, Any]) -> None:
        """Insert or overwrite the record stored under ``key``.

        The first vector written to an empty store fixes its dimension.

        Raises:
            DimensionMismatchError: If the vector length differs from the index
        """
        if self.index is None:
            self.init_new_index(len(vector))

        matrix = self._as_matrix(vector, key)

        vector_id = self._ids.get(key)
        if vector_id is not None:
            self.index.remove_ids(np.array([vector_id], dtype=np.int64))
        else:
            vector_id = self._next_id
            self._next_id += 1

        self.index.add_with_ids(matrix, np.array([vector_id], dtype=np.int64))
        self._ids[key] = vector_id
        self._records[vector_id] = {"key": key, "metadata": dict(metadata)}

        logger.debug("vector_upserted", key=key, total_vectors=self.index.ntotal)

    async def query_by_vector(self, vector: Sequence[float], top_k: int) -> List[VectorMatch]:
        """Return up to ``top_k`` records ordered by cosine similarity, best first."""
        if self.index is None or self.index.ntotal == 0 or top_k <= 0:
            return []

        query = self._as_matrix(vector)
        k = min(top_k, self.index.ntotal)
        scores, ids = self.index.search(query, k)

        matches = []
        for vector_id, score in zip(ids[0].tolist(), scores[0].tolist()):
            record = self._records.get(vector_id)
            if vector_id < 0 or record is None:
                continue
            matches.append(
                VectorMatch(
                    key=record["key"],
                    score=float(score),
                    metadata=dict(record["metadata"]),
                )
            )

        logger.info(
            "vector_search_completed",
            top_k=top_k,
            results_found=len(matches),
        )

        return matches

    async def delete_by_source(self, source_id: str) -> int:
        """Remove every record whose metadata ``source`` equals ``source_id``."""
        doomed = [
            vector_id
            for vector_id, record in self._records.items()
            if record["metadata"].get("source") == source_id
        ]
        if not doomed:
            logger.debug("delete_by_source_nothing_to_delete", source_id=source_id)
            return 0

        self.index.remove_ids(np.array(doomed, dtype=np.int64))
        for vector_id in doomed:
            record = self._records.pop(vector_id)
            self._ids.pop(record["key"], None)

        logger.info("vectors_deleted", source_id=source_id, count=len(doomed))
        return len(doomed)

    async def save(self) -> None:
        """Save FAISS index and metadata to disk.

        Raises:
            RagError: If there is nothing to save or writing fails
        """
        if self.index is None:
            raise RagError("No index to save. Upsert a vector or load an index first.")

        self.index_dir.mkdir(parents=True, exist_ok=True)

        payload = {
            "collection": self.collection,
            "embedding_model": self.embedding_model,
            "embedding_dimension": self.dimension,
            "index_type": "IndexIDMap2(IndexFlatIP)",
            "vector_count": self.index.ntotal,
            "next_id": self._next_id,
            "records": {str(vector_id): record for vector_id, record in self._records.items()},
        }

        try:
            faiss.write_index(self.index, str(self.index_path))
            with open(self.metadata_path, "w") as f:
                json.dump(payload, f, indent=2)
        except (OSError, RuntimeError) as e:
            raise RagError(f"Failed to save FAISS index: {e}", {"path": str(self.index_path)}) from e

        logger.info(
            "faiss_index_saved",
            index_path=str(self.index_path),
            vector_count=self.index.ntotal,
        )

    async def load(self) -> None:
        """Load an existing FAISS index from disk.

        Validates dimension compatibility with the current embedding model
        when an embedder is configured.

        Raises:
            FileNotFoundError: If index files don't exist
            DimensionMismatchError: If the model's dimension changed
        """
        if not self.index_path.exists():
            raise FileNotFoundError(f"Index not found: {self.index_path}")

        if not self.metadata_path.exists():
            raise FileNotFoundError(f"Metadata not found: {self.metadata_path}")

        with open(self.metadata_path, "r") as f:
            payload = json.load(f)

        stored_dim = payload["embedding_dimension"]

        if self.embedder is not None:
            current_dim = await self.get_embedding_dimension()
            if current_dim != stored_dim:
                raise DimensionMismatchError(
                    stored_dim,
                    current_dim,
                    {
                        "collection": self.collection,
                        "stored_model": payload.get("embedding_model"),
                        "current_model": self.embedding_model,
                        "hint": "rebuild the index",
                    },
                )

        self.index = faiss.read_index(str(self.index_path))
        self.dimension = stored_dim
        self._next_id = payload.get("next_id", 0)
        self._records = {int(vector_id): record for vector_id, record in payload["records"].items()}
        self._ids = {record["key"]: vector_id for vector_id, record in self._records.items()}

        logger.info(
            "faiss_index_loaded",
            dimension=self.dimension,
            vector_count=self.index.ntotal,
            model=payload.get("embedding_model"),
        )

    async def init_or_load(self) -> None:
        """Load the index from disk if present, otherwise start a new one.

        A new index needs an embedder to detect the dimension; without one
        the index is created lazily on the first upsert.
        """
        if self.index_path.exists() and self.metadata_path.exists():
            logger.info("existing_index_detected", path=str(self.index_path))
            await self.load()
        elif self.embedder is not None:
            logger.info("no_index_found_initializing_new")
            self.init_new_index(await self.get_embedding_dimension())

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store."""
        if self.index is None:
            return {
                "initialized": False,
                "vector_count": 0,
                "dimension": None,
            }

        return {
            "initialized": True,
            "collection": self.collection,
            "vector_count": self.index.ntotal,
            "dimension": self.dimension,
            "embedding_model": self.embedding_model,
            "index_exists_on_disk": self.index_path.exists(),
        }
