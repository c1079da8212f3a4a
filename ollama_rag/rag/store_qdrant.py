"""Qdrant vector store backend."""
import uuid
from typing import Any, Awaitable, Dict, List, Optional, Sequence, TypeVar

import structlog
from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qm
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from ollama_rag import config
from ollama_rag.errors import (
    ConfigurationError,
    DimensionMismatchError,
    PermanentError,
    RagError,
    TransientError,
)
from ollama_rag.rag.store import VectorMatch

logger = structlog.get_logger()

T = TypeVar("T")


def point_id(key: str) -> str:
    """Qdrant needs UUID or integer point ids; derive a stable UUIDv5 from the key."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, key))


def _source_filter(source_id: str) -> qm.Filter:
    return qm.Filter(
        must=[qm.FieldCondition(key="source", match=qm.MatchValue(value=source_id))]
    )


def classify_qdrant_error(error: Exception, context: Dict[str, Any]) -> RagError:
    """Map a qdrant-client failure onto the pipeline's error taxonomy.

    Args:
        error: Exception raised by qdrant-client
        context: Store context to attach

    Returns:
        TransientError for connection failures, 429 and 5xx; PermanentError otherwise
    """
    if isinstance(error, ResponseHandlingException):
        return TransientError(f"Qdrant request failed: {error}", context)

    if isinstance(error, UnexpectedResponse):
        status = error.status_code
        context = {**context, "status_code": status}
        if status is None or status == 429 or status >= 500:
            return TransientError(f"Qdrant returned status {status}", context)
        return PermanentError(f"Qdrant rejected the request (status {status})", context)

    return PermanentError(f"Qdrant request failed: {error}", context)


class QdrantVectorStore:
    """Vector store over a single Qdrant collection (cosine distance)."""

    def __init__(self, client: AsyncQdrantClient, collection: str = None, url: str = None):
        self.client = client
        self.collection = collection or config.VECTOR_COLLECTION
        self.url = url
        self.dimension: Optional[int] = None

    @classmethod
    def from_url(cls, url: str = None, collection: str = None) -> "QdrantVectorStore":
        url = url or config.QDRANT_URL
        if not url:
            raise ConfigurationError("Qdrant URL is not set", {"collection": collection})
        return cls(AsyncQdrantClient(url=url), collection=collection, url=url)

    @classmethod
    def from_local_path(cls, path: str, collection: str = None) -> "QdrantVectorStore":
        return cls(AsyncQdrantClient(path=path), collection=collection, url=path)

    def _context(self, operation: str) -> Dict[str, Any]:
        return {"collection": self.collection, "url": self.url, "operation": operation}

    async def _call(self, operation: str, request: Awaitable[T]) -> T:
        try:
            return await request
        except (ResponseHandlingException, UnexpectedResponse) as e:
            context = self._context(operation)
            logger.error("qdrant_request_failed", error=str(e), **context)
            raise classify_qdrant_error(e, context) from e

    async def _exists(self) -> bool:
        response = await self._call("get_collections", self.client.get_collections())
        return self.collection in {c.name for c in response.collections}

    async def _stored_dimension(self) -> Optional[int]:
        if self.dimension is None and await self._exists():
            info = await self._call("get_collection", self.client.get_collection(self.collection))
            self.dimension = info.config.params.vectors.size
        return self.dimension

    async def ensure_collection(self, vector_size: int) -> None:
        """Create the collection on first use, then enforce its dimension."""
        dimension = await self._stored_dimension()
        if dimension is None:
            await self._call(
                "create_collection",
                self.client.create_collection(
                    collection_name=self.collection,
                    vectors_config=qm.VectorParams(size=vector_size, distance=qm.Distance.COSINE),
                ),
            )
            self.dimension = vector_size
            logger.info("qdrant_collection_created", collection=self.collection, dimension=vector_size)
        elif dimension != vector_size:
            raise DimensionMismatchError(dimension, vector_size, {"collection": self.collection})

    async def upsert(self, key: str, vector: Sequence[float], metadata: Dict[str, Any]) -> None:
        await self.ensure_collection(len(vector))
        point = qm.PointStruct(
            id=point_id(key),
            vector=[float(x) for x in vector],
            payload={**metadata, "key": key},
        )
        await self._call("upsert", self.client.upsert(collection_name=self.collection, points=[point]))
        logger.debug("vector_upserted", key=key, collection=self.collection)

    async def query_by_vector(self, vector: Sequence[float], top_k: int) -> List[VectorMatch]:
        dimension = await self._stored_dimension()
        if dimension is None or top_k <= 0:
            return []
        if len(vector) != dimension:
            raise DimensionMismatchError(dimension, len(vector), {"collection": self.collection})

        res = await self._call(
            "query_points",
            self.client.query_points(
                collection_name=self.collection,
                query=[float(x) for x in vector],
                limit=top_k,
                with_payload=True,
            ),
        )

        matches = []
        for p in res.points:
            payload = dict(p.payload or {})
            key = payload.pop("key", None) or str(p.id)
            matches.append(VectorMatch(key=key, score=float(p.score), metadata=payload))

        logger.info("vector_search_completed", top_k=top_k, results_found=len(matches))
        return matches

    async def delete_by_source(self, source_id: str) -> int:
        if not await self._exists():
            return 0

        response = await self._call(
            "count",
            self.client.count(
                collection_name=self.collection,
                count_filter=_source_filter(source_id),
                exact=True,
            ),
        )
        count = response.count
        if count:
            await self._call(
                "delete",
                self.client.delete(
                    collection_name=self.collection,
                    points_selector=qm.FilterSelector(filter=_source_filter(source_id)),
                ),
            )
            logger.info("vectors_deleted", source_id=source_id, count=count)
        return count
