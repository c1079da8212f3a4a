"""Retriever for semantic search over ingested documents.

Handles:
- Query embedding generation
- Vector store top-K search
- Result ranking
- Context block formatting for prompt injection
"""
from typing import Any, Dict, List, Optional, Sequence
from dataclasses import dataclass, field
import structlog

from ollama_rag import config
from ollama_rag.errors import InvalidArgumentError
from ollama_rag.rag.embedder import Embedder, OllamaEmbedder
from ollama_rag.rag.store import VectorStore

logger = structlog.get_logger()

CONTEXT_HEADER = "Context:"
QUESTION_HEADER = "Question:"


@dataclass
class RetrievalResult:
    """A single retrieved chunk with metadata."""

    text: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    key: Optional[str] = None

    @property
    def source(self) -> Optional[str]:
        return self.metadata.get("source")

    @property
    def page(self) -> Optional[int]:
        return self.metadata.get("page")


def build_context_block(results: Sequence[RetrievalResult], question: str) -> str:
    """Frame retrieved text and the question for the generation prompt.

    The layout is fixed, prompts depend on it::

        Context:
        <text 1>
        <text 2>

        Question:
        <question>

    With no results the question is returned unchanged.
    """
    if not results:
        return question

    context = "\n".join(result.text for result in results)
    return f"{CONTEXT_HEADER}\n{context}\n\n{QUESTION_HEADER}\n{question}"


class Retriever:
    """Semantic retriever for RAG pipeline."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Optional[Embedder] = None,
        embedding_model: str = None,
        top_k: int = None,
    ):
        """Initialize the retriever.

        Args:
            vector_store: Store to search
            embedder: Embedding backend (default: Ollama)
            embedding_model: Embedding model name (default from config)
            top_k: Number of results to retrieve (default from config)
        """
        self.vector_store = vector_store
        self.embedder = embedder or OllamaEmbedder()
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.top_k = config.RETRIEVAL_TOP_K if top_k is None else top_k

        logger.info(
            "retriever_initialized",
            embedding_model=self.embedding_model,
            top_k=self.top_k,
        )

    async def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> List[RetrievalResult]:
        """Retrieve relevant chunks for a query.

        Args:
            query: User query text
            top_k: Number of results to return (overrides default)
            min_score: Drop results scoring below this value

        Returns:
            List of RetrievalResult objects, best first. Ties keep the
            store's order.

        Raises:
            InvalidArgumentError: If top_k is not positive
        """
        top_k = self.top_k if top_k is None else top_k
        if top_k <= 0:
            raise InvalidArgumentError(f"top_k must be positive, got {top_k}", {"top_k": top_k})

        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return []

        logger.info("retrieval_started", query_length=len(query), top_k=top_k)

        query_embedding = await self.embedder.embed(query, model=self.embedding_model)

        matches = await self.vector_store.query_by_vector(query_embedding, top_k)

        results = [
            RetrievalResult(
                text=match.metadata.get("text", ""),
                score=match.score,
                metadata=match.metadata,
                key=match.key,
            )
            for match in matches
        ]

        if min_score is not None:
            results = [r for r in results if r.score >= min_score]

        # list.sort is stable, so equal scores keep the store's order
        results.sort(key=lambda r: r.score, reverse=True)
        results = results[:top_k]

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            results_returned=len(results),
            top_score=results[0].score if results else None,
        )

        return results

    async def retrieve_context(self, query: str, top_k: Optional[int] = None) -> str:
        """Retrieve and frame context for a prompt.

        Returns:
            The framed prompt, or the query unchanged when nothing matched
        """
        results = await self.retrieve(query, top_k=top_k)
        return build_context_block(results, query)
