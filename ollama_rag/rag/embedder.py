"""Embedding backends used by the RAG pipeline."""
from typing import List, Optional, Protocol

import structlog

from ollama_rag import config
from ollama_rag.llm_client import OllamaClient, ollama_client

logger = structlog.get_logger()


class Embedder(Protocol):
    """Turns text into a vector.

    Implementations raise ConfigurationError, TransientError or
    PermanentError and never retry on their own.
    """

    async def embed(self, text: str, model: Optional[str] = None) -> List[float]: ...


class OllamaEmbedder:
    """Embedder backed by the Ollama embeddings endpoint."""

    def __init__(self, client: OllamaClient = None, model: str = None):
        self.client = client or ollama_client
        self.model = model or config.EMBEDDING_MODEL

    async def embed(self, text: str, model: Optional[str] = None) -> List[float]:
        return await self.client.embeddings(prompt=text, model=model or self.model)
