"""Shared test fixtures: deterministic embedder, in-memory store, fake generation client."""
import zlib
from typing import Any, Dict, List, Optional, Sequence

import pytest

from ollama_rag.rag.store import VectorMatch

DIMENSION = 32


def bag_of_words(text: str, dimension: int = DIMENSION) -> List[float]:
    """Stable hashed bag-of-words vector (crc32 so it doesn't vary per process)."""
    vector = [0.0] * dimension
    for word in text.lower().split():
        vector[zlib.crc32(word.encode()) % dimension] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


class FakeEmbedder:
    """Embedder that records calls and can fail on a chosen call."""

    def __init__(self, dimension: int = DIMENSION, fail_on: Optional[Dict[int, Exception]] = None):
        self.dimension = dimension
        self.fail_on = fail_on or {}
        self.calls: List[str] = []

    async def embed(self, text: str, model: Optional[str] = None) -> List[float]:
        call_number = len(self.calls)
        self.calls.append(text)
        if call_number in self.fail_on:
            raise self.fail_on[call_number]
        return bag_of_words(text, self.dimension)


class MemoryVectorStore:
    """Dict-backed store with dot-product scoring; keeps insertion order for ties."""

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.upserts: List[str] = []

    async def upsert(self, key: str, vector: Sequence[float], metadata: Dict[str, Any]) -> None:
        self.upserts.append(key)
        self.records[key] = {"vector": list(vector), "metadata": dict(metadata)}

    async def query_by_vector(self, vector: Sequence[float], top_k: int) -> List[VectorMatch]:
        scored = [
            VectorMatch(
                key=key,
                score=sum(a * b for a, b in zip(vector, record["vector"])),
                metadata=dict(record["metadata"]),
            )
            for key, record in self.records.items()
        ]
        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:top_k]

    async def delete_by_source(self, source_id: str) -> int:
        doomed = [k for k, r in self.records.items() if r["metadata"].get("source") == source_id]
        for key in doomed:
            del self.records[key]
        return len(doomed)


class FakeGenerationClient:
    """Generation client that records every prompt it is asked to send."""

    generate_url = "http://ollama.test/api/generate"
    api_key_set = True

    def __init__(self, text: str = "generated", pieces: Sequence[str] = (), error: Exception = None):
        self.text = text
        self.pieces = list(pieces)
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.pieces_sent = 0
        self.stream_closed = False

    async def generate(self, prompt: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append({"prompt": prompt, "parameters": dict(parameters)})
        if self.error is not None:
            raise self.error
        return {
            "text": self.text,
            "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
            "raw": {"response": self.text},
        }

    async def generate_stream(self, prompt: str, parameters: Dict[str, Any]):
        self.calls.append({"prompt": prompt, "parameters": dict(parameters), "stream": True})
        try:
            for piece in self.pieces:
                self.pieces_sent += 1
                yield piece
            if self.error is not None:
                raise self.error
        finally:
            self.stream_closed = True


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def memory_store():
    return MemoryVectorStore()
