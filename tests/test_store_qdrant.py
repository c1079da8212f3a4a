"""Tests for the Qdrant vector store against qdrant-client's in-memory mode."""
import httpx
import pytest
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from ollama_rag.errors import ConfigurationError, DimensionMismatchError, PermanentError, TransientError
from ollama_rag.rag.retriever import Retriever
from ollama_rag.rag.store_qdrant import QdrantVectorStore, point_id

from tests.conftest import FakeEmbedder


@pytest.fixture
def store():
    return QdrantVectorStore(AsyncQdrantClient(":memory:"), collection="test")


class FailingClient:
    """Async client stand-in whose every call raises the given error."""

    def __init__(self, error):
        self.error = error

    def __getattr__(self, name):
        async def call(*args, **kwargs):
            raise self.error

        return call


def unexpected(status):
    return UnexpectedResponse(status, "error", b'{"status": "error"}', httpx.Headers())


def test_point_ids_are_stable():
    assert point_id("doc1_0") == point_id("doc1_0")
    assert point_id("doc1_0") != point_id("doc1_1")


@pytest.mark.asyncio
async def test_query_before_any_upsert_returns_nothing(store):
    assert await store.query_by_vector([1.0, 0.0], top_k=5) == []
    assert await store.delete_by_source("doc1") == 0


@pytest.mark.asyncio
async def test_upsert_query_and_delete_by_source(store):
    await store.upsert("doc1_0", [1.0, 0.0, 0.0], {"text": "alpha", "source": "doc1", "page": 1})
    await store.upsert("doc1_1", [0.0, 1.0, 0.0], {"text": "beta", "source": "doc1"})
    await store.upsert("doc2_0", [0.8, 0.2, 0.0], {"text": "gamma", "source": "doc2"})

    matches = await store.query_by_vector([1.0, 0.0, 0.0], top_k=2)
    assert [m.key for m in matches] == ["doc1_0", "doc2_0"]
    assert matches[0].metadata == {"text": "alpha", "source": "doc1", "page": 1}

    assert await store.delete_by_source("doc1") == 2
    matches = await store.query_by_vector([1.0, 0.0, 0.0], top_k=5)
    assert [m.key for m in matches] == ["doc2_0"]


@pytest.mark.asyncio
async def test_upsert_is_last_write_wins(store):
    await store.upsert("doc1_0", [1.0, 0.0], {"text": "old", "source": "doc1"})
    await store.upsert("doc1_0", [1.0, 0.0], {"text": "new", "source": "doc1"})

    matches = await store.query_by_vector([1.0, 0.0], top_k=5)
    assert [m.metadata["text"] for m in matches] == ["new"]


@pytest.mark.asyncio
async def test_dimension_mismatch(store):
    await store.upsert("doc1_0", [1.0, 0.0, 0.0], {"source": "doc1"})
    with pytest.raises(DimensionMismatchError):
        await store.upsert("doc1_1", [1.0, 0.0], {"source": "doc1"})
    with pytest.raises(DimensionMismatchError):
        await store.query_by_vector([1.0], top_k=1)


@pytest.mark.asyncio
async def test_connection_failure_is_transient():
    cause = ResponseHandlingException(httpx.ConnectError("[Errno 111] Connection refused"))
    store = QdrantVectorStore(FailingClient(cause), collection="test", url="http://127.0.0.1:9")

    with pytest.raises(TransientError) as exc_info:
        await store.upsert("doc_0", [1.0, 0.0], {"source": "doc"})

    assert exc_info.value.__cause__ is cause
    assert exc_info.value.context["collection"] == "test"
    assert exc_info.value.context["url"] == "http://127.0.0.1:9"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,expected",
    [(500, TransientError), (503, TransientError), (429, TransientError), (400, PermanentError), (404, PermanentError)],
)
async def test_unexpected_responses_are_classified(status, expected):
    store = QdrantVectorStore(FailingClient(unexpected(status)), collection="test")

    with pytest.raises(expected) as exc_info:
        await store.delete_by_source("doc")
    assert exc_info.value.context["status_code"] == status


@pytest.mark.asyncio
async def test_retrieval_surfaces_typed_store_errors():
    cause = ResponseHandlingException(httpx.ReadTimeout("timed out"))
    store = QdrantVectorStore(FailingClient(cause), collection="test")

    with pytest.raises(TransientError):
        await Retriever(store, embedder=FakeEmbedder()).retrieve("query")


def test_from_url_requires_a_url(monkeypatch):
    monkeypatch.setattr("ollama_rag.config.QDRANT_URL", "")
    with pytest.raises(ConfigurationError):
        QdrantVectorStore.from_url()
