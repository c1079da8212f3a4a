"""Tests for the generation orchestrator and its lifecycle hooks."""
import asyncio

import pytest

from ollama_rag.errors import ConfigurationError, GenerationError, InvalidArgumentError, PermanentError, TransientError
from ollama_rag.events import AFTER_GENERATION, BEFORE_GENERATION, GENERATION_ERROR, LifecycleHooks
from ollama_rag.generation import GenerationOptions, GenerationOrchestrator
from ollama_rag.rag.retriever import Retriever
from ollama_rag.rag.store import VectorMatch

from tests.conftest import FakeEmbedder, FakeGenerationClient, MemoryVectorStore

MODELS = ("llama2", "mistral", "gemma")
DEFAULTS = {"model": "llama2", "temperature": 0.7, "max_tokens": 512, "top_p": 0.9}


class OneHitStore:
    async def upsert(self, key, vector, metadata):
        pass

    async def query_by_vector(self, vector, top_k):
        return [VectorMatch(key="doc_0", score=0.8, metadata={"text": "X is Y", "source": "doc"})]

    async def delete_by_source(self, source_id):
        return 0


def orchestrator(client, retriever=None, **kwargs):
    return GenerationOrchestrator(
        client=client,
        retriever=retriever,
        defaults=kwargs.pop("defaults", DEFAULTS),
        supported_models=MODELS,
        **kwargs,
    )


def record_events(orch):
    events = []
    for name in (BEFORE_GENERATION, AFTER_GENERATION, GENERATION_ERROR):
        orch.on(name, events.append)
    return events


@pytest.mark.asyncio
async def test_prompt_is_sent_unmodified_without_retriever():
    client = FakeGenerationClient()
    await orchestrator(client).generate("Explain X")
    assert client.calls[0]["prompt"] == "Explain X"


@pytest.mark.asyncio
async def test_context_is_prepended_when_retrieval_hits():
    client = FakeGenerationClient()
    retriever = Retriever(OneHitStore(), embedder=FakeEmbedder())

    result = await orchestrator(client, retriever).generate("Explain X")

    assert client.calls[0]["prompt"] == "Context:\nX is Y\n\nQuestion:\nExplain X"
    assert result.prompt == client.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_no_empty_context_section_when_retrieval_misses():
    client = FakeGenerationClient()
    retriever = Retriever(MemoryVectorStore(), embedder=FakeEmbedder())

    await orchestrator(client, retriever).generate("Explain X")

    assert client.calls[0]["prompt"] == "Explain X"


@pytest.mark.asyncio
async def test_unsupported_model_fails_before_any_call():
    client = FakeGenerationClient()
    embedder = FakeEmbedder()
    retriever = Retriever(OneHitStore(), embedder=embedder)

    with pytest.raises(ConfigurationError):
        await orchestrator(client, retriever).generate("Explain X", {"model": "gpt-4"})

    assert client.calls == []
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_unsupported_default_model_fails_too():
    client = FakeGenerationClient()
    orch = orchestrator(client, defaults={"model": "not-a-model"})
    with pytest.raises(ConfigurationError):
        await orch.generate("hi")
    assert client.calls == []


@pytest.mark.asyncio
async def test_caller_options_override_defaults():
    client = FakeGenerationClient()
    orch = orchestrator(client)

    await orch.generate("hi", {"model": "mistral", "temperature": 0.1, "stop": ["END"], "seed": 7, "top_p": None})

    params = client.calls[0]["parameters"]
    assert params["model"] == "mistral"
    assert params["temperature"] == 0.1
    assert params["stop"] == ["END"]
    assert params["seed"] == 7
    assert params["max_tokens"] == 512
    assert params["top_p"] == 0.9


@pytest.mark.asyncio
async def test_options_model_instance_is_accepted():
    client = FakeGenerationClient()
    await orchestrator(client).generate("hi", GenerationOptions(model="gemma", format="json"))
    assert client.calls[0]["parameters"]["model"] == "gemma"
    assert client.calls[0]["parameters"]["format"] == "json"


@pytest.mark.asyncio
async def test_invalid_option_types_are_rejected():
    client = FakeGenerationClient()
    with pytest.raises(InvalidArgumentError):
        await orchestrator(client).generate("hi", {"temperature": "hot"})
    assert client.calls == []


@pytest.mark.asyncio
async def test_successful_generation_returns_text_and_usage():
    orch = orchestrator(FakeGenerationClient(text="answer"))

    result = await orch.generate("q")
    assert result.text == "answer"
    assert result.usage["total_tokens"] == 5
    assert result.model == "llama2"

    assert await orch.generate_text("q") == "answer"
    assert await orch.generate_with_tokens("q") == {
        "text": "answer",
        "tokens": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
    }


@pytest.mark.asyncio
async def test_lifecycle_events_on_success():
    orch = orchestrator(FakeGenerationClient(text="answer"))
    events = record_events(orch)

    await orch.generate("q", {"temperature": 0.3})

    assert [e.name for e in events] == [BEFORE_GENERATION, AFTER_GENERATION]
    assert events[0].prompt == "q"
    assert events[0].options == {"temperature": 0.3}
    assert events[1].response.text == "answer"
    assert events[1].context["state"] == "completed"


@pytest.mark.asyncio
async def test_failure_emits_error_event_and_wraps_cause():
    cause = TransientError("Ollama returned status 503")
    orch = orchestrator(FakeGenerationClient(error=cause))
    events = record_events(orch)

    with pytest.raises(GenerationError) as exc_info:
        await orch.generate("q", {"model": "mistral"})

    error = exc_info.value
    assert error.cause is cause
    assert error.__cause__ is cause
    assert error.retryable is True
    assert error.context["url"] == FakeGenerationClient.generate_url
    assert error.context["model"] == "mistral"
    assert error.context["prompt"] == "q"
    assert error.context["api_key_set"] is True

    assert [e.name for e in events] == [BEFORE_GENERATION, GENERATION_ERROR]
    assert events[1].error is cause
    assert events[1].context["state"] == "failed"


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retryable():
    orch = orchestrator(FakeGenerationClient(error=PermanentError("400")))
    with pytest.raises(GenerationError) as exc_info:
        await orch.generate("q")
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_failing_handler_does_not_change_outcome():
    orch = orchestrator(FakeGenerationClient(text="answer"))

    def broken(event):
        raise RuntimeError("observer bug")

    orch.on(BEFORE_GENERATION, broken)
    orch.on(AFTER_GENERATION, broken)

    assert (await orch.generate("q")).text == "answer"


def test_unknown_event_name_is_rejected():
    with pytest.raises(ValueError):
        LifecycleHooks().on("on_whatever", lambda event: None)


def test_off_removes_handler():
    hooks = LifecycleHooks()
    handler = hooks.on(BEFORE_GENERATION, lambda event: None)
    hooks.off(BEFORE_GENERATION, handler)
    assert hooks.handlers(BEFORE_GENERATION) == []


@pytest.mark.asyncio
async def test_stream_delivers_pieces_in_order_to_sink_and_iterator():
    client = FakeGenerationClient(pieces=["Hel", "lo", " world"])
    orch = orchestrator(client)
    events = record_events(orch)
    sink = []

    received = [piece async for piece in orch.stream("q", on_chunk=sink.append)]

    assert received == ["Hel", "lo", " world"]
    assert sink == received
    assert client.calls[0]["stream"] is True
    assert [e.name for e in events] == [BEFORE_GENERATION, AFTER_GENERATION]
    assert events[1].response == {"streamed": True, "chunks": 3}


@pytest.mark.asyncio
async def test_stream_stops_when_consumer_goes_away():
    client = FakeGenerationClient(pieces=["a", "b", "c", "d"])
    orch = orchestrator(client)
    events = record_events(orch)

    stream = orch.stream("q")
    assert await stream.__anext__() == "a"
    await stream.aclose()

    assert client.pieces_sent == 1
    assert client.stream_closed is True
    assert events[-1].name == GENERATION_ERROR
    assert events[-1].context["reason"] == "cancelled"


@pytest.mark.asyncio
async def test_stream_failing_sink_is_treated_as_cancellation():
    client = FakeGenerationClient(pieces=["a", "b", "c"])
    orch = orchestrator(client)
    events = record_events(orch)

    def sink(piece):
        raise BrokenPipeError("client disconnected")

    with pytest.raises(BrokenPipeError):
        async for _ in orch.stream("q", on_chunk=sink):
            pass

    errors = [e for e in events if e.name == GENERATION_ERROR]
    assert len(errors) == 1
    assert isinstance(errors[0].error, BrokenPipeError)
    assert errors[0].context["reason"] == "cancelled"
    assert errors[0].context["state"] == "failed"
    assert AFTER_GENERATION not in [e.name for e in events]
    assert client.pieces_sent == 1
    assert client.stream_closed is True


@pytest.mark.asyncio
async def test_stream_cancellation_marks_request_failed():
    gate = asyncio.Event()

    class SlowClient(FakeGenerationClient):
        async def generate_stream(self, prompt, parameters):
            self.calls.append({"prompt": prompt})
            yield "first"
            await gate.wait()
            yield "never"

    orch = orchestrator(SlowClient())
    events = record_events(orch)
    received = []

    async def consume():
        async for piece in orch.stream("q"):
            received.append(piece)

    task = asyncio.create_task(consume())
    while not received:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert received == ["first"]
    assert events[-1].name == GENERATION_ERROR
    assert events[-1].context["reason"] == "cancelled"


@pytest.mark.asyncio
async def test_stream_transport_error_is_wrapped():
    client = FakeGenerationClient(pieces=["partial"], error=TransientError("connection reset"))
    orch = orchestrator(client)
    received = []

    with pytest.raises(GenerationError) as exc_info:
        async for piece in orch.stream("q"):
            received.append(piece)

    assert received == ["partial"]
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_stream_unsupported_model_sends_nothing():
    client = FakeGenerationClient(pieces=["a"])
    with pytest.raises(ConfigurationError):
        async for _ in orchestrator(client).stream("q", {"model": "gpt-4"}):
            pass
    assert client.calls == []
