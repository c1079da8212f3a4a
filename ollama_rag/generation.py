"""Generation orchestrator: context injection, parameter resolution, lifecycle.

Each request moves through::

    IDLE -> CONTEXT_ASSEMBLED -> REQUESTING -> COMPLETED | FAILED

``before_generation`` fires on entry, ``after_generation`` on success and
``generation_error`` on any request failure, cancellation included.
"""
import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Sequence, Union

from pydantic import BaseModel, ConfigDict, ValidationError
import structlog

from ollama_rag import config
from ollama_rag.errors import (
    ConfigurationError,
    GenerationError,
    InvalidArgumentError,
)
from ollama_rag.events import (
    AFTER_GENERATION,
    BEFORE_GENERATION,
    GENERATION_ERROR,
    GenerationEvent,
    LifecycleHooks,
)
from ollama_rag.llm_client import ollama_client
from ollama_rag.rag.retriever import Retriever, build_context_block

logger = structlog.get_logger()


class GenerationState(str, Enum):
    IDLE = "idle"
    CONTEXT_ASSEMBLED = "context_assembled"
    REQUESTING = "requesting"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationOptions(BaseModel):
    """Generation parameters. Unknown keys are passed through to Ollama."""

    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop: Optional[List[str]] = None
    format: Optional[str] = None


OptionsLike = Union[GenerationOptions, Dict[str, Any], None]


class GenerationClient(Protocol):
    """Text generation capability (Ollama's /api/generate in production)."""

    async def generate(self, prompt: str, parameters: Dict[str, Any]) -> Dict[str, Any]: ...

    def generate_stream(self, prompt: str, parameters: Dict[str, Any]) -> AsyncIterator[str]: ...


@dataclass
class GenerationResult:
    """Completed generation with token usage."""

    text: str
    usage: Dict[str, int]
    model: str
    prompt: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationRequest:
    """Per-request bookkeeping for the state machine."""

    prompt: str
    options: Dict[str, Any]
    final_prompt: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    state: GenerationState = GenerationState.IDLE
    failure_reason: Optional[str] = None

    def transition(self, state: GenerationState) -> None:
        logger.debug("generation_state_changed", from_state=self.state.value, to_state=state.value)
        self.state = state


def _options_dict(options: OptionsLike) -> Dict[str, Any]:
    if options is None:
        return {}
    if isinstance(options, GenerationOptions):
        return options.model_dump(exclude_none=True)
    try:
        return GenerationOptions(**options).model_dump(exclude_none=True)
    except ValidationError as e:
        raise InvalidArgumentError(f"Invalid generation options: {e}", {"options": options}) from e


class GenerationOrchestrator:
    """Combines retrieved context with a prompt and calls the generation client."""

    def __init__(
        self,
        client: GenerationClient = None,
        retriever: Optional[Retriever] = None,
        defaults: OptionsLike = None,
        supported_models: Sequence[str] = None,
        hooks: LifecycleHooks = None,
    ):
        """Initialize the orchestrator.

        Args:
            client: Generation backend (default: global Ollama client)
            retriever: Optional retriever; when set, context is injected
            defaults: Default parameters; merged over the config defaults
            supported_models: Closed set of allowed models (default from config)
            hooks: Lifecycle hook registry (a new one is created if omitted)
        """
        self.client = client or ollama_client
        self.retriever = retriever
        self.supported_models = tuple(supported_models or config.SUPPORTED_MODELS)
        self.hooks = hooks or LifecycleHooks()

        self.defaults: Dict[str, Any] = {
            "model": config.CHAT_MODEL,
            "temperature": config.TEMPERATURE,
            "max_tokens": config.MAX_TOKENS,
            "top_p": config.TOP_P,
            "stop": config.STOP_SEQUENCES,
            "format": config.OUTPUT_FORMAT,
        }
        self.defaults.update(_options_dict(defaults))

    def on(self, event: str, handler: Callable[[GenerationEvent], None]) -> Callable[[GenerationEvent], None]:
        """Register a lifecycle handler (shortcut for ``hooks.on``)."""
        return self.hooks.on(event, handler)

    def resolve_parameters(self, options: OptionsLike = None) -> Dict[str, Any]:
        """Merge caller options over the defaults and validate the model.

        Caller values win; options explicitly set to None are ignored.

        Raises:
            ConfigurationError: If the resolved model is not supported
            InvalidArgumentError: If the options fail validation
        """
        parameters = dict(self.defaults)
        parameters.update(_options_dict(options))

        model = parameters.get("model")
        if model not in self.supported_models:
            raise ConfigurationError(
                f"Unsupported model: {model}",
                {"model": model, "supported_models": list(self.supported_models)},
            )
        return parameters

    def _request_context(self, request: GenerationRequest) -> Dict[str, Any]:
        return {
            "url": getattr(self.client, "generate_url", None),
            "model": request.parameters.get("model", self.defaults.get("model")),
            "prompt": request.final_prompt or request.prompt,
            "options": request.options,
            "api_key_set": bool(getattr(self.client, "api_key_set", False)),
            "state": request.state.value,
        }

    def _emit(self, name: str, request: GenerationRequest, **kwargs) -> None:
        self.hooks.emit(
            GenerationEvent(
                name=name,
                prompt=request.final_prompt or request.prompt,
                options=request.options,
                **kwargs,
            )
        )

    async def _prepare(self, prompt: str, options: OptionsLike) -> GenerationRequest:
        request = GenerationRequest(prompt=prompt, options=_options_dict(options))
        self._emit(BEFORE_GENERATION, request, context={"state": request.state.value})

        # Validate before retrieval so a bad model never reaches any network call
        try:
            parameters = self.resolve_parameters(request.options)
        except ConfigurationError:
            request.transition(GenerationState.FAILED)
            request.failure_reason = "configuration"
            raise

        final_prompt = prompt
        if self.retriever is not None:
            try:
                results = await self.retriever.retrieve(prompt)
            except Exception as e:
                self._fail(request, e, reason="retrieval")
                raise
            final_prompt = build_context_block(results, prompt)
            logger.info("context_assembled", context_chunks=len(results))
        request.final_prompt = final_prompt
        request.transition(GenerationState.CONTEXT_ASSEMBLED)

        request.parameters = parameters
        request.transition(GenerationState.REQUESTING)
        return request

    def _fail(
        self,
        request: GenerationRequest,
        error: BaseException,
        reason: str = "request",
    ) -> GenerationError:
        request.transition(GenerationState.FAILED)
        request.failure_reason = reason
        context = self._request_context(request)
        context["reason"] = reason

        logger.error(
            "generation_failed",
            error=str(error),
            error_type=type(error).__name__,
            reason=reason,
            model=context["model"],
            url=context["url"],
        )

        if isinstance(error, GenerationError):
            wrapped = error
        else:
            wrapped = GenerationError(f"Generation request failed: {error}", context, cause=error)
        self._emit(GENERATION_ERROR, request, error=error, context=context)
        return wrapped

    async def generate(self, prompt: str, options: OptionsLike = None) -> GenerationResult:
        """Run a complete (non-streaming) generation.

        Raises:
            ConfigurationError: Unsupported model (no request is sent)
            GenerationError: Transport failure or non-success response
        """
        request = await self._prepare(prompt, options)

        try:
            response = await self.client.generate(request.final_prompt, request.parameters)
        except asyncio.CancelledError:
            self._fail(request, GenerationError("Generation cancelled"), reason="cancelled")
            raise
        except Exception as e:
            raise self._fail(request, e) from e

        result = GenerationResult(
            text=response.get("text", ""),
            usage=response.get("usage", {}),
            model=request.parameters["model"],
            prompt=request.final_prompt,
            raw=response.get("raw", {}),
        )
        request.transition(GenerationState.COMPLETED)
        self._emit(AFTER_GENERATION, request, response=result, context={"state": request.state.value})

        logger.info(
            "generation_completed",
            model=result.model,
            response_length=len(result.text),
            total_tokens=result.usage.get("total_tokens"),
        )
        return result

    async def generate_text(self, prompt: str, options: OptionsLike = None) -> str:
        """Return only the generated text."""
        result = await self.generate(prompt, options)
        return result.text

    async def generate_with_tokens(self, prompt: str, options: OptionsLike = None) -> Dict[str, Any]:
        """Return generated text along with token usage."""
        result = await self.generate(prompt, options)
        return {"text": result.text, "tokens": result.usage}

    async def stream(
        self,
        prompt: str,
        options: OptionsLike = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> AsyncIterator[str]:
        """Stream generated text increments in arrival order.

        Each increment is passed to ``on_chunk`` (if given) and yielded.
        Nothing is buffered. Closing the iterator early, or a sink that
        raises, closes the HTTP stream and marks the request as cancelled.
        The sink's own exception propagates unchanged.

        Raises:
            ConfigurationError: Unsupported model (no request is sent)
            GenerationError: Transport failure or non-success response
        """
        request = await self._prepare(prompt, options)
        delivered = 0

        try:
            async with aclosing(
                self.client.generate_stream(request.final_prompt, request.parameters)
            ) as chunks:
                while True:
                    try:
                        piece = await anext(chunks)
                    except StopAsyncIteration:
                        break
                    except Exception as e:
                        raise self._fail(request, e) from e

                    delivered += 1
                    if on_chunk is not None:
                        try:
                            on_chunk(piece)
                        except Exception as e:
                            # A broken sink means the consumer is gone
                            self._fail(request, e, reason="cancelled")
                            raise
                    yield piece
        except (asyncio.CancelledError, GeneratorExit):
            logger.info("generation_stream_cancelled", chunks_delivered=delivered)
            self._fail(request, GenerationError("Generation cancelled"), reason="cancelled")
            raise

        request.transition(GenerationState.COMPLETED)
        self._emit(
            AFTER_GENERATION,
            request,
            response={"streamed": True, "chunks": delivered},
            context={"state": request.state.value},
        )
        logger.info("generation_stream_completed", chunks_delivered=delivered)
