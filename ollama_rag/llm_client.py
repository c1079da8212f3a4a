"""Ollama HTTP client wrapper with error classification."""
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import structlog

from ollama_rag import config
from ollama_rag.errors import (
    ConfigurationError,
    PermanentError,
    RagError,
    TransientError,
)

logger = structlog.get_logger()

# Keys of the resolved generation parameters that Ollama expects under "options"
_OPTION_KEYS = {
    "temperature": "temperature",
    "top_p": "top_p",
    "max_tokens": "num_predict",
    "stop": "stop",
}


def classify_http_error(error: Exception, context: Dict[str, Any]) -> RagError:
    """Map an httpx failure onto the pipeline's error taxonomy.

    Args:
        error: Exception raised by httpx while talking to Ollama
        context: Request context to attach (must not hold secret values)

    Returns:
        ConfigurationError, TransientError or PermanentError
    """
    if isinstance(error, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return ConfigurationError(f"Invalid Ollama endpoint: {error}", context)

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        context = {**context, "status_code": status}
        if status == 404:
            return ConfigurationError(
                f"Ollama endpoint or model not found (status {status})", context
            )
        if status == 429 or status >= 500:
            return TransientError(f"Ollama returned status {status}", context)
        return PermanentError(f"Ollama rejected the request (status {status})", context)

    if isinstance(error, httpx.TransportError):
        return TransientError(f"Ollama request failed: {error}", context)

    return PermanentError(f"Ollama request failed: {error}", context)


class OllamaClient:
    """Async client for interacting with the Ollama API."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            api_key: Optional bearer token (defaults to config.OLLAMA_API_KEY)
            timeout: Request timeout in seconds (defaults to config.OLLAMA_TIMEOUT)
            transport: Optional httpx transport, mainly for tests
        """
        self.base_url = (base_url if base_url is not None else config.OLLAMA_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.OLLAMA_API_KEY
        self.timeout = timeout or config.OLLAMA_TIMEOUT
        self._transport = transport

    @property
    def api_key_set(self) -> bool:
        return bool(self.api_key)

    @property
    def generate_url(self) -> str:
        return f"{self.base_url}/api/generate"

    @property
    def embeddings_url(self) -> str:
        return f"{self.base_url}/api/embeddings"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _http(self, timeout: float = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport)

    def _context(self, url: str, model: str, **extra) -> Dict[str, Any]:
        return {"url": url, "model": model, "api_key_set": self.api_key_set, **extra}

    def _require_base_url(self, model: str) -> None:
        if not self.base_url:
            raise ConfigurationError(
                "Ollama API URL is not set",
                {"model": model, "api_key_set": self.api_key_set},
            )

    def build_generate_payload(
        self, prompt: str, parameters: Dict[str, Any], stream: bool
    ) -> Dict[str, Any]:
        """Translate resolved generation parameters into an /api/generate body.

        Known sampling keys are renamed into Ollama's ``options`` object;
        unknown keys are forwarded as extra options unchanged.
        """
        payload: Dict[str, Any] = {
            "model": parameters["model"],
            "prompt": prompt,
            "stream": stream,
        }
        if parameters.get("format"):
            payload["format"] = parameters["format"]

        options: Dict[str, Any] = {}
        for key, value in parameters.items():
            if key in ("model", "format") or value is None:
                continue
            options[_OPTION_KEYS.get(key, key)] = value
        if options:
            payload["options"] = options
        return payload

    async def generate(self, prompt: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Send a non-streaming completion request to Ollama.

        Args:
            prompt: Fully assembled prompt text
            parameters: Resolved generation parameters (must include "model")

        Returns:
            Dict with 'text', 'usage' (prompt/completion/total tokens) and 'raw'

        Raises:
            ConfigurationError: Missing/invalid endpoint or unknown model
            TransientError: Network failure, timeout, 5xx
            PermanentError: 4xx or malformed response
        """
        model = parameters["model"]
        self._require_base_url(model)
        payload = self.build_generate_payload(prompt, parameters, stream=False)
        context = self._context(self.generate_url, model)

        try:
            async with self._http() as client:
                logger.info(
                    "ollama_generate_request",
                    model=model,
                    prompt_length=len(prompt),
                    stream=False,
                )

                response = await client.post(
                    self.generate_url,
                    json=payload,
                    headers=self._headers(),
                )
                response.raise_for_status()

                data = response.json()

        except httpx.HTTPError as e:
            logger.error("ollama_generate_error", error=str(e), **context)
            raise classify_http_error(e, context) from e
        except httpx.InvalidURL as e:
            raise classify_http_error(e, context) from e
        except ValueError as e:
            logger.error("ollama_generate_malformed_response", error=str(e), **context)
            raise PermanentError(f"Malformed response from Ollama: {e}", context) from e

        if not isinstance(data, dict) or "response" not in data:
            raise PermanentError("Ollama response is missing 'response'", context)

        prompt_tokens = data.get("prompt_eval_count") or 0
        completion_tokens = data.get("eval_count") or 0
        usage = {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }

        logger.info(
            "ollama_generate_response",
            model=model,
            response_length=len(data["response"]),
            total_tokens=usage["total_tokens"],
        )

        return {"text": data["response"], "usage": usage, "raw": data}

    async def generate_stream(
        self, prompt: str, parameters: Dict[str, Any]
    ) -> AsyncIterator[str]:
        """Stream a completion from Ollama, yielding text increments.

        The HTTP response is closed as soon as the consumer stops iterating.

        Raises:
            Same taxonomy as :meth:`generate`.
        """
        model = parameters["model"]
        self._require_base_url(model)
        payload = self.build_generate_payload(prompt, parameters, stream=True)
        context = self._context(self.generate_url, model)

        logger.info(
            "ollama_generate_request",
            model=model,
            prompt_length=len(prompt),
            stream=True,
        )

        try:
            async with self._http() as client:
                async with client.stream(
                    "POST",
                    self.generate_url,
                    json=payload,
                    headers=self._headers(),
                ) as response:
                    if response.is_error:
                        await response.aread()
                    response.raise_for_status()

                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        data = json.loads(line)
                        if not isinstance(data, dict):
                            raise PermanentError(
                                "Malformed stream chunk from Ollama: expected an object", context
                            )
                        if data.get("error"):
                            raise PermanentError(
                                f"Ollama stream error: {data['error']}", context
                            )
                        text = data.get("response")
                        if text:
                            yield text
                        if data.get("done"):
                            break

        except httpx.HTTPError as e:
            logger.error("ollama_stream_error", error=str(e), **context)
            raise classify_http_error(e, context) from e
        except httpx.InvalidURL as e:
            raise classify_http_error(e, context) from e
        except json.JSONDecodeError as e:
            logger.error("ollama_stream_malformed_chunk", error=str(e), **context)
            raise PermanentError(f"Malformed stream chunk from Ollama: {e}", context) from e

    async def embeddings(
        self,
        prompt: str,
        model: str = None,
    ) -> List[float]:
        """Generate an embedding for a text prompt.

        Args:
            prompt: Text to embed
            model: Model to use (defaults to config.EMBEDDING_MODEL)

        Returns:
            Embedding vector

        Raises:
            ConfigurationError: Missing/invalid endpoint or unknown model
            TransientError: Network failure, timeout, 5xx
            PermanentError: 4xx, malformed response or empty embedding
        """
        model = model or config.EMBEDDING_MODEL
        self._require_base_url(model)
        context = self._context(self.embeddings_url, model, prompt_length=len(prompt))

        payload = {
            "model": model,
            "prompt": prompt,
        }

        try:
            async with self._http() as client:
                logger.debug(
                    "ollama_embedding_request",
                    model=model,
                    prompt_length=len(prompt),
                )

                response = await client.post(
                    self.embeddings_url,
                    json=payload,
                    headers=self._headers(),
                )
                response.raise_for_status()

                data = response.json()

        except httpx.HTTPError as e:
            logger.error("ollama_embedding_error", error=str(e), **context)
            raise classify_http_error(e, context) from e
        except httpx.InvalidURL as e:
            raise classify_http_error(e, context) from e
        except ValueError as e:
            raise PermanentError(f"Malformed embedding response: {e}", context) from e

        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not embedding:
            raise PermanentError("Empty embedding returned from Ollama", context)

        logger.debug(
            "ollama_embedding_response",
            model=model,
            dimension=len(embedding),
        )

        return [float(x) for x in embedding]


# Global client instance
ollama_client = OllamaClient()
