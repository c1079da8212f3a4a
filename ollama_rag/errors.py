"""Exception taxonomy for the RAG pipeline.

Every error carries a ``context`` dict with enough detail to debug a
failure (endpoint, model, prompt, options, whether a credential was set).
Credential values never go into the context.
"""
import json
from typing import Any, Dict, Optional


class RagError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        return f"{self.message}. Context: {json.dumps(self.context, ensure_ascii=False, default=str)}"


class ConfigurationError(RagError):
    """Bad or missing endpoint, unsupported model, invalid chunk parameters.

    Never retried.
    """


class DimensionMismatchError(ConfigurationError):
    """Embedding length differs from the collection's dimension."""

    def __init__(self, expected: int, actual: int, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}",
            context,
        )
        self.expected = expected
        self.actual = actual


class InvalidArgumentError(RagError, ValueError):
    """A caller-supplied argument is out of range."""


class TransientError(RagError):
    """Network failure, timeout or 5xx. Safe for the caller to retry."""


class PermanentError(RagError):
    """4xx or malformed response. Retrying will not help."""


class PartialIngestionError(RagError):
    """Ingestion stopped after committing some of a document's chunks.

    Attributes:
        source_id: Document being ingested
        failed_index: Index of the chunk whose embed/upsert failed
        committed: Number of chunks stored before the pipeline stopped
        total: Number of chunks the document produced
        committed_through: Highest index such that every chunk up to and
            including it was stored (-1 if chunk 0 was not stored)
    """

    def __init__(
        self,
        source_id: str,
        failed_index: int,
        committed: int,
        total: int,
        committed_through: int,
        cause: BaseException,
    ):
        super().__init__(
            f"Ingestion of '{source_id}' failed at chunk {failed_index} "
            f"after committing {committed} of {total} chunks: {cause}",
            {
                "source_id": source_id,
                "failed_index": failed_index,
                "committed": committed,
                "total": total,
                "committed_through": committed_through,
                "error_type": type(cause).__name__,
            },
        )
        self.source_id = source_id
        self.failed_index = failed_index
        self.committed = committed
        self.total = total
        self.committed_through = committed_through
        self.cause = cause


class GenerationError(RagError):
    """A generation request failed in transport or returned a non-success status."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, context)
        self.cause = cause

    @property
    def retryable(self) -> bool:
        """True when the underlying failure was transient."""
        return isinstance(self.cause, TransientError)
