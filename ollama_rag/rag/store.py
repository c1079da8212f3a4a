"""Vector store capability shared by every backend."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol, Sequence


@dataclass
class VectorMatch:
    """A stored record returned from a similarity query.

    ``score`` is the backend's similarity (higher means closer); the
    pipeline never rescales it.
    """

    key: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorStore(Protocol):
    """Upsert, query and delete vectors with metadata.

    Upserts are idempotent per key (last write wins). Records are
    attributed to a document through ``metadata["source"]``.
    """

    async def upsert(self, key: str, vector: Sequence[float], metadata: Dict[str, Any]) -> None: ...

    async def query_by_vector(self, vector: Sequence[float], top_k: int) -> List[VectorMatch]: ...

    async def delete_by_source(self, source_id: str) -> int: ...
