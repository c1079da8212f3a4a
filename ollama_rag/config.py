"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_API_KEY = os.getenv("OLLAMA_API_KEY", "")
OLLAMA_TIMEOUT = float(os.getenv("OLLAMA_TIMEOUT", "60.0"))
CHAT_MODEL = os.getenv("CHAT_MODEL", "llama2")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "snowflake-arctic-embed2")

# Closed set of generation models the orchestrator will send requests for
SUPPORTED_MODELS = tuple(
    m.strip()
    for m in os.getenv("SUPPORTED_MODELS", "llama2,mistral,gemma").split(",")
    if m.strip()
)

# Generation defaults (caller options override these per request)
TEMPERATURE = float(os.getenv("TEMPERATURE", "0.7"))
MAX_TOKENS = int(os.getenv("MAX_TOKENS", "512"))
TOP_P = float(os.getenv("TOP_P", "0.9"))
STOP_SEQUENCES = [s for s in os.getenv("STOP_SEQUENCES", "").split("|") if s] or None
OUTPUT_FORMAT = os.getenv("OUTPUT_FORMAT") or None  # e.g. "json"

# RAG parameters (word-based windows)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "500"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "50"))
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
INGEST_CONCURRENCY = int(os.getenv("INGEST_CONCURRENCY", "1"))

# Vector store
VECTOR_COLLECTION = os.getenv("VECTOR_COLLECTION", "documents")
QDRANT_URL = os.getenv("QDRANT_URL", "")  # empty = use local FAISS store
