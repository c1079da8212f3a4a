"""Retrieval-augmented generation over Ollama: chunk, embed, store, retrieve, generate."""

__version__ = "0.1.0"
