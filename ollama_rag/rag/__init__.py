"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Word-window chunking with overlap
- Embedding generation
- Vector store backends (FAISS, Qdrant)
- PDF text extraction with page and bounding box
- Document ingestion and deletion
- Semantic retrieval and context framing
"""
