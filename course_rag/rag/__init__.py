"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Document extraction and text normalization
- Chunking into retrieval units
- Remote embeddings with a hashed TF-IDF fallback
- In-memory knowledge store with a JSON cache file
- Question answering with streamed, cancellable output
"""
