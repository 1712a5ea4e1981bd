"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Document chunking with overlap
- Batched embedding generation
- FAISS vector storage with owner isolation
- Ingestion progress tracking and the background worker pool
- Question answering over retrieved fragments
"""
