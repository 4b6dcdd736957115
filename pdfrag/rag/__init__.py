"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- PDF page extraction
- Document chunking with overlap
- Vector ranking (linear scan and FAISS)
- Ingestion into the embedding store
- Question answering with retrieved context
"""
