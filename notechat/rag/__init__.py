"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Markdown note reading
- Recursive document chunking with overlap
- Embedding generation
- FAISS vector storage
- Reindexing
- Conversational retrieval with streamed answers
"""
