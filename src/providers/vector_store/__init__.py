"""Vector index implementations.

ChromaDB is the sole implementation.  It runs embedded (persistent, on
disk at CHROMADB_PERSIST_DIR) or against a ChromaDB server when
CHROMADB_HOST is set, using cosine distance with metadata filtering.

To swap ChromaDB for another vector database, implement IVectorIndex and
register it in src/main.py.
"""

from src.providers.vector_store.chromadb_provider import ChromaVectorIndex

__all__ = ["ChromaVectorIndex"]
