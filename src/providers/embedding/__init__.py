"""Embedding provider implementations.

Two implementations of IEmbeddingProvider:
    1. OpenAIEmbeddingProvider — text-embedding-3-small (1536 dims) or any
       OpenAI-compatible endpoint.  Requires an API key.
    2. NomicEmbeddingProvider  — nomic-embed-text via Ollama (768 dims).
       Free and local, but requires a running Ollama server.

The provider is selected by EMBEDDING_PROVIDER in src/main.py.
"""

from src.providers.embedding.nomic_embedding_provider import NomicEmbeddingProvider
from src.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider

__all__ = ["OpenAIEmbeddingProvider", "NomicEmbeddingProvider"]
