"""Abstract base class for text-embedding service providers.

Defines the contract for turning text into fixed-length vectors.  The
engine never embeds locally: implementations call an external service
(OpenAI-compatible API, Ollama) and must bound every call with a timeout.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementations:
#   OpenAIEmbeddingProvider  — text-embedding-3-small or any compatible API
#   NomicEmbeddingProvider   — nomic-embed-text via Ollama (local)
# Located in: src/providers/embedding/
class IEmbeddingProvider(ABC):
    """Contract for the embedding client used by ingestion and retrieval.

    Implementations substitute a single space for blank input rather than
    failing, so callers may pass chunk or query text through unfiltered.
    """

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for a batch of texts.

        Parameters
        ----------
        texts:
            One or more text strings to embed.

        Returns
        -------
        list[list[float]]
            Embedding vectors corresponding positionally to *texts*.  Each
            inner list has length equal to :meth:`get_dimension`.

        Raises
        ------
        src.utils.errors.EmbeddingTimeoutError
            If the call exceeds the configured timeout.
        src.utils.errors.EmbeddingServiceError
            For any other failure of the embedding service.
        """

    @abstractmethod
    async def embed_single(self, text: str) -> list[float]:
        """Generate an embedding vector for a single text string.

        Same failure modes as :meth:`embed`.
        """

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the dimensionality of the embedding vectors."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier such as ``"openai_embedding"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the provider is configured and reachable."""
