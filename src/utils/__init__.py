"""Utility modules for the knowledge engine.

- **errors** -- exception hierarchy rooted at KnowledgeEngineError; each
  pipeline stage raises its own subclass so callers can tell transient
  failures from structural ones.
- **retry** -- the retry-with-backoff combinator used for per-chunk and
  whole-attempt retries.
- **concurrency** -- the batched gather helper used for chunk storage.
- **logging** -- structlog setup with console/JSON renderers.
"""

from src.utils.concurrency import batched_gather
from src.utils.errors import (
    ChunkingFailedError,
    ConfigurationError,
    EmbeddingServiceError,
    EmbeddingTimeoutError,
    EmptyContentError,
    ExtractionFailedError,
    IndexServiceError,
    IndexTimeoutError,
    KnowledgeEngineError,
    RetrievalUnavailableError,
    SourceNotFoundError,
    StorageFailedError,
    StructuralError,
)
from src.utils.logging import configure_logging, get_logger
from src.utils.retry import RetryPolicy, is_transient, retry_async

__all__ = [
    "ChunkingFailedError",
    "ConfigurationError",
    "EmbeddingServiceError",
    "EmbeddingTimeoutError",
    "EmptyContentError",
    "ExtractionFailedError",
    "IndexServiceError",
    "IndexTimeoutError",
    "KnowledgeEngineError",
    "RetrievalUnavailableError",
    "RetryPolicy",
    "SourceNotFoundError",
    "StorageFailedError",
    "StructuralError",
    "batched_gather",
    "configure_logging",
    "get_logger",
    "is_transient",
    "retry_async",
]
