"""Custom exception hierarchy for the knowledge engine.

All application exceptions inherit from :class:`KnowledgeEngineError`,
which carries an optional ``provider_name`` so error handlers can identify
which external service (e.g. "openai_embedding", "chromadb") caused the
failure.

The hierarchy is organized by pipeline stage:

    KnowledgeEngineError  (base -- catch-all for any engine error)
    +-- ExtractionFailedError     (raw text extraction)
    +-- StructuralError           (never retried)
    |   +-- EmptyContentError     (blank / too-short text)
    |   +-- ChunkingFailedError   (segmenter produced nothing)
    +-- EmbeddingTimeoutError     (embedding call exceeded its deadline)
    +-- EmbeddingServiceError     (any other embedding failure)
    +-- IndexTimeoutError         (vector index call exceeded its deadline)
    +-- IndexServiceError         (any other vector index failure)
    +-- StorageFailedError        (zero chunks persisted)
    +-- RetrievalUnavailableError (query-time index failure)
    +-- SourceNotFoundError       (unknown knowledge source id)
    +-- ConfigurationError        (startup / missing config)

Transient errors (timeouts, service errors, storage) are retried with
backoff by the ingestion pipeline; :class:`StructuralError` subclasses
terminate the attempt immediately.
"""


class KnowledgeEngineError(Exception):
    """Base exception for all knowledge engine errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name`` identifying which external service triggered the
    error.  ``__str__`` prefixes the provider name in brackets, e.g.
    ``[chromadb] Upsert timed out after 30s``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Extraction / content errors
# ---------------------------------------------------------------------------

class ExtractionFailedError(KnowledgeEngineError):
    """Raised when the raw extraction service cannot produce text for a source."""

    def __init__(
        self,
        message: str = "Content extraction failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class StructuralError(KnowledgeEngineError):
    """Base for failures that retrying cannot fix.

    The retry combinator and the processing supervisor both treat any
    subclass as terminal for the current job.
    """


class EmptyContentError(StructuralError):
    """Raised when extracted text is blank or shorter than the minimum length."""

    def __init__(
        self,
        message: str = "No content could be extracted from the source",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ChunkingFailedError(StructuralError):
    """Raised when segmentation yields zero chunks."""

    def __init__(
        self,
        message: str = "Text segmentation produced no chunks",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Embedding errors
# ---------------------------------------------------------------------------

class EmbeddingTimeoutError(KnowledgeEngineError):
    """Raised when an embedding call exceeds its per-call timeout."""

    def __init__(
        self,
        message: str = "Embedding request timed out",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class EmbeddingServiceError(KnowledgeEngineError):
    """Raised for non-timeout embedding failures (API errors, bad responses)."""

    def __init__(
        self,
        message: str = "Embedding service failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Vector index errors
# ---------------------------------------------------------------------------

class IndexTimeoutError(KnowledgeEngineError):
    """Raised when a vector index call exceeds its per-request timeout."""

    def __init__(
        self,
        message: str = "Vector index request timed out",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class IndexServiceError(KnowledgeEngineError):
    """Raised for non-timeout vector index failures."""

    def __init__(
        self,
        message: str = "Vector index operation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class StorageFailedError(KnowledgeEngineError):
    """Raised when an ingestion run persisted zero chunks."""

    def __init__(
        self,
        message: str = "Storage failed: no chunks were stored",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class RetrievalUnavailableError(KnowledgeEngineError):
    """Raised when retrieval cannot reach the embedding service or vector index."""

    def __init__(
        self,
        message: str = "Retrieval is temporarily unavailable",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Lookup / configuration errors
# ---------------------------------------------------------------------------

class SourceNotFoundError(KnowledgeEngineError):
    """Raised when a knowledge source id does not exist in the store."""

    def __init__(
        self,
        message: str = "Knowledge source not found",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ConfigurationError(KnowledgeEngineError):
    """Raised when configuration is invalid or missing at startup."""

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
