"""Knowledge source and per-agent settings models.

A :class:`KnowledgeSource` is one ingestible unit owned by an agent -- a
web page, an uploaded document, a video transcript or a pasted text.  Its
``status`` / ``progress_*`` / ``processing_stage`` fields are written only
by the ingestion pipeline (orchestrator and supervisor) and are polled by
the outer layer to render progress.

All models are frozen; updates produce new instances via
``model_copy(update={...})`` or go through the knowledge store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


# ---------------------------------------------------------------------------
# Closed vocabularies
# ---------------------------------------------------------------------------
class SourceType(str, Enum):  # noqa: UP042 — StrEnum requires Python 3.11+
    """Declared type of a knowledge source."""

    WEB_PAGE = "web_page"
    PDF = "pdf"
    WORD_DOC = "word_doc"
    SLIDE_DECK = "slide_deck"
    VIDEO_TRANSCRIPT = "video_transcript"
    PLAIN_TEXT = "plain_text"


class SourceStatus(str, Enum):  # noqa: UP042
    """Lifecycle status: ``pending → processing → {completed | failed}``."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingStage(str, Enum):  # noqa: UP042
    """Fine-grained stage shown alongside the progress percentage."""

    INITIALIZING = "initializing"
    EXTRACTING = "extracting"
    PROCESSING = "processing"
    FINALIZING = "finalizing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


class ChunkingStrategy(str, Enum):  # noqa: UP042
    """Text segmentation strategies."""

    PARAGRAPH = "paragraph"
    SENTENCE = "sentence"
    RECURSIVE = "recursive"
    SEMANTIC = "semantic"


class SearchStrategy(str, Enum):  # noqa: UP042
    """Retrieval strategies as configured per agent.

    ``COSINE`` is plain similarity ranking, ``EUCLIDEAN`` re-scores the
    similarity candidates by inverse Euclidean distance.
    """

    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    HYBRID = "hybrid"
    CONTEXTUAL = "contextual"


# ---------------------------------------------------------------------------
# KnowledgeSource
# ---------------------------------------------------------------------------
class KnowledgeSource(BaseModel):
    """One ingestible unit of agent knowledge and its processing state."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    agent_id: str
    source_type: SourceType
    name: str = ""
    # URL or original filename, when the source has one.
    locator: str | None = None
    # Already-extracted text, when the caller supplied it.
    content: str | None = None
    status: SourceStatus = SourceStatus.PENDING
    progress_percentage: int = Field(default=0, ge=0, le=100)
    progress_message: str = ""
    processing_stage: ProcessingStage = ProcessingStage.INITIALIZING
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def display_name(self) -> str:
        """Name used when citing the source in prompts and logs."""
        return self.name or self.locator or self.source_id


class SourceStatusView(BaseModel):
    """Read-only progress snapshot returned to status pollers."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    status: SourceStatus
    progress_percentage: int = Field(ge=0, le=100)
    progress_message: str
    processing_stage: ProcessingStage
    estimated_seconds_remaining: int | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# KnowledgeSettings
# ---------------------------------------------------------------------------
class KnowledgeSettings(BaseModel):
    """Per-agent RAG configuration, created lazily with these defaults.

    Ranges are enforced by pydantic; an out-of-range update raises
    ``pydantic.ValidationError`` before anything is persisted.
    """

    model_config = ConfigDict(frozen=True, validate_assignment=True)

    agent_id: str
    enable_rag: bool = False
    max_chunks_per_query: int = Field(default=3, ge=1, le=10)
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    chunk_size: int = Field(default=2000, ge=100, le=2000)
    chunk_overlap: int = Field(default=400, ge=0, le=500)
    chunking_strategy: ChunkingStrategy = ChunkingStrategy.RECURSIVE
    search_strategy: SearchStrategy = SearchStrategy.HYBRID
    enable_contextual_search: bool = True
    context_window: int = Field(default=2, ge=1, le=5)
