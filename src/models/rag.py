"""RAG data models: text segments, retrieval results and index statistics.

Flow through the engine:

    1. SEGMENTATION: the segmenter turns source text into ``TextSegment``
       objects, each carrying its span and strategy-specific metadata.
    2. STORAGE: the orchestrator embeds each segment and upserts it into
       the vector index together with a flat metadata bag.
    3. RETRIEVAL: the retrieval engine queries the index and returns
       ``RetrievedChunk`` objects (content, score, metadata) ranked by
       the configured strategy.

All models use frozen config.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.models.knowledge import SourceType


# ---------------------------------------------------------------------------
# Segmentation output
# ---------------------------------------------------------------------------
class SegmentMetadata(BaseModel):
    """Span boundaries and strategy details attached to a segment.

    ``chunk_type`` records which branch produced the segment, e.g.
    ``"paragraph"``, ``"recursive_max_depth"`` or ``"semantic"``.
    ``start_index`` / ``end_index`` are character offsets into the text
    handed to the segmenter; for chunks seeded with overlap the span
    starts at the first non-overlap unit.
    """

    model_config = ConfigDict(frozen=True)

    chunk_type: str
    start_index: int = Field(default=0, ge=0)
    end_index: int = Field(default=0, ge=0)
    length: int = Field(default=0, ge=0)
    sentence_count: int = Field(default=0, ge=0)
    semantic_similarity: float | None = None
    depth: int = Field(default=0, ge=0)


class TextSegment(BaseModel):
    """One chunk of source text produced by the segmenter."""

    model_config = ConfigDict(frozen=True)

    content: str = Field(min_length=1)
    chunk_index: int = Field(ge=0)
    metadata: SegmentMetadata


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------
class RetrievalFilters(BaseModel):
    """Optional narrowing applied on top of the mandatory agent scope."""

    model_config = ConfigDict(frozen=True)

    source_types: list[SourceType] | None = None
    content_type: str | None = None
    language: str | None = None
    min_length: int | None = Field(default=None, ge=0)
    # Restrict hits to these knowledge sources (completed ones, in practice).
    source_ids: list[str] | None = None


class RetrievedChunk(BaseModel):
    """A ranked retrieval result."""

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    content: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def source_id(self) -> str:
        return str(self.metadata.get("knowledge_source_id", ""))

    @property
    def chunk_index(self) -> int:
        return int(self.metadata.get("chunk_index", 0))

    @property
    def source_name(self) -> str:
        return str(self.metadata.get("source_name", "")) or self.source_id


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------
class KnowledgeStats(BaseModel):
    """Per-agent snapshot of what is stored in the vector index."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    total_chunks: int = Field(default=0, ge=0)
    total_sources: int = Field(default=0, ge=0)
    content_types: dict[str, int] = Field(default_factory=dict)
    source_types: dict[str, int] = Field(default_factory=dict)
    languages: dict[str, int] = Field(default_factory=dict)
