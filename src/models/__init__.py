"""Domain models — re-exports all public model classes.

Submodules by concern:
    - knowledge.py  — knowledge sources, per-agent settings, enums
    - pipeline.py   — ingestion jobs and outcomes
    - rag.py        — text segments, retrieval results, index statistics
"""

from __future__ import annotations

from src.models.knowledge import (
    ChunkingStrategy,
    KnowledgeSettings,
    KnowledgeSource,
    ProcessingStage,
    SearchStrategy,
    SourceStatus,
    SourceStatusView,
    SourceType,
)
from src.models.pipeline import IngestionJob, IngestionOutcome, IngestionPayload
from src.models.rag import (
    KnowledgeStats,
    RetrievalFilters,
    RetrievedChunk,
    SegmentMetadata,
    TextSegment,
)

__all__ = [
    "ChunkingStrategy",
    "IngestionJob",
    "IngestionOutcome",
    "IngestionPayload",
    "KnowledgeSettings",
    "KnowledgeSource",
    "KnowledgeStats",
    "ProcessingStage",
    "RetrievalFilters",
    "RetrievedChunk",
    "SearchStrategy",
    "SegmentMetadata",
    "SourceStatus",
    "SourceStatusView",
    "SourceType",
    "TextSegment",
]
