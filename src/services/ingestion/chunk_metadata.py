"""Rule-based metadata for stored chunks.

Every chunk written to the vector index carries a flat metadata bag used
for filtered retrieval and for corpus statistics: a coarse content
classification, a detected language, top keywords and a few counters.
All heuristics are cheap string checks so they can run per chunk during
ingestion without extra service calls.
"""

from __future__ import annotations

import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from src.models.knowledge import ChunkingStrategy, SourceType
from src.models.rag import TextSegment

MAX_STORED_CONTENT = 40_000

_WORD = re.compile(r"[^\W_]+", re.UNICODE)
_URL = re.compile(r"https?://\S+|www\.\S+", re.IGNORECASE)
_NUMBER = re.compile(r"\d")
_STRUCTURED_LINE = re.compile(r"^\s*(#|\d+\.)", re.MULTILINE)
_CODE = re.compile(r"\b(function|class|import|export)\b")
_ACADEMIC = re.compile(r"\b(abstract|introduction|conclusion|references)\b", re.IGNORECASE)

_ENGLISH_MARKERS = frozenset(
    {"the", "and", "is", "are", "was", "were", "have", "has", "with", "this", "that", "for", "of"}
)
_PORTUGUESE_MARKERS = frozenset(
    {"o", "a", "os", "as", "de", "do", "da", "em", "um", "uma", "para", "com", "não", "que", "é"}
)


def classify_content(text: str) -> str:
    """Coarse content class used as a retrieval filter.

    First match wins: ``structured`` (markdown headings or numbered
    lines), ``web_content`` (contains URLs), ``code``, ``academic``,
    ``short`` (< 100 chars), else ``general``.
    """
    if _STRUCTURED_LINE.search(text):
        return "structured"
    if _URL.search(text):
        return "web_content"
    if _CODE.search(text):
        return "code"
    if _ACADEMIC.search(text):
        return "academic"
    if len(text) < 100:
        return "short"
    return "general"


def detect_language(text: str) -> str:
    """Guess ``"en"``, ``"pt"`` or ``"unknown"`` from the first 50 words."""
    words = [w.lower() for w in _WORD.findall(text)[:50]]
    english = sum(1 for w in words if w in _ENGLISH_MARKERS)
    portuguese = sum(1 for w in words if w in _PORTUGUESE_MARKERS)
    if english > portuguese:
        return "en"
    if portuguese > english:
        return "pt"
    return "unknown"


def top_keywords(text: str, limit: int = 5) -> list[str]:
    """Most frequent words longer than three characters, lower-cased."""
    counts = Counter(w.lower() for w in _WORD.findall(text) if len(w) > 3)
    return [word for word, _ in counts.most_common(limit)]


def keyword_density(text: str, keywords: list[str]) -> float:
    words = [w.lower() for w in _WORD.findall(text)]
    if not words or not keywords:
        return 0.0
    wanted = set(keywords)
    hits = sum(1 for w in words if w in wanted)
    return round(hits / len(words), 4)


def build_chunk_id(agent_id: str, source_id: str, chunk_index: int, created_ms: int) -> str:
    """Chunk id unique per agent, source, position and creation time."""
    return f"{agent_id}_{source_id}_{chunk_index}_{created_ms}"


def build_chunk_metadata(
    segment: TextSegment,
    *,
    agent_id: str,
    source_id: str,
    source_name: str,
    source_type: SourceType,
    strategy: ChunkingStrategy,
    created_at: datetime | None = None,
) -> dict[str, Any]:
    """Flat metadata bag stored next to a chunk's vector."""
    content = segment.content
    keywords = top_keywords(content)
    created = created_at or datetime.now(tz=timezone.utc)  # noqa: UP017
    return {
        "agent_id": agent_id,
        "knowledge_source_id": source_id,
        "content": content[:MAX_STORED_CONTENT],
        "chunk_index": segment.chunk_index,
        "content_length": len(content),
        "word_count": len(content.split()),
        "content_type": classify_content(content),
        "language": detect_language(content),
        "chunk_strategy": strategy.value,
        "chunk_type": segment.metadata.chunk_type,
        "start_index": segment.metadata.start_index,
        "end_index": segment.metadata.end_index,
        "sentence_count": segment.metadata.sentence_count,
        "source_name": source_name,
        "source_type": source_type.value,
        "created_at": created.isoformat(),
        "has_numbers": bool(_NUMBER.search(content)),
        "has_urls": bool(_URL.search(content)),
        "top_keywords": ",".join(keywords),
        "keyword_density": keyword_density(content, keywords),
    }
