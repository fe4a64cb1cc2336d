"""Shared pytest fixtures for the knowledge engine test suite."""

from __future__ import annotations

import hashlib
import logging
import math
import re
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
import structlog

from src.interfaces.embedding_provider import IEmbeddingProvider
from src.interfaces.extraction_service import IExtractionService
from src.interfaces.vector_index import IndexFilter, IndexMatch, IVectorIndex
from src.models.knowledge import KnowledgeSettings, SourceType
from src.pipeline.progress_tracker import ProgressTracker
from src.providers.extraction.passthrough_extractor import PassthroughExtractor
from src.providers.knowledge_store.sqlite_knowledge_store import SQLiteKnowledgeStore
from src.providers.queue.memory_queue import MemoryJobQueue
from src.utils.errors import IndexServiceError

# ---------------------------------------------------------------------------
# Mock providers
# ---------------------------------------------------------------------------

_EMBEDDING_DIM = 64
_WORD = re.compile(r"[^\W_]+", re.UNICODE)


def _bag_of_words_vector(text: str, dim: int = _EMBEDDING_DIM) -> list[float]:
    """Deterministic embedding: hashed word counts, normalised to unit length.

    Texts sharing vocabulary get a high cosine similarity, which keeps
    retrieval tests meaningful without a real model.
    """
    values = [0.0] * dim
    for word in _WORD.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dim
        values[bucket] += 1.0
    magnitude = math.sqrt(sum(v * v for v in values))
    if magnitude == 0:
        values[0] = 1.0
        return values
    return [v / magnitude for v in values]


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


class MockEmbeddingProvider(IEmbeddingProvider):
    """In-memory deterministic embedding provider for tests."""

    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        return [_bag_of_words_vector(t) for t in texts]

    async def embed_single(self, text: str) -> list[float]:
        self.calls += 1
        return _bag_of_words_vector(text)

    def get_dimension(self) -> int:
        return _EMBEDDING_DIM

    def get_provider_name(self) -> str:
        return "mock-embedding"

    def is_available(self) -> bool:
        return True


class MockVectorIndex(IVectorIndex):
    """In-memory vector index honouring the full filter grammar.

    Failure injection:

    * ``upsert_failures`` -- the next N upserts raise ``IndexServiceError``.
    * ``query_error`` -- when set, every non-metadata query raises it.
    * ``context_error`` -- when set, every metadata-only query raises it.
    """

    def __init__(self) -> None:
        self.records: dict[str, tuple[list[float], dict[str, Any]]] = {}
        self.upsert_calls = 0
        self.upsert_failures = 0
        self.query_error: Exception | None = None
        self.context_error: Exception | None = None

    async def upsert(self, record_id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        self.upsert_calls += 1
        if self.upsert_failures > 0:
            self.upsert_failures -= 1
            raise IndexServiceError(message="injected upsert failure", provider_name="mock-index")
        self.records[record_id] = (list(vector), dict(metadata))

    async def query(
        self,
        vector: list[float] | None,
        top_k: int,
        index_filter: IndexFilter | None = None,
        metadata_only: bool = False,
        include_values: bool = False,
    ) -> list[IndexMatch]:
        index_filter = index_filter or IndexFilter()
        matching = [
            (rid, values, meta)
            for rid, (values, meta) in self.records.items()
            if index_filter.matches(meta)
        ]
        if metadata_only or vector is None:
            if self.context_error is not None:
                raise self.context_error
            return [
                IndexMatch(id=rid, score=0.0, metadata=dict(meta), values=values if include_values else None)
                for rid, values, meta in matching[:top_k]
            ]
        if self.query_error is not None:
            raise self.query_error
        scored = [
            IndexMatch(
                id=rid,
                score=max(0.0, min(1.0, _cosine(vector, values))),
                metadata=dict(meta),
                values=values if include_values else None,
            )
            for rid, values, meta in matching
        ]
        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:top_k]

    async def delete_many(self, index_filter: IndexFilter) -> int:
        doomed = [rid for rid, (_, meta) in self.records.items() if index_filter.matches(meta)]
        for rid in doomed:
            del self.records[rid]
        return len(doomed)

    async def count(self, index_filter: IndexFilter | None = None) -> int:
        index_filter = index_filter or IndexFilter()
        return sum(1 for _, meta in self.records.values() if index_filter.matches(meta))

    async def scan_metadata(self, index_filter: IndexFilter) -> list[dict[str, Any]]:
        return [dict(meta) for _, meta in self.records.values() if index_filter.matches(meta)]

    def get_provider_name(self) -> str:
        return "mock-index"

    def is_available(self) -> bool:
        return True

    def chunks_for(self, source_id: str) -> list[dict[str, Any]]:
        """Stored metadata for one source, ordered by chunk index."""
        metas = [m for _, m in self.records.values() if m.get("knowledge_source_id") == source_id]
        return sorted(metas, key=lambda m: m["chunk_index"])


class RecordingStore:
    """Minimal in-memory stand-in for ``update_source`` calls."""

    def __init__(self) -> None:
        self.updates: list[tuple[str, dict[str, Any]]] = []

    async def update_source(self, source_id: str, **fields: Any) -> None:
        self.updates.append((source_id, fields))


async def no_sleep(_delay: float) -> None:
    """Drop-in for ``asyncio.sleep`` that returns immediately."""


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session", autouse=True)
def _quiet_logging() -> None:
    """Route structlog to a non-printing logger so captured stdout stays clean."""
    structlog.configure(
        processors=[structlog.processors.KeyValueRenderer()],
        wrapper_class=structlog.make_filtering_bound_logger(logging.WARNING),
        logger_factory=structlog.ReturnLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def mock_embedding_provider() -> MockEmbeddingProvider:
    """Mock IEmbeddingProvider returning deterministic bag-of-words vectors."""
    return MockEmbeddingProvider()


@pytest.fixture
def mock_vector_index() -> MockVectorIndex:
    """Mock IVectorIndex backed by an in-memory dict."""
    return MockVectorIndex()


@pytest.fixture
def passthrough_extractor() -> IExtractionService:
    return PassthroughExtractor()


@pytest.fixture
def recording_store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def recording_tracker(recording_store: RecordingStore) -> ProgressTracker:
    """ProgressTracker writing into a :class:`RecordingStore`."""
    return ProgressTracker(recording_store)  # type: ignore[arg-type]


@pytest_asyncio.fixture
async def sqlite_store(tmp_path: Path) -> SQLiteKnowledgeStore:
    """Initialised SQLite knowledge store in a temp directory."""
    store = SQLiteKnowledgeStore(db_path=tmp_path / "knowledge.db")
    await store.initialize()
    return store


@pytest.fixture
def memory_queue() -> MemoryJobQueue:
    return MemoryJobQueue()


@pytest.fixture
def knowledge_settings() -> KnowledgeSettings:
    """Agent settings tuned for small test documents."""
    return KnowledgeSettings(
        agent_id="agent-1",
        enable_rag=True,
        chunk_size=200,
        chunk_overlap=0,
        similarity_threshold=0.1,
    )


@pytest.fixture
def sample_document() -> str:
    """Multi-paragraph text for segmentation and ingestion tests."""
    return (
        "Our refund policy allows customers to return any product within thirty days "
        "of purchase. Refunds are issued to the original payment method.\n\n"
        "Shipping is free for orders above fifty dollars. Standard delivery takes "
        "three to five business days, and express delivery arrives the next day.\n\n"
        "Support is available by email around the clock. Phone support runs from "
        "nine to five on weekdays, excluding public holidays.\n\n"
        "Gift cards never expire and can be combined with other promotions. "
        "Lost gift cards cannot be replaced without the original receipt."
    )


@pytest.fixture
def sample_source_type() -> SourceType:
    return SourceType.PLAIN_TEXT
