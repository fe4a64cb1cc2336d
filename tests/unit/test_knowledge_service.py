"""Unit tests for the KnowledgeService facade."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from pydantic import ValidationError

from src.models.knowledge import (
    KnowledgeSettings,
    KnowledgeSource,
    ProcessingStage,
    SearchStrategy,
    SourceStatus,
    SourceType,
)
from src.models.rag import RetrievalFilters, RetrievedChunk
from src.providers.knowledge_store.sqlite_knowledge_store import SQLiteKnowledgeStore
from src.providers.queue.memory_queue import MemoryJobQueue
from src.services.knowledge_service import KnowledgeService, format_context_prompt
from src.services.retrieval.engine import RetrievalEngine
from src.utils.errors import IndexServiceError, SourceNotFoundError
from tests.conftest import MockEmbeddingProvider, MockVectorIndex


@pytest_asyncio.fixture
async def service(
    sqlite_store: SQLiteKnowledgeStore,
    memory_queue: MemoryJobQueue,
    mock_vector_index: MockVectorIndex,
    mock_embedding_provider: MockEmbeddingProvider,
) -> KnowledgeService:
    return KnowledgeService(
        store=sqlite_store,
        queue=memory_queue,
        vector_index=mock_vector_index,
        retrieval_engine=RetrievalEngine(mock_embedding_provider, mock_vector_index),
    )


async def _index_chunk(
    index: MockVectorIndex,
    embedding: MockEmbeddingProvider,
    source_id: str,
    text: str,
    agent_id: str = "agent-1",
    chunk_index: int = 0,
) -> None:
    await index.upsert(
        f"{agent_id}_{source_id}_{chunk_index}_0",
        await embedding.embed_single(text),
        {
            "agent_id": agent_id,
            "knowledge_source_id": source_id,
            "chunk_index": chunk_index,
            "content": text,
            "content_type": "general",
            "source_type": "plain_text",
            "language": "en",
            "source_name": f"{source_id} notes",
        },
    )


async def _completed_source(store: SQLiteKnowledgeStore, source_id: str, agent_id: str = "agent-1") -> None:
    await store.create_source(
        KnowledgeSource(
            source_id=source_id,
            agent_id=agent_id,
            source_type=SourceType.PLAIN_TEXT,
            name=f"{source_id} notes",
            content="x" * 20,
            status=SourceStatus.COMPLETED,
            progress_percentage=100,
        )
    )


# ---------------------------------------------------------------------------
# Submission and lifecycle
# ---------------------------------------------------------------------------


class TestSubmission:
    @pytest.mark.asyncio
    async def test_submit_records_pending_source_and_enqueues(
        self, service: KnowledgeService, sqlite_store: SQLiteKnowledgeStore, memory_queue: MemoryJobQueue
    ) -> None:
        source_id = await service.submit_knowledge_source(
            "agent-1", SourceType.PLAIN_TEXT, content="Refunds take five days.", name="FAQ"
        )

        source = await sqlite_store.get_source(source_id)
        assert source is not None
        assert source.status is SourceStatus.PENDING
        assert source.progress_percentage == 0
        assert source.progress_message == "Knowledge source created, queued for processing..."
        assert source.processing_stage is ProcessingStage.INITIALIZING
        assert source.name == "FAQ"

        (message,) = await memory_queue.receive()
        assert message.job.source_id == source_id
        assert message.job.payload.content == "Refunds take five days."

    @pytest.mark.asyncio
    async def test_submit_accepts_string_type(self, service: KnowledgeService) -> None:
        source_id = await service.submit_knowledge_source("agent-1", "web_page", locator="https://example.com")
        status = await service.get_source_status(source_id)
        assert status.status is SourceStatus.PENDING

    @pytest.mark.asyncio
    async def test_submit_requires_locator_or_content(self, service: KnowledgeService) -> None:
        with pytest.raises(ValueError):
            await service.submit_knowledge_source("agent-1", SourceType.PDF)

    @pytest.mark.asyncio
    async def test_unknown_source_type_rejected(self, service: KnowledgeService) -> None:
        with pytest.raises(ValueError):
            await service.submit_knowledge_source("agent-1", "spreadsheet", content="a,b")

    @pytest.mark.asyncio
    async def test_status_of_missing_source(self, service: KnowledgeService) -> None:
        with pytest.raises(SourceNotFoundError):
            await service.get_source_status("missing")

    @pytest.mark.asyncio
    async def test_failed_status_exposes_error(
        self, service: KnowledgeService, sqlite_store: SQLiteKnowledgeStore
    ) -> None:
        source_id = await service.submit_knowledge_source("agent-1", SourceType.PLAIN_TEXT, content="text here")
        await sqlite_store.update_source(
            source_id, status=SourceStatus.FAILED, metadata={"error": "No content could be extracted"}
        )

        status = await service.get_source_status(source_id)

        assert status.error == "No content could be extracted"
        assert status.estimated_seconds_remaining is None

    @pytest.mark.asyncio
    async def test_delete_removes_chunks_and_record(
        self,
        service: KnowledgeService,
        sqlite_store: SQLiteKnowledgeStore,
        mock_vector_index: MockVectorIndex,
        mock_embedding_provider: MockEmbeddingProvider,
    ) -> None:
        await _completed_source(sqlite_store, "s1")
        await _index_chunk(mock_vector_index, mock_embedding_provider, "s1", "first chunk", chunk_index=0)
        await _index_chunk(mock_vector_index, mock_embedding_provider, "s1", "second chunk", chunk_index=1)
        await _index_chunk(mock_vector_index, mock_embedding_provider, "s2", "other source")

        assert await service.delete_knowledge_source("s1") == 2
        assert await sqlite_store.get_source("s1") is None
        assert mock_vector_index.chunks_for("s2")

    @pytest.mark.asyncio
    async def test_reprocess_resets_and_requeues(
        self, service: KnowledgeService, sqlite_store: SQLiteKnowledgeStore, memory_queue: MemoryJobQueue
    ) -> None:
        await _completed_source(sqlite_store, "s1")

        await service.reprocess_knowledge_source("s1")

        source = await sqlite_store.get_source("s1")
        assert source is not None
        assert source.status is SourceStatus.PENDING
        assert source.progress_percentage == 0
        assert "reprocess_requested_at" in source.metadata
        assert memory_queue.pending_count() == 1

    @pytest.mark.asyncio
    async def test_clear_queue(self, service: KnowledgeService, memory_queue: MemoryJobQueue) -> None:
        await service.submit_knowledge_source("agent-1", SourceType.PLAIN_TEXT, content="one")
        await service.submit_knowledge_source("agent-1", SourceType.PLAIN_TEXT, content="two")
        assert await service.clear_queue() == 2
        assert memory_queue.pending_count() == 0


class TestEstimate:
    def _source(self, progress: int, started: datetime, **meta) -> KnowledgeSource:
        return KnowledgeSource(
            source_id="s1",
            agent_id="agent-1",
            source_type=SourceType.PLAIN_TEXT,
            status=SourceStatus.PROCESSING,
            progress_percentage=progress,
            created_at=started,
            metadata=meta,
        )

    def test_linear_extrapolation(self) -> None:
        started = datetime.now(tz=timezone.utc) - timedelta(seconds=30)  # noqa: UP017
        remaining = KnowledgeService._estimate_remaining(self._source(50, started))
        assert remaining is not None
        assert 28 <= remaining <= 32

    def test_reprocess_timestamp_takes_precedence(self) -> None:
        long_ago = datetime.now(tz=timezone.utc) - timedelta(days=1)  # noqa: UP017
        requested = datetime.now(tz=timezone.utc) - timedelta(seconds=10)  # noqa: UP017
        remaining = KnowledgeService._estimate_remaining(
            self._source(50, long_ago, reprocess_requested_at=requested.isoformat())
        )
        assert remaining is not None
        assert remaining < 60

    def test_unknown_at_zero_progress(self) -> None:
        started = datetime.now(tz=timezone.utc)  # noqa: UP017
        assert KnowledgeService._estimate_remaining(self._source(0, started)) is None


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


class TestRetrieveContext:
    @pytest.fixture
    def rag_settings(self) -> KnowledgeSettings:
        return KnowledgeSettings(
            agent_id="agent-1", enable_rag=True, similarity_threshold=0.2, search_strategy=SearchStrategy.COSINE
        )

    @pytest.mark.asyncio
    async def test_disabled_rag_returns_nothing(
        self, service: KnowledgeService, mock_embedding_provider: MockEmbeddingProvider
    ) -> None:
        assert await service.retrieve_context("agent-1", "refunds") == []
        assert mock_embedding_provider.calls == 0

    @pytest.mark.asyncio
    async def test_only_completed_sources_are_searched(
        self,
        service: KnowledgeService,
        sqlite_store: SQLiteKnowledgeStore,
        mock_vector_index: MockVectorIndex,
        mock_embedding_provider: MockEmbeddingProvider,
        rag_settings: KnowledgeSettings,
    ) -> None:
        await _completed_source(sqlite_store, "done")
        await _index_chunk(mock_vector_index, mock_embedding_provider, "done", "refunds take five days")
        # Chunks of a source still being processed.
        await _index_chunk(mock_vector_index, mock_embedding_provider, "busy", "refunds take five days")

        chunks = await service.retrieve_context("agent-1", "refunds take five days", settings=rag_settings)

        assert [c.source_id for c in chunks] == ["done"]

    @pytest.mark.asyncio
    async def test_no_completed_sources(self, service: KnowledgeService, rag_settings: KnowledgeSettings) -> None:
        assert await service.retrieve_context("agent-1", "anything", settings=rag_settings) == []

    @pytest.mark.asyncio
    async def test_requested_source_ids_are_intersected(
        self,
        service: KnowledgeService,
        sqlite_store: SQLiteKnowledgeStore,
        mock_vector_index: MockVectorIndex,
        mock_embedding_provider: MockEmbeddingProvider,
        rag_settings: KnowledgeSettings,
    ) -> None:
        for sid in ("a", "b"):
            await _completed_source(sqlite_store, sid)
            await _index_chunk(mock_vector_index, mock_embedding_provider, sid, "shipping is free")

        chunks = await service.retrieve_context(
            "agent-1", "shipping is free", settings=rag_settings, filters=RetrievalFilters(source_ids=["b", "zzz"])
        )

        assert [c.source_id for c in chunks] == ["b"]

    @pytest.mark.asyncio
    async def test_index_outage_degrades_to_empty(
        self,
        service: KnowledgeService,
        sqlite_store: SQLiteKnowledgeStore,
        mock_vector_index: MockVectorIndex,
        rag_settings: KnowledgeSettings,
    ) -> None:
        await _completed_source(sqlite_store, "done")
        mock_vector_index.query_error = IndexServiceError(message="unreachable")

        assert await service.retrieve_context("agent-1", "refunds", settings=rag_settings) == []

    @pytest.mark.asyncio
    async def test_contextual_falls_back_to_cosine_when_disabled(
        self,
        service: KnowledgeService,
        sqlite_store: SQLiteKnowledgeStore,
        mock_vector_index: MockVectorIndex,
        mock_embedding_provider: MockEmbeddingProvider,
    ) -> None:
        await _completed_source(sqlite_store, "done")
        await _index_chunk(mock_vector_index, mock_embedding_provider, "done", "refunds take five days")
        mock_vector_index.context_error = IndexServiceError(message="neighbour lookups must not run")
        settings = KnowledgeSettings(
            agent_id="agent-1",
            enable_rag=True,
            similarity_threshold=0.2,
            search_strategy=SearchStrategy.CONTEXTUAL,
            enable_contextual_search=False,
        )

        chunks = await service.retrieve_context("agent-1", "refunds take five days", settings=settings)

        assert len(chunks) == 1
        assert "has_context" not in chunks[0].metadata

    @pytest.mark.asyncio
    async def test_enrich_message_uses_stored_settings(
        self,
        service: KnowledgeService,
        sqlite_store: SQLiteKnowledgeStore,
        mock_vector_index: MockVectorIndex,
        mock_embedding_provider: MockEmbeddingProvider,
        rag_settings: KnowledgeSettings,
    ) -> None:
        await sqlite_store.save_settings(rag_settings)
        await _completed_source(sqlite_store, "done")
        await _index_chunk(mock_vector_index, mock_embedding_provider, "done", "refunds take five days")

        prompt = await service.enrich_message("agent-1", "refunds take five days")

        assert prompt.startswith("Context information:\n[Source 1 - done notes]\nrefunds take five days")
        assert prompt.endswith("User question: refunds take five days")


class TestContextPrompt:
    def test_no_chunks_returns_message(self) -> None:
        assert format_context_prompt([], "Hello?") == "Hello?"

    def test_numbered_sources(self) -> None:
        chunks = [
            RetrievedChunk(chunk_id="c1", content="Alpha text", score=0.9, metadata={"source_name": "Doc A"}),
            RetrievedChunk(chunk_id="c2", content="Beta text", score=0.8),
        ]
        assert format_context_prompt(chunks, "Q?") == (
            "Context information:\n"
            "[Source 1 - Doc A]\nAlpha text\n\n"
            "[Source 2]\nBeta text\n\n"
            "User question: Q?"
        )


# ---------------------------------------------------------------------------
# Settings and statistics
# ---------------------------------------------------------------------------


class TestSettingsAndStats:
    @pytest.mark.asyncio
    async def test_update_settings_validates_and_persists(self, service: KnowledgeService) -> None:
        updated = await service.update_settings("agent-1", enable_rag=True, chunk_size=1000)
        assert updated.enable_rag is True
        assert (await service.get_settings("agent-1")).chunk_size == 1000

    @pytest.mark.asyncio
    async def test_out_of_range_value_is_rejected(self, service: KnowledgeService) -> None:
        with pytest.raises(ValidationError):
            await service.update_settings("agent-1", chunk_size=50)
        assert (await service.get_settings("agent-1")).chunk_size == 2000

    @pytest.mark.asyncio
    async def test_unknown_setting_is_rejected(self, service: KnowledgeService) -> None:
        with pytest.raises(ValueError, match="colour"):
            await service.update_settings("agent-1", colour="blue")

    @pytest.mark.asyncio
    async def test_string_values_are_coerced(self, service: KnowledgeService) -> None:
        updated = await service.update_settings("agent-1", chunk_size="1200", search_strategy="contextual")
        assert updated.chunk_size == 1200
        assert updated.search_strategy is SearchStrategy.CONTEXTUAL

    @pytest.mark.asyncio
    async def test_statistics(
        self,
        service: KnowledgeService,
        mock_vector_index: MockVectorIndex,
        mock_embedding_provider: MockEmbeddingProvider,
    ) -> None:
        await _index_chunk(mock_vector_index, mock_embedding_provider, "s1", "one", chunk_index=0)
        await _index_chunk(mock_vector_index, mock_embedding_provider, "s1", "two", chunk_index=1)
        await _index_chunk(mock_vector_index, mock_embedding_provider, "s2", "three")
        await _index_chunk(mock_vector_index, mock_embedding_provider, "s9", "other agent", agent_id="agent-2")

        stats = await service.get_statistics("agent-1")

        assert stats.total_chunks == 3
        assert stats.total_sources == 2
        assert stats.content_types == {"general": 3}
        assert stats.languages == {"en": 3}
