"""End-to-end flow: submit -> queue -> supervisor -> orchestrator -> retrieve.

Uses the real SQLite store, in-memory queue, segmenter, orchestrator,
supervisor and retrieval engine; only the embedding model and the vector
database are replaced by the in-memory doubles from conftest.
"""

from __future__ import annotations

import pytest
import pytest_asyncio

from src.models.knowledge import ChunkingStrategy, KnowledgeSettings, SearchStrategy, SourceStatus, SourceType
from src.pipeline.progress_tracker import ProgressTracker
from src.pipeline.supervisor import ProcessingSupervisor
from src.providers.extraction.passthrough_extractor import PassthroughExtractor
from src.providers.knowledge_store.sqlite_knowledge_store import SQLiteKnowledgeStore
from src.providers.queue.memory_queue import MemoryJobQueue
from src.services.ingestion.orchestrator import IngestionOrchestrator
from src.services.ingestion.segmenter import TextSegmenter
from src.services.knowledge_service import KnowledgeService
from src.services.retrieval.engine import RetrievalEngine
from src.utils.retry import RetryPolicy
from tests.conftest import MockEmbeddingProvider, MockVectorIndex, no_sleep


class _Stack:
    def __init__(self, store: SQLiteKnowledgeStore, queue: MemoryJobQueue) -> None:
        self.store = store
        self.queue = queue
        self.embedding = MockEmbeddingProvider()
        self.index = MockVectorIndex()
        progress = ProgressTracker(store)
        orchestrator = IngestionOrchestrator(
            segmenter=TextSegmenter(embedding_provider=self.embedding, batch_delay=0.0, sleep=no_sleep),
            embedding_provider=self.embedding,
            vector_index=self.index,
            extractor=PassthroughExtractor(),
            progress=progress,
            batch_delay=0.0,
            chunk_policy=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0),
            sleep=no_sleep,
        )
        self.supervisor = ProcessingSupervisor(queue, store, orchestrator, progress, max_retries=3)
        self.service = KnowledgeService(
            store=store,
            queue=queue,
            vector_index=self.index,
            retrieval_engine=RetrievalEngine(self.embedding, self.index),
        )

    async def drain(self) -> None:
        while self.queue.pending_count():
            await self.supervisor.process_batch(await self.queue.receive(max_messages=4))


@pytest_asyncio.fixture
async def stack(sqlite_store: SQLiteKnowledgeStore, memory_queue: MemoryJobQueue) -> _Stack:
    await sqlite_store.save_settings(
        KnowledgeSettings(
            agent_id="agent-1",
            enable_rag=True,
            chunk_size=200,
            chunk_overlap=0,
            similarity_threshold=0.2,
            chunking_strategy=ChunkingStrategy.PARAGRAPH,
            search_strategy=SearchStrategy.HYBRID,
        )
    )
    return _Stack(sqlite_store, memory_queue)


class TestKnowledgeFlow:
    @pytest.mark.asyncio
    async def test_submitted_text_becomes_retrievable(self, stack: _Stack, sample_document: str) -> None:
        source_id = await stack.service.submit_knowledge_source(
            "agent-1", SourceType.PLAIN_TEXT, content=sample_document, name="Store policies"
        )
        assert await stack.service.retrieve_context("agent-1", "shipping delivery") == []

        await stack.drain()

        status = await stack.service.get_source_status(source_id)
        assert status.status is SourceStatus.COMPLETED
        assert status.progress_percentage == 100
        source = await stack.store.get_source(source_id)
        assert source is not None
        assert source.metadata["chunks_count"] == 4

        chunks = await stack.service.retrieve_context("agent-1", "How long does express shipping delivery take?")
        assert chunks
        assert "Shipping is free" in chunks[0].content
        assert chunks[0].source_name == "Store policies"

        prompt = await stack.service.enrich_message("agent-1", "Do gift cards expire?")
        assert "[Source 1 - Store policies]" in prompt
        assert "Gift cards never expire" in prompt

    @pytest.mark.asyncio
    async def test_sources_are_isolated_per_agent(self, stack: _Stack, sample_document: str) -> None:
        await stack.store.save_settings(KnowledgeSettings(agent_id="agent-2", enable_rag=True, similarity_threshold=0.1))
        await stack.service.submit_knowledge_source("agent-1", SourceType.PLAIN_TEXT, content=sample_document)
        await stack.drain()

        assert await stack.service.retrieve_context("agent-2", "gift cards expire") == []

    @pytest.mark.asyncio
    async def test_reprocess_replaces_chunks(self, stack: _Stack, sample_document: str) -> None:
        source_id = await stack.service.submit_knowledge_source(
            "agent-1", SourceType.PLAIN_TEXT, content=sample_document
        )
        await stack.drain()
        first = len(stack.index.chunks_for(source_id))

        await stack.service.reprocess_knowledge_source(source_id)
        await stack.drain()

        assert len(stack.index.chunks_for(source_id)) == first
        status = await stack.service.get_source_status(source_id)
        assert status.status is SourceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_empty_source_fails_without_retries(self, stack: _Stack) -> None:
        source_id = await stack.service.submit_knowledge_source("agent-1", SourceType.PLAIN_TEXT, content="   ")
        await stack.drain()

        status = await stack.service.get_source_status(source_id)
        assert status.status is SourceStatus.FAILED
        assert status.error is not None
        assert stack.embedding.calls == 0

    @pytest.mark.asyncio
    async def test_delete_removes_source_from_retrieval(self, stack: _Stack, sample_document: str) -> None:
        source_id = await stack.service.submit_knowledge_source(
            "agent-1", SourceType.PLAIN_TEXT, content=sample_document
        )
        await stack.drain()

        removed = await stack.service.delete_knowledge_source(source_id)

        assert removed == 4
        assert await stack.service.retrieve_context("agent-1", "gift cards expire") == []
        stats = await stack.service.get_statistics("agent-1")
        assert stats.total_chunks == 0
