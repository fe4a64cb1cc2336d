"""Outer-surface facade over the knowledge engine.

:class:`KnowledgeService` is what a request handler, a chat endpoint or
the CLI talks to.  It never runs ingestion inline: submission records the
source, enqueues a job and returns, and the :class:`ProcessingSupervisor`
picks the job up in the background.  Query-side calls go straight to the
:class:`RetrievalEngine` and degrade to "no context" when the index is
unreachable, so a chat reply is never blocked by retrieval.
"""

from __future__ import annotations

import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any

import structlog

from src.interfaces.job_queue import IJobQueue
from src.interfaces.knowledge_store import IKnowledgeStore
from src.interfaces.vector_index import IndexFilter, IVectorIndex
from src.models.knowledge import (
    KnowledgeSettings,
    KnowledgeSource,
    ProcessingStage,
    SearchStrategy,
    SourceStatus,
    SourceStatusView,
    SourceType,
)
from src.models.pipeline import IngestionJob, IngestionPayload
from src.models.rag import KnowledgeStats, RetrievalFilters, RetrievedChunk
from src.services.retrieval.engine import RetrievalEngine
from src.utils.errors import RetrievalUnavailableError, SourceNotFoundError

logger = structlog.get_logger(logger_name=__name__)

_QUEUED_MESSAGE = "Knowledge source created, queued for processing..."
_REQUEUED_MESSAGE = "Knowledge source queued for reprocessing..."


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


def format_context_prompt(chunks: list[RetrievedChunk], message: str) -> str:
    """Wrap *message* with a numbered "Context information" block.

    Returns *message* unchanged when there are no chunks.
    """
    if not chunks:
        return message
    parts = []
    for i, chunk in enumerate(chunks, start=1):
        name = str(chunk.metadata.get("source_name", ""))
        header = f"[Source {i} - {name}]" if name else f"[Source {i}]"
        parts.append(f"{header}\n{chunk.content}")
    context = "\n\n".join(parts)
    return f"Context information:\n{context}\n\nUser question: {message}"


class KnowledgeService:
    """Submission, status, retrieval and settings for agent knowledge.

    Parameters
    ----------
    store:
        Knowledge source and settings persistence.
    queue:
        Job queue drained by the processing supervisor.
    vector_index:
        Index holding stored chunks (used for deletion and statistics).
    retrieval_engine:
        Ranks chunks at query time.
    """

    def __init__(
        self,
        store: IKnowledgeStore,
        queue: IJobQueue,
        vector_index: IVectorIndex,
        retrieval_engine: RetrievalEngine,
    ) -> None:
        self._store = store
        self._queue = queue
        self._vector_index = vector_index
        self._retrieval = retrieval_engine

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def submit_knowledge_source(
        self,
        agent_id: str,
        source_type: SourceType | str,
        locator: str | None = None,
        content: str | None = None,
        name: str | None = None,
    ) -> str:
        """Record a new source, enqueue its ingestion and return its id.

        Parameters
        ----------
        agent_id:
            Owning agent.
        source_type:
            One of :class:`SourceType`.
        locator:
            URL or original filename.
        content:
            Pre-extracted text, when the caller already has it.
        name:
            Display name; defaults to the locator.

        Returns
        -------
        str
            The new source id.  Processing happens in the background.

        Raises
        ------
        ValueError
            When neither a locator nor content is given, or a web page
            has no URL.
        """
        source_type = SourceType(source_type)
        if locator is None and content is None:
            raise ValueError("A knowledge source needs a locator or content")
        if source_type is SourceType.WEB_PAGE and content is None and not locator:
            raise ValueError("A web page source needs a URL")

        source_id = uuid.uuid4().hex
        display_name = name or locator or f"{source_type.value} {source_id[:8]}"
        source = KnowledgeSource(
            source_id=source_id,
            agent_id=agent_id,
            source_type=source_type,
            name=display_name,
            locator=locator,
            content=content,
            status=SourceStatus.PENDING,
            progress_percentage=0,
            progress_message=_QUEUED_MESSAGE,
            processing_stage=ProcessingStage.INITIALIZING,
        )
        await self._store.create_source(source)
        await self._enqueue(source)

        logger.info(
            "knowledge_source_submitted",
            source_id=source_id,
            agent_id=agent_id,
            source_type=source_type.value,
        )
        return source_id

    async def get_source_status(self, source_id: str) -> SourceStatusView:
        """Progress snapshot with a rough time-remaining estimate."""
        source = await self._require_source(source_id)
        error = source.metadata.get("error") if source.status is SourceStatus.FAILED else None
        return SourceStatusView(
            source_id=source.source_id,
            status=source.status,
            progress_percentage=source.progress_percentage,
            progress_message=source.progress_message,
            processing_stage=source.processing_stage,
            estimated_seconds_remaining=self._estimate_remaining(source),
            error=str(error) if error else None,
        )

    async def list_sources(
        self, agent_id: str, status: SourceStatus | None = None
    ) -> list[KnowledgeSource]:
        return await self._store.list_sources(agent_id, status=status)

    async def delete_knowledge_source(self, source_id: str) -> int:
        """Remove a source's chunks from the index, then its record.

        Returns
        -------
        int
            Number of chunks removed.
        """
        source = await self._require_source(source_id)
        removed = await self._vector_index.delete_many(
            IndexFilter().eq("agent_id", source.agent_id).eq("knowledge_source_id", source_id)
        )
        await self._store.delete_source(source_id)
        logger.info("knowledge_source_deleted", source_id=source_id, chunks_removed=removed)
        return removed

    async def reprocess_knowledge_source(self, source_id: str) -> None:
        """Reset a source to ``pending`` and enqueue it again.

        Prior chunks are replaced when the new run starts.
        """
        source = await self._require_source(source_id)
        updated = await self._store.update_source(
            source_id,
            status=SourceStatus.PENDING,
            progress_percentage=0,
            progress_message=_REQUEUED_MESSAGE,
            processing_stage=ProcessingStage.INITIALIZING,
            metadata={"reprocess_requested_at": _utcnow().isoformat()},
        )
        await self._enqueue(updated or source)
        logger.info("knowledge_source_reprocess_requested", source_id=source_id)

    async def clear_queue(self) -> int:
        """Drop every pending ingestion job (admin reset)."""
        removed = await self._queue.clear()
        logger.warning("ingestion_queue_cleared", removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def retrieve_context(
        self,
        agent_id: str,
        query: str,
        settings: KnowledgeSettings | None = None,
        filters: RetrievalFilters | None = None,
    ) -> list[RetrievedChunk]:
        """Rank the agent's completed-source chunks against *query*.

        Returns ``[]`` when RAG is disabled for the agent, when it has no
        completed sources, or when retrieval is unavailable.
        """
        settings = settings or await self._store.get_settings(agent_id)
        if not settings.enable_rag:
            return []

        completed = await self._store.list_sources(agent_id, status=SourceStatus.COMPLETED)
        source_ids = [s.source_id for s in completed]
        if filters is not None and filters.source_ids is not None:
            wanted = set(filters.source_ids)
            source_ids = [s for s in source_ids if s in wanted]
        if not source_ids:
            return []
        scoped = (filters or RetrievalFilters()).model_copy(update={"source_ids": source_ids})

        strategy = settings.search_strategy
        if strategy is SearchStrategy.CONTEXTUAL and not settings.enable_contextual_search:
            strategy = SearchStrategy.COSINE

        try:
            return await self._retrieval.retrieve(
                query,
                agent_id,
                max_chunks=settings.max_chunks_per_query,
                threshold=settings.similarity_threshold,
                strategy=strategy,
                filters=scoped,
                context_window=settings.context_window,
            )
        except RetrievalUnavailableError as exc:
            logger.warning("retrieval_degraded", agent_id=agent_id, error=str(exc))
            return []

    def build_context_prompt(self, chunks: list[RetrievedChunk], message: str) -> str:
        return format_context_prompt(chunks, message)

    async def enrich_message(self, agent_id: str, message: str) -> str:
        """Retrieve context for *message* and wrap it into a prompt."""
        chunks = await self.retrieve_context(agent_id, message)
        return format_context_prompt(chunks, message)

    # ------------------------------------------------------------------
    # Settings & statistics
    # ------------------------------------------------------------------

    async def get_settings(self, agent_id: str) -> KnowledgeSettings:
        return await self._store.get_settings(agent_id)

    async def update_settings(self, agent_id: str, **changes: Any) -> KnowledgeSettings:
        """Validate and persist a partial settings update.

        Raises
        ------
        ValueError
            For unknown setting names.
        pydantic.ValidationError
            For out-of-range values; nothing is persisted.
        """
        unknown = set(changes) - set(KnowledgeSettings.model_fields) - {"agent_id"}
        if unknown:
            msg = f"Unknown knowledge settings: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        current = await self._store.get_settings(agent_id)
        updated = KnowledgeSettings.model_validate(
            {**current.model_dump(), **changes, "agent_id": agent_id}
        )
        saved = await self._store.save_settings(updated)
        logger.info("knowledge_settings_updated", agent_id=agent_id, changed=sorted(changes))
        return saved

    async def get_statistics(self, agent_id: str) -> KnowledgeStats:
        """Chunk counts for the agent by content type, source type and language."""
        records = await self._vector_index.scan_metadata(IndexFilter().eq("agent_id", agent_id))
        return KnowledgeStats(
            agent_id=agent_id,
            total_chunks=len(records),
            total_sources=len({r.get("knowledge_source_id") for r in records}),
            content_types=dict(Counter(str(r.get("content_type", "unknown")) for r in records)),
            source_types=dict(Counter(str(r.get("source_type", "unknown")) for r in records)),
            languages=dict(Counter(str(r.get("language", "unknown")) for r in records)),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require_source(self, source_id: str) -> KnowledgeSource:
        source = await self._store.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(message=f"Knowledge source not found: {source_id}")
        return source

    async def _enqueue(self, source: KnowledgeSource) -> None:
        job = IngestionJob(
            source_id=source.source_id,
            agent_id=source.agent_id,
            payload=IngestionPayload(
                source_type=source.source_type,
                locator=source.locator,
                content=source.content,
                name=source.name,
            ),
        )
        await self._queue.send(job)

    @staticmethod
    def _estimate_remaining(source: KnowledgeSource) -> int | None:
        """Linear extrapolation from progress so far; ``None`` when unknown."""
        if source.status is not SourceStatus.PROCESSING:
            return None
        progress = source.progress_percentage
        if progress <= 0 or progress >= 100:
            return None
        started = source.created_at
        requested = source.metadata.get("reprocess_requested_at")
        if requested:
            started = datetime.fromisoformat(str(requested))
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)  # noqa: UP017
        elapsed = (_utcnow() - started).total_seconds()
        if elapsed <= 0:
            return None
        return int(elapsed * (100 - progress) / progress)
