"""Orchestrator for the knowledge source ingestion pipeline.

Pipeline stages: **extract -> segment -> embed -> store**.

The :class:`IngestionOrchestrator` coordinates five collaborators (the
extraction service, the text segmenter, the embedding provider, the
vector index and the progress tracker) without any of them knowing about
each other.  Every dependency is injected via the constructor so the
providers can be swapped (e.g. OpenAI -> Ollama) without touching this
class.

# ─── HOW ONE INGESTION RUNS ───────────────────────────────────────────
#
#   ingest()
#     └─ retry_async(attempt policy: 3 tries, 1s doubling, cap 30s)
#          └─ _run_attempt()
#               1. resolve text      (extractor, 60s timeout)
#               2. delete old chunks (restart is idempotent)
#               3. segment           (120s timeout)
#               4. store in batches  (5 per batch, 1s pause)
#                    └─ retry_async(chunk policy: 3 tries, 1s doubling, cap 5s)
#                         embed_single() + upsert()
#
#   Structural errors (empty content, zero chunks) end the run at once.
#   Any other error fails the attempt and the whole attempt is retried.
#   A chunk that exhausts its own retries is counted, not raised; the
#   attempt only fails when *no* chunk was stored.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from src.interfaces.embedding_provider import IEmbeddingProvider
from src.interfaces.extraction_service import IExtractionService
from src.interfaces.vector_index import IndexFilter, IVectorIndex
from src.models.knowledge import KnowledgeSettings, ProcessingStage, SourceStatus
from src.models.pipeline import IngestionOutcome, IngestionPayload
from src.models.rag import TextSegment
from src.pipeline.progress_tracker import ProgressTracker
from src.services.ingestion.chunk_metadata import build_chunk_id, build_chunk_metadata
from src.services.ingestion.segmenter import TextSegmenter
from src.utils.concurrency import batched_gather
from src.utils.errors import (
    ChunkingFailedError,
    EmptyContentError,
    ExtractionFailedError,
    KnowledgeEngineError,
    StorageFailedError,
)
from src.utils.retry import RetryPolicy, is_transient, retry_async

logger = structlog.get_logger(logger_name=__name__)

MIN_CONTENT_LENGTH = 10
MAX_CONTENT_LENGTH = 1_000_000
PARTIAL_SUCCESS_RATE = 0.8

# Progress band covered by chunk storage.
_STORE_START = 60
_STORE_END = 90


@dataclass(frozen=True)
class _AttemptReport:
    stored: int
    total: int
    content_length: int


class IngestionOrchestrator:
    """Runs one knowledge source through extract -> segment -> embed -> store.

    Parameters
    ----------
    segmenter:
        Splits the extracted text into ordered segments.
    embedding_provider:
        Generates one vector per stored segment.
    vector_index:
        Receives the (vector, metadata) records.
    extractor:
        Turns a payload into plain text.
    progress:
        Persists and broadcasts progress milestones.
    batch_size:
        Chunks stored concurrently per batch.
    batch_delay:
        Seconds to pause between storage batches.
    chunk_policy:
        Retry policy for a single chunk's embed + upsert.
    attempt_policy:
        Retry policy for a whole ingestion attempt.
    extraction_timeout:
        Deadline for the extraction call, in seconds.
    chunking_timeout:
        Deadline for segmentation, in seconds.
    sleep:
        Injectable sleep used for every backoff and batch pause.
    """

    def __init__(
        self,
        segmenter: TextSegmenter,
        embedding_provider: IEmbeddingProvider,
        vector_index: IVectorIndex,
        extractor: IExtractionService,
        progress: ProgressTracker,
        batch_size: int = 5,
        batch_delay: float = 1.0,
        chunk_policy: RetryPolicy | None = None,
        attempt_policy: RetryPolicy | None = None,
        extraction_timeout: float = 60.0,
        chunking_timeout: float = 120.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._segmenter = segmenter
        self._embedding_provider = embedding_provider
        self._vector_index = vector_index
        self._extractor = extractor
        self._progress = progress
        self._batch_size = batch_size
        self._batch_delay = batch_delay
        self._chunk_policy = chunk_policy or RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0)
        self._attempt_policy = attempt_policy or RetryPolicy(
            max_attempts=3, base_delay=1.0, max_delay=30.0
        )
        self._extraction_timeout = extraction_timeout
        self._chunking_timeout = chunking_timeout
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ingest(
        self,
        source_id: str,
        agent_id: str,
        payload: IngestionPayload,
        settings: KnowledgeSettings,
    ) -> IngestionOutcome:
        """Ingest one knowledge source end to end.

        Never raises for pipeline failures: the source record is marked
        ``failed`` and the returned outcome carries the reason and whether
        a later redelivery could help.

        Parameters
        ----------
        source_id:
            The knowledge source being processed.
        agent_id:
            Owning agent; every stored chunk is tagged with it.
        payload:
            Source type plus locator and/or pre-extracted text.
        settings:
            The agent's chunking configuration.

        Returns
        -------
        IngestionOutcome
            Stored / total chunk counts on success, or the failure reason.
        """
        start = time.monotonic()
        logger.info(
            "ingestion_started",
            source_id=source_id,
            agent_id=agent_id,
            source_type=payload.source_type.value,
            strategy=settings.chunking_strategy.value,
        )

        async def _attempt(attempt: int) -> _AttemptReport:
            return await self._run_attempt(attempt, source_id, agent_id, payload, settings)

        async def _on_retry(attempt: int, delay: float, exc: BaseException) -> None:
            logger.warning(
                "ingestion_attempt_failed",
                source_id=source_id,
                attempt=attempt,
                retry_in=delay,
                error=str(exc),
            )
            await self._progress.update(
                source_id,
                10,
                f"Attempt {attempt} failed, retrying in {delay:g}s...",
                ProcessingStage.RETRYING,
            )

        try:
            report = await retry_async(
                _attempt,
                self._attempt_policy,
                is_retryable=is_transient,
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except KnowledgeEngineError as exc:
            return await self._fail(source_id, exc, time.monotonic() - start)

        return await self._complete(source_id, payload, settings, report, time.monotonic() - start)

    # ------------------------------------------------------------------
    # Attempt stages
    # ------------------------------------------------------------------

    async def _run_attempt(
        self,
        attempt: int,
        source_id: str,
        agent_id: str,
        payload: IngestionPayload,
        settings: KnowledgeSettings,
    ) -> _AttemptReport:
        update = self._progress.update
        max_attempts = self._attempt_policy.max_attempts

        await update(
            source_id,
            5,
            f"Processing attempt {attempt}/{max_attempts}",
            ProcessingStage.INITIALIZING,
            status=SourceStatus.PROCESSING,
        )
        await update(source_id, 10, "Initializing processors", ProcessingStage.INITIALIZING)
        await update(source_id, 15, "Loading agent settings", ProcessingStage.INITIALIZING)
        await update(
            source_id,
            20,
            f"Extracting content from {payload.source_type.value}",
            ProcessingStage.EXTRACTING,
        )

        text = await self._resolve_text(source_id, payload)
        await update(
            source_id,
            50,
            f"Content extracted ({len(text)} characters)",
            ProcessingStage.PROCESSING,
        )
        await update(
            source_id, _STORE_START, "Processing content with RAG pipeline", ProcessingStage.PROCESSING
        )

        source_filter = IndexFilter().eq("agent_id", agent_id).eq("knowledge_source_id", source_id)
        removed = await self._vector_index.delete_many(source_filter)
        if removed:
            logger.info("previous_chunks_removed", source_id=source_id, removed=removed)

        segments = await self._segment(text, settings)
        stored = await self._store_segments(segments, source_id, agent_id, payload, settings)

        if stored == 0:
            raise StorageFailedError(
                message=f"Storage failed: 0/{len(segments)} chunks stored",
                provider_name=self._vector_index.get_provider_name(),
            )

        await update(source_id, _STORE_END, "Finalizing knowledge source", ProcessingStage.FINALIZING)
        return _AttemptReport(stored=stored, total=len(segments), content_length=len(text))

    async def _resolve_text(self, source_id: str, payload: IngestionPayload) -> str:
        try:
            text = await asyncio.wait_for(
                self._extractor.extract(payload.source_type, payload.locator, payload.content),
                timeout=self._extraction_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ExtractionFailedError(
                message=f"Content extraction timed out after {self._extraction_timeout:g}s",
                provider_name=self._extractor.get_provider_name(),
            ) from exc

        stripped = (text or "").strip()
        if not stripped:
            raise EmptyContentError(message="No content could be extracted from the source")
        if len(stripped) < MIN_CONTENT_LENGTH:
            raise EmptyContentError(
                message=f"Content too short ({len(stripped)} characters, minimum {MIN_CONTENT_LENGTH})"
            )

        if len(text) > MAX_CONTENT_LENGTH:
            logger.warning(
                "content_truncated",
                source_id=source_id,
                original_length=len(text),
                max_length=MAX_CONTENT_LENGTH,
            )
            text = text[:MAX_CONTENT_LENGTH]
        return text

    async def _segment(self, text: str, settings: KnowledgeSettings) -> list[TextSegment]:
        try:
            segments = await asyncio.wait_for(
                self._segmenter.segment(
                    text,
                    max_chunk_size=settings.chunk_size,
                    overlap=settings.chunk_overlap,
                    strategy=settings.chunking_strategy,
                ),
                timeout=self._chunking_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ChunkingFailedError(
                message=f"Text segmentation timed out after {self._chunking_timeout:g}s"
            ) from exc

        if not segments:
            raise ChunkingFailedError()
        return segments

    async def _store_segments(
        self,
        segments: list[TextSegment],
        source_id: str,
        agent_id: str,
        payload: IngestionPayload,
        settings: KnowledgeSettings,
    ) -> int:
        """Embed and upsert every segment; return how many were stored."""
        created_at = datetime.now(tz=timezone.utc)  # noqa: UP017
        created_ms = int(created_at.timestamp() * 1000)
        source_name = payload.name or payload.locator or source_id

        async def _store(segment: TextSegment) -> str:
            chunk_id = build_chunk_id(agent_id, source_id, segment.chunk_index, created_ms)
            metadata = build_chunk_metadata(
                segment,
                agent_id=agent_id,
                source_id=source_id,
                source_name=source_name,
                source_type=payload.source_type,
                strategy=settings.chunking_strategy,
                created_at=created_at,
            )

            async def _embed_and_upsert(attempt: int) -> None:
                vector = await self._embedding_provider.embed_single(segment.content)
                await self._vector_index.upsert(chunk_id, vector, metadata)

            await retry_async(_embed_and_upsert, self._chunk_policy, sleep=self._sleep)
            return chunk_id

        async def _on_batch(done: int, total: int) -> None:
            percent = _STORE_START + (_STORE_END - _STORE_START) * done / total
            await self._progress.update(
                source_id,
                percent,
                f"Stored batch: {done}/{total} chunks processed",
                ProcessingStage.PROCESSING,
            )

        results = await batched_gather(
            segments,
            _store,
            batch_size=self._batch_size,
            delay=self._batch_delay,
            on_batch=_on_batch,
            sleep=self._sleep,
        )

        stored = 0
        for segment, result in zip(segments, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "chunk_store_failed",
                    source_id=source_id,
                    chunk_index=segment.chunk_index,
                    error=str(result),
                )
            else:
                stored += 1
        return stored

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    async def _complete(
        self,
        source_id: str,
        payload: IngestionPayload,
        settings: KnowledgeSettings,
        report: _AttemptReport,
        duration: float,
    ) -> IngestionOutcome:
        success_rate = report.stored / report.total
        partial = success_rate < PARTIAL_SUCCESS_RATE
        if partial:
            message = f"Partial success: {report.stored}/{report.total} chunks stored"
            logger.warning(
                "ingestion_partial_success",
                source_id=source_id,
                stored=report.stored,
                total=report.total,
            )
        else:
            message = f"Processing completed: {report.stored} chunks stored"

        metadata: dict[str, Any] = {
            "chunks_count": report.stored,
            "total_chunks": report.total,
            "failed_chunks": report.total - report.stored,
            "partial": partial,
            "success_rate": round(success_rate, 4),
            "chunking_strategy": settings.chunking_strategy.value,
            "chunk_size": settings.chunk_size,
            "chunk_overlap": settings.chunk_overlap,
            "content_length": report.content_length,
            "processing_duration": round(duration, 3),
            "processed_at": datetime.now(tz=timezone.utc).isoformat(),  # noqa: UP017
            "processed_with": (
                f"{self._embedding_provider.get_provider_name()}"
                f"+{self._vector_index.get_provider_name()}"
            ),
        }
        await self._progress.update(
            source_id,
            100,
            message,
            ProcessingStage.COMPLETED,
            status=SourceStatus.COMPLETED,
            metadata=metadata,
        )
        logger.info(
            "ingestion_completed",
            source_id=source_id,
            source_type=payload.source_type.value,
            chunks=report.stored,
            total=report.total,
            duration=round(duration, 3),
        )
        return IngestionOutcome(
            source_id=source_id,
            success=True,
            chunk_count=report.stored,
            total_chunks=report.total,
            partial=partial,
            duration_seconds=duration,
        )

    async def _fail(
        self, source_id: str, exc: KnowledgeEngineError, duration: float
    ) -> IngestionOutcome:
        reason = exc.message
        retryable = is_transient(exc)
        logger.error(
            "ingestion_failed",
            source_id=source_id,
            error=str(exc),
            error_type=type(exc).__name__,
            retryable=retryable,
        )
        await self._progress.update(
            source_id,
            0,
            f"Processing failed: {reason}",
            ProcessingStage.FAILED,
            status=SourceStatus.FAILED,
            metadata={
                "error": reason,
                "error_type": type(exc).__name__,
                "timestamp": datetime.now(tz=timezone.utc).isoformat(),  # noqa: UP017
            },
        )
        return IngestionOutcome(
            source_id=source_id,
            success=False,
            reason=reason,
            retryable=retryable,
            duration_seconds=duration,
        )
