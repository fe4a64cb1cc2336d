"""Background supervisor that drains the ingestion job queue.

Consumes :class:`IngestionJob` deliveries, runs each one through the
:class:`IngestionOrchestrator` and settles the delivery:

* success                         -> ``ack``
* retryable failure, under cap    -> ``retry`` with a new job (retry_count + 1)
* structural failure or cap hit   -> mark the source ``failed``, then ``ack``

Attempt counts come from the immutable ``retry_count`` carried by the
job, so redelivery never mutates a job another consumer might hold.
Store errors while loading a job count as retryable failures.  If
settling itself fails, the delivery is redelivered (or dropped once the
cap is hit) and the loop keeps running; deliveries still in flight when
the loop starts or stops are requeued.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from src.interfaces.job_queue import IJobQueue, QueueMessage
from src.interfaces.knowledge_store import IKnowledgeStore
from src.models.knowledge import ProcessingStage, SourceStatus
from src.models.pipeline import IngestionJob, IngestionOutcome
from src.pipeline.progress_tracker import ProgressTracker

if TYPE_CHECKING:
    from src.services.ingestion.orchestrator import IngestionOrchestrator

logger = structlog.get_logger(logger_name=__name__)


class ProcessingSupervisor:
    """Runs queued ingestion jobs with bounded redelivery.

    Parameters
    ----------
    queue:
        Source of ingestion jobs.
    store:
        Knowledge store holding source records and agent settings.
    orchestrator:
        Runs one ingestion end to end.
    progress:
        Progress tracker shared with the orchestrator.
    max_retries:
        Deliveries allowed before a retryable failure becomes terminal.
    """

    def __init__(
        self,
        queue: IJobQueue,
        store: IKnowledgeStore,
        orchestrator: IngestionOrchestrator,
        progress: ProgressTracker,
        max_retries: int = 3,
    ) -> None:
        self._queue = queue
        self._store = store
        self._orchestrator = orchestrator
        self._progress = progress
        self._max_retries = max_retries

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process_batch(self, messages: list[QueueMessage]) -> None:
        """Process and settle every delivery in *messages* concurrently."""
        if not messages:
            return
        results = await asyncio.gather(
            *(self._process_message(m) for m in messages),
            return_exceptions=True,
        )
        for message, result in zip(messages, results):
            if isinstance(result, Exception):
                await self._recover(message, result)

    async def run(
        self,
        stop_event: asyncio.Event,
        batch_size: int = 1,
        poll_timeout: float = 5.0,
    ) -> None:
        """Poll the queue until *stop_event* is set."""
        logger.info("supervisor_started", batch_size=batch_size, max_retries=self._max_retries)
        await self._queue.requeue_in_flight()
        try:
            while not stop_event.is_set():
                messages = await self._queue.receive(max_messages=batch_size, timeout=poll_timeout)
                await self.process_batch(messages)
        finally:
            await self._queue.requeue_in_flight()
            logger.info("supervisor_stopped", pending=self._queue.pending_count())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _process_message(self, message: QueueMessage) -> None:
        job = message.job
        try:
            outcome = await self._ingest(job)
        except Exception as exc:
            logger.exception(
                "ingestion_unexpected_error",
                job_id=job.job_id,
                source_id=job.source_id,
                error=str(exc),
            )
            outcome = IngestionOutcome(
                source_id=job.source_id,
                success=False,
                reason=str(exc) or type(exc).__name__,
                retryable=True,
            )

        if outcome is None:
            await message.ack()
            return
        await self._settle(message, outcome)

    async def _ingest(self, job: IngestionJob) -> IngestionOutcome | None:
        """Load the source and settings and run the orchestrator; ``None`` if the source is gone."""
        source = await self._store.get_source(job.source_id)
        if source is None:
            logger.warning("job_source_missing", job_id=job.job_id, source_id=job.source_id)
            return None

        await self._store.update_source(job.source_id, status=SourceStatus.PROCESSING)
        settings = await self._store.get_settings(job.agent_id)
        return await self._orchestrator.ingest(job.source_id, job.agent_id, job.payload, settings)

    async def _settle(self, message: QueueMessage, outcome: IngestionOutcome) -> None:
        job = message.job
        if outcome.success:
            await message.ack()
            logger.info(
                "job_completed",
                job_id=job.job_id,
                source_id=job.source_id,
                chunks=outcome.chunk_count,
                partial=outcome.partial,
            )
            return

        attempts = job.retry_count + 1
        reason = outcome.reason or "unknown error"

        if outcome.retryable and attempts <= self._max_retries:
            await self._progress.update(
                job.source_id,
                0,
                f"Attempt {attempts}/{self._max_retries} failed, queued for retry: {reason}",
                ProcessingStage.RETRYING,
                status=SourceStatus.PROCESSING,
            )
            await message.retry(job.next_attempt())
            logger.warning(
                "job_requeued_after_failure",
                job_id=job.job_id,
                source_id=job.source_id,
                attempts=attempts,
                reason=reason,
            )
            return

        await self._progress.update(
            job.source_id,
            0,
            f"Processing failed after {attempts} attempts: {reason}",
            ProcessingStage.FAILED,
            status=SourceStatus.FAILED,
            metadata={
                "error": reason,
                "attempts": attempts,
                "retryable": outcome.retryable,
                "timestamp": datetime.now(tz=timezone.utc).isoformat(),  # noqa: UP017
            },
        )
        await message.ack()
        logger.error(
            "job_failed",
            job_id=job.job_id,
            source_id=job.source_id,
            attempts=attempts,
            reason=reason,
        )

    async def _recover(self, message: QueueMessage, exc: Exception) -> None:
        """Settle a delivery whose processing raised instead of returning."""
        job = message.job
        logger.error(
            "job_settlement_failed",
            job_id=job.job_id,
            source_id=job.source_id,
            error=str(exc),
        )
        if message.settled:
            return
        try:
            if job.retry_count + 1 <= self._max_retries:
                await message.retry(job.next_attempt())
            else:
                await message.ack()
                logger.error("job_dropped", job_id=job.job_id, source_id=job.source_id, error=str(exc))
        except Exception:
            # Left in flight; requeued when the run loop exits.
            logger.exception("job_recovery_failed", job_id=job.job_id, source_id=job.source_id)
