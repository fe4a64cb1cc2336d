"""In-process job queue backed by ``asyncio.PriorityQueue``.

Suitable for a single worker process and for tests.  Jobs are delivered
in (priority, enqueue order).  A delivery stays in flight until it is
acked or retried; :meth:`MemoryJobQueue.requeue_in_flight` puts abandoned
deliveries back on the queue.  Swap in a broker-backed adapter
implementing :class:`IJobQueue` for multi-process deployments.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque

import structlog

from src.interfaces.job_queue import IJobQueue, QueueMessage
from src.models.pipeline import IngestionJob

logger = structlog.get_logger(logger_name=__name__)

# Recently acked jobs kept for inspection.
_ACKED_HISTORY = 100


class _MemoryQueueMessage(QueueMessage):
    """Delivery handle that settles back into its :class:`MemoryJobQueue`."""

    def __init__(self, queue: MemoryJobQueue, job: IngestionJob) -> None:
        self._queue = queue
        self._job = job
        self._settled = False

    @property
    def job(self) -> IngestionJob:
        return self._job

    @property
    def settled(self) -> bool:
        return self._settled

    async def ack(self) -> None:
        self._settle()
        self._queue.acked.append(self._job)
        logger.debug("job_acked", job_id=self._job.job_id, source_id=self._job.source_id)

    async def retry(self, job: IngestionJob, delay_seconds: float = 0.0) -> None:
        self._settle()
        if delay_seconds > 0:
            await asyncio.sleep(delay_seconds)
        await self._queue.send(job)
        logger.debug(
            "job_requeued",
            job_id=job.job_id,
            source_id=job.source_id,
            retry_count=job.retry_count,
        )

    def _settle(self) -> None:
        if self._settled:
            msg = f"Message for job {self._job.job_id} was already settled"
            raise RuntimeError(msg)
        self._settled = True
        if self._queue.in_flight.get(self._job.job_id) is self:
            del self._queue.in_flight[self._job.job_id]

    def _abandon(self) -> None:
        self._settled = True


class MemoryJobQueue(IJobQueue):
    """At-least-once in-memory queue of :class:`IngestionJob` messages."""

    def __init__(self, acked_history: int = _ACKED_HISTORY) -> None:
        self._queue: asyncio.PriorityQueue[tuple[int, int, IngestionJob]] = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self.in_flight: dict[str, _MemoryQueueMessage] = {}
        self.acked: deque[IngestionJob] = deque(maxlen=acked_history)

    # ------------------------------------------------------------------
    # IJobQueue implementation
    # ------------------------------------------------------------------

    async def send(self, job: IngestionJob) -> None:
        await self._queue.put((job.priority, next(self._sequence), job))
        logger.info(
            "job_enqueued",
            job_id=job.job_id,
            source_id=job.source_id,
            retry_count=job.retry_count,
        )

    async def receive(self, max_messages: int = 1, timeout: float = 0.0) -> list[QueueMessage]:
        messages: list[QueueMessage] = []
        try:
            if timeout > 0:
                first = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            else:
                first = self._queue.get_nowait()
        except (asyncio.TimeoutError, asyncio.QueueEmpty):
            return messages

        messages.append(self._deliver(first[2]))
        while len(messages) < max_messages:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            messages.append(self._deliver(item[2]))
        return messages

    async def requeue_in_flight(self) -> int:
        """Send every unsettled delivery back; late settles on them raise."""
        abandoned = list(self.in_flight.values())
        self.in_flight.clear()
        for message in abandoned:
            message._abandon()
            await self.send(message.job)
        if abandoned:
            logger.warning("in_flight_jobs_requeued", count=len(abandoned))
        return len(abandoned)

    async def clear(self) -> int:
        """Drop all pending jobs (in-flight deliveries are unaffected)."""
        removed = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            removed += 1
        logger.info("job_queue_cleared", removed=removed)
        return removed

    def pending_count(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _deliver(self, job: IngestionJob) -> _MemoryQueueMessage:
        message = _MemoryQueueMessage(self, job)
        self.in_flight[job.job_id] = message
        return message
