"""Abstract base classes for the ingestion job queue.

The queue gives at-least-once delivery of :class:`IngestionJob` messages.
A consumer receives :class:`QueueMessage` handles and must settle each one
with exactly one of:

* :meth:`QueueMessage.ack` -- done (success or terminal failure), or
* :meth:`QueueMessage.retry` -- put a (new, immutable) job back.

Deliveries left unsettled stay in flight until
:meth:`IJobQueue.requeue_in_flight` puts them back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.models.pipeline import IngestionJob


class QueueMessage(ABC):
    """Delivery handle for one job."""

    @property
    @abstractmethod
    def job(self) -> IngestionJob:
        """The delivered job."""

    @property
    @abstractmethod
    def settled(self) -> bool:
        """Whether ack or retry has already been called."""

    @abstractmethod
    async def ack(self) -> None:
        """Remove the job from the queue for good."""

    @abstractmethod
    async def retry(self, job: IngestionJob, delay_seconds: float = 0.0) -> None:
        """Settle this delivery and enqueue *job* for redelivery."""


class IJobQueue(ABC):
    """Contract for the transport between submission and the supervisor."""

    @abstractmethod
    async def send(self, job: IngestionJob) -> None:
        """Enqueue *job* for background processing."""

    @abstractmethod
    async def receive(self, max_messages: int = 1, timeout: float = 0.0) -> list[QueueMessage]:
        """Return up to *max_messages* deliveries.

        Waits at most *timeout* seconds for the first message; returns an
        empty list when none arrives.
        """

    @abstractmethod
    async def requeue_in_flight(self) -> int:
        """Put every received but unsettled job back on the queue.

        Consumers call this on startup and shutdown so deliveries abandoned
        by a crashed or cancelled consumer are not lost.  Returns how many
        jobs were requeued.
        """

    @abstractmethod
    async def clear(self) -> int:
        """Drop every pending job; return how many were removed."""

    @abstractmethod
    def pending_count(self) -> int:
        """Number of jobs waiting for delivery."""
