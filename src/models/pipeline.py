"""Ingestion job and outcome models.

An :class:`IngestionJob` is the message carried by the job queue.  It is
immutable: when the supervisor redelivers a failed job it enqueues a new
instance built with ``model_copy(update={"retry_count": n + 1})`` rather
than mutating the one it received, so concurrent consumers never race on
a shared counter.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from src.models.knowledge import SourceType


class IngestionPayload(BaseModel):
    """What to ingest: the source type plus a locator and/or extracted text."""

    model_config = ConfigDict(frozen=True)

    source_type: SourceType
    locator: str | None = None
    content: str | None = None
    name: str = ""


class IngestionJob(BaseModel):
    """Queue message asking the supervisor to (re)process one source."""

    model_config = ConfigDict(frozen=True)

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source_id: str
    agent_id: str
    payload: IngestionPayload
    # Number of times this job has already been redelivered.
    retry_count: int = Field(default=0, ge=0)
    # Lower values are delivered first.
    priority: int = 0
    enqueued_at: datetime = Field(
        default_factory=lambda: datetime.now(tz=timezone.utc)  # noqa: UP017
    )

    def next_attempt(self) -> IngestionJob:
        """Return the redelivery copy of this job with ``retry_count + 1``."""
        return self.model_copy(
            update={
                "retry_count": self.retry_count + 1,
                "enqueued_at": datetime.now(tz=timezone.utc),  # noqa: UP017
            }
        )


class IngestionOutcome(BaseModel):
    """Result of one :meth:`IngestionOrchestrator.ingest` call.

    ``success`` with ``partial=True`` means fewer than 80% of the chunks
    were stored.  On failure ``reason`` is a human-readable message and
    ``retryable`` tells the supervisor whether redelivery can help.
    """

    model_config = ConfigDict(frozen=True)

    source_id: str
    success: bool
    chunk_count: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=0, ge=0)
    partial: bool = False
    reason: str | None = None
    retryable: bool = False
    duration_seconds: float = Field(default=0.0, ge=0.0)

    @property
    def success_rate(self) -> float:
        if self.total_chunks == 0:
            return 0.0
        return self.chunk_count / self.total_chunks
