"""Ingestion progress tracking with persistence and listener notification.

Every progress update for a knowledge source is written to the knowledge
store (so pollers of ``get_source_status`` see it mid-flight) and then
broadcast to any listener callbacks registered for that source.

# ─── HOW PROGRESS TRACKING WORKS ──────────────────────────────────────
#
#   Orchestrator ──update()──→ ProgressTracker ──update_source()──→ store
#   Supervisor                                ──callback()──────→ listeners
#
#   - Listeners are keyed by source_id.
#   - A listener that raises is logged and skipped.
#   - Both sync and async callbacks are supported.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from src.interfaces.knowledge_store import IKnowledgeStore
from src.models.knowledge import ProcessingStage, SourceStatus
from src.utils.logging import get_logger


class ProgressTracker:
    """Persists and broadcasts per-source ingestion progress.

    Parameters
    ----------
    store:
        Knowledge store that owns the source records.
    """

    def __init__(self, store: IKnowledgeStore) -> None:
        self._store = store
        self._listeners: dict[str, list[Callable]] = {}
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def update(
        self,
        source_id: str,
        progress: float,
        message: str,
        stage: ProcessingStage,
        status: SourceStatus | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record a progress update and notify listeners.

        Parameters
        ----------
        source_id:
            The knowledge source being processed.
        progress:
            Completion percentage, clamped to 0-100.
        message:
            Human-readable status message.
        stage:
            Current processing stage.
        status:
            New lifecycle status, when it changes with this update.
        metadata:
            Replacement metadata for the source record.
        """
        percent = int(round(max(0.0, min(100.0, progress))))

        fields: dict[str, Any] = {
            "progress_percentage": percent,
            "progress_message": message,
            "processing_stage": stage,
        }
        if status is not None:
            fields["status"] = status
        if metadata is not None:
            fields["metadata"] = metadata

        await self._store.update_source(source_id, **fields)

        self._logger.debug(
            "progress_update",
            source_id=source_id,
            stage=stage.value,
            progress=percent,
            message=message,
        )
        await self._notify_listeners(source_id, stage, percent, message)

    def register_listener(self, source_id: str, callback: Callable) -> None:
        """Register ``callback(source_id, stage, progress, message)`` for a source."""
        listeners = self._listeners.setdefault(source_id, [])
        if callback not in listeners:
            listeners.append(callback)

    def unregister_listener(self, source_id: str, callback: Callable) -> None:
        listeners = self._listeners.get(source_id, [])
        if callback in listeners:
            listeners.remove(callback)
        if not listeners:
            self._listeners.pop(source_id, None)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _notify_listeners(
        self,
        source_id: str,
        stage: ProcessingStage,
        progress: int,
        message: str,
    ) -> None:
        for callback in list(self._listeners.get(source_id, [])):
            try:
                result = callback(source_id, stage, progress, message)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                self._logger.warning(
                    "listener_callback_error",
                    source_id=source_id,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )
