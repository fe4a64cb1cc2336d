"""Abstract base class for knowledge source and settings persistence.

The engine treats the store as a record store keyed by id: create, read,
update-by-id and filtered list.  Each update is atomic for its row; no
cross-record transactions are assumed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.models.knowledge import KnowledgeSettings, KnowledgeSource, SourceStatus


class IKnowledgeStore(ABC):
    """Contract for persisting :class:`KnowledgeSource` and :class:`KnowledgeSettings`."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables / indices if they don't exist."""

    @abstractmethod
    async def create_source(self, source: KnowledgeSource) -> KnowledgeSource:
        """Insert a new source record and return it."""

    @abstractmethod
    async def get_source(self, source_id: str) -> KnowledgeSource | None:
        """Return the source with *source_id*, or ``None``."""

    @abstractmethod
    async def update_source(self, source_id: str, **fields: Any) -> KnowledgeSource | None:
        """Update the given fields of one source atomically.

        Accepted keys: ``status``, ``progress_percentage``,
        ``progress_message``, ``processing_stage``, ``metadata``.
        Returns the updated record, or ``None`` if it no longer exists.
        """

    @abstractmethod
    async def list_sources(
        self,
        agent_id: str,
        status: SourceStatus | None = None,
    ) -> list[KnowledgeSource]:
        """Return the agent's sources, newest first, optionally by status."""

    @abstractmethod
    async def delete_source(self, source_id: str) -> bool:
        """Delete the record; return ``True`` if a row was removed."""

    @abstractmethod
    async def get_settings(self, agent_id: str) -> KnowledgeSettings:
        """Return the agent's settings, creating the defaults on first access."""

    @abstractmethod
    async def save_settings(self, settings: KnowledgeSettings) -> KnowledgeSettings:
        """Insert or replace the agent's settings."""
