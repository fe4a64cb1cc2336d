"""SQLite-backed knowledge store.

Persists knowledge sources (with their processing status and progress)
and per-agent knowledge settings to a local SQLite database at
``data/knowledge.db``.  Uses ``aiosqlite`` for async I/O; every operation
opens its own connection, so each update is a single-row transaction.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from src.interfaces.knowledge_store import IKnowledgeStore
from src.models.knowledge import (
    KnowledgeSettings,
    KnowledgeSource,
    ProcessingStage,
    SourceStatus,
)

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/knowledge.db")

_CREATE_SOURCES_SQL = """\
CREATE TABLE IF NOT EXISTS knowledge_sources (
    source_id            TEXT PRIMARY KEY,
    agent_id             TEXT NOT NULL,
    source_type          TEXT NOT NULL,
    name                 TEXT NOT NULL DEFAULT '',
    locator              TEXT,
    content              TEXT,
    status               TEXT NOT NULL,
    progress_percentage  INTEGER NOT NULL DEFAULT 0,
    progress_message     TEXT NOT NULL DEFAULT '',
    processing_stage     TEXT NOT NULL,
    metadata             TEXT NOT NULL DEFAULT '{}',
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);
"""

_CREATE_SETTINGS_SQL = """\
CREATE TABLE IF NOT EXISTS knowledge_settings (
    agent_id                  TEXT PRIMARY KEY,
    enable_rag                INTEGER NOT NULL,
    max_chunks_per_query      INTEGER NOT NULL,
    similarity_threshold      REAL    NOT NULL,
    chunk_size                INTEGER NOT NULL,
    chunk_overlap             INTEGER NOT NULL,
    chunking_strategy         TEXT    NOT NULL,
    search_strategy           TEXT    NOT NULL,
    enable_contextual_search  INTEGER NOT NULL,
    context_window            INTEGER NOT NULL,
    updated_at                TEXT    NOT NULL
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_sources_agent ON knowledge_sources(agent_id);",
    "CREATE INDEX IF NOT EXISTS idx_sources_agent_status "
    "ON knowledge_sources(agent_id, status);",
]

_INSERT_SOURCE_SQL = """\
INSERT INTO knowledge_sources (
    source_id, agent_id, source_type, name, locator, content, status,
    progress_percentage, progress_message, processing_stage, metadata,
    created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_UPSERT_SETTINGS_SQL = """\
INSERT INTO knowledge_settings (
    agent_id, enable_rag, max_chunks_per_query, similarity_threshold,
    chunk_size, chunk_overlap, chunking_strategy, search_strategy,
    enable_contextual_search, context_window, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(agent_id) DO UPDATE SET
    enable_rag               = excluded.enable_rag,
    max_chunks_per_query     = excluded.max_chunks_per_query,
    similarity_threshold     = excluded.similarity_threshold,
    chunk_size               = excluded.chunk_size,
    chunk_overlap            = excluded.chunk_overlap,
    chunking_strategy        = excluded.chunking_strategy,
    search_strategy          = excluded.search_strategy,
    enable_contextual_search = excluded.enable_contextual_search,
    context_window           = excluded.context_window,
    updated_at               = excluded.updated_at;
"""

# Columns update_source() may touch.
_UPDATABLE_FIELDS = frozenset(
    {"status", "progress_percentage", "progress_message", "processing_stage", "metadata"}
)


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()  # noqa: UP017


class SQLiteKnowledgeStore(IKnowledgeStore):
    """SQLite-backed persistence for knowledge sources and settings."""

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create the tables and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(_CREATE_SOURCES_SQL)
            await db.execute(_CREATE_SETTINGS_SQL)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("knowledge_db_initialized", path=str(self._db_path))

    # ------------------------------------------------------------------
    # Knowledge sources
    # ------------------------------------------------------------------

    async def create_source(self, source: KnowledgeSource) -> KnowledgeSource:
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                _INSERT_SOURCE_SQL,
                (
                    source.source_id,
                    source.agent_id,
                    source.source_type.value,
                    source.name,
                    source.locator,
                    source.content,
                    source.status.value,
                    source.progress_percentage,
                    source.progress_message,
                    source.processing_stage.value,
                    json.dumps(source.metadata),
                    source.created_at.isoformat(),
                    source.updated_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(
            "knowledge_source_created",
            source_id=source.source_id,
            agent_id=source.agent_id,
            source_type=source.source_type.value,
        )
        return source

    async def get_source(self, source_id: str) -> KnowledgeSource | None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM knowledge_sources WHERE source_id = ?",
                (source_id,),
            )
            row = await cursor.fetchone()
        return self._row_to_source(row) if row else None

    async def update_source(self, source_id: str, **fields: Any) -> KnowledgeSource | None:
        """Update status/progress/metadata columns of one source.

        Enum values are stored by value and ``metadata`` as JSON; the
        percentage is clamped to 0-100.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            msg = f"Cannot update fields: {sorted(unknown)}"
            raise ValueError(msg)
        if not fields:
            return await self.get_source(source_id)

        assignments: list[str] = []
        params: list[Any] = []
        for name, value in fields.items():
            if name == "metadata":
                value = json.dumps(value or {})
            elif name == "progress_percentage":
                value = max(0, min(100, int(value)))
            elif isinstance(value, (SourceStatus, ProcessingStage)):
                value = value.value
            assignments.append(f"{name} = ?")
            params.append(value)

        assignments.append("updated_at = ?")
        params.append(_now_iso())
        params.append(source_id)

        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                f"UPDATE knowledge_sources SET {', '.join(assignments)} "  # noqa: S608
                "WHERE source_id = ?",
                params,
            )
            await db.commit()
            updated = cursor.rowcount

        if not updated:
            logger.warning("knowledge_source_update_missing", source_id=source_id)
            return None
        return await self.get_source(source_id)

    async def list_sources(
        self,
        agent_id: str,
        status: SourceStatus | None = None,
    ) -> list[KnowledgeSource]:
        query = "SELECT * FROM knowledge_sources WHERE agent_id = ?"
        params: list[Any] = [agent_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC"

        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [self._row_to_source(r) for r in rows]

    async def delete_source(self, source_id: str) -> bool:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "DELETE FROM knowledge_sources WHERE source_id = ?",
                (source_id,),
            )
            await db.commit()
            deleted = cursor.rowcount > 0
        logger.info("knowledge_source_deleted", source_id=source_id, deleted=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Knowledge settings
    # ------------------------------------------------------------------

    async def get_settings(self, agent_id: str) -> KnowledgeSettings:
        """Return the agent's settings, inserting defaults on first access."""
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM knowledge_settings WHERE agent_id = ?",
                (agent_id,),
            )
            row = await cursor.fetchone()

        if row is None:
            logger.info("knowledge_settings_defaulted", agent_id=agent_id)
            return await self.save_settings(KnowledgeSettings(agent_id=agent_id))

        r = dict(row)
        return KnowledgeSettings(
            agent_id=r["agent_id"],
            enable_rag=bool(r["enable_rag"]),
            max_chunks_per_query=r["max_chunks_per_query"],
            similarity_threshold=r["similarity_threshold"],
            chunk_size=r["chunk_size"],
            chunk_overlap=r["chunk_overlap"],
            chunking_strategy=r["chunking_strategy"],
            search_strategy=r["search_strategy"],
            enable_contextual_search=bool(r["enable_contextual_search"]),
            context_window=r["context_window"],
        )

    async def save_settings(self, settings: KnowledgeSettings) -> KnowledgeSettings:
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                _UPSERT_SETTINGS_SQL,
                (
                    settings.agent_id,
                    int(settings.enable_rag),
                    settings.max_chunks_per_query,
                    settings.similarity_threshold,
                    settings.chunk_size,
                    settings.chunk_overlap,
                    settings.chunking_strategy.value,
                    settings.search_strategy.value,
                    int(settings.enable_contextual_search),
                    settings.context_window,
                    _now_iso(),
                ),
            )
            await db.commit()
        return settings

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_source(row: aiosqlite.Row) -> KnowledgeSource:
        r = dict(row)
        return KnowledgeSource(
            source_id=r["source_id"],
            agent_id=r["agent_id"],
            source_type=r["source_type"],
            name=r["name"],
            locator=r["locator"],
            content=r["content"],
            status=r["status"],
            progress_percentage=r["progress_percentage"],
            progress_message=r["progress_message"],
            processing_stage=r["processing_stage"],
            metadata=json.loads(r["metadata"] or "{}"),
            created_at=datetime.fromisoformat(r["created_at"]),
            updated_at=datetime.fromisoformat(r["updated_at"]),
        )
