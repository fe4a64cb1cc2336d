"""ChromaDB vector index adapter.

Implements :class:`IVectorIndex` on a ChromaDB collection configured for
cosine distance.  Talks to a ChromaDB server through ``HttpClient`` when a
host is configured, otherwise uses an embedded ``PersistentClient``.

ChromaDB's client is synchronous; every call runs in a worker thread and
is capped by ``timeout`` seconds.  Nothing is retried here -- callers own
the retry policy.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from typing import Any, TypeVar

# ChromaDB ships PostHog telemetry; disable it before chromadb is imported.
os.environ["ANONYMIZED_TELEMETRY"] = "False"

import posthog

posthog.disabled = True

import chromadb
import structlog

from src.interfaces.vector_index import IndexFilter, IndexMatch, IVectorIndex
from src.utils.errors import IndexServiceError, IndexTimeoutError

logger = structlog.get_logger(logger_name=__name__)

_T = TypeVar("_T")

# Chunk text lives in the collection's documents, not in metadata.
_CONTENT_KEY = "content"
_MAX_CONTENT_CHARS = 40_000

_CHROMA_OPERATORS = {"eq": "$eq", "gte": "$gte", "lte": "$lte", "in": "$in"}


class _NoopEmbeddingFunction(chromadb.EmbeddingFunction[list[str]]):
    """Embedding function that is never called.

    All vectors are computed by the embedding provider and passed in
    explicitly; this keeps ChromaDB from loading its default ONNX model.
    """

    def __call__(self, input: list[str]) -> list[list[float]]:
        raise NotImplementedError("Vectors are pre-computed; ChromaDB embedding is disabled.")

    def name(self) -> str:
        """Return function name (required by ChromaDB's EmbeddingFunction protocol)."""
        return "noop_precomputed"


class ChromaVectorIndex(IVectorIndex):
    """Vector index backed by a ChromaDB collection.

    Parameters
    ----------
    collection_name:
        Collection holding every agent's chunks; agents are separated by
        the ``agent_id`` metadata field.
    persist_directory:
        On-disk location for the embedded client.
    host, port:
        ChromaDB server address.  When *host* is set the HTTP client is used.
    timeout:
        Per-request cap in seconds.
    client:
        Pre-built ChromaDB client (tests pass ``chromadb.EphemeralClient()``).
    """

    def __init__(
        self,
        collection_name: str = "agent_knowledge",
        persist_directory: str = "./data/chromadb",
        host: str = "",
        port: int = 8000,
        timeout: float = 30.0,
        client: Any | None = None,
    ) -> None:
        self._timeout = timeout
        self._collection_name = collection_name
        chroma_settings = chromadb.config.Settings(anonymized_telemetry=False)
        if client is not None:
            self._client = client
        elif host:
            self._client = chromadb.HttpClient(host=host, port=port, settings=chroma_settings)
        else:
            self._client = chromadb.PersistentClient(
                path=persist_directory,
                settings=chroma_settings,
            )
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
            embedding_function=_NoopEmbeddingFunction(),
        )
        logger.info(
            "chromadb_index_ready",
            collection=collection_name,
            mode="http" if host else "embedded",
        )

    # ------------------------------------------------------------------
    # IVectorIndex implementation
    # ------------------------------------------------------------------

    async def upsert(self, record_id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        """Insert or replace one record; chunk text goes to ``documents``."""
        meta = self._to_chroma_metadata(metadata)
        document = str(metadata.get(_CONTENT_KEY, ""))[:_MAX_CONTENT_CHARS]

        await self._call(
            "upsert",
            lambda: self._collection.upsert(
                ids=[record_id],
                embeddings=[vector],
                documents=[document],
                metadatas=[meta],
            ),
        )

    async def query(
        self,
        vector: list[float] | None,
        top_k: int,
        index_filter: IndexFilter | None = None,
        metadata_only: bool = False,
        include_values: bool = False,
    ) -> list[IndexMatch]:
        """Similarity query, or a filter-only lookup when *metadata_only*."""
        if top_k <= 0:
            return []
        where = self._translate_filter(index_filter)

        if metadata_only or vector is None:
            return await self._get_matches(where, limit=top_k, include_values=include_values)

        include = ["metadatas", "documents", "distances"]
        if include_values:
            include.append("embeddings")

        def _run() -> dict[str, Any]:
            total = self._collection.count()
            if total == 0:
                return {}
            kwargs: dict[str, Any] = {
                "query_embeddings": [vector],
                "n_results": min(top_k, total),
                "include": include,
            }
            if where:
                kwargs["where"] = where
            return self._collection.query(**kwargs)

        results = await self._call("query", _run)
        if not results or not results.get("ids") or not results["ids"][0]:
            return []

        ids = results["ids"][0]
        documents = self._first(results.get("documents"), len(ids), "")
        metadatas = self._first(results.get("metadatas"), len(ids), {})
        distances = self._first(results.get("distances"), len(ids), 1.0)
        embeddings = self._first(results.get("embeddings"), len(ids), None)

        matches: list[IndexMatch] = []
        for record_id, document, meta, distance, values in zip(
            ids, documents, metadatas, distances, embeddings, strict=True
        ):
            # Cosine distance is in [0, 2]; similarity is clamped to [0, 1].
            score = max(0.0, min(1.0, 1.0 - float(distance)))
            matches.append(
                IndexMatch(
                    id=record_id,
                    score=score,
                    metadata=self._from_chroma(meta, document),
                    values=[float(v) for v in values] if values is not None else None,
                )
            )

        matches.sort(key=lambda m: m.score, reverse=True)
        logger.debug(
            "chromadb_query",
            results_count=len(matches),
            top_score=matches[0].score if matches else 0.0,
        )
        return matches

    async def delete_many(self, index_filter: IndexFilter) -> int:
        """Delete all records matching *index_filter*."""
        where = self._translate_filter(index_filter)
        if not where:
            msg = "delete_many requires a non-empty filter"
            raise ValueError(msg)

        def _run() -> int:
            existing = self._collection.get(where=where, include=[])
            ids = existing.get("ids") or []
            if ids:
                self._collection.delete(ids=ids)
            return len(ids)

        deleted = await self._call("delete", _run)
        logger.info("chromadb_delete_many", deleted_count=deleted, where=where)
        return deleted

    async def count(self, index_filter: IndexFilter | None = None) -> int:
        where = self._translate_filter(index_filter)
        if not where:
            return await self._call("count", self._collection.count)
        result = await self._call("count", lambda: self._collection.get(where=where, include=[]))
        return len(result.get("ids") or [])

    async def scan_metadata(self, index_filter: IndexFilter) -> list[dict[str, Any]]:
        where = self._translate_filter(index_filter)
        result = await self._call(
            "scan",
            lambda: self._collection.get(where=where or None, include=["metadatas"]),
        )
        return [dict(m or {}) for m in (result.get("metadatas") or [])]

    def get_provider_name(self) -> str:
        return "chromadb"

    def is_available(self) -> bool:
        """Return ``True`` if the collection answers a count request."""
        try:
            self._collection.count()
            return True
        except Exception:  # noqa: BLE001
            return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _call(self, operation: str, fn: Callable[[], _T]) -> _T:
        """Run a blocking ChromaDB call in a thread under the request timeout."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise IndexTimeoutError(
                message=f"ChromaDB {operation} exceeded {self._timeout:g}s",
                provider_name=self.get_provider_name(),
            ) from exc
        except Exception as exc:
            raise IndexServiceError(
                message=f"ChromaDB {operation} failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

    async def _get_matches(
        self,
        where: dict[str, Any] | None,
        limit: int,
        include_values: bool,
    ) -> list[IndexMatch]:
        include = ["metadatas", "documents"]
        if include_values:
            include.append("embeddings")
        result = await self._call(
            "get",
            lambda: self._collection.get(where=where or None, limit=limit, include=include),
        )
        ids = result.get("ids") or []
        documents = result.get("documents") or [""] * len(ids)
        metadatas = result.get("metadatas") or [{}] * len(ids)
        embeddings = result.get("embeddings")
        if embeddings is None:
            embeddings = [None] * len(ids)

        return [
            IndexMatch(
                id=record_id,
                score=0.0,
                metadata=self._from_chroma(meta, document),
                values=[float(v) for v in values] if values is not None else None,
            )
            for record_id, document, meta, values in zip(
                ids, documents, metadatas, embeddings, strict=True
            )
        ]

    @staticmethod
    def _first(field: Any, length: int, default: Any) -> list[Any]:
        """Unwrap the per-query list ChromaDB nests results in."""
        if field is None or len(field) == 0 or field[0] is None:
            return [default] * length
        return list(field[0])

    @staticmethod
    def _to_chroma_metadata(metadata: dict[str, Any]) -> dict[str, str | int | float | bool]:
        """Drop content and ``None`` values; ChromaDB only stores scalars."""
        meta: dict[str, str | int | float | bool] = {}
        for key, value in metadata.items():
            if key == _CONTENT_KEY or value is None:
                continue
            if isinstance(value, (list, tuple)):
                meta[key] = ",".join(str(v) for v in value)
            elif isinstance(value, (str, int, float, bool)):
                meta[key] = value
            else:
                meta[key] = str(value)
        return meta

    @staticmethod
    def _from_chroma(meta: dict[str, Any] | None, document: str | None) -> dict[str, Any]:
        result = dict(meta or {})
        result[_CONTENT_KEY] = document or ""
        return result

    @staticmethod
    def _translate_filter(index_filter: IndexFilter | None) -> dict[str, Any] | None:
        """Translate an :class:`IndexFilter` to a ChromaDB ``where`` clause."""
        if not index_filter:
            return None
        clauses: list[dict[str, Any]] = []
        for clause in index_filter.clauses:
            operator = _CHROMA_OPERATORS.get(clause.op)
            if operator is None:
                msg = f"Unsupported filter operator: {clause.op}"
                raise ValueError(msg)
            value = list(clause.value) if clause.op == "in" else clause.value
            clauses.append({clause.field: {operator: value}})
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}
