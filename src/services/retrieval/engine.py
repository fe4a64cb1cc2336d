"""Query-time retrieval over an agent's stored chunks.

Three ranking strategies share one similarity core:

* **similarity** -- embed the query, ask the index for ``2 * max_chunks``
  nearest chunks scoped to the agent, keep those at or above the
  threshold.  The ``euclidean`` setting re-scores these candidates by
  inverse Euclidean distance ``1 / (1 + d)`` against the query vector.
* **hybrid** -- similarity candidates under a relaxed threshold, then a
  weighted blend of vector score, query keyword overlap and (optionally)
  inverse distance.
* **contextual** -- similarity hits widened with their neighbouring
  chunks from the same source, joined in source order.

# ─── SCORE FLOW (hybrid) ──────────────────────────────────────────────
#
#   query ──embed──→ vector ──index.query(top_k=4·max, relaxed thr)──→ candidates
#   query ──extract_keywords()──→ keywords ──keyword_overlap()──┐
#                                                               ▼
#   hybrid = w_vec·vector_score + w_kw·keyword_score + w_dist·(1/(1+d))
#   sort desc (stable) → keep ≥ threshold → first max_chunks
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import math
import re
from collections.abc import Awaitable, Callable

import structlog

from src.interfaces.embedding_provider import IEmbeddingProvider
from src.interfaces.vector_index import IndexFilter, IndexMatch, IVectorIndex
from src.models.knowledge import SearchStrategy
from src.models.rag import RetrievalFilters, RetrievedChunk
from src.utils.errors import KnowledgeEngineError, RetrievalUnavailableError

logger = structlog.get_logger(logger_name=__name__)

_WORD = re.compile(r"[^\W_]+", re.UNICODE)
_MAX_QUERY_KEYWORDS = 10

_STOP_WORDS = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "any", "can",
        "had", "her", "was", "one", "our", "out", "has", "have", "his", "how",
        "its", "who", "did", "get", "him", "she", "use", "way", "what", "when",
        "where", "which", "why", "with", "this", "that", "these", "those",
        "from", "they", "them", "then", "than", "there", "their", "will",
        "would", "could", "should", "about", "into", "more", "some", "such",
        "only", "other", "also", "been", "being", "does", "each", "most",
        "very", "your", "yours", "were", "is", "of", "to", "in", "on", "at",
    }
)


# ---------------------------------------------------------------------------
# Pure scoring helpers
# ---------------------------------------------------------------------------
def extract_keywords(text: str, limit: int = _MAX_QUERY_KEYWORDS) -> list[str]:
    """Lower-cased words longer than two characters, stop words removed.

    Order of first appearance is kept and duplicates are dropped.
    """
    seen: list[str] = []
    for word in _WORD.findall(text.lower()):
        if len(word) <= 2 or word in _STOP_WORDS or word in seen:
            continue
        seen.append(word)
        if len(seen) >= limit:
            break
    return seen


def keyword_overlap(keywords: list[str], content: str) -> float:
    """Fraction of *keywords* appearing (as substrings) in *content*."""
    if not keywords:
        return 0.0
    haystack = content.lower()
    hits = sum(1 for kw in keywords if kw in haystack)
    return hits / len(keywords)


def hybrid_score(
    vector_score: float,
    keyword_score: float,
    distance_score: float = 0.0,
    vector_weight: float = 0.8,
    keyword_weight: float = 0.2,
    distance_weight: float = 0.0,
) -> float:
    return vector_weight * vector_score + keyword_weight * keyword_score + distance_weight * distance_score


def euclidean_distance(a: list[float], b: list[float]) -> float:
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def inverse_distance_score(a: list[float], b: list[float]) -> float:
    """``1 / (1 + d)``: 1.0 for identical vectors, toward 0 as they diverge."""
    return 1.0 / (1.0 + euclidean_distance(a, b))


def build_index_filter(agent_id: str, filters: RetrievalFilters | None = None) -> IndexFilter:
    """Mandatory agent scope plus any requested narrowing."""
    index_filter = IndexFilter().eq("agent_id", agent_id)
    if filters is None:
        return index_filter
    if filters.source_types:
        index_filter = index_filter.isin("source_type", [t.value for t in filters.source_types])
    if filters.content_type:
        index_filter = index_filter.eq("content_type", filters.content_type)
    if filters.language:
        index_filter = index_filter.eq("language", filters.language)
    if filters.min_length is not None:
        index_filter = index_filter.gte("content_length", filters.min_length)
    if filters.source_ids is not None:
        index_filter = index_filter.isin("knowledge_source_id", filters.source_ids)
    return index_filter


def _to_chunk(match: IndexMatch, score: float | None = None) -> RetrievedChunk:
    metadata = dict(match.metadata)
    content = str(metadata.pop("content", ""))
    return RetrievedChunk(
        chunk_id=match.id,
        content=content,
        score=match.score if score is None else score,
        metadata=metadata,
    )


_Strategy = Callable[
    [str, str, int, float, RetrievalFilters | None, int],
    Awaitable[list[RetrievedChunk]],
]


class RetrievalEngine:
    """Ranks an agent's stored chunks against a query.

    Parameters
    ----------
    embedding_provider:
        Embeds the query (must match the provider used at ingestion).
    vector_index:
        The index holding the agent's chunks.
    vector_weight, keyword_weight, distance_weight:
        Hybrid blend weights.
    candidate_threshold:
        Upper bound on the relaxed threshold used for hybrid candidates.
    """

    def __init__(
        self,
        embedding_provider: IEmbeddingProvider,
        vector_index: IVectorIndex,
        vector_weight: float = 0.8,
        keyword_weight: float = 0.2,
        distance_weight: float = 0.0,
        candidate_threshold: float = 0.5,
    ) -> None:
        self._embedding_provider = embedding_provider
        self._vector_index = vector_index
        self._vector_weight = vector_weight
        self._keyword_weight = keyword_weight
        self._distance_weight = distance_weight
        self._candidate_threshold = candidate_threshold

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        query: str,
        agent_id: str,
        max_chunks: int = 3,
        threshold: float = 0.7,
        strategy: SearchStrategy | str = SearchStrategy.HYBRID,
        filters: RetrievalFilters | None = None,
        context_window: int = 2,
    ) -> list[RetrievedChunk]:
        """Return at most *max_chunks* chunks scoring at least *threshold*.

        Parameters
        ----------
        query:
            Free-text user question.
        agent_id:
            Only this agent's chunks are considered.
        max_chunks:
            Result cap.
        threshold:
            Minimum score in ``[0, 1]``.
        strategy:
            One of :class:`SearchStrategy`.
        filters:
            Optional narrowing (source types, content type, language,
            minimum length, source ids).
        context_window:
            Neighbours on each side for the contextual strategy.

        Returns
        -------
        list[RetrievedChunk]
            Best first; empty when nothing qualifies.

        Raises
        ------
        RetrievalUnavailableError
            When the embedding service or the index fails.
        """
        if max_chunks < 1 or not query.strip():
            return []

        strategy = SearchStrategy(strategy)
        try:
            results = await self._select_strategy(strategy)(
                query, agent_id, max_chunks, threshold, filters, context_window
            )
        except RetrievalUnavailableError:
            raise
        except KnowledgeEngineError as exc:
            logger.error(
                "retrieval_unavailable",
                agent_id=agent_id,
                strategy=strategy.value,
                error=str(exc),
            )
            raise RetrievalUnavailableError(
                message=f"Retrieval failed: {exc.message}",
                provider_name=exc.provider_name,
            ) from exc

        logger.info(
            "retrieval_complete",
            agent_id=agent_id,
            strategy=strategy.value,
            results=len(results),
        )
        return results

    # ------------------------------------------------------------------
    # Strategy dispatch
    # ------------------------------------------------------------------

    def _select_strategy(self, strategy: SearchStrategy) -> _Strategy:
        return {
            SearchStrategy.COSINE: self._similarity,
            SearchStrategy.EUCLIDEAN: self._euclidean,
            SearchStrategy.HYBRID: self._hybrid,
            SearchStrategy.CONTEXTUAL: self._contextual,
        }[strategy]

    async def _similarity(
        self,
        query: str,
        agent_id: str,
        max_chunks: int,
        threshold: float,
        filters: RetrievalFilters | None,
        context_window: int,
    ) -> list[RetrievedChunk]:
        vector = await self._embedding_provider.embed_single(query)
        matches = await self._candidates(vector, agent_id, max_chunks * 2, filters)
        kept = [m for m in matches if m.score >= threshold]
        return [_to_chunk(m) for m in kept[:max_chunks]]

    async def _euclidean(
        self,
        query: str,
        agent_id: str,
        max_chunks: int,
        threshold: float,
        filters: RetrievalFilters | None,
        context_window: int,
    ) -> list[RetrievedChunk]:
        vector = await self._embedding_provider.embed_single(query)
        matches = await self._candidates(
            vector, agent_id, max_chunks * 2, filters, include_values=True
        )
        rescored: list[RetrievedChunk] = []
        for match in matches:
            if match.values is None:
                score = match.score
            else:
                score = inverse_distance_score(vector, match.values)
            rescored.append(_to_chunk(match, score=score))
        rescored.sort(key=lambda c: c.score, reverse=True)
        return [c for c in rescored if c.score >= threshold][:max_chunks]

    async def _hybrid(
        self,
        query: str,
        agent_id: str,
        max_chunks: int,
        threshold: float,
        filters: RetrievalFilters | None,
        context_window: int,
    ) -> list[RetrievedChunk]:
        vector = await self._embedding_provider.embed_single(query)
        relaxed = min(threshold, self._candidate_threshold)
        want_values = self._distance_weight > 0
        matches = await self._candidates(
            vector, agent_id, max_chunks * 4, filters, include_values=want_values
        )
        keywords = extract_keywords(query)

        scored: list[RetrievedChunk] = []
        for match in matches:
            if match.score < relaxed:
                continue
            content = str(match.metadata.get("content", ""))
            kw_score = keyword_overlap(keywords, content)
            dist_score = (
                inverse_distance_score(vector, match.values)
                if want_values and match.values is not None
                else 0.0
            )
            combined = hybrid_score(
                match.score,
                kw_score,
                dist_score,
                vector_weight=self._vector_weight,
                keyword_weight=self._keyword_weight,
                distance_weight=self._distance_weight,
            )
            chunk = _to_chunk(match, score=combined)
            scored.append(
                chunk.model_copy(
                    update={
                        "metadata": {
                            **chunk.metadata,
                            "vector_score": match.score,
                            "keyword_score": kw_score,
                            "hybrid_score": combined,
                        }
                    }
                )
            )

        # list.sort is stable, so ties keep the index order.
        scored.sort(key=lambda c: c.score, reverse=True)
        return [c for c in scored if c.score >= threshold][:max_chunks]

    async def _contextual(
        self,
        query: str,
        agent_id: str,
        max_chunks: int,
        threshold: float,
        filters: RetrievalFilters | None,
        context_window: int,
    ) -> list[RetrievedChunk]:
        hits = await self._similarity(query, agent_id, max_chunks, threshold, filters, context_window)
        return [await self._with_context(hit, agent_id, context_window) for hit in hits]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _candidates(
        self,
        vector: list[float],
        agent_id: str,
        top_k: int,
        filters: RetrievalFilters | None,
        include_values: bool = False,
    ) -> list[IndexMatch]:
        matches = await self._vector_index.query(
            vector,
            top_k=top_k,
            index_filter=build_index_filter(agent_id, filters),
            include_values=include_values,
        )
        # Guard against adapters that do not enforce the agent scope.
        return [m for m in matches if m.metadata.get("agent_id") == agent_id]

    async def _with_context(self, hit: RetrievedChunk, agent_id: str, window: int) -> RetrievedChunk:
        """Replace *hit*'s content with itself plus up to *window* neighbours per side."""
        index = hit.chunk_index
        low, high = max(0, index - window), index + window
        neighbour_filter = (
            IndexFilter()
            .eq("agent_id", agent_id)
            .eq("knowledge_source_id", hit.source_id)
            .gte("chunk_index", low)
            .lte("chunk_index", high)
        )
        try:
            neighbours = await self._vector_index.query(
                None,
                top_k=2 * window + 1,
                index_filter=neighbour_filter,
                metadata_only=True,
            )
        except KnowledgeEngineError as exc:
            logger.warning(
                "context_lookup_failed",
                chunk_id=hit.chunk_id,
                source_id=hit.source_id,
                error=str(exc),
            )
            return hit

        ordered = sorted(neighbours, key=lambda m: int(m.metadata.get("chunk_index", 0)))
        pieces = [str(m.metadata.get("content", "")) for m in ordered]
        pieces = [p for p in pieces if p]
        if not pieces:
            return hit

        return hit.model_copy(
            update={
                "content": "\n\n".join(pieces),
                "metadata": {
                    **hit.metadata,
                    "has_context": True,
                    "context_chunks": len(pieces),
                    "context_range": f"{low}-{high}",
                },
            }
        )
