"""Abstract base class for the external vector index.

The engine delegates nearest-neighbour search to a vector database.  This
module defines the thin contract it relies on -- upsert with metadata,
filtered query, delete by filter -- plus the structured filter predicate
and match types shared by every implementation.

Implementations enforce a per-request timeout and never retry
internally; retry policy belongs to the caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

MetadataValue = str | int | float | bool


@dataclass(frozen=True)
class FilterClause:
    """One predicate over a metadata field.

    ``op`` is one of ``"eq"``, ``"gte"``, ``"lte"`` or ``"in"``.
    """

    field: str
    op: str
    value: Any

    def matches(self, metadata: dict[str, Any]) -> bool:
        if self.field not in metadata:
            return False
        actual = metadata[self.field]
        if self.op == "eq":
            return actual == self.value
        if self.op == "gte":
            return actual >= self.value
        if self.op == "lte":
            return actual <= self.value
        if self.op == "in":
            return actual in self.value
        msg = f"Unsupported filter operator: {self.op}"
        raise ValueError(msg)


@dataclass(frozen=True)
class IndexFilter:
    """Conjunction of :class:`FilterClause` objects.

    Built fluently; every builder returns a new filter::

        IndexFilter().eq("agent_id", "a1").gte("chunk_index", 3)
    """

    clauses: tuple[FilterClause, ...] = ()

    def eq(self, field_name: str, value: MetadataValue) -> IndexFilter:
        return self._with(FilterClause(field_name, "eq", value))

    def gte(self, field_name: str, value: int | float) -> IndexFilter:
        return self._with(FilterClause(field_name, "gte", value))

    def lte(self, field_name: str, value: int | float) -> IndexFilter:
        return self._with(FilterClause(field_name, "lte", value))

    def isin(self, field_name: str, values: list[MetadataValue]) -> IndexFilter:
        return self._with(FilterClause(field_name, "in", tuple(values)))

    def matches(self, metadata: dict[str, Any]) -> bool:
        """Evaluate the filter against a metadata dict (empty filter matches all)."""
        return all(clause.matches(metadata) for clause in self.clauses)

    def __bool__(self) -> bool:
        return bool(self.clauses)

    def _with(self, clause: FilterClause) -> IndexFilter:
        return IndexFilter(clauses=(*self.clauses, clause))


@dataclass(frozen=True)
class IndexMatch:
    """One record returned by :meth:`IVectorIndex.query`.

    ``score`` is a similarity in ``[0, 1]`` (higher is closer).  For
    metadata-only lookups it is ``0.0``.  ``values`` holds the stored
    vector when the caller asked for it.
    """

    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)
    values: list[float] | None = None


class IVectorIndex(ABC):
    """Contract for the vector index client.

    Concrete implementation: ``ChromaVectorIndex`` in
    ``src/providers/vector_store/chromadb_provider.py``.
    """

    @abstractmethod
    async def upsert(self, record_id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        """Insert or replace one vector with its metadata (idempotent by id).

        Raises
        ------
        src.utils.errors.IndexTimeoutError
            If the request exceeds the timeout.
        src.utils.errors.IndexServiceError
            For any other failure.
        """

    @abstractmethod
    async def query(
        self,
        vector: list[float] | None,
        top_k: int,
        index_filter: IndexFilter | None = None,
        metadata_only: bool = False,
        include_values: bool = False,
    ) -> list[IndexMatch]:
        """Return up to *top_k* matches ranked by descending score.

        Parameters
        ----------
        vector:
            Query vector.  Ignored (may be ``None``) when *metadata_only*.
        top_k:
            Maximum number of matches.
        index_filter:
            Structured metadata predicate; ``None`` matches everything.
        metadata_only:
            Filter-only lookup with no similarity ranking; every match
            has score ``0.0``.
        include_values:
            Return the stored vectors in :attr:`IndexMatch.values`.
        """

    @abstractmethod
    async def delete_many(self, index_filter: IndexFilter) -> int:
        """Delete every record matching *index_filter*; return how many."""

    @abstractmethod
    async def count(self, index_filter: IndexFilter | None = None) -> int:
        """Return the number of records matching *index_filter*."""

    @abstractmethod
    async def scan_metadata(self, index_filter: IndexFilter) -> list[dict[str, Any]]:
        """Return the metadata of every record matching *index_filter*."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier such as ``"chromadb"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the index is reachable."""
