"""Query-time retrieval: similarity, hybrid and contextual ranking."""

from src.services.retrieval.engine import RetrievalEngine

__all__ = ["RetrievalEngine"]
