"""Knowledge store providers.

SQLiteKnowledgeStore keeps knowledge sources (status, progress, result
metadata) and per-agent knowledge settings in data/knowledge.db.
"""

from src.providers.knowledge_store.sqlite_knowledge_store import SQLiteKnowledgeStore

__all__ = ["SQLiteKnowledgeStore"]
