"""Public interface definitions for all external collaborators.

Every external service the engine talks to is reached through an ABC in
this package.  Concrete adapters live in ``src/providers/`` and are wired
in ``src/main.py``; tests inject in-memory fakes instead.

CONCRETE PROVIDER MAP:
    Interface            →  Concrete implementations (in src/providers/)
    ─────────────────────────────────────────────────────────────────────
    IEmbeddingProvider   →  OpenAIEmbeddingProvider, NomicEmbeddingProvider
    IVectorIndex         →  ChromaVectorIndex
    IExtractionService   →  PassthroughExtractor, WebPageExtractor
    IKnowledgeStore      →  SQLiteKnowledgeStore
    IJobQueue            →  MemoryJobQueue
"""

from src.interfaces.embedding_provider import IEmbeddingProvider
from src.interfaces.extraction_service import IExtractionService
from src.interfaces.job_queue import IJobQueue, QueueMessage
from src.interfaces.knowledge_store import IKnowledgeStore
from src.interfaces.vector_index import FilterClause, IndexFilter, IndexMatch, IVectorIndex

__all__ = [
    "FilterClause",
    "IEmbeddingProvider",
    "IExtractionService",
    "IJobQueue",
    "IKnowledgeStore",
    "IVectorIndex",
    "IndexFilter",
    "IndexMatch",
    "QueueMessage",
]
