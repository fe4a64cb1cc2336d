"""Composition root for the knowledge engine.

Wires every provider and service together via dependency injection.
Loads configuration from ``.env`` and ``config/config.yaml``, configures
structured logging, and returns a :class:`KnowledgeEngine` bundle that
the CLI (or any host application) drives.

Typical use::

    engine = build_knowledge_service(load_settings())
    await engine.start()
    source_id = await engine.service.submit_knowledge_source(...)
    await engine.supervisor.run(stop_event)
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from src.config.loader import build_settings, load_config
from src.config.settings import Settings
from src.interfaces.embedding_provider import IEmbeddingProvider
from src.interfaces.extraction_service import IExtractionService
from src.interfaces.job_queue import IJobQueue
from src.interfaces.knowledge_store import IKnowledgeStore
from src.interfaces.vector_index import IVectorIndex
from src.pipeline.progress_tracker import ProgressTracker
from src.pipeline.supervisor import ProcessingSupervisor
from src.providers.embedding.nomic_embedding_provider import NomicEmbeddingProvider
from src.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from src.providers.extraction.web_page_extractor import WebPageExtractor
from src.providers.knowledge_store.sqlite_knowledge_store import SQLiteKnowledgeStore
from src.providers.queue.memory_queue import MemoryJobQueue
from src.providers.vector_store.chromadb_provider import ChromaVectorIndex
from src.services.ingestion.orchestrator import IngestionOrchestrator
from src.services.ingestion.segmenter import TextSegmenter
from src.services.knowledge_service import KnowledgeService
from src.services.retrieval.engine import RetrievalEngine
from src.utils.errors import ConfigurationError
from src.utils.logging import configure_logging

_logger = structlog.get_logger(logger_name=__name__)


@dataclass
class KnowledgeEngine:
    """Every wired component, exposed for the host application and tests."""

    settings: Settings
    store: IKnowledgeStore
    queue: IJobQueue
    vector_index: IVectorIndex
    embedding_provider: IEmbeddingProvider
    extractor: IExtractionService
    progress: ProgressTracker
    orchestrator: IngestionOrchestrator
    supervisor: ProcessingSupervisor
    retrieval: RetrievalEngine
    service: KnowledgeService

    async def start(self) -> None:
        await self.store.initialize()
        _logger.info(
            "knowledge_engine_started",
            environment=self.settings.app_env,
            embedding=self.embedding_provider.get_provider_name(),
            vector_index=self.vector_index.get_provider_name(),
        )

    async def aclose(self) -> None:
        close = getattr(self.extractor, "aclose", None)
        if close is not None:
            await close()
        _logger.info("knowledge_engine_stopped")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def load_settings(config_path: str = "config/config.yaml") -> Settings:
    """Resolve YAML + ``.env`` + environment into Settings and configure logging."""
    config = load_config(config_path)
    app_settings = build_settings(config)
    configure_logging(
        log_level=app_settings.log_level,
        json_output=app_settings.app_env == "production",
        app_env=app_settings.app_env,
    )
    return app_settings


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


def _build_embedding_provider(app_settings: Settings) -> IEmbeddingProvider:
    """Select the embedding provider named by ``embedding_provider``.

    ``openai`` needs an API key unless a custom OpenAI-compatible base URL
    is configured; ``nomic`` talks to a local Ollama server.
    """
    name = app_settings.embedding_provider.lower()
    if name == "openai":
        if not app_settings.openai_api_key and not app_settings.openai_base_url:
            raise ConfigurationError(
                message="OPENAI_API_KEY is required for the openai embedding provider",
                provider_name="openai_embedding",
            )
        return OpenAIEmbeddingProvider(settings=app_settings)
    if name == "nomic":
        return NomicEmbeddingProvider(settings=app_settings)
    raise ConfigurationError(message=f"Unknown embedding provider: {app_settings.embedding_provider}")


def _build_vector_index(app_settings: Settings) -> IVectorIndex:
    return ChromaVectorIndex(
        collection_name=app_settings.chromadb_collection,
        persist_directory=app_settings.chromadb_persist_dir,
        host=app_settings.chromadb_host,
        port=app_settings.chromadb_port,
        timeout=app_settings.index_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Full DI assembly
# ---------------------------------------------------------------------------


def build_knowledge_service(
    app_settings: Settings | None = None,
    *,
    embedding_provider: IEmbeddingProvider | None = None,
    vector_index: IVectorIndex | None = None,
    store: IKnowledgeStore | None = None,
    queue: IJobQueue | None = None,
    extractor: IExtractionService | None = None,
) -> KnowledgeEngine:
    """Construct every provider and service instance.

    Any adapter passed in explicitly replaces the one built from settings.

    Parameters
    ----------
    app_settings:
        Resolved settings; read from the environment when omitted.

    Returns
    -------
    KnowledgeEngine
        The wired components.  Call :meth:`KnowledgeEngine.start` before use.
    """
    s = app_settings or Settings()

    embedding_provider = embedding_provider or _build_embedding_provider(s)
    vector_index = vector_index or _build_vector_index(s)
    store = store or SQLiteKnowledgeStore(db_path=s.knowledge_db_path)
    queue = queue or MemoryJobQueue()
    extractor = extractor or WebPageExtractor()

    progress = ProgressTracker(store)
    segmenter = TextSegmenter(
        embedding_provider=embedding_provider,
        threshold_floor=s.semantic_threshold_floor,
        stddev_factor=s.semantic_stddev_factor,
        max_sentences=s.semantic_max_sentences,
        batch_size=s.semantic_batch_size,
        batch_delay=s.semantic_batch_delay_seconds,
    )
    orchestrator = IngestionOrchestrator(
        segmenter=segmenter,
        embedding_provider=embedding_provider,
        vector_index=vector_index,
        extractor=extractor,
        progress=progress,
        batch_size=s.storage_batch_size,
        batch_delay=s.storage_batch_delay_seconds,
        extraction_timeout=s.extraction_timeout_seconds,
        chunking_timeout=s.chunking_timeout_seconds,
    )
    supervisor = ProcessingSupervisor(
        queue=queue,
        store=store,
        orchestrator=orchestrator,
        progress=progress,
        max_retries=s.job_max_retries,
    )
    retrieval = RetrievalEngine(
        embedding_provider=embedding_provider,
        vector_index=vector_index,
        vector_weight=s.hybrid_vector_weight,
        keyword_weight=s.hybrid_keyword_weight,
        distance_weight=s.hybrid_distance_weight,
        candidate_threshold=s.hybrid_candidate_threshold,
    )
    service = KnowledgeService(
        store=store,
        queue=queue,
        vector_index=vector_index,
        retrieval_engine=retrieval,
    )

    return KnowledgeEngine(
        settings=s,
        store=store,
        queue=queue,
        vector_index=vector_index,
        embedding_provider=embedding_provider,
        extractor=extractor,
        progress=progress,
        orchestrator=orchestrator,
        supervisor=supervisor,
        retrieval=retrieval,
        service=service,
    )
