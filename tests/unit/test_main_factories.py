"""Unit tests for the composition root in src/main.py.

Covers embedding provider selection and the full build_knowledge_service
assembly with injected in-memory adapters, so no network calls or API
keys are required.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from src.config.settings import Settings
from src.main import _build_embedding_provider, build_knowledge_service
from src.models.knowledge import SourceStatus, SourceType
from src.providers.embedding.nomic_embedding_provider import NomicEmbeddingProvider
from src.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from src.providers.extraction.passthrough_extractor import PassthroughExtractor
from src.providers.knowledge_store.sqlite_knowledge_store import SQLiteKnowledgeStore
from src.utils.errors import ConfigurationError
from tests.conftest import MockEmbeddingProvider, MockVectorIndex


def _settings(**overrides) -> Settings:
    defaults = {
        "openai_api_key": "",
        "openai_base_url": "",
        "openai_embedding_model": "",
        "ollama_base_url": "http://localhost:11434",
        "embedding_provider": "openai",
        "storage_batch_delay_seconds": 0.0,
        "app_env": "test",
    }
    defaults.update(overrides)
    return Settings(**defaults)


# ======================================================================
# _build_embedding_provider
# ======================================================================


class TestBuildEmbeddingProvider:
    def test_openai_with_key(self) -> None:
        provider = _build_embedding_provider(_settings(openai_api_key="sk-test"))
        assert isinstance(provider, OpenAIEmbeddingProvider)

    def test_openai_compatible_without_key(self) -> None:
        provider = _build_embedding_provider(_settings(openai_base_url="http://localhost:8080/v1"))
        assert provider.get_provider_name() == "openai-compatible_embedding"

    def test_openai_without_key_fails_fast(self) -> None:
        with pytest.raises(ConfigurationError):
            _build_embedding_provider(_settings())

    def test_nomic(self) -> None:
        assert isinstance(_build_embedding_provider(_settings(embedding_provider="nomic")), NomicEmbeddingProvider)

    def test_unknown_provider(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown embedding provider"):
            _build_embedding_provider(_settings(embedding_provider="word2vec"))


# ======================================================================
# build_knowledge_service
# ======================================================================


class TestBuildKnowledgeService:
    @pytest.mark.asyncio
    async def test_assembled_engine_processes_a_source(self, tmp_path: Path, sample_document: str) -> None:
        index = MockVectorIndex()
        engine = build_knowledge_service(
            _settings(knowledge_db_path=str(tmp_path / "kb.db")),
            embedding_provider=MockEmbeddingProvider(),
            vector_index=index,
            extractor=PassthroughExtractor(),
        )
        await engine.start()

        assert isinstance(engine.store, SQLiteKnowledgeStore)
        await engine.service.update_settings("agent-1", chunk_size=200, chunk_overlap=0)
        source_id = await engine.service.submit_knowledge_source(
            "agent-1", SourceType.PLAIN_TEXT, content=sample_document, name="policies"
        )
        messages = await engine.queue.receive()
        await engine.supervisor.process_batch(messages)

        status = await engine.service.get_source_status(source_id)
        assert status.status is SourceStatus.COMPLETED
        assert index.chunks_for(source_id)
        await engine.aclose()

    def test_tuning_settings_reach_the_retrieval_engine(self, tmp_path: Path) -> None:
        engine = build_knowledge_service(
            _settings(knowledge_db_path=str(tmp_path / "kb.db"), hybrid_keyword_weight=0.4),
            embedding_provider=MockEmbeddingProvider(),
            vector_index=MockVectorIndex(),
        )
        assert engine.retrieval._keyword_weight == 0.4
