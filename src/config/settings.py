"""Application settings loaded from environment variables via pydantic-settings.

# ─── HOW SETTINGS WORK ────────────────────────────────────────────────
#
# Values are read from TWO sources (in priority order):
#
#   1. **Environment variables** — e.g. OPENAI_API_KEY=sk-abc123
#   2. **.env file** — key=value lines in the project root .env file
#
# Field ``openai_api_key`` maps to env var ``OPENAI_API_KEY``.  Defaults
# below apply when neither source sets a value.
#
# The "Tuning" block holds the empirically chosen constants of the
# semantic segmenter and the hybrid ranker.  They are defaults, not
# contracts: adjust them per deployment without code changes.
# ──────────────────────────────────────────────────────────────────────
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Knowledge engine settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # === Embedding service ===
    # "openai" (any OpenAI-compatible endpoint) or "nomic" (local Ollama).
    embedding_provider: str = "openai"
    openai_api_key: str = ""
    openai_base_url: str = ""  # Custom base URL for OpenAI-compatible APIs
    openai_embedding_model: str = ""  # Empty = text-embedding-3-small
    ollama_base_url: str = "http://localhost:11434"
    embedding_timeout_seconds: float = 30.0

    # === Vector index ===
    # Empty host = embedded PersistentClient at chromadb_persist_dir.
    chromadb_host: str = ""
    chromadb_port: int = 8000
    chromadb_persist_dir: str = "./data/chromadb"
    chromadb_collection: str = "agent_knowledge"
    index_timeout_seconds: float = 30.0

    # === Persistence ===
    knowledge_db_path: str = "data/knowledge.db"

    # === Extraction ===
    extraction_timeout_seconds: float = 60.0

    # === Pipeline ===
    storage_batch_size: int = 5
    storage_batch_delay_seconds: float = 1.0
    chunking_timeout_seconds: float = 120.0
    job_max_retries: int = 3
    worker_batch_size: int = 1
    worker_poll_timeout_seconds: float = 5.0

    # === Tuning ===
    semantic_threshold_floor: float = 0.3
    semantic_stddev_factor: float = 0.5
    semantic_max_sentences: int = 50
    semantic_batch_size: int = 5
    semantic_batch_delay_seconds: float = 0.1
    hybrid_vector_weight: float = 0.8
    hybrid_keyword_weight: float = 0.2
    hybrid_distance_weight: float = 0.0
    hybrid_candidate_threshold: float = 0.5

    # === App Config ===
    app_env: str = "development"
    log_level: str = "INFO"
