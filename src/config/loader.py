"""YAML configuration loader with environment variable overrides.

# ─── CONFIGURATION HIERARCHY ──────────────────────────────────────────
#
# Configuration is loaded in layers (later layers override earlier):
#
#   1. config/config.yaml  — Static defaults checked into the repo
#   2. .env file           — Local developer overrides (not committed)
#   3. Environment vars    — Set at deploy time
#
# load_config() reads the YAML file, then deep-merges the values that
# were explicitly set through Settings on top of it.  build_settings()
# goes the other way and turns the merged dict back into a Settings
# instance for the composition root.
#
#   base = {"retrieval": {"hybrid_vector_weight": 0.8}}
#   overrides = {"retrieval": {"hybrid_keyword_weight": 0.3}}
#   result = {"retrieval": {"hybrid_vector_weight": 0.8,
#                           "hybrid_keyword_weight": 0.3}}
# ──────────────────────────────────────────────────────────────────────
"""

from pathlib import Path
from typing import Any

import yaml

from src.config.settings import Settings
from src.utils.errors import ConfigurationError

# YAML section each Settings field is grouped under.
_SECTIONS: dict[str, tuple[str, ...]] = {
    "app": ("app_env", "log_level"),
    "embedding": (
        "embedding_provider",
        "openai_api_key",
        "openai_base_url",
        "openai_embedding_model",
        "ollama_base_url",
        "embedding_timeout_seconds",
    ),
    "vector_index": (
        "chromadb_host",
        "chromadb_port",
        "chromadb_persist_dir",
        "chromadb_collection",
        "index_timeout_seconds",
    ),
    "persistence": ("knowledge_db_path",),
    "extraction": ("extraction_timeout_seconds",),
    "pipeline": (
        "storage_batch_size",
        "storage_batch_delay_seconds",
        "chunking_timeout_seconds",
        "job_max_retries",
        "worker_batch_size",
        "worker_poll_timeout_seconds",
    ),
    "segmentation": (
        "semantic_threshold_floor",
        "semantic_stddev_factor",
        "semantic_max_sentences",
        "semantic_batch_size",
        "semantic_batch_delay_seconds",
    ),
    "retrieval": (
        "hybrid_vector_weight",
        "hybrid_keyword_weight",
        "hybrid_distance_weight",
        "hybrid_candidate_threshold",
    ),
}


def load_config(path: str = "config/config.yaml", settings: Settings | None = None) -> dict:
    """Load YAML config and merge with environment-based Settings.

    Only Settings fields that were explicitly provided (env var or .env)
    override YAML values; untouched defaults leave the YAML alone.

    Args:
        path: Path to the YAML configuration file.
        settings: Pre-built Settings; a fresh one is read when omitted.

    Returns:
        Fully resolved configuration dictionary.
    """
    config_path = Path(path)
    if config_path.exists():
        with open(config_path) as f:
            try:
                yaml_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
    else:
        yaml_config = {}

    settings = settings or Settings()
    explicit = settings.model_fields_set
    env_overrides: dict[str, dict[str, Any]] = {}
    for section, fields in _SECTIONS.items():
        values = {name: getattr(settings, name) for name in fields if name in explicit}
        if values:
            env_overrides[section] = values

    _deep_merge(yaml_config, env_overrides)
    return yaml_config


def build_settings(config: dict) -> Settings:
    """Flatten a merged config dict back into a :class:`Settings` instance."""
    flat: dict[str, Any] = {}
    for section, fields in _SECTIONS.items():
        values = config.get(section) or {}
        for name in fields:
            if name in values:
                flat[name] = values[name]
    return Settings(**flat)


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
