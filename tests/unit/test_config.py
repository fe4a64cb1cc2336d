"""Unit tests for the YAML + environment configuration layer."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.config.loader import _deep_merge, build_settings, load_config
from src.config.settings import Settings
from src.utils.errors import ConfigurationError


class TestDeepMerge:
    def test_nested_values_are_merged(self) -> None:
        base = {"retrieval": {"hybrid_vector_weight": 0.8}, "app": {"log_level": "INFO"}}
        _deep_merge(base, {"retrieval": {"hybrid_keyword_weight": 0.3}})
        assert base == {
            "retrieval": {"hybrid_vector_weight": 0.8, "hybrid_keyword_weight": 0.3},
            "app": {"log_level": "INFO"},
        }

    def test_scalar_override_replaces(self) -> None:
        base = {"pipeline": {"job_max_retries": 3}}
        _deep_merge(base, {"pipeline": {"job_max_retries": 5}})
        assert base["pipeline"]["job_max_retries"] == 5


class TestLoadConfig:
    def test_repo_config_builds_default_tuning(self, project_root: Path) -> None:
        config = load_config(str(project_root / "config" / "config.yaml"), settings=Settings(app_env="test"))
        settings = build_settings(config)

        assert settings.semantic_threshold_floor == 0.3
        assert settings.semantic_stddev_factor == 0.5
        assert settings.hybrid_vector_weight == 0.8
        assert settings.hybrid_keyword_weight == 0.2
        assert settings.hybrid_candidate_threshold == 0.5
        assert settings.job_max_retries == 3
        assert settings.app_env == "test"

    def test_explicit_settings_override_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("pipeline:\n  storage_batch_size: 5\n  job_max_retries: 3\n")

        config = load_config(str(path), settings=Settings(storage_batch_size=10))

        assert config["pipeline"]["storage_batch_size"] == 10
        assert config["pipeline"]["job_max_retries"] == 3

    def test_missing_file_falls_back_to_settings(self, tmp_path: Path) -> None:
        config = load_config(str(tmp_path / "absent.yaml"), settings=Settings(chunking_timeout_seconds=30.0))
        assert build_settings(config).chunking_timeout_seconds == 30.0

    def test_invalid_yaml_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("pipeline: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_config(str(path), settings=Settings())
