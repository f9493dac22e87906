"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from tithebook.config import (
    Config,
    MatchingConfig,
    create_default_config,
    load_config,
)

ENV_VARS = (
    "TITHEBOOK_STATE_DB",
    "TITHEBOOK_PERSISTENCE_ENABLED",
    "VISION_URL",
    "VISION_MODEL",
    "VISION_AUTH_HEADER",
    "VISION_TIMEOUT",
    "TITHEBOOK_SEMANTIC_ENABLED",
    "OLLAMA_URL",
    "OLLAMA_AUTH_HEADER",
    "OLLAMA_MODEL",
    "OLLAMA_TIMEOUT",
    "TITHEBOOK_SEMANTIC_CACHE_TTL_DAYS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config.vision.base_url == "http://localhost:11434"
        assert config.semantic.enabled is False
        assert config.matching.high_threshold == 0.85
        assert config.state_db_path == Path("data/state.db")
        assert config.persistence_enabled is True
        assert config.validate() == []

    def test_default_file_round_trips(self, tmp_path):
        path = tmp_path / "conf" / "config.yaml"
        create_default_config(path)

        config = load_config(path)

        assert config.learning.promotion_min_scopes == 3
        assert config.sequencing.gap_threshold == 5
        assert config.matching.alias_min_occurrences == 2
        assert config.validate() == []

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "vision:\n"
            "  model: llava\n"
            "  max_workers: 2\n"
            "matching:\n"
            "  match_threshold: 0.7\n"
            "learning:\n"
            "  regression_min_predict: 20\n"
            "sequencing:\n"
            "  gap_threshold: 20\n"
            "persistence_enabled: false\n"
        )

        config = load_config(path)

        assert config.vision.model == "llava"
        assert config.vision.max_workers == 2
        assert config.matching.match_threshold == 0.7
        assert config.learning.regression_min_predict == 20
        assert config.sequencing.gap_threshold == 20
        assert config.persistence_enabled is False

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(path).vision.model == "qwen2.5vl:7b"

    def test_environment_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("persistence_enabled: true\nsemantic:\n  enabled: false\n")
        monkeypatch.setenv("TITHEBOOK_STATE_DB", str(tmp_path / "other.db"))
        monkeypatch.setenv("TITHEBOOK_PERSISTENCE_ENABLED", "false")
        monkeypatch.setenv("TITHEBOOK_SEMANTIC_ENABLED", "TRUE")
        monkeypatch.setenv("VISION_TIMEOUT", "15")
        monkeypatch.setenv("OLLAMA_URL", "https://llm.example.org")

        config = load_config(path)

        assert config.state_db_path == tmp_path / "other.db"
        assert config.persistence_enabled is False
        assert config.semantic.enabled is True
        assert config.semantic.is_remote() is True
        assert config.vision.timeout_seconds == 15

    def test_unrecognised_boolean_keeps_file_value(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("persistence_enabled: false\n")
        monkeypatch.setenv("TITHEBOOK_PERSISTENCE_ENABLED", "maybe")

        assert load_config(path).persistence_enabled is False


class TestValidate:
    """Tests for Config.validate."""

    def test_threshold_out_of_range(self):
        config = Config(matching=MatchingConfig(match_threshold=1.5))
        assert "matching.match_threshold must be between 0 and 1" in config.validate()

    def test_medium_above_high(self):
        config = Config(matching=MatchingConfig(high_threshold=0.6, medium_threshold=0.7))
        assert "matching.medium_threshold must be <= high_threshold" in config.validate()

    def test_regression_limits(self):
        config = Config()
        config.learning.regression_min_train = 50
        assert "learning.regression_min_train must be <= regression_min_predict" in config.validate()

    def test_vision_attempts_and_gap_threshold(self):
        config = Config()
        config.vision.max_attempts = 0
        config.sequencing.gap_threshold = 0

        errors = config.validate()

        assert "vision.max_attempts must be at least 1" in errors
        assert "sequencing.gap_threshold must be at least 1" in errors

    def test_semantic_needs_url(self):
        config = Config()
        config.semantic.enabled = True
        config.semantic.ollama_url = ""
        assert config.validate() == [
            "semantic.ollama_url is required when semantic matching is enabled"
        ]
