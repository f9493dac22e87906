"""
Configuration management (SSOT).

This module defines ALL configuration for the tithebook core.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Thresholds are fractions in [0, 1]
- Learned-state limits (promotion, auto-correct) are deployment settings
- Persistence can be switched off entirely (stateless mode)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class VisionConfig:
    """Vision extraction service configuration.

    The service speaks the Ollama chat API with image attachments, so a
    local vision model or a proxied remote one both work.
    """

    base_url: str = "http://localhost:11434"
    model: str = "qwen2.5vl:7b"
    # Optional auth header for proxied deployments ("Bearer <token>" or "Header: value")
    auth_header: str | None = None
    timeout_seconds: int = 120
    # Total attempts per page, including the first one
    max_attempts: int = 3
    backoff_factor: float = 1.0
    # Pages extracted in parallel per batch
    max_workers: int = 4


@dataclass
class SemanticConfig:
    """Semantic (LLM) name-matching fallback configuration.

    - enabled: Master switch (default OFF)
    - ollama_url: Can be localhost, LAN IP, or remote URL
    - max_concurrent: Concurrency limiter for shared servers
    """

    enabled: bool = False
    ollama_url: str = "http://localhost:11434"
    auth_header: str | None = None
    model: str = "qwen2.5:3b-instruct-q4_K_M"
    timeout_seconds: int = 30
    max_attempts: int = 3
    backoff_factor: float = 0.5
    # Cached verdicts expire after this many days
    cache_ttl_days: int = 30
    max_concurrent: int = 2

    def is_remote(self) -> bool:
        """Check if Ollama URL is remote (not localhost)."""
        url_lower = self.ollama_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class MatchingConfig:
    """Name matching thresholds."""

    high_threshold: float = 0.85
    medium_threshold: float = 0.65
    # Minimum score for a fuzzy match to be returned at all
    match_threshold: float = 0.65
    # Aliases are used only after this many identical confirmations
    alias_min_occurrences: int = 2
    alias_score: float = 0.98
    # Runners-up shown alongside the best match
    max_alternatives: int = 3
    alternative_threshold: float = 0.4


@dataclass
class LearningConfig:
    """Learned-state (corrections, substitutions, regression) settings."""

    # Distinct assemblies needed before a correction becomes global
    promotion_min_scopes: int = 3
    auto_correct_min_occurrences: int = 3
    auto_correct_min_confidence: float = 0.7
    regression_max_examples: int = 500
    regression_min_train: int = 5
    regression_min_predict: int = 10
    regression_retrain_every: int = 10
    regression_epochs: int = 50


@dataclass
class SequencingConfig:
    """Multi-page sequencing settings."""

    # Row-number jumps larger than this are flagged as gaps
    gap_threshold: int = 5
    duplicate_name_threshold: float = 0.8


@dataclass
class Config:
    """Application configuration (SSOT)."""

    vision: VisionConfig = field(default_factory=VisionConfig)
    semantic: SemanticConfig = field(default_factory=SemanticConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    sequencing: SequencingConfig = field(default_factory=SequencingConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))
    # False = stateless mode: corrections/aliases are not persisted
    persistence_enabled: bool = True

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        for name in ("high_threshold", "medium_threshold", "match_threshold", "alias_score"):
            value = getattr(self.matching, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"matching.{name} must be between 0 and 1")

        if self.matching.medium_threshold > self.matching.high_threshold:
            errors.append("matching.medium_threshold must be <= high_threshold")

        if not 0.0 <= self.learning.auto_correct_min_confidence <= 1.0:
            errors.append("learning.auto_correct_min_confidence must be between 0 and 1")
        if self.learning.regression_min_train > self.learning.regression_min_predict:
            errors.append("learning.regression_min_train must be <= regression_min_predict")

        if self.vision.max_attempts < 1:
            errors.append("vision.max_attempts must be at least 1")
        if not self.vision.base_url:
            errors.append("vision.base_url is required")

        if self.semantic.enabled and not self.semantic.ollama_url:
            errors.append("semantic.ollama_url is required when semantic matching is enabled")

        if self.sequencing.gap_threshold < 1:
            errors.append("sequencing.gap_threshold must be at least 1")

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - TITHEBOOK_STATE_DB
    - TITHEBOOK_PERSISTENCE_ENABLED (true/false)
    - VISION_URL
    - VISION_MODEL
    - VISION_AUTH_HEADER
    - VISION_TIMEOUT
    - TITHEBOOK_SEMANTIC_ENABLED (true/false)
    - OLLAMA_URL
    - OLLAMA_MODEL
    - OLLAMA_TIMEOUT
    - TITHEBOOK_SEMANTIC_CACHE_TTL_DAYS
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    vision_data = data.get("vision", {})
    vision = VisionConfig(
        base_url=os.environ.get(
            "VISION_URL", vision_data.get("base_url", "http://localhost:11434")
        ),
        model=os.environ.get("VISION_MODEL", vision_data.get("model", "qwen2.5vl:7b")),
        auth_header=os.environ.get("VISION_AUTH_HEADER", vision_data.get("auth_header")),
        timeout_seconds=int(os.environ.get(
            "VISION_TIMEOUT", vision_data.get("timeout_seconds", 120)
        )),
        max_attempts=vision_data.get("max_attempts", 3),
        backoff_factor=vision_data.get("backoff_factor", 1.0),
        max_workers=vision_data.get("max_workers", 4),
    )

    semantic_data = data.get("semantic", {})
    semantic = SemanticConfig(
        enabled=_env_bool("TITHEBOOK_SEMANTIC_ENABLED", semantic_data.get("enabled", False)),
        ollama_url=os.environ.get(
            "OLLAMA_URL", semantic_data.get("ollama_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("OLLAMA_AUTH_HEADER", semantic_data.get("auth_header")),
        model=os.environ.get(
            "OLLAMA_MODEL", semantic_data.get("model", "qwen2.5:3b-instruct-q4_K_M")
        ),
        timeout_seconds=int(os.environ.get(
            "OLLAMA_TIMEOUT", semantic_data.get("timeout_seconds", 30)
        )),
        max_attempts=semantic_data.get("max_attempts", 3),
        backoff_factor=semantic_data.get("backoff_factor", 0.5),
        cache_ttl_days=int(os.environ.get(
            "TITHEBOOK_SEMANTIC_CACHE_TTL_DAYS", semantic_data.get("cache_ttl_days", 30)
        )),
        max_concurrent=semantic_data.get("max_concurrent", 2),
    )

    matching_data = data.get("matching", {})
    matching = MatchingConfig(
        high_threshold=matching_data.get("high_threshold", 0.85),
        medium_threshold=matching_data.get("medium_threshold", 0.65),
        match_threshold=matching_data.get("match_threshold", 0.65),
        alias_min_occurrences=matching_data.get("alias_min_occurrences", 2),
        alias_score=matching_data.get("alias_score", 0.98),
        max_alternatives=matching_data.get("max_alternatives", 3),
        alternative_threshold=matching_data.get("alternative_threshold", 0.4),
    )

    learning_data = data.get("learning", {})
    learning = LearningConfig(
        promotion_min_scopes=learning_data.get("promotion_min_scopes", 3),
        auto_correct_min_occurrences=learning_data.get("auto_correct_min_occurrences", 3),
        auto_correct_min_confidence=learning_data.get("auto_correct_min_confidence", 0.7),
        regression_max_examples=learning_data.get("regression_max_examples", 500),
        regression_min_train=learning_data.get("regression_min_train", 5),
        regression_min_predict=learning_data.get("regression_min_predict", 10),
        regression_retrain_every=learning_data.get("regression_retrain_every", 10),
        regression_epochs=learning_data.get("regression_epochs", 50),
    )

    sequencing_data = data.get("sequencing", {})
    sequencing = SequencingConfig(
        gap_threshold=sequencing_data.get("gap_threshold", 5),
        duplicate_name_threshold=sequencing_data.get("duplicate_name_threshold", 0.8),
    )

    state_db = os.environ.get("TITHEBOOK_STATE_DB", data.get("state_db_path", "data/state.db"))

    return Config(
        vision=vision,
        semantic=semantic,
        matching=matching,
        learning=learning,
        sequencing=sequencing,
        state_db_path=Path(state_db),
        persistence_enabled=_env_bool(
            "TITHEBOOK_PERSISTENCE_ENABLED", data.get("persistence_enabled", True)
        ),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Tithe book extraction & reconciliation configuration

# Vision extraction (Ollama-compatible chat API with image support)
vision:
  base_url: "http://localhost:11434"
  model: "qwen2.5vl:7b"
  auth_header: null                        # Optional auth header for proxied deployments
  timeout_seconds: 120
  max_attempts: 3                          # Includes the first attempt
  backoff_factor: 1.0                      # Exponential backoff base (seconds)
  max_workers: 4                           # Pages extracted in parallel

# Semantic name matching fallback (local LLM)
semantic:
  enabled: false
  ollama_url: "http://localhost:11434"
  auth_header: null
  model: "qwen2.5:3b-instruct-q4_K_M"
  timeout_seconds: 30
  max_attempts: 3
  cache_ttl_days: 30                       # Cached verdicts expire after this
  max_concurrent: 2

# Name matching thresholds
matching:
  high_threshold: 0.85
  medium_threshold: 0.65
  match_threshold: 0.65                    # Below this: manual confirmation
  alias_min_occurrences: 2                 # Confirmations before an alias is trusted

# Learned correction settings
learning:
  promotion_min_scopes: 3                  # Assemblies before a correction goes global
  auto_correct_min_occurrences: 3
  auto_correct_min_confidence: 0.7
  regression_max_examples: 500
  regression_min_train: 5
  regression_min_predict: 10
  regression_retrain_every: 10

# Page sequencing
sequencing:
  gap_threshold: 5                         # Row jumps above this are flagged
  duplicate_name_threshold: 0.8

# State database path
state_db_path: "data/state.db"
persistence_enabled: true
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
