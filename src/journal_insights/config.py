"""Configuration loading for journal-insights.

Config is read from a .toml or .json file in the project root. Every section
is optional; missing keys keep their defaults.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

# Python 3.11+ has tomllib in stdlib; fall back to tomli for older versions
try:
    import tomllib  # Python 3.11+
except ImportError:
    try:
        import tomli as tomllib  # Python <3.11
    except ImportError:  # pragma: no cover
        tomllib = None


@dataclass
class StorageConfig:
    """Where derived data lives (relative to project_root)."""
    data_dir: str = ".insights"
    database: str = "insights.db"
    entries_dir: str = "entries"
    lock_timeout: float = 10.0


@dataclass
class ChunkingConfig:
    """Chunk-size policy for the entry chunker."""
    max_tokens: int = 1000
    chars_per_token: int = 4
    overlap_fraction: float = 0.1

    @property
    def max_chars(self) -> int:
        return self.max_tokens * self.chars_per_token

    @property
    def overlap_chars(self) -> int:
        return int(self.max_chars * self.overlap_fraction)


@dataclass
class EmbeddingConfig:
    """Embedding provider and retry policy."""
    provider: str = "openai"            # openai | hashing
    model: str = "text-embedding-3-large"
    dimensions: Optional[int] = None
    batch_size: int = 64
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0


@dataclass
class ExtractionConfig:
    """Text-extraction (per-entry analysis) provider and retry policy."""
    provider: str = "openai"            # openai | lexicon
    model: str = "gpt-4o-mini"
    narrative_model: str = "gpt-4o"
    narrate: bool = False               # LLM narratives for summaries
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0


@dataclass
class AggregationConfig:
    """Constants for summaries, trends, and current state."""
    trend_threshold: float = 5.0
    top_drivers: int = 5
    top_events_month: int = 10
    top_events_year: int = 15
    theme_count: int = 5
    trend_window_days: int = 7
    default_days: int = 30


@dataclass
class OpenAIConfig:
    """OpenAI-compatible REST endpoint settings."""
    api_base: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    timeout: float = 60.0

    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env)


@dataclass
class InsightsConfig:
    """Configuration for one journal's analytics engine."""

    project_name: str = "unnamed"
    project_root: Path = field(default_factory=Path.cwd)

    storage: StorageConfig = field(default_factory=StorageConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)

    def get_data_path(self) -> Path:
        return self.project_root / self.storage.data_dir

    def get_database_path(self) -> Path:
        return self.get_data_path() / self.storage.database

    def get_entries_path(self) -> Path:
        return self.project_root / self.storage.entries_dir

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValueError: If a setting is out of range
        """
        c = self.chunking
        if c.max_tokens < 1 or c.chars_per_token < 1:
            raise ValueError("chunking.max_tokens and chunking.chars_per_token must be >= 1")
        if not (0.0 <= c.overlap_fraction < 0.5):
            raise ValueError("chunking.overlap_fraction must be in [0, 0.5)")
        for name, section in (("embedding", self.embedding), ("extraction", self.extraction)):
            if section.max_attempts < 1:
                raise ValueError(f"{name}.max_attempts must be >= 1")
            if section.backoff_base < 0 or section.backoff_max < 0:
                raise ValueError(f"{name} backoff values must be >= 0")
        if self.embedding.batch_size < 1:
            raise ValueError("embedding.batch_size must be >= 1")
        a = self.aggregation
        if a.trend_threshold < 0:
            raise ValueError("aggregation.trend_threshold must be >= 0")
        if not (3 <= a.theme_count <= 5):
            raise ValueError("aggregation.theme_count must be between 3 and 5")
        if a.trend_window_days < 1 or a.default_days < 1:
            raise ValueError("aggregation window sizes must be >= 1")


def load_toml_config(path: Path) -> dict[str, Any]:
    """Load configuration from TOML file."""
    if tomllib is None:
        raise ImportError("tomli required for TOML config: pip install tomli")
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_json_config(path: Path) -> dict[str, Any]:
    """Load configuration from JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _apply_section(section: Any, data: dict[str, Any]) -> None:
    """Copy known keys from data onto a section dataclass; unknown keys are ignored."""
    known = {f.name: f for f in fields(section)}
    for key, value in data.items():
        if key not in known:
            continue
        current = getattr(section, key)
        if isinstance(current, bool) and not isinstance(value, bool):
            raise ValueError(f"{key} must be a boolean, got {value!r}")
        if isinstance(current, float) and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        setattr(section, key, value)


def dict_to_config(data: dict[str, Any], project_root: Path) -> InsightsConfig:
    """Convert dictionary to InsightsConfig."""
    config = InsightsConfig(project_root=project_root)

    if "project" in data:
        proj = data["project"]
        if "name" in proj:
            config.project_name = proj["name"]

    if "storage" in data:
        _apply_section(config.storage, data["storage"])
    if "chunking" in data:
        _apply_section(config.chunking, data["chunking"])
    if "embedding" in data:
        _apply_section(config.embedding, data["embedding"])
    if "extraction" in data:
        _apply_section(config.extraction, data["extraction"])
    if "aggregation" in data:
        _apply_section(config.aggregation, data["aggregation"])

    # [providers.openai] is the documented spelling; a top-level [openai] works too
    openai_data = data.get("providers", {}).get("openai", data.get("openai"))
    if openai_data:
        _apply_section(config.openai, openai_data)

    config.validate()
    return config


def find_config_file(project_root: Path) -> Optional[Path]:
    """Find configuration file in project root.

    Search order:
    1. insights_config.toml
    2. insights_config.json
    3. .insights.toml
    4. .insights.json
    """
    candidates = [
        "insights_config.toml",
        "insights_config.json",
        ".insights.toml",
        ".insights.json",
    ]

    for name in candidates:
        path = project_root / name
        if path.exists():
            return path

    return None


def load_config(project_root: Path, config_path: Optional[Path] = None) -> InsightsConfig:
    """Load project configuration.

    Args:
        project_root: Root directory of the project
        config_path: Optional explicit path to config file

    Returns:
        InsightsConfig instance
    """
    if config_path is None:
        config_path = find_config_file(project_root)

    if config_path is None:
        # No config file - use defaults
        return InsightsConfig(project_root=project_root)

    suffix = config_path.suffix.lower()

    if suffix == ".toml":
        config_dict = load_toml_config(config_path)
        return dict_to_config(config_dict, project_root)

    elif suffix == ".json":
        config_dict = load_json_config(config_path)
        return dict_to_config(config_dict, project_root)

    else:
        raise ValueError(f"Unsupported config file type: {suffix}")
