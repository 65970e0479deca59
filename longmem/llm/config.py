"""
Configuration Module - Load and manage longmem configuration.

This module provides support for loading configuration from:
- YAML configuration files (.longmem.yml)
- Environment variables
- Programmatic configuration

Configuration precedence (highest to lowest):
1. Programmatic configuration (passed to load_config)
2. Environment variables
3. Configuration file
4. Default values
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml

from .base import ConfigurationError, Model


logger = logging.getLogger(__name__)


# Default configuration file names (in order of precedence)
CONFIG_FILE_NAMES = [
    ".longmem.yml",
    ".longmem.yaml",
    "longmem.yml",
    "longmem.yaml",
]

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"

DEFAULT_EMBEDDING_MODEL = Model(provider="openai", model_id="text-embedding-3-small")
DEFAULT_TOOL_MODEL = Model(provider="openai", model_id="gpt-4o-mini")


class FTSStrategy(str, Enum):
    """How the full-text query is built from the user query."""

    # Tokenize the raw query
    DIRECT = "direct"

    # Ask the tool model for a one-sentence summary, tokenize that
    SUMMARY = "summary"

    # Ask the tool model for 3-5 keywords
    KEYWORDS = "keywords"

    # Direct first, add summary results when direct finds too few
    AUTO = "auto"

    @classmethod
    def parse(cls, value: Any) -> "FTSStrategy":
        """Parse a strategy name; unknown or empty values mean DIRECT."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            if value:
                logger.warning(f"Unknown FTS strategy {value!r}, using direct")
            return cls.DIRECT


@dataclass
class OpenAIProviderConfig:
    """Credentials for the OpenAI provider."""

    api_key: Optional[str] = None
    base_url: str = DEFAULT_OPENAI_BASE_URL


@dataclass
class MemoryConfig:
    """
    Retrieval tuning.

    Attributes:
        min_similarity: Vector hits below this cosine similarity are dropped
        memory_top_k: Maximum results per search path and after fusion
        history_top_k: Maximum history snippets for injected context
        max_injected_chars: Size cap for formatted injected context
        fts_strategy: How the full-text query is built
        fts_rank_scale: FTS5 rank that maps to a score of 0 (``1 + rank/scale``)
    """

    min_similarity: float = 0.80
    memory_top_k: int = 10
    history_top_k: int = 10
    max_injected_chars: int = 4000
    fts_strategy: FTSStrategy = FTSStrategy.DIRECT
    fts_rank_scale: float = 20.0

    def __post_init__(self):
        self.fts_strategy = FTSStrategy.parse(self.fts_strategy)
        if self.memory_top_k < 1:
            raise ConfigurationError(f"memory_top_k must be positive, got {self.memory_top_k}")
        if self.history_top_k < 1:
            raise ConfigurationError(f"history_top_k must be positive, got {self.history_top_k}")
        if self.max_injected_chars < 0:
            raise ConfigurationError(f"max_injected_chars must not be negative, got {self.max_injected_chars}")
        if self.fts_rank_scale <= 0:
            raise ConfigurationError(f"fts_rank_scale must be positive, got {self.fts_rank_scale}")


@dataclass
class ReindexConfig:
    """Retry behaviour of the reindex pipeline."""

    max_retries: int = 5
    backoff_seconds: float = 2.0
    queue_size: int = 64

    def __post_init__(self):
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must not be negative, got {self.max_retries}")
        if self.backoff_seconds < 0:
            raise ConfigurationError(f"backoff_seconds must not be negative, got {self.backoff_seconds}")
        if self.queue_size < 1:
            raise ConfigurationError(f"queue_size must be positive, got {self.queue_size}")


@dataclass
class LongmemConfig:
    """
    Complete configuration for longmem.

    Example YAML configuration:
        ```yaml
        providers:
          openai:
            api_key: "sk-..."

        models:
          embedding_model:
            provider: "openai"
            model_id: "text-embedding-3-small"
          tool_model:
            provider: "openai"
            model_id: "gpt-4o-mini"

        memory:
          min_similarity: 0.8
          memory_top_k: 10
          fts_strategy: "auto"
        ```
    """

    openai: OpenAIProviderConfig = field(default_factory=OpenAIProviderConfig)
    embedding_model: Optional[Model] = DEFAULT_EMBEDDING_MODEL
    tool_model: Optional[Model] = DEFAULT_TOOL_MODEL
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    reindex: ReindexConfig = field(default_factory=ReindexConfig)
    db_path: Optional[str] = None
    debug: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "LongmemConfig":
        """
        Create configuration from dictionary.

        Missing sections, and zero or empty values, take the defaults.
        """
        providers = data.get("providers") or {}
        openai_data = providers.get("openai") or {}
        models = data.get("models") or {}
        memory_data = data.get("memory") or {}
        reindex_data = data.get("reindex") or {}
        storage_data = data.get("storage") or {}

        memory_defaults = MemoryConfig()
        reindex_defaults = ReindexConfig()

        return cls(
            openai=OpenAIProviderConfig(
                api_key=openai_data.get("api_key") or None,
                base_url=openai_data.get("base_url") or DEFAULT_OPENAI_BASE_URL,
            ),
            embedding_model=Model.from_dict(models.get("embedding_model")) or DEFAULT_EMBEDDING_MODEL,
            tool_model=Model.from_dict(models.get("tool_model")) or DEFAULT_TOOL_MODEL,
            memory=MemoryConfig(
                min_similarity=float(memory_data.get("min_similarity") or memory_defaults.min_similarity),
                memory_top_k=int(memory_data.get("memory_top_k") or memory_defaults.memory_top_k),
                history_top_k=int(memory_data.get("history_top_k") or memory_defaults.history_top_k),
                max_injected_chars=int(
                    memory_data.get("max_injected_chars") or memory_defaults.max_injected_chars
                ),
                fts_strategy=FTSStrategy.parse(memory_data.get("fts_strategy")),
                fts_rank_scale=float(memory_data.get("fts_rank_scale") or memory_defaults.fts_rank_scale),
            ),
            reindex=ReindexConfig(
                max_retries=int(reindex_data.get("max_retries", reindex_defaults.max_retries)),
                backoff_seconds=float(
                    reindex_data.get("backoff_seconds", reindex_defaults.backoff_seconds)
                ),
                queue_size=int(reindex_data.get("queue_size") or reindex_defaults.queue_size),
            ),
            db_path=storage_data.get("db_path"),
            debug=bool(data.get("debug", False)),
        )

    def to_dict(self) -> dict:
        """Convert configuration to dictionary."""
        return {
            "providers": {
                "openai": {
                    "api_key": "***" if self.openai.api_key else None,  # Redact API key
                    "base_url": self.openai.base_url,
                },
            },
            "models": {
                "embedding_model": self.embedding_model.to_dict() if self.embedding_model else None,
                "tool_model": self.tool_model.to_dict() if self.tool_model else None,
            },
            "memory": {
                "min_similarity": self.memory.min_similarity,
                "memory_top_k": self.memory.memory_top_k,
                "history_top_k": self.memory.history_top_k,
                "max_injected_chars": self.memory.max_injected_chars,
                "fts_strategy": self.memory.fts_strategy.value,
                "fts_rank_scale": self.memory.fts_rank_scale,
            },
            "reindex": {
                "max_retries": self.reindex.max_retries,
                "backoff_seconds": self.reindex.backoff_seconds,
                "queue_size": self.reindex.queue_size,
            },
            "storage": {
                "db_path": self.db_path,
            },
            "debug": self.debug,
        }


def find_config_file(start_path: Optional[str] = None) -> Optional[Path]:
    """
    Find the configuration file starting from the given path.

    Searches in the following order:
    1. The specified start_path directory
    2. Current working directory
    3. Parent directories up to the root
    4. User home directory

    Args:
        start_path: Directory to start searching from.

    Returns:
        Path to configuration file if found, None otherwise.
    """
    search_dirs = []

    if start_path:
        search_dirs.append(Path(start_path))

    search_dirs.append(Path.cwd())

    current = Path.cwd()
    while current.parent != current:
        current = current.parent
        search_dirs.append(current)

    search_dirs.append(Path.home())

    for directory in search_dirs:
        for config_name in CONFIG_FILE_NAMES:
            config_path = directory / config_name
            if config_path.exists() and config_path.is_file():
                logger.debug(f"Found config file: {config_path}")
                return config_path

    return None


def load_yaml_file(file_path: Path) -> dict:
    """
    Load a YAML configuration file.

    Args:
        file_path: Path to the YAML file.

    Returns:
        Dictionary with configuration data (empty if unreadable).
    """
    try:
        with open(file_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Error loading config file {file_path}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {file_path}: top level is not a mapping")
        return {}
    return data


def load_config_from_env() -> dict:
    """
    Load configuration from environment variables.

    Supported environment variables:
    - OPENAI_API_KEY: OpenAI API key
    - OPENAI_BASE_URL: OpenAI-compatible endpoint
    - LONGMEM_DB_PATH: Memory database location
    - LONGMEM_FTS_STRATEGY: direct, summary, keywords or auto
    - LONGMEM_MIN_SIMILARITY: Minimum vector similarity
    - LONGMEM_TOP_K: Maximum retrieval results
    - LONGMEM_DEBUG: Enable debug logging ("1", "true", "yes")

    Returns:
        Dictionary with configuration from environment.
    """
    config: dict = {"providers": {"openai": {}}, "memory": {}, "storage": {}}

    if os.environ.get("OPENAI_API_KEY"):
        config["providers"]["openai"]["api_key"] = os.environ["OPENAI_API_KEY"]

    if os.environ.get("OPENAI_BASE_URL"):
        config["providers"]["openai"]["base_url"] = os.environ["OPENAI_BASE_URL"]

    if os.environ.get("LONGMEM_DB_PATH"):
        config["storage"]["db_path"] = os.environ["LONGMEM_DB_PATH"]

    if os.environ.get("LONGMEM_FTS_STRATEGY"):
        config["memory"]["fts_strategy"] = os.environ["LONGMEM_FTS_STRATEGY"]

    if os.environ.get("LONGMEM_MIN_SIMILARITY"):
        try:
            config["memory"]["min_similarity"] = float(os.environ["LONGMEM_MIN_SIMILARITY"])
        except ValueError:
            logger.warning("Ignoring non-numeric LONGMEM_MIN_SIMILARITY")

    if os.environ.get("LONGMEM_TOP_K"):
        try:
            top_k = int(os.environ["LONGMEM_TOP_K"])
        except ValueError:
            logger.warning("Ignoring non-integer LONGMEM_TOP_K")
        else:
            if top_k > 0:
                config["memory"]["memory_top_k"] = top_k
            else:
                logger.warning(f"Ignoring non-positive LONGMEM_TOP_K={top_k}")

    if os.environ.get("LONGMEM_DEBUG"):
        config["debug"] = os.environ["LONGMEM_DEBUG"].strip().lower() in ("1", "true", "yes")

    return config


def load_config(
    config_path: Optional[str] = None,
    project_path: Optional[str] = None,
    **overrides: Any,
) -> LongmemConfig:
    """
    Load configuration from all sources.

    Args:
        config_path: Optional explicit path to config file.
        project_path: Optional project path to search for config.
        **overrides: Configuration overrides, either whole sections
            (``memory={...}``) or memory settings by name
            (``fts_strategy="auto"``).

    Returns:
        Merged LongmemConfig.
    """
    merged_config: dict = {}

    if config_path:
        file_path = Path(config_path)
        if file_path.exists():
            merged_config = _deep_merge(merged_config, load_yaml_file(file_path))
        else:
            logger.warning(f"Config file not found: {file_path}")
    else:
        config_file = find_config_file(project_path)
        if config_file:
            merged_config = _deep_merge(merged_config, load_yaml_file(config_file))

    merged_config = _deep_merge(merged_config, load_config_from_env())

    if overrides:
        override_config: dict = {"memory": {}}
        memory_keys = MemoryConfig.__dataclass_fields__.keys()
        for key, value in overrides.items():
            if key in memory_keys:
                override_config["memory"][key] = value
            else:
                override_config[key] = value
        merged_config = _deep_merge(merged_config, override_config)

    return LongmemConfig.from_dict(merged_config)


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary.
        override: Dictionary with override values.

    Returns:
        Merged dictionary.
    """
    result = base.copy()

    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        elif value is not None:
            result[key] = value

    return result


def create_default_config_file(path: Optional[str] = None) -> Path:
    """
    Create a default configuration file.

    Args:
        path: Optional path for the config file.

    Returns:
        Path to the created config file.
    """
    if path:
        config_path = Path(path)
    else:
        config_path = Path.cwd() / ".longmem.yml"

    default_content = """# longmem configuration

providers:
  openai:
    # Leave empty to use the OPENAI_API_KEY environment variable
    api_key: ""
    base_url: "https://api.openai.com/v1"

models:
  # Changing the embedding model requires a reindex of stored memories
  embedding_model:
    provider: "openai"
    model_id: "text-embedding-3-small"
  # Used to rewrite queries before searching
  tool_model:
    provider: "openai"
    model_id: "gpt-4o-mini"

memory:
  min_similarity: 0.80
  memory_top_k: 10
  history_top_k: 10
  max_injected_chars: 4000
  # direct, summary, keywords or auto
  fts_strategy: "direct"

reindex:
  max_retries: 5
  backoff_seconds: 2.0

storage:
  # Defaults to ~/.longmem/memory.db
  db_path: null

debug: false
"""

    config_path.write_text(default_content)
    logger.info(f"Created default config file: {config_path}")

    return config_path
