"""
LLM Integration Module - Model providers used by the memory engine.

Embedding providers turn text into vectors; query providers answer short
prompts used to rewrite search queries.
"""

from .base import (
    ConfigurationError,
    EmbeddingProvider,
    LLMAuthenticationError,
    LLMError,
    LLMRateLimitError,
    Model,
    QueryProvider,
    collect_stream,
)
from .config import (
    FTSStrategy,
    LongmemConfig,
    MemoryConfig,
    OpenAIProviderConfig,
    ReindexConfig,
    create_default_config_file,
    load_config,
)
from .factory import ProviderFactory
from .openai_provider import OpenAIEmbeddingProvider, OpenAIQueryProvider

__all__ = [
    # Core types
    "Model",
    "EmbeddingProvider",
    "QueryProvider",
    "collect_stream",
    # Errors
    "LLMError",
    "LLMRateLimitError",
    "LLMAuthenticationError",
    "ConfigurationError",
    # Configuration
    "FTSStrategy",
    "LongmemConfig",
    "MemoryConfig",
    "OpenAIProviderConfig",
    "ReindexConfig",
    "create_default_config_file",
    "load_config",
    # Providers
    "ProviderFactory",
    "OpenAIEmbeddingProvider",
    "OpenAIQueryProvider",
]
