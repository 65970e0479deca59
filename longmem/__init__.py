"""
longmem - personal long-term memory for LLM assistants.

Stores facts, preferences and conversation history in a local SQLite
database and retrieves them with hybrid semantic and full-text search.
"""

from .llm import (
    FTSStrategy,
    LongmemConfig,
    MemoryConfig,
    Model,
    ProviderFactory,
    load_config,
)
from .memory import (
    HashingEmbedding,
    MemoryItem,
    MemoryManager,
    Retriever,
    SQLiteStore,
    format_as_text,
    reindex_memories,
)
from .observability import configure_logging

__version__ = "0.1.0"

__all__ = [
    "FTSStrategy",
    "LongmemConfig",
    "MemoryConfig",
    "Model",
    "ProviderFactory",
    "load_config",
    "HashingEmbedding",
    "MemoryItem",
    "MemoryManager",
    "Retriever",
    "SQLiteStore",
    "format_as_text",
    "reindex_memories",
    "configure_logging",
    "__version__",
]
