"""
Memory System - long-term memory for an LLM assistant.

Persists short facts and preferences ("memories") and conversation history,
and retrieves them by combining semantic similarity with full-text search.

Key features:
- SQLite-based persistent storage with FTS5 indexes
- Normalized embeddings, brute-force cosine search
- Query rewriting and several full-text query strategies
- Fusion of both result sets into a single ranking
- Concurrent, retrying reindex after an embedding model change
"""

from .types import (
    HistoryItem,
    HistorySearchResult,
    InjectedContext,
    MemoryFTSResult,
    MemoryItem,
    MemorySource,
    ResultSource,
    RetrievalResponse,
    SearchResult,
    UnifiedResult,
)

from .storage import (
    QueryTable,
    SQLiteStore,
    StorageError,
    default_db_path,
)

from .embeddings import (
    EmbeddingProvider,
    HashingEmbedding,
)

from .retrieval import (
    FTS_RANK_SCALE,
    RetrievalCancelled,
    RetrievalError,
    Retriever,
    format_as_text,
    format_injected_context,
    fuse_results,
    tokenize_for_fts,
)

from .reindex import (
    ReindexCancelled,
    ReindexError,
    ReindexJob,
    ReindexPipeline,
    ReindexReport,
    reindex_memories,
)

from .manager import (
    MemoryManager,
)


__all__ = [
    # Types
    "HistoryItem",
    "HistorySearchResult",
    "InjectedContext",
    "MemoryFTSResult",
    "MemoryItem",
    "MemorySource",
    "ResultSource",
    "RetrievalResponse",
    "SearchResult",
    "UnifiedResult",
    # Storage
    "QueryTable",
    "SQLiteStore",
    "StorageError",
    "default_db_path",
    # Embeddings
    "EmbeddingProvider",
    "HashingEmbedding",
    # Retrieval
    "FTS_RANK_SCALE",
    "RetrievalCancelled",
    "RetrievalError",
    "Retriever",
    "format_as_text",
    "format_injected_context",
    "fuse_results",
    "tokenize_for_fts",
    # Reindex
    "ReindexCancelled",
    "ReindexError",
    "ReindexJob",
    "ReindexPipeline",
    "ReindexReport",
    "reindex_memories",
    # Manager
    "MemoryManager",
]
