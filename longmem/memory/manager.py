"""
Memory Manager - High-level interface for the memory system.

Wires the store, the embedding and query providers and the retrieval
configuration together, and exposes the operations callers need: saving,
editing and forgetting memories, recording conversation history,
retrieval and reindexing.
"""

import logging
import threading
from typing import Callable, List, Optional, Union

from ..llm.base import ConfigurationError, EmbeddingProvider, Model, QueryProvider
from ..llm.config import LongmemConfig, MemoryConfig, ReindexConfig
from ..llm.factory import ProviderFactory
from ..observability.logging import LogLevel, configure_logging
from .reindex import ReindexReport, reindex_memories
from .retrieval import Retriever, format_as_text, format_injected_context
from .storage import SQLiteStore
from .types import (
    HistoryItem,
    InjectedContext,
    MemoryItem,
    MemorySource,
    RetrievalResponse,
    unique_tags,
)
from .vector import normalize


logger = logging.getLogger(__name__)


def parse_tags(tags: Union[None, str, List[str]]) -> List[str]:
    """Accept a list or a comma-separated string; return unique, stripped tags."""
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    return unique_tags(tags)


class MemoryManager:
    """
    High-level memory management interface.

    Example usage:
        manager = MemoryManager.from_config(load_config())

        item = manager.remember("Prefers tabs over spaces", tags="style, editor")
        response = manager.retrieve("indentation preferences")
        print(format_as_text(response))

        manager.forget(item.id)
    """

    def __init__(
        self,
        store: SQLiteStore,
        embedding_provider: EmbeddingProvider,
        embedding_model: Model,
        query_provider: Optional[QueryProvider] = None,
        tool_model: Optional[Model] = None,
        memory_config: Optional[MemoryConfig] = None,
        reindex_config: Optional[ReindexConfig] = None,
    ):
        """
        Initialize the memory manager.

        Args:
            store: Storage backend
            embedding_provider: Provider for ``embedding_model``
            embedding_model: Model used for new memories and queries
            query_provider: Optional provider for query rewriting
            tool_model: Model used for query rewriting
            memory_config: Retrieval tuning
            reindex_config: Reindex retry settings
        """
        self._store = store
        self._embedding_provider = embedding_provider
        self._embedding_model = embedding_model
        self._query_provider = query_provider
        self._tool_model = tool_model
        self._memory_config = memory_config or MemoryConfig()
        self._reindex_config = reindex_config or ReindexConfig()
        self._retriever = self._build_retriever()

    @classmethod
    def from_config(
        cls,
        config: LongmemConfig,
        store: Optional[SQLiteStore] = None,
    ) -> "MemoryManager":
        """
        Build a manager from configuration.

        Query rewriting is optional: if the query provider cannot be
        created, retrieval runs on the raw query only.

        Raises:
            ConfigurationError: If the embedding provider cannot be created
        """
        if config.debug:
            configure_logging(LogLevel.DEBUG)

        if config.embedding_model is None:
            raise ConfigurationError("No embedding model configured")

        embedding_provider = ProviderFactory.create_embedding_provider(config)

        query_provider = None
        if config.tool_model is not None:
            try:
                query_provider = ProviderFactory.create_query_provider(config)
            except ConfigurationError as e:
                logger.warning(f"Query rewriting disabled: {e}")

        return cls(
            store=store or SQLiteStore(config.db_path),
            embedding_provider=embedding_provider,
            embedding_model=config.embedding_model,
            query_provider=query_provider,
            tool_model=config.tool_model,
            memory_config=config.memory,
            reindex_config=config.reindex,
        )

    def __enter__(self) -> "MemoryManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def store(self) -> SQLiteStore:
        """Get the storage backend."""
        return self._store

    @property
    def embedding_model(self) -> Model:
        """Get the embedding model used for new memories."""
        return self._embedding_model

    @property
    def retriever(self) -> Retriever:
        return self._retriever

    # ========== Memories ==========

    def remember(
        self,
        text: str,
        tags: Union[None, str, List[str]] = None,
        confidence: float = 1.0,
        source: MemorySource = MemorySource.EXPLICIT,
    ) -> MemoryItem:
        """
        Embed and store a new memory.

        Args:
            text: The fact or preference
            tags: List of tags or a comma-separated string
            confidence: Confidence score (0-1)
            source: How the memory was created

        Returns:
            The stored memory, with id and creation time set

        Raises:
            ValueError: If text is empty or confidence is out of range
        """
        text = self._validate_text(text)
        if not 0.0 <= confidence <= 1.0:
            raise ValueError("confidence must be between 0 and 1")

        embedding = self._embed(text)
        item = MemoryItem(
            text=text,
            tags=parse_tags(tags),
            source=MemorySource(source),
            confidence=confidence,
            provider=self._embedding_model.provider,
            model_id=self._embedding_model.model_id,
            dim=len(embedding),
            embedding=embedding,
        )
        self._store.save_memory(item)
        logger.info(f"Saved memory {item.id}")
        return item

    def edit(
        self,
        memory_id: str,
        text: str,
        tags: Union[None, str, List[str]] = None,
    ) -> MemoryItem:
        """
        Replace a memory's text (and optionally its tags).

        The memory keeps its id, source, confidence and creation time and
        is re-embedded with the current model.

        Raises:
            KeyError: If no memory has this id
            ValueError: If text is empty
        """
        existing = self._store.get_memory(memory_id)
        if existing is None:
            raise KeyError(f"memory not found: {memory_id}")

        text = self._validate_text(text)
        embedding = self._embed(text)

        updated = MemoryItem(
            id=existing.id,
            text=text,
            tags=parse_tags(tags) if tags is not None else existing.tags,
            source=existing.source,
            confidence=existing.confidence,
            created_at=existing.created_at,
            provider=self._embedding_model.provider,
            model_id=self._embedding_model.model_id,
            dim=len(embedding),
            embedding=embedding,
        )
        self._store.replace_memory(updated)
        logger.info(f"Edited memory {memory_id}")
        return updated

    def forget(self, memory_id: str) -> bool:
        """Delete a memory. Returns True if it existed."""
        return self._store.delete_memory(memory_id)

    def forget_all(self) -> int:
        """Delete every memory. Returns the number removed."""
        return self._store.clear_memories()

    def get(self, memory_id: str) -> Optional[MemoryItem]:
        return self._store.get_memory(memory_id)

    def list_memories(self) -> List[MemoryItem]:
        """All memories, newest first."""
        return self._store.get_all_memories()

    # ========== History ==========

    def record_turn(
        self,
        role: str,
        content: str,
        session_id: Optional[str] = None,
    ) -> HistoryItem:
        """Append a conversation turn to history."""
        item = HistoryItem(role=role, content=content, session_id=session_id)
        self._store.save_history(item)
        return item

    def recent_history(self, limit: int = 20) -> List[HistoryItem]:
        return self._store.get_recent_history(limit)

    def clear_history(self) -> int:
        return self._store.clear_history()

    # ========== Retrieval ==========

    def retrieve(self, query: str, cancel: Optional[threading.Event] = None) -> RetrievalResponse:
        """Search memories for ``query``. See :meth:`Retriever.retrieve`."""
        return self._retriever.retrieve(query, cancel=cancel)

    def retrieve_text(self, query: str) -> str:
        """Search memories and render the results as text."""
        return format_as_text(self.retrieve(query))

    def retrieve_context(self, query: str) -> InjectedContext:
        return self._retriever.retrieve_context(query)

    def context_for_prompt(self, query: str) -> str:
        """Retrieve memories and history for ``query``, rendered for a system prompt."""
        context = self.retrieve_context(query)
        return format_injected_context(context, self._memory_config.max_injected_chars)

    # ========== Reindex ==========

    def reindex(
        self,
        new_model: Model,
        embedding_provider: Optional[EmbeddingProvider] = None,
        cancel: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> ReindexReport:
        """
        Re-embed every memory with ``new_model`` and switch to it.

        The manager only switches models when every memory was updated;
        after a failed or cancelled run it keeps the old model.

        Args:
            new_model: The new embedding model
            embedding_provider: Provider for the new model. Defaults to the
                current provider.
            cancel: Optional cancel event
            progress_callback: Optional callback(done, total)

        Raises:
            ReindexError: If some memories could not be reindexed
            ReindexCancelled: If cancelled
        """
        provider = embedding_provider or self._embedding_provider
        report = reindex_memories(
            self._store,
            provider,
            new_model,
            cancel=cancel,
            config=self._reindex_config,
            progress_callback=progress_callback,
        )

        self._embedding_provider = provider
        self._embedding_model = new_model
        self._retriever = self._build_retriever()
        logger.info(f"Embedding model is now {new_model}")
        return report

    def close(self):
        """Close the underlying store."""
        self._store.close()

    # ========== Helpers ==========

    def _build_retriever(self) -> Retriever:
        return Retriever(
            store=self._store,
            embedding_provider=self._embedding_provider,
            query_provider=self._query_provider,
            embedding_model=self._embedding_model,
            tool_model=self._tool_model,
            config=self._memory_config,
        )

    def _embed(self, text: str) -> List[float]:
        return normalize(list(self._embedding_provider.embed(self._embedding_model, text)))

    @staticmethod
    def _validate_text(text: str) -> str:
        text = (text or "").strip()
        if not text:
            raise ValueError("memory text must not be empty")
        return text
