"""
Tests for the MemoryManager facade.
"""

import sqlite3
import threading

import pytest

from longmem.llm.base import ConfigurationError, LLMError, Model
from longmem.llm.config import LongmemConfig, MemoryConfig, ReindexConfig
from longmem.memory.embeddings import HashingEmbedding
from longmem.memory.manager import MemoryManager, parse_tags
from longmem.memory.reindex import ReindexError
from longmem.memory.retrieval import RetrievalCancelled
from longmem.memory.storage import StorageError
from longmem.memory.types import MemorySource, ResultSource

from conftest import FAKE_MODEL, FailingEmbedding, KeywordEmbedding, ScaledEmbedding


@pytest.fixture
def manager(store):
    return MemoryManager(
        store=store,
        embedding_provider=ScaledEmbedding(),
        embedding_model=FAKE_MODEL,
        memory_config=MemoryConfig(min_similarity=0.8),
        reindex_config=ReindexConfig(backoff_seconds=0.01, max_retries=1),
    )


class TestParseTags:
    """Test tag parsing."""

    def test_comma_separated(self):
        """Test splitting, stripping and de-duplicating."""
        assert parse_tags(" food, tea ,food,, ") == ["food", "tea"]

    def test_list(self):
        """Test list input keeps first-seen order."""
        assert parse_tags(["b", "a", "b", " "]) == ["b", "a"]

    def test_none(self):
        assert parse_tags(None) == []


class TestRemember:
    """Test saving memories."""

    def test_remember(self, manager, store):
        """Test that a memory is embedded, normalized and stored."""
        item = manager.remember("  Enjoys virtual reality games ", tags="games, vr")

        loaded = store.get_memory(item.id)
        assert loaded.text == "Enjoys virtual reality games"
        assert loaded.tags == ["games", "vr"]
        assert loaded.source == MemorySource.EXPLICIT
        assert loaded.embedding == pytest.approx([1.0, 0.0])
        assert loaded.dim == 2
        assert loaded.model_id == FAKE_MODEL.model_id
        assert loaded.provider == FAKE_MODEL.provider

    def test_extracted_source(self, manager):
        """Test saving an extracted memory with lower confidence."""
        item = manager.remember("Works in Berlin", confidence=0.6, source="extracted")

        assert item.source == MemorySource.EXTRACTED
        assert item.confidence == 0.6

    @pytest.mark.parametrize("text", ["", "   "])
    def test_empty_text_rejected(self, manager, text):
        """Test that blank memories are rejected."""
        with pytest.raises(ValueError, match="must not be empty"):
            manager.remember(text)

    @pytest.mark.parametrize("confidence", [-0.1, 1.5])
    def test_confidence_range(self, manager, confidence):
        """Test that confidence must be within [0, 1]."""
        with pytest.raises(ValueError, match="confidence"):
            manager.remember("fact", confidence=confidence)

    def test_embedding_failure_saves_nothing(self, store):
        """Test that provider errors propagate and nothing is stored."""
        manager = MemoryManager(store, FailingEmbedding(), FAKE_MODEL)

        with pytest.raises(LLMError, match="embedding service unavailable"):
            manager.remember("fact")
        assert store.count_memories() == 0


class TestEditAndForget:
    """Test editing and deleting memories."""

    def test_edit_preserves_identity(self, manager, store):
        """Test that edit keeps id, source, confidence and creation time."""
        original = manager.remember("Likes tea", tags=["food"], confidence=0.7, source="extracted")

        edited = manager.edit(original.id, "Likes virtual tea ceremonies")

        loaded = store.get_memory(original.id)
        assert edited.id == original.id
        assert loaded.text == "Likes virtual tea ceremonies"
        assert loaded.tags == ["food"]
        assert loaded.source == MemorySource.EXTRACTED
        assert loaded.confidence == 0.7
        assert loaded.created_at.timestamp() == int(original.created_at.timestamp())
        assert loaded.embedding == pytest.approx([1.0, 0.0])
        assert store.count_memories() == 1

    def test_edit_replaces_tags(self, manager, store):
        """Test replacing tags during edit."""
        original = manager.remember("Likes tea", tags=["food"])

        manager.edit(original.id, "Likes tea", tags="drinks")

        assert store.get_memory(original.id).tags == ["drinks"]

    def test_edit_updates_search_index(self, manager, store):
        """Test that FTS sees the new text only."""
        original = manager.remember("Drives a bicycle")

        manager.edit(original.id, "Drives a tram")

        assert store.search_memories_fts("bicycle", 5) == []
        assert len(store.search_memories_fts("tram", 5)) == 1

    def test_failed_edit_keeps_original(self, manager, store, monkeypatch):
        """Test that a storage failure during edit leaves the memory untouched."""
        original = manager.remember("Likes green tea", tags="drinks")

        def broken_insert(cursor, memory):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(store, "_insert_memory", broken_insert)

        with pytest.raises(StorageError):
            manager.edit(original.id, "Likes black tea")

        monkeypatch.undo()
        loaded = store.get_memory(original.id)
        assert loaded.text == "Likes green tea"
        assert loaded.tags == ["drinks"]

    def test_failed_embedding_keeps_original(self, store):
        """Test that a provider failure during edit changes nothing."""
        item = MemoryManager(store, ScaledEmbedding(), FAKE_MODEL).remember("Likes green tea")
        manager = MemoryManager(store, FailingEmbedding(), FAKE_MODEL)

        with pytest.raises(LLMError):
            manager.edit(item.id, "Likes black tea")

        assert store.get_memory(item.id).text == "Likes green tea"

    def test_edit_missing(self, manager):
        """Test editing an unknown memory."""
        with pytest.raises(KeyError):
            manager.edit("missing", "text")

    def test_forget(self, manager):
        """Test deleting single and all memories."""
        first = manager.remember("one fact")
        manager.remember("two fact")

        assert manager.forget(first.id) is True
        assert manager.forget(first.id) is False
        assert [m.text for m in manager.list_memories()] == ["two fact"]
        assert manager.forget_all() == 1
        assert manager.list_memories() == []


class TestHistory:
    """Test recording conversation turns."""

    def test_record_and_recent(self, manager):
        """Test appending and reading turns."""
        manager.record_turn("user", "hello there", session_id="abc")
        manager.record_turn("assistant", "hi!", session_id="abc")

        recent = manager.recent_history(10)

        assert {h.content for h in recent} == {"hello there", "hi!"}
        assert all(h.session_id == "abc" for h in recent)
        assert manager.clear_history() == 2


class TestRetrieve:
    """Test retrieval through the manager."""

    def test_retrieve_text(self, manager):
        """Test the rendered output of a retrieval."""
        manager.remember("C++ virtual functions enable polymorphism via inheritance", tags="cpp")
        manager.remember("Prefers tea")

        text = manager.retrieve_text("virtual functions")

        assert text.startswith("Found 1 memories:\n\n1. [")
        assert "C++ virtual functions enable polymorphism via inheritance" in text
        assert "   Tags: cpp\n" in text
        assert "   Source: both\n" in text

    def test_retrieve_nothing(self, manager):
        """Test retrieval on an empty store."""
        assert manager.retrieve_text("anything at all") == "No memories found."

    def test_context_for_prompt(self, manager):
        """Test rendering injected context."""
        manager.remember("Uses virtual environments for every project")
        manager.record_turn("user", "How should I set up virtual environments?")

        text = manager.context_for_prompt("virtual environments")

        assert "Relevant memories:\n- Uses virtual environments for every project\n" in text
        assert "Relevant conversation history:\n- [user] " in text

    def test_retrieve_passes_cancel(self, manager):
        """Test that a cancelled retrieval raises."""
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(RetrievalCancelled):
            manager.retrieve("anything", cancel=cancel)


class TestReindex:
    """Test switching embedding models."""

    def test_reindex_switches_model(self, manager, store):
        """Test that a successful reindex moves the manager to the new model."""
        manager.remember("virtual functions")
        new_model = Model(provider="fake", model_id="fake-embed-v2")

        report = manager.reindex(new_model, embedding_provider=KeywordEmbedding())

        assert report.succeeded == 1
        assert manager.embedding_model == new_model
        assert all(m.model_id == "fake-embed-v2" for m in store.get_all_memories())
        assert manager.retrieve("virtual").results[0].source == ResultSource.BOTH

    def test_failed_reindex_keeps_model(self, manager):
        """Test that the old model stays after a failed reindex."""
        manager.remember("fact")
        new_model = Model(provider="fake", model_id="broken")

        with pytest.raises(ReindexError):
            manager.reindex(new_model, embedding_provider=FailingEmbedding())

        assert manager.embedding_model == FAKE_MODEL


class TestFromConfig:
    """Test building a manager from configuration."""

    def test_local_provider(self, tmp_path):
        """Test an offline setup with the hashing provider and no query model."""
        config = LongmemConfig(
            embedding_model=Model(provider="local", model_id="hashing"),
            tool_model=None,
            db_path=str(tmp_path / "cfg.db"),
        )

        with MemoryManager.from_config(config) as manager:
            assert isinstance(manager.retriever.embedding_provider, HashingEmbedding)
            assert manager.retriever.query_provider is None
            item = manager.remember("Keeps a sourdough starter named Bob")
            assert manager.retrieve("sourdough starter").results[0].item.id == item.id

    def test_missing_query_key_disables_rewriting(self, tmp_path):
        """Test that a query provider without credentials is skipped."""
        config = LongmemConfig(
            embedding_model=Model(provider="local", model_id="hashing"),
            db_path=str(tmp_path / "cfg.db"),
        )

        with MemoryManager.from_config(config) as manager:
            assert manager.retriever.query_provider is None

    def test_missing_embedding_key(self, tmp_path):
        """Test that the embedding provider is required."""
        config = LongmemConfig(db_path=str(tmp_path / "cfg.db"))

        with pytest.raises(ConfigurationError, match="API key"):
            MemoryManager.from_config(config)
