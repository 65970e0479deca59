"""
Tests for the SQLite memory store.
"""

import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from longmem.memory.storage import QueryTable, SQLiteStore, StorageError
from longmem.memory.types import HistoryItem, MemoryItem, MemorySource


class TestQueryTable:
    """Test parsing of named SQL queries."""

    def test_parse_named_queries(self):
        """Test splitting SQL text on name markers."""
        table = QueryTable(
            "-- name: First\nSELECT 1;\n\n-- name: Second\nSELECT *\nFROM t\nWHERE x = ?;\n"
        )

        assert len(table) == 2
        assert table["First"] == "SELECT 1"
        assert table["Second"] == "SELECT *\nFROM t\nWHERE x = ?"

    def test_unknown_query(self):
        """Test that a missing query raises StorageError."""
        table = QueryTable("-- name: Only\nSELECT 1;")
        with pytest.raises(StorageError, match="unknown query: Missing"):
            table["Missing"]

    def test_packaged_queries(self):
        """Test that the packaged query file has every query the store uses."""
        table = QueryTable.load_default()
        for name in (
            "InsertMemory", "UpdateMemoryEmbedding", "SelectAllMemories", "SelectMemory",
            "CountMemories", "DeleteMemory", "ClearMemories", "SearchMemoriesFTS",
            "InsertHistory", "SearchHistoryFTS", "SelectRecentHistory", "CountHistory",
            "ClearHistory",
        ):
            assert name in table

    def test_each_store_owns_its_table(self, tmp_path):
        """Test that stores do not share query tables."""
        first = SQLiteStore(str(tmp_path / "a.db"))
        second = SQLiteStore(str(tmp_path / "b.db"))
        try:
            assert first.queries is not second.queries
        finally:
            first.close()
            second.close()


class TestOpen:
    """Test opening the database."""

    def test_creates_parent_directory(self, tmp_path):
        """Test that missing directories are created."""
        path = tmp_path / "nested" / "dir" / "memory.db"
        with SQLiteStore(str(path)) as store:
            assert store.count_memories() == 0
        assert path.exists()

    def test_open_failure_raises_storage_error(self, tmp_path):
        """Test that an unusable path raises StorageError."""
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("")
        with pytest.raises(StorageError, match="failed to open memory database"):
            SQLiteStore(str(blocker / "memory.db"))

    def test_reopen_keeps_data(self, tmp_path):
        """Test that data persists across store instances."""
        path = str(tmp_path / "persist.db")
        with SQLiteStore(path) as store:
            store.save_memory(MemoryItem(text="persisted", embedding=[1.0], dim=1))
        with SQLiteStore(path) as store:
            assert [m.text for m in store.get_all_memories()] == ["persisted"]


class TestMemories:
    """Test memory CRUD operations."""

    def test_save_assigns_id_and_time(self, store):
        """Test that save fills in id and created_at."""
        item = MemoryItem(text="Likes green tea", embedding=[1.0, 0.0], dim=2)
        memory_id = store.save_memory(item)

        assert memory_id == item.id
        assert item.created_at is not None

    def test_save_and_get(self, store):
        """Test that every field survives a round trip."""
        created = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        item = MemoryItem(
            id="mem-1",
            text="Uses vim keybindings",
            tags=["editor", "vim"],
            source=MemorySource.EXTRACTED,
            confidence=0.75,
            provider="openai",
            model_id="text-embedding-3-small",
            dim=2,
            embedding=[0.6, 0.8],
            created_at=created,
        )
        store.save_memory(item)

        loaded = store.get_memory("mem-1")
        assert loaded.text == "Uses vim keybindings"
        assert loaded.tags == ["editor", "vim"]
        assert loaded.source == MemorySource.EXTRACTED
        assert loaded.confidence == 0.75
        assert loaded.created_at == created
        assert loaded.provider == "openai"
        assert loaded.model_id == "text-embedding-3-small"
        assert loaded.dim == 2
        assert loaded.embedding == pytest.approx([0.6, 0.8])

    def test_tags_stored_as_compact_json(self, store):
        """Test the persisted tag format."""
        store.save_memory(MemoryItem(id="t", text="x", tags=["a", "b"], embedding=[1.0], dim=1))

        conn = sqlite3.connect(store.db_path)
        try:
            raw = conn.execute("SELECT tags FROM memories WHERE id = 't'").fetchone()[0]
        finally:
            conn.close()
        assert raw == '["a","b"]'
        assert json.loads(raw) == ["a", "b"]

    def test_get_missing(self, store):
        """Test that an unknown id returns None."""
        assert store.get_memory("nope") is None

    def test_get_all_newest_first(self, store):
        """Test ordering by creation time."""
        now = datetime.now(timezone.utc)
        for i, text in enumerate(["oldest", "middle", "newest"]):
            store.save_memory(MemoryItem(
                text=text,
                embedding=[1.0],
                dim=1,
                created_at=now + timedelta(seconds=i),
            ))

        assert [m.text for m in store.get_all_memories()] == ["newest", "middle", "oldest"]

    def test_duplicate_id_raises(self, store):
        """Test that inserting an existing id is a storage error."""
        store.save_memory(MemoryItem(id="dup", text="one", embedding=[1.0], dim=1))
        with pytest.raises(StorageError, match="failed to save memory"):
            store.save_memory(MemoryItem(id="dup", text="two", embedding=[1.0], dim=1))

    def test_delete(self, store, add_memory):
        """Test deleting a memory."""
        item = add_memory("temporary")

        assert store.delete_memory(item.id) is True
        assert store.get_memory(item.id) is None
        assert store.delete_memory(item.id) is False

    def test_replace(self, store, add_memory):
        """Test replacing a memory keeps its id and updates the text index."""
        item = add_memory("Drives a bicycle", tags=["transport"])
        replacement = MemoryItem(
            id=item.id,
            text="Drives a tram",
            tags=["transport"],
            created_at=item.created_at,
            embedding=[1.0, 0.0],
            dim=2,
        )

        assert store.replace_memory(replacement) is True
        assert store.count_memories() == 1
        assert store.get_memory(item.id).text == "Drives a tram"
        assert store.search_memories_fts("bicycle", 5) == []
        assert len(store.search_memories_fts("tram", 5)) == 1

    def test_replace_failure_keeps_original(self, store, add_memory, monkeypatch):
        """Test that a failed insert rolls back the delete."""
        item = add_memory("Likes green tea")

        def broken_insert(cursor, memory):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_insert_memory", broken_insert)

        with pytest.raises(StorageError, match="failed to replace memory"):
            store.replace_memory(MemoryItem(id=item.id, text="Likes black tea", embedding=[1.0], dim=1))

        monkeypatch.undo()
        assert store.get_memory(item.id).text == "Likes green tea"
        assert len(store.search_memories_fts("green", 5)) == 1

    def test_clear(self, store, add_memory):
        """Test clearing all memories."""
        add_memory("one")
        add_memory("two")

        assert store.clear_memories() == 2
        assert store.count_memories() == 0
        assert store.search_memories_fts("one OR two", 10) == []

    def test_update_embedding(self, store, add_memory):
        """Test replacing an embedding and its model metadata."""
        item = add_memory("reindex me", embedding=[0.0, 1.0])

        updated = store.update_memory_embedding(item.id, [0.6, 0.8, 0.0], "new-model", 3, "newprov")

        assert updated is True
        loaded = store.get_memory(item.id)
        assert loaded.embedding == pytest.approx([0.6, 0.8, 0.0])
        assert loaded.model_id == "new-model"
        assert loaded.dim == 3
        assert loaded.provider == "newprov"
        assert loaded.text == "reindex me"

    def test_update_embedding_missing(self, store):
        """Test updating an unknown id."""
        assert store.update_memory_embedding("ghost", [1.0], "m", 1, "p") is False

    def test_malformed_tags_tolerated(self, store, add_memory):
        """Test that unreadable tags load as an empty list."""
        item = add_memory("odd tags", tags=["x"])
        conn = sqlite3.connect(store.db_path)
        try:
            conn.execute("UPDATE memories SET tags = 'not json' WHERE id = ?", (item.id,))
            conn.commit()
        finally:
            conn.close()

        assert store.get_memory(item.id).tags == []


class TestVectorSearch:
    """Test brute-force similarity search."""

    def test_results_bounded_and_sorted(self, store, add_memory):
        """Test top_k, min_similarity and ordering."""
        add_memory("exact", embedding=[1.0, 0.0])
        add_memory("close", embedding=[0.9, 0.1])
        add_memory("closer", embedding=[0.95, 0.05])
        add_memory("far", embedding=[0.0, 1.0])

        results = store.search_memories([2.0, 0.0], top_k=2, min_similarity=0.5)

        assert len(results) == 2
        assert [r.item.text for r in results] == ["exact", "closer"]
        assert all(r.similarity >= 0.5 for r in results)
        assert results[0].similarity == pytest.approx(1.0)

    def test_min_similarity_filters(self, store, add_memory):
        """Test that weak matches are dropped."""
        add_memory("far", embedding=[0.0, 1.0])
        add_memory("near", embedding=[1.0, 0.1])

        results = store.search_memories([1.0, 0.0], top_k=10, min_similarity=0.8)

        assert [r.item.text for r in results] == ["near"]

    def test_dimension_mismatch_ignored(self, store, add_memory):
        """Test that embeddings of another size score zero."""
        add_memory("three dims", embedding=[1.0, 0.0, 0.0])

        assert store.search_memories([1.0, 0.0], top_k=10, min_similarity=0.1) == []

    def test_similarity_is_cosine(self, store, add_memory):
        """Test that scores equal cosine similarity for unnormalized queries."""
        add_memory("diagonal", embedding=[1.0, 1.0])

        results = store.search_memories([3.0, 0.0], top_k=1, min_similarity=0.0)

        assert results[0].similarity == pytest.approx(1 / 2 ** 0.5, rel=1e-6)


class TestFullTextSearch:
    """Test FTS over memories and history."""

    def test_match_with_snippet(self, store, add_memory):
        """Test matching and snippet highlighting."""
        add_memory("Prefers dark mode in every editor")
        add_memory("Allergic to peanuts")

        results = store.search_memories_fts("editor", 10)

        assert len(results) == 1
        assert results[0].item.text == "Prefers dark mode in every editor"
        assert ">>>editor<<<" in results[0].snippet
        assert results[0].rank <= 0

    def test_better_match_ranks_first(self, store, add_memory):
        """Test ordering by FTS rank."""
        add_memory("python is mentioned once among many other unrelated words here")
        add_memory("python python python")
        for topic in ("gardening", "cycling", "chess", "opera"):
            add_memory(f"enjoys {topic}")

        results = store.search_memories_fts("python", 10)

        assert [r.item.text for r in results][0] == "python python python"
        assert results[0].rank <= results[1].rank

    def test_top_k(self, store, add_memory):
        """Test the FTS limit."""
        for i in range(5):
            add_memory(f"coffee note {i}")

        assert len(store.search_memories_fts("coffee", 3)) == 3

    def test_index_follows_deletes(self, store, add_memory):
        """Test that deleted memories disappear from the index."""
        item = add_memory("ephemeral fact")
        store.delete_memory(item.id)

        assert store.search_memories_fts("ephemeral", 10) == []

    def test_index_follows_updates(self, store, add_memory):
        """Test that updates keep the index consistent."""
        item = add_memory("stable text")
        store.update_memory_embedding(item.id, [1.0, 0.0], "m2", 2, "p2")

        results = store.search_memories_fts("stable", 10)
        assert len(results) == 1
        assert results[0].item.model_id == "m2"

    def test_syntax_error_wrapped(self, store, add_memory):
        """Test that a malformed MATCH expression raises StorageError."""
        add_memory("anything")
        with pytest.raises(StorageError, match="failed to search memories FTS"):
            store.search_memories_fts('"unterminated', 10)


class TestHistory:
    """Test conversation history."""

    def test_save_and_recent(self, store):
        """Test appending turns and reading them back newest first."""
        now = datetime.now(timezone.utc)
        store.save_history(HistoryItem(role="user", content="first", created_at=now))
        store.save_history(HistoryItem(
            role="assistant",
            content="second",
            session_id="s1",
            created_at=now + timedelta(seconds=1),
        ))

        recent = store.get_recent_history(10)

        assert [h.content for h in recent] == ["second", "first"]
        assert recent[0].session_id == "s1"
        assert recent[1].session_id is None
        assert store.count_history() == 2

    def test_recent_limit(self, store):
        """Test the recent history limit."""
        for i in range(5):
            store.save_history(HistoryItem(role="user", content=f"turn {i}"))

        assert len(store.get_recent_history(3)) == 3

    def test_search(self, store):
        """Test full-text search over history."""
        store.save_history(HistoryItem(role="user", content="How do I bake sourdough bread?"))
        store.save_history(HistoryItem(role="assistant", content="Check the weather first."))

        results = store.search_history("sourdough", 5)

        assert len(results) == 1
        assert results[0].item.role == "user"
        assert ">>>sourdough<<<" in results[0].snippet

    def test_clear(self, store):
        """Test clearing history."""
        store.save_history(HistoryItem(role="user", content="forget me"))

        assert store.clear_history() == 1
        assert store.get_recent_history(10) == []
        assert store.search_history("forget", 10) == []


class TestConcurrency:
    """Test use of one store from several threads."""

    def test_parallel_writes(self, store):
        """Test that writes from many threads all land."""
        errors = []

        def writer(n):
            try:
                for i in range(10):
                    store.save_memory(MemoryItem(text=f"thread {n} item {i}", embedding=[1.0], dim=1))
            except StorageError as e:
                errors.append(e)
            finally:
                store.release_connection()

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert store.count_memories() == 40

    def test_close_then_reuse(self, tmp_path):
        """Test that a closed store reconnects on next use."""
        store = SQLiteStore(str(tmp_path / "reuse.db"))
        store.save_memory(MemoryItem(text="kept", embedding=[1.0], dim=1))
        store.close()

        assert store.count_memories() == 1
        store.close()
