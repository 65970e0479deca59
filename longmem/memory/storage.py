"""
Memory storage backend.

Provides SQLite-based persistent storage for memories and conversation
history, with FTS5 full-text indexes kept in sync by triggers and a
brute-force vector scan over the stored (normalized) embeddings.
"""

import json
import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from importlib import resources
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from .types import (
    HistoryItem,
    HistorySearchResult,
    MemoryFTSResult,
    MemoryItem,
    MemorySource,
    SearchResult,
    from_unix,
    new_id,
    to_unix,
    utc_now,
)
from .vector import bytes_to_vector, dot_product, normalize, vector_to_bytes


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a database operation fails."""
    pass


_QUERY_NAME = re.compile(r"^--\s*name:\s*(\w+)\s*$", re.MULTILINE)


class QueryTable:
    """
    Named SQL queries parsed from a ``queries.sql`` file.

    Each query starts with a ``-- name: QueryName`` line and runs until the
    next marker. Built once per store.
    """

    def __init__(self, sql_text: str):
        self._queries = self.parse(sql_text)

    @staticmethod
    def parse(sql_text: str) -> Dict[str, str]:
        """Split SQL text into a name -> statement mapping."""
        queries: Dict[str, str] = {}
        matches = list(_QUERY_NAME.finditer(sql_text))
        for i, match in enumerate(matches):
            end = matches[i + 1].start() if i + 1 < len(matches) else len(sql_text)
            statement = sql_text[match.end():end].strip().rstrip(";").strip()
            queries[match.group(1)] = statement
        return queries

    def __getitem__(self, name: str) -> str:
        try:
            return self._queries[name]
        except KeyError:
            raise StorageError(f"unknown query: {name}") from None

    def __contains__(self, name: str) -> bool:
        return name in self._queries

    def __len__(self) -> int:
        return len(self._queries)

    @classmethod
    def load_default(cls) -> "QueryTable":
        """Load the queries shipped with the package."""
        return cls(_read_sql("queries.sql"))


def _read_sql(filename: str) -> str:
    sql_dir = resources.files(__package__).joinpath("sql")
    return sql_dir.joinpath(filename).read_text(encoding="utf-8")


def default_db_path() -> Path:
    """Default database location: ``~/.longmem/memory.db``."""
    return Path.home() / ".longmem" / "memory.db"


class SQLiteStore:
    """
    SQLite-based memory and history storage.

    Thread-safe: every thread gets its own connection. Writers are
    serialized by SQLite itself (WAL journal with a busy timeout).

    Example usage:
        store = SQLiteStore("/tmp/memory.db")
        store.save_memory(item)
        hits = store.search_memories(query_vector, top_k=5, min_similarity=0.8)
    """

    # Seconds a connection waits for a competing writer
    BUSY_TIMEOUT = 30.0

    def __init__(
        self,
        db_path: Optional[str] = None,
        queries: Optional[QueryTable] = None,
    ):
        """
        Open (and if needed create) the memory database.

        Args:
            db_path: Path to the database file. If None, uses the default.
            queries: Named query table. If None, uses the packaged queries.

        Raises:
            StorageError: If the database cannot be opened or initialized.
        """
        self.db_path = str(db_path) if db_path else str(default_db_path())
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.queries = queries or QueryTable.load_default()
            self._ensure_schema()
        except (OSError, sqlite3.Error) as e:
            self.close()
            raise StorageError(f"failed to open memory database {self.db_path}: {e}") from e

        logger.debug(f"Opened memory store at {self.db_path}")

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def _conn(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            # Only the owning thread uses it; close() may run elsewhere
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.BUSY_TIMEOUT,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Cursor]:
        """
        Run statements in a transaction.

        Commits on success, rolls back on error, and wraps any sqlite
        failure in a StorageError naming ``operation``.
        """
        try:
            conn = self._conn
            cursor = conn.cursor()
        except sqlite3.Error as e:
            raise StorageError(f"failed to {operation}: {e}") from e
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"failed to {operation}: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _ensure_schema(self):
        """Create tables, FTS indexes and triggers if needed."""
        self._conn.executescript(_read_sql("schema.sql"))
        self._conn.commit()

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def save_memory(self, item: MemoryItem) -> str:
        """
        Insert a new memory.

        Assigns an id and creation time when missing. The embedding is
        stored as given; callers are expected to normalize it first.

        Returns:
            The memory id
        """
        if not item.id:
            item.id = new_id()
        if item.created_at is None:
            item.created_at = utc_now()

        with self._transaction("save memory") as cursor:
            self._insert_memory(cursor, item)

        logger.debug(f"Stored memory {item.id}")
        return item.id

    def replace_memory(self, item: MemoryItem) -> bool:
        """
        Replace a stored memory with ``item`` (matched by id).

        The delete and the insert share one transaction, so on failure
        the previous row is kept.

        Returns:
            True if a memory with this id existed
        """
        if item.created_at is None:
            item.created_at = utc_now()

        with self._transaction("replace memory") as cursor:
            cursor.execute(self.queries["DeleteMemory"], (item.id,))
            existed = cursor.rowcount > 0
            self._insert_memory(cursor, item)

        logger.debug(f"Replaced memory {item.id}")
        return existed

    def _insert_memory(self, cursor: sqlite3.Cursor, item: MemoryItem):
        tags_json = json.dumps(item.tags, separators=(",", ":"))
        cursor.execute(self.queries["InsertMemory"], (
            item.id,
            item.text,
            tags_json,
            MemorySource(item.source).value,
            item.confidence,
            to_unix(item.created_at),
            item.provider,
            item.model_id,
            item.dim,
            vector_to_bytes(item.embedding),
        ))

    def get_all_memories(self) -> List[MemoryItem]:
        """Return every memory, newest first."""
        with self._transaction("query memories") as cursor:
            cursor.execute(self.queries["SelectAllMemories"])
            return [self._row_to_memory(row) for row in cursor.fetchall()]

    def get_memory(self, memory_id: str) -> Optional[MemoryItem]:
        """Return a single memory by id, or None."""
        with self._transaction("query memory") as cursor:
            cursor.execute(self.queries["SelectMemory"], (memory_id,))
            row = cursor.fetchone()
        return self._row_to_memory(row) if row else None

    def count_memories(self) -> int:
        with self._transaction("count memories") as cursor:
            cursor.execute(self.queries["CountMemories"])
            return cursor.fetchone()["count"]

    def search_memories(
        self,
        query_embedding: Sequence[float],
        top_k: int,
        min_similarity: float,
    ) -> List[SearchResult]:
        """
        Brute-force vector similarity search.

        The query is normalized and dotted against every stored embedding
        (already normalized), so the score is cosine similarity.

        Args:
            query_embedding: Query vector, normalized or not
            top_k: Maximum number of results
            min_similarity: Results below this similarity are dropped

        Returns:
            Results sorted by similarity, highest first
        """
        memories = self.get_all_memories()
        query = normalize(list(query_embedding))

        results = []
        for memory in memories:
            similarity = dot_product(query, memory.embedding)
            if similarity >= min_similarity:
                results.append(SearchResult(item=memory, similarity=similarity))

        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:max(top_k, 0)]

    def search_memories_fts(self, fts_query: str, top_k: int) -> List[MemoryFTSResult]:
        """
        Full-text search over memory text.

        Args:
            fts_query: An FTS5 MATCH expression
            top_k: Maximum number of results

        Returns:
            Results with highlighted snippets, best match first
        """
        with self._transaction("search memories FTS") as cursor:
            cursor.execute(self.queries["SearchMemoriesFTS"], (fts_query, top_k))
            rows = cursor.fetchall()

        return [
            MemoryFTSResult(
                item=self._row_to_memory(row),
                snippet=row["snippet"],
                rank=row["rank"],
            )
            for row in rows
        ]

    def update_memory_embedding(
        self,
        memory_id: str,
        embedding: Sequence[float],
        model_id: str,
        dim: int,
        provider: str,
    ) -> bool:
        """
        Replace a memory's embedding and model metadata in place.

        Returns:
            True if the memory exists and was updated
        """
        with self._transaction("update memory embedding") as cursor:
            cursor.execute(self.queries["UpdateMemoryEmbedding"], (
                vector_to_bytes(embedding),
                model_id,
                dim,
                provider,
                memory_id,
            ))
            return cursor.rowcount > 0

    def delete_memory(self, memory_id: str) -> bool:
        """Delete a memory. Returns True if it existed."""
        with self._transaction("delete memory") as cursor:
            cursor.execute(self.queries["DeleteMemory"], (memory_id,))
            deleted = cursor.rowcount > 0

        if deleted:
            logger.debug(f"Deleted memory {memory_id}")
        return deleted

    def clear_memories(self) -> int:
        """Delete every memory. Returns the number removed."""
        with self._transaction("clear memories") as cursor:
            cursor.execute(self.queries["ClearMemories"])
            removed = cursor.rowcount

        logger.warning(f"Cleared {removed} memories")
        return removed

    def _row_to_memory(self, row: sqlite3.Row) -> MemoryItem:
        """Convert a database row to a MemoryItem."""
        try:
            tags = json.loads(row["tags"]) if row["tags"] else []
        except ValueError:
            tags = []
        if not isinstance(tags, list):
            tags = []

        return MemoryItem(
            id=row["id"],
            text=row["text"],
            tags=tags,
            source=MemorySource(row["source"]),
            confidence=row["confidence"],
            created_at=from_unix(row["created_at"]),
            provider=row["provider"],
            model_id=row["model_id"],
            dim=row["dim"],
            embedding=bytes_to_vector(row["embedding"]),
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def save_history(self, item: HistoryItem) -> str:
        """Append a conversation turn. Returns its id."""
        if not item.id:
            item.id = new_id()
        if item.created_at is None:
            item.created_at = utc_now()

        with self._transaction("save history") as cursor:
            cursor.execute(self.queries["InsertHistory"], (
                item.id,
                item.role,
                item.content,
                to_unix(item.created_at),
                item.session_id,
            ))

        return item.id

    def search_history(self, fts_query: str, top_k: int) -> List[HistorySearchResult]:
        """Full-text search over history content, best match first."""
        with self._transaction("search history") as cursor:
            cursor.execute(self.queries["SearchHistoryFTS"], (fts_query, top_k))
            rows = cursor.fetchall()

        return [
            HistorySearchResult(
                item=self._row_to_history(row),
                snippet=row["snippet"],
                rank=row["rank"],
            )
            for row in rows
        ]

    def get_recent_history(self, limit: int) -> List[HistoryItem]:
        """Return the most recent turns, newest first."""
        with self._transaction("query recent history") as cursor:
            cursor.execute(self.queries["SelectRecentHistory"], (limit,))
            return [self._row_to_history(row) for row in cursor.fetchall()]

    def count_history(self) -> int:
        with self._transaction("count history") as cursor:
            cursor.execute(self.queries["CountHistory"])
            return cursor.fetchone()["count"]

    def clear_history(self) -> int:
        """Delete every history turn. Returns the number removed."""
        with self._transaction("clear history") as cursor:
            cursor.execute(self.queries["ClearHistory"])
            removed = cursor.rowcount

        logger.warning(f"Cleared {removed} history items")
        return removed

    def _row_to_history(self, row: sqlite3.Row) -> HistoryItem:
        return HistoryItem(
            id=row["id"],
            role=row["role"],
            content=row["content"],
            created_at=from_unix(row["created_at"]),
            session_id=row["session_id"],
        )

    def release_connection(self):
        """Close the calling thread's connection, if it has one."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None
        with self._connections_lock:
            if conn in self._connections:
                self._connections.remove(conn)
        conn.close()

    def close(self):
        """Close every connection opened by this store."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()
