"""
Memory type definitions for the memory system.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate an opaque unique identifier."""
    return str(uuid.uuid4())


def from_unix(seconds: int) -> datetime:
    """Convert stored unix seconds back to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def to_unix(value: datetime) -> int:
    """Convert a datetime to unix seconds (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def unique_tags(tags: Optional[List[str]]) -> List[str]:
    """Strip, drop empties and de-duplicate tags, keeping first-seen order."""
    result: List[str] = []
    for tag in tags or []:
        tag = tag.strip()
        if tag and tag not in result:
            result.append(tag)
    return result


class MemorySource(str, Enum):
    """How a memory was created."""

    # Saved on purpose by the user or the model
    EXPLICIT = "explicit"

    # Pulled out of a conversation automatically
    EXTRACTED = "extracted"


class ResultSource(str, Enum):
    """Which retrieval path produced a unified result."""
    VECTOR = "vector"
    FTS = "fts"
    BOTH = "both"


@dataclass
class MemoryItem:
    """
    A single preference or fact stored in memory.

    Attributes:
        text: The fact itself
        tags: Ordered, de-duplicated tags
        source: Whether the memory was saved explicitly or extracted
        confidence: Confidence in the fact (0-1)
        provider: Provider of the embedding model that produced ``embedding``
        model_id: Embedding model identifier
        dim: Vector length, always ``len(embedding)``
        embedding: L2-normalized embedding vector
        id: Unique identifier, generated on save if missing
        created_at: Creation time, defaulted on save if missing
    """

    text: str
    tags: List[str] = field(default_factory=list)
    source: MemorySource = MemorySource.EXPLICIT
    confidence: float = 1.0
    provider: str = ""
    model_id: str = ""
    dim: int = 0
    embedding: List[float] = field(default_factory=list)
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary; the embedding is left out."""
        return {
            "id": self.id,
            "text": self.text,
            "tags": list(self.tags),
            "source": self.source.value,
            "confidence": self.confidence,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "provider": self.provider,
            "model_id": self.model_id,
            "dim": self.dim,
        }


@dataclass
class HistoryItem:
    """A conversation turn. Write-once."""

    role: str
    content: str
    session_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if self.session_id:
            data["session_id"] = self.session_id
        return data


@dataclass
class SearchResult:
    """A vector search hit; ``similarity`` is the cosine similarity."""
    item: MemoryItem
    similarity: float


@dataclass
class MemoryFTSResult:
    """
    A full-text search hit on memories.

    ``rank`` is the FTS5 rank: lower (more negative) is a better match.
    """
    item: MemoryItem
    snippet: str
    rank: float


@dataclass
class HistorySearchResult:
    """A full-text search hit on history."""
    item: HistoryItem
    snippet: str
    rank: float


@dataclass
class UnifiedResult:
    """
    A fused retrieval result.

    Attributes:
        item: The memory
        score: Normalized score in [0, 1], higher is better
        source: Which search path(s) found the memory
        vector_score: Original vector similarity (0 if not found by vector)
        fts_rank: Original FTS rank (0 if not found by FTS)
        snippet: Highlighted FTS snippet if available
    """

    item: MemoryItem
    score: float = 0.0
    source: ResultSource = ResultSource.VECTOR
    vector_score: float = 0.0
    fts_rank: float = 0.0
    snippet: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "item": self.item.to_dict(),
            "score": self.score,
            "source": self.source.value,
            "vector_score": self.vector_score,
            "fts_rank": self.fts_rank,
            "snippet": self.snippet,
        }


@dataclass
class RetrievalResponse:
    """Results of one retrieval call."""
    results: List[UnifiedResult]
    query: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "results": [r.to_dict() for r in self.results],
            "query": self.query,
        }


@dataclass
class InjectedContext:
    """Retrieved memories and history snippets to inject into a prompt."""
    memory_facts: List[SearchResult] = field(default_factory=list)
    history_snippets: List[HistorySearchResult] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.memory_facts and not self.history_snippets
