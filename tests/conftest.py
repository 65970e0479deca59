"""
Pytest configuration and shared fixtures.
"""

import threading
from typing import Iterator, List, Optional

import pytest

from longmem.llm.base import EmbeddingProvider, LLMError, Model, QueryProvider
from longmem.memory.storage import SQLiteStore
from longmem.memory.types import MemoryItem
from longmem.memory.vector import normalize


FAKE_MODEL = Model(provider="fake", model_id="fake-embed-2")
TOOL_MODEL = Model(provider="fake", model_id="fake-chat")


class KeywordEmbedding(EmbeddingProvider):
    """
    Deterministic two-dimensional embedding.

    Text mentioning any keyword maps to [1, 0], everything else to [0, 1].
    """

    KEYWORDS = ("virtual", "inheritance", "polymorphism")

    def __init__(self):
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def embed(self, model: Model, text: str) -> List[float]:
        with self._lock:
            self.calls.append(text)
        lowered = text.lower()
        if any(keyword in lowered for keyword in self.KEYWORDS):
            return [1.0, 0.0]
        return [0.0, 1.0]

    def embed_batch(self, model: Model, texts: List[str]) -> List[List[float]]:
        return [self.embed(model, text) for text in texts]

    def dimensions(self, model: Model) -> int:
        return 2


class ScaledEmbedding(KeywordEmbedding):
    """Like KeywordEmbedding but returns unnormalized vectors."""

    def embed(self, model: Model, text: str) -> List[float]:
        return [3.0 * x for x in super().embed(model, text)]


class FailingEmbedding(EmbeddingProvider):
    """Embedding provider whose calls always fail."""

    def __init__(self, message: str = "embedding service unavailable"):
        self.message = message
        self.calls = 0
        self._lock = threading.Lock()

    def embed(self, model: Model, text: str) -> List[float]:
        with self._lock:
            self.calls += 1
        raise LLMError(self.message)

    def embed_batch(self, model: Model, texts: List[str]) -> List[List[float]]:
        raise LLMError(self.message)

    def dimensions(self, model: Model) -> int:
        return 2


class FlakyEmbedding(KeywordEmbedding):
    """Fails the first ``failures`` calls for each text, then succeeds."""

    def __init__(self, failures: int, always_fail: Optional[set] = None):
        super().__init__()
        self.failures = failures
        self.always_fail = always_fail or set()
        self.attempts = {}

    def embed(self, model: Model, text: str) -> List[float]:
        with self._lock:
            self.attempts[text] = self.attempts.get(text, 0) + 1
            attempt = self.attempts[text]
        if text in self.always_fail or attempt <= self.failures:
            raise LLMError(f"transient failure #{attempt}")
        return super().embed(model, text)


class ScriptedQueryProvider(QueryProvider):
    """Query provider that streams a canned response in small chunks."""

    def __init__(self, response: str = "", error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.prompts: List[str] = []
        self._lock = threading.Lock()

    def chat_stream(self, model: Model, prompt: str) -> Iterator[str]:
        with self._lock:
            self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        for i in range(0, len(self.response), 7):
            yield self.response[i:i + 7]


@pytest.fixture
def store(tmp_path):
    """A fresh store in a temporary directory."""
    db = SQLiteStore(str(tmp_path / "memory.db"))
    yield db
    db.close()


@pytest.fixture
def embedder():
    return KeywordEmbedding()


@pytest.fixture
def add_memory(store):
    """Factory that saves a memory with a given (normalized) embedding."""

    def _add(text: str, embedding=None, tags=None, **kwargs) -> MemoryItem:
        vector = normalize(list(embedding if embedding is not None else [0.0, 1.0]))
        item = MemoryItem(
            text=text,
            tags=list(tags or []),
            provider=FAKE_MODEL.provider,
            model_id=FAKE_MODEL.model_id,
            dim=len(vector),
            embedding=vector,
            **kwargs,
        )
        store.save_memory(item)
        return item

    return _add
