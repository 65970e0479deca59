"""
Embedding providers for semantic search.

Retrieval and reindexing depend only on the EmbeddingProvider interface
(defined next to the chat interface in ``longmem.llm.base``). This module
adds an offline provider that needs no API key.
"""

import hashlib
import logging
from typing import List

from ..llm.base import EmbeddingProvider, Model
from .vector import normalize

logger = logging.getLogger(__name__)


class HashingEmbedding(EmbeddingProvider):
    """
    Offline feature-hashing embedding provider.

    Hashes each word into a fixed number of buckets with a hashed sign,
    weights by term frequency and L2 normalizes. Deterministic, needs no
    network, and is good enough for keyword-level similarity. The model
    id is ignored.
    """

    PROVIDER_NAME = "local"
    DEFAULT_DIMENSION = 256

    def __init__(self, dimension: int = DEFAULT_DIMENSION):
        """
        Initialize the embedding provider.

        Args:
            dimension: Embedding vector dimension
        """
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self._dimension = dimension

    def dimensions(self, model: Model) -> int:
        return self._dimension

    def embed(self, model: Model, text: str) -> List[float]:
        """Hash the words of ``text`` into a normalized vector."""
        vector = [0.0] * self._dimension

        words = self._tokenize(text)
        if not words:
            return vector

        for word in words:
            digest = hashlib.md5(word.encode()).digest()
            index = int.from_bytes(digest[:8], "little") % self._dimension
            sign = 1.0 if digest[8] % 2 == 0 else -1.0
            vector[index] += sign / len(words)

        return normalize(vector)

    def embed_batch(self, model: Model, texts: List[str]) -> List[List[float]]:
        return [self.embed(model, text) for text in texts]

    def _tokenize(self, text: str) -> List[str]:
        """Lowercase alphanumeric runs longer than two characters."""
        words = []
        current = []

        for char in text.lower():
            if char.isalnum():
                current.append(char)
            elif current:
                words.append("".join(current))
                current = []

        if current:
            words.append("".join(current))

        return [w for w in words if len(w) > 2]


__all__ = ["EmbeddingProvider", "HashingEmbedding"]
