"""
Base LLM Provider - Abstract provider interfaces and shared data structures.

Two narrow capabilities are consumed by the memory core: EmbeddingProvider
(text to vector) and QueryProvider (prompt to streamed text). Each vendor
gets one adapter per capability.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional


@dataclass(frozen=True)
class Model:
    """Identifies a model by provider and model id."""
    provider: str
    model_id: str

    def __str__(self) -> str:
        return f"{self.provider}/{self.model_id}"

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary format."""
        return {"provider": self.provider, "model_id": self.model_id}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Model"]:
        """Create from a ``{provider, model_id}`` mapping; None if incomplete."""
        if not data or not data.get("provider") or not data.get("model_id"):
            return None
        return cls(provider=str(data["provider"]), model_id=str(data["model_id"]))


class LLMError(Exception):
    """Base exception for LLM-related errors."""
    pass


class LLMRateLimitError(LLMError):
    """Raised when rate limit is exceeded."""
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class LLMAuthenticationError(LLMError):
    """Raised when authentication fails."""
    pass


class ConfigurationError(Exception):
    """Raised when a model or provider is missing or misconfigured."""
    pass


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @abstractmethod
    def embed(self, model: Model, text: str) -> List[float]:
        """
        Generate an embedding vector for text.

        Args:
            model: The embedding model to use.
            text: The text to embed.

        Returns:
            A list of floats representing the embedding vector.
        """
        pass

    @abstractmethod
    def embed_batch(self, model: Model, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts.

        Args:
            model: The embedding model to use.
            texts: List of texts to embed.

        Returns:
            List of embedding vectors, in input order.
        """
        pass

    @abstractmethod
    def dimensions(self, model: Model) -> int:
        """Get the embedding dimension of a model."""
        pass


class QueryProvider(ABC):
    """
    Prompt-in, stream-out chat interface.

    Used by retrieval to rewrite queries; only whole responses are
    consumed, via :func:`collect_stream`.
    """

    @abstractmethod
    def chat_stream(self, model: Model, prompt: str) -> Iterator[str]:
        """
        Stream a response to a single user prompt.

        Args:
            model: Model to use.
            prompt: The user prompt.

        Yields:
            Content chunks as they are generated.

        Raises:
            LLMError: If the request fails before or during streaming.
        """
        pass


def collect_stream(provider: QueryProvider, model: Model, prompt: str) -> str:
    """Run a prompt and return the concatenated response text."""
    return "".join(provider.chat_stream(model, prompt))
