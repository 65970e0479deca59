"""
OpenAI Provider - Embedding and query adapters for the OpenAI API.

The ``openai`` package is an optional dependency and is imported the first
time a client is needed.
"""

import json
import logging
import os
from typing import Dict, Iterator, List, Optional

from .base import (
    EmbeddingProvider,
    LLMAuthenticationError,
    LLMError,
    LLMRateLimitError,
    Model,
    QueryProvider,
)


logger = logging.getLogger(__name__)


DEFAULT_BASE_URL = "https://api.openai.com/v1"

# Known embedding dimensions per model
EMBEDDING_DIMENSIONS: Dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

# Reported for models missing from the table
DEFAULT_EMBEDDING_DIMENSION = 1536


class _OpenAIClientMixin:
    """Shared client construction and error mapping."""

    def _init_client(
        self,
        api_key: Optional[str],
        base_url: Optional[str],
        timeout: float,
    ):
        # Get API key from config or environment
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            logger.warning("No OpenAI API key provided. Set OPENAI_API_KEY environment variable.")

        self.base_url = base_url or DEFAULT_BASE_URL
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self._client is None:
            try:
                import openai
            except ImportError:
                raise LLMError(
                    "OpenAI package not installed. Install with: pip install 'longmem[openai]'"
                )
            self._client = openai.OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    def _handle_error(self, error: Exception) -> LLMError:
        """Convert OpenAI errors to LLM errors."""
        if isinstance(error, LLMError):
            return error

        error_message = str(error)

        # Try to parse error details
        response = getattr(error, "response", None)
        if response is not None:
            try:
                error_message = response.json().get("error", {}).get("message", error_message)
            except (json.JSONDecodeError, AttributeError, ValueError):
                pass

        status_code = getattr(error, "status_code", None)
        lowered = error_message.lower()

        if status_code == 429 or "rate_limit" in lowered or "rate limit" in lowered:
            retry_after = None
            headers = getattr(response, "headers", None)
            if headers:
                retry_after_str = headers.get("Retry-After")
                if retry_after_str:
                    try:
                        retry_after = float(retry_after_str)
                    except ValueError:
                        pass
            return LLMRateLimitError(error_message, retry_after)

        if status_code == 401 or "authentication" in lowered or "api_key" in lowered:
            return LLMAuthenticationError(error_message)

        return LLMError(error_message)


class OpenAIEmbeddingProvider(_OpenAIClientMixin, EmbeddingProvider):
    """OpenAI embeddings endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
    ):
        self._init_client(api_key, base_url, timeout)

    def embed(self, model: Model, text: str) -> List[float]:
        """
        Embed a single text.

        Raises:
            LLMError: If the request fails.
        """
        vectors = self.embed_batch(model, [text])
        if not vectors:
            raise LLMError(f"no embedding returned by {model}")
        return vectors[0]

    def embed_batch(self, model: Model, texts: List[str]) -> List[List[float]]:
        """
        Embed several texts in one request.

        Returns:
            Vectors in input order.
        """
        if not texts:
            return []

        client = self._get_client()
        try:
            response = client.embeddings.create(model=model.model_id, input=texts)
        except Exception as e:
            raise self._handle_error(e) from e

        data = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in data]

    def dimensions(self, model: Model) -> int:
        """
        Get the embedding dimension of a model.

        Models missing from the table (for example ones served through a
        compatible endpoint) report DEFAULT_EMBEDDING_DIMENSION; stored
        dimensions are always taken from the returned vectors.
        """
        dimension = EMBEDDING_DIMENSIONS.get(model.model_id)
        if dimension is None:
            logger.debug(
                f"Unknown embedding model {model.model_id}, assuming {DEFAULT_EMBEDDING_DIMENSION} dimensions"
            )
            return DEFAULT_EMBEDDING_DIMENSION
        return dimension


class OpenAIQueryProvider(_OpenAIClientMixin, QueryProvider):
    """OpenAI chat completions, streamed."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        temperature: float = 0.0,
    ):
        self._init_client(api_key, base_url, timeout)
        self.temperature = temperature

    def chat_stream(self, model: Model, prompt: str) -> Iterator[str]:
        """
        Stream a completion for a single user prompt.

        Yields:
            Content chunks as they are generated.
        """
        client = self._get_client()

        request_params = {
            "model": model.model_id,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "stream": True,
        }

        try:
            stream = client.chat.completions.create(**request_params)

            for chunk in stream:
                if chunk.choices:
                    delta = chunk.choices[0].delta
                    if delta and delta.content:
                        yield delta.content

        except Exception as e:
            raise self._handle_error(e) from e
