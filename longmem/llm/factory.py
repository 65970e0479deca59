"""
Provider Factory - Build embedding and query providers from configuration.
"""

import logging
from typing import Dict, Optional, Type

from .base import ConfigurationError, EmbeddingProvider, QueryProvider
from .config import LongmemConfig
from .openai_provider import OpenAIEmbeddingProvider, OpenAIQueryProvider


logger = logging.getLogger(__name__)


class ProviderFactory:
    """Factory for creating embedding and query providers."""

    # Mapping of provider names to classes; "local" is resolved lazily
    _embedding_providers: Dict[str, Type[EmbeddingProvider]] = {
        "openai": OpenAIEmbeddingProvider,
    }
    _query_providers: Dict[str, Type[QueryProvider]] = {
        "openai": OpenAIQueryProvider,
    }

    @classmethod
    def register_embedding_provider(cls, name: str, provider_class: type):
        """
        Register a custom embedding provider.

        The class must accept no constructor arguments.

        Args:
            name: Provider name.
            provider_class: Class that inherits from EmbeddingProvider.
        """
        if not issubclass(provider_class, EmbeddingProvider):
            raise ValueError("Provider class must inherit from EmbeddingProvider")
        cls._embedding_providers[name.lower()] = provider_class

    @classmethod
    def register_query_provider(cls, name: str, provider_class: type):
        """
        Register a custom query provider.

        The class must accept no constructor arguments.

        Args:
            name: Provider name.
            provider_class: Class that inherits from QueryProvider.
        """
        if not issubclass(provider_class, QueryProvider):
            raise ValueError("Provider class must inherit from QueryProvider")
        cls._query_providers[name.lower()] = provider_class

    @classmethod
    def create_embedding_provider(
        cls,
        config: LongmemConfig,
        provider_name: Optional[str] = None,
    ) -> EmbeddingProvider:
        """
        Create an embedding provider.

        Args:
            config: Loaded configuration.
            provider_name: Provider to create. Defaults to the provider of
                the configured embedding model.

        Returns:
            Configured embedding provider.

        Raises:
            ConfigurationError: If the provider is unknown or has no API key.
        """
        name = cls._resolve_name(provider_name, config.embedding_model, "embedding")

        if name == "local":
            from ..memory.embeddings import HashingEmbedding
            return HashingEmbedding()

        if name == "openai":
            cls._require_api_key(config)
            return OpenAIEmbeddingProvider(
                api_key=config.openai.api_key,
                base_url=config.openai.base_url,
            )

        if name in cls._embedding_providers:
            return cls._embedding_providers[name]()

        available = ", ".join(sorted(set(cls._embedding_providers) | {"local"}))
        raise ConfigurationError(
            f"Unknown embedding provider: {name}. "
            f"Available providers: {available}"
        )

    @classmethod
    def create_query_provider(
        cls,
        config: LongmemConfig,
        provider_name: Optional[str] = None,
    ) -> QueryProvider:
        """
        Create a query provider for rewriting queries.

        Args:
            config: Loaded configuration.
            provider_name: Provider to create. Defaults to the provider of
                the configured tool model.

        Returns:
            Configured query provider.

        Raises:
            ConfigurationError: If the provider is unknown or has no API key.
        """
        name = cls._resolve_name(provider_name, config.tool_model, "tool")

        if name == "openai":
            cls._require_api_key(config)
            return OpenAIQueryProvider(
                api_key=config.openai.api_key,
                base_url=config.openai.base_url,
            )

        if name in cls._query_providers:
            return cls._query_providers[name]()

        available = ", ".join(sorted(cls._query_providers))
        raise ConfigurationError(
            f"Unknown query provider: {name}. "
            f"Available providers: {available}"
        )

    @staticmethod
    def _resolve_name(provider_name, model, kind: str) -> str:
        if provider_name:
            return provider_name.lower()
        if model is None:
            raise ConfigurationError(f"No {kind} model configured")
        return model.provider.lower()

    @staticmethod
    def _require_api_key(config: LongmemConfig):
        if not config.openai.api_key:
            raise ConfigurationError(
                "OpenAI API key not configured. Set OPENAI_API_KEY or providers.openai.api_key."
            )
