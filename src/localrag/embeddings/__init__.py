"""Embedding providers."""

from .service import (
    EmbeddingConfig,
    EmbeddingError,
    EmbeddingProvider,
    EmbeddingProviderRegistry,
    HashEmbeddingProvider,
    HuggingFaceEmbeddingProvider,
    OpenAIEmbeddingProvider,
)

__all__ = [
    "EmbeddingConfig",
    "EmbeddingError",
    "EmbeddingProvider",
    "EmbeddingProviderRegistry",
    "HashEmbeddingProvider",
    "HuggingFaceEmbeddingProvider",
    "OpenAIEmbeddingProvider",
]
