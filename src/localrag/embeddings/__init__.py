"""Embedding services."""

from .service import (
    EmbeddingBackend,
    EmbeddingConfig,
    EmbeddingService,
    HashEmbeddingBackend,
    HuggingFaceEmbeddingBackend,
)

__all__ = [
    "EmbeddingBackend",
    "EmbeddingConfig",
    "EmbeddingService",
    "HashEmbeddingBackend",
    "HuggingFaceEmbeddingBackend",
]
