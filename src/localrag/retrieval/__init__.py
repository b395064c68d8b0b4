"""Retrieval components."""

from .service import (
    RetrievalConfig,
    Retriever,
    VectorRetriever,
    cosine_similarity,
    euclidean_distance,
    normalize_vector,
)

__all__ = [
    "RetrievalConfig",
    "Retriever",
    "VectorRetriever",
    "cosine_similarity",
    "euclidean_distance",
    "normalize_vector",
]
