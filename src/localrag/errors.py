"""Exception hierarchy shared by the localrag pipeline."""

from __future__ import annotations


class LocalRAGError(RuntimeError):
    """Base class for all pipeline errors."""


class NotInitializedError(LocalRAGError):
    """Raised when an operation runs before ``initialize`` completed (or after ``destroy``)."""


class InvalidQueryError(LocalRAGError, ValueError):
    """Raised for empty or otherwise unusable queries."""


class InvalidSourceError(LocalRAGError):
    """Raised when a knowledge source is unsupported, malformed or cannot be fetched."""


class EmbeddingError(LocalRAGError):
    """Raised when the embedding model cannot be loaded."""


class StorageError(LocalRAGError):
    """Raised when the persistent store fails; never recovered locally."""


class GenerationError(LocalRAGError):
    """Raised when the active generation provider fails a call."""


class GenerationTimeoutError(GenerationError):
    """Raised when a generation call exceeds its timeout."""


class GenerationUnavailableError(GenerationError):
    """Raised when no generation provider could be initialised."""


__all__ = [
    "EmbeddingError",
    "GenerationError",
    "GenerationTimeoutError",
    "GenerationUnavailableError",
    "InvalidQueryError",
    "InvalidSourceError",
    "LocalRAGError",
    "NotInitializedError",
    "StorageError",
]
