"""Persistent storage and the answer cache."""

from .cache import AnswerCache
from .store import ChromaKnowledgeStore, KnowledgeStore

__all__ = ["AnswerCache", "ChromaKnowledgeStore", "KnowledgeStore"]
