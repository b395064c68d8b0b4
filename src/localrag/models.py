"""Shared domain models used across the localrag pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Sequence


class ProviderId(str, Enum):
    """Generation providers known to the orchestrator."""

    ON_DEVICE = "on-device"
    LOCAL_MODEL = "local-model"
    NONE = "none"


class ProviderState(str, Enum):
    UNINITIALIZED = "uninitialized"
    PROBING = "probing"
    READY = "ready"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


class QueryType(str, Enum):
    CONVERSATIONAL = "conversational"
    OUT_OF_SCOPE = "out-of-scope"
    KNOWLEDGE_BASE = "knowledge-base"
    GENERAL = "general"


@dataclass(frozen=True)
class RetrievableUnit:
    """Chunk of document text; the atomic retrieval granularity."""

    unit_id: str
    document_id: str
    origin_label: str
    text: str
    embedding: tuple[float, ...] | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def with_embedding(self, vector: Sequence[float]) -> "RetrievableUnit":
        return replace(self, embedding=tuple(float(value) for value in vector))


@dataclass(frozen=True)
class DocumentManifest:
    """Version record for an ingested document."""

    document_id: str
    content_checksum: str
    version_label: str
    updated_at: float
    unit_count: int


@dataclass(frozen=True)
class RankedResult:
    """Unit returned from the retriever with its cosine similarity."""

    unit: RetrievableUnit
    similarity: float


@dataclass(frozen=True)
class SourceRef:
    """Preview of a unit cited by an answer."""

    unit_id: str
    document_id: str
    preview: str
    similarity: float
    title: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "document_id": self.document_id,
            "preview": self.preview,
            "similarity": self.similarity,
            "title": self.title,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SourceRef":
        return cls(
            unit_id=str(data["unit_id"]),
            document_id=str(data.get("document_id", "")),
            preview=str(data.get("preview", "")),
            similarity=float(data.get("similarity", 0.0)),
            title=data.get("title"),
            url=data.get("url"),
        )


@dataclass(frozen=True)
class Timing:
    retrieval_ms: float = 0.0
    generation_ms: float = 0.0
    total_ms: float = 0.0


@dataclass(frozen=True)
class Answer:
    """Answer returned to callers of ``ask``."""

    text: str
    sources: Sequence[SourceRef]
    confidence: float
    timing: Timing
    provider: ProviderId | None = None
    query_type: QueryType | None = None
    route: str = "extractive"
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "sources": [source.to_dict() for source in self.sources],
            "confidence": self.confidence,
            "timing": {
                "retrieval_ms": self.timing.retrieval_ms,
                "generation_ms": self.timing.generation_ms,
                "total_ms": self.timing.total_ms,
            },
            "provider": self.provider.value if self.provider else None,
            "query_type": self.query_type.value if self.query_type else None,
            "route": self.route,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Answer":
        timing = data.get("timing") or {}
        provider = data.get("provider")
        query_type = data.get("query_type")
        return cls(
            text=str(data["text"]),
            sources=tuple(SourceRef.from_dict(item) for item in data.get("sources") or []),
            confidence=float(data.get("confidence", 0.0)),
            timing=Timing(
                retrieval_ms=float(timing.get("retrieval_ms", 0.0)),
                generation_ms=float(timing.get("generation_ms", 0.0)),
                total_ms=float(timing.get("total_ms", 0.0)),
            ),
            provider=ProviderId(provider) if provider else None,
            query_type=QueryType(query_type) if query_type else None,
            route=str(data.get("route", "extractive")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class AnswerCacheEntry:
    normalized_query: str
    answer: Answer
    created_at: float


@dataclass(frozen=True)
class ConversationTurn:
    query: str
    answer: str
