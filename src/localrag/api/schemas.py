"""Pydantic models for the localrag API."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from localrag.ingestion import KnowledgeSource, ListSource, RecordsSource, TextSource, UrlSource
from localrag.models import Answer, ConversationTurn
from localrag.services.pipeline import AskOptions


class KnowledgeRequest(BaseModel):
    """One knowledge source; which payload field is read depends on ``type``."""

    type: Literal["text", "records", "list", "url"] = "text"
    content: Optional[str] = Field(default=None, description="Raw text for `text` sources")
    data: Any = Field(default=None, description="Record or list of records for `records` sources")
    items: Optional[List[str]] = Field(default=None, description="Text items for `list` sources")
    url: Optional[str] = Field(default=None, description="Page to fetch for `url` sources")
    selector: Optional[str] = Field(default=None, description="CSS selector scoping URL extraction")
    document_id: Optional[str] = Field(default=None, description="Stable identifier; re-using it versions the document")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_source(self) -> KnowledgeSource:
        if self.type == "records":
            return RecordsSource(data=self.data, document_id=self.document_id)
        if self.type == "list":
            return ListSource(items=tuple(self.items or ()), document_id=self.document_id)
        if self.type == "url":
            return UrlSource(url=self.url or "", selector=self.selector, document_id=self.document_id)
        return TextSource(content=self.content or "", document_id=self.document_id, metadata=self.metadata)


class IngestResponse(BaseModel):
    document_id: str
    unit_count: int = Field(..., ge=0)
    skipped: bool
    version_label: str
    duration_ms: float


class ConversationTurnModel(BaseModel):
    query: str
    answer: str


class AskRequest(BaseModel):
    question: str = Field(..., min_length=1, description="End-user question to answer")
    top_k: Optional[int] = Field(default=None, ge=1, le=50, description="Override the number of retrieved units")
    generation_enabled: Optional[bool] = Field(default=None, description="Allow or forbid generation for this call")
    history: List[ConversationTurnModel] = Field(default_factory=list)
    generation_timeout: Optional[float] = Field(default=None, gt=0)

    def to_options(self) -> AskOptions:
        return AskOptions(
            top_k=self.top_k,
            generation_enabled=self.generation_enabled,
            history=tuple(ConversationTurn(query=turn.query, answer=turn.answer) for turn in self.history),
            generation_timeout=self.generation_timeout,
        )


class SourceModel(BaseModel):
    unit_id: str
    document_id: str
    preview: str
    similarity: float
    title: Optional[str] = None
    url: Optional[str] = None


class TimingModel(BaseModel):
    retrieval_ms: float
    generation_ms: float
    total_ms: float


class AskResponse(BaseModel):
    answer: str
    sources: List[SourceModel]
    confidence: float = Field(..., ge=0.0, le=1.0)
    timing: TimingModel
    provider: Optional[str] = None
    query_type: Optional[str] = None
    route: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_answer(cls, answer: Answer) -> "AskResponse":
        payload = answer.to_dict()
        return cls(
            answer=payload["text"],
            sources=[SourceModel(**source) for source in payload["sources"]],
            confidence=payload["confidence"],
            timing=TimingModel(**payload["timing"]),
            provider=payload["provider"],
            query_type=payload["query_type"],
            route=payload["route"],
            metadata=payload["metadata"],
        )


class StatusResponse(BaseModel):
    state: str
    ready: bool
    embedding: Dict[str, Any]
    generation: Optional[Dict[str, Any]] = None
    storage: Dict[str, Any]
    knowledge_base: Dict[str, Any]
