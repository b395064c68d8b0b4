"""Knowledge ingestion: source adapters and chunking."""

from .chunker import ChunkingConfig, UnitDraft, chunk_text, create_units, merge_chunks
from .sources import (
    KnowledgeSource,
    ListSource,
    RecordsSource,
    SourceText,
    TextSource,
    UrlSource,
    resolve_source,
)

__all__ = [
    "ChunkingConfig",
    "KnowledgeSource",
    "ListSource",
    "RecordsSource",
    "SourceText",
    "TextSource",
    "UnitDraft",
    "UrlSource",
    "chunk_text",
    "create_units",
    "merge_chunks",
    "resolve_source",
]
