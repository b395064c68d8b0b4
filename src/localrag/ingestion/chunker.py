"""Boundary-aware text chunking."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

from localrag.models import RetrievableUnit
from localrag.text import clean_text

PARAGRAPH_BOUNDARIES: tuple[str, ...] = ("\n\n\n", "\n\n")
SENTENCE_BOUNDARIES: tuple[str, ...] = (". ", "! ", "? ", ".\n", "!\n", "?\n")
BOUNDARY_WINDOW = 100


@dataclass(frozen=True)
class ChunkingConfig:
    """Configuration for the chunker; sizes are in characters."""

    chunk_size: int = 900
    chunk_overlap: int = 120
    min_chunk_size: int = 100


@dataclass(frozen=True)
class UnitDraft:
    """Chunk text that has not yet been bound to a document."""

    text: str
    metadata: Mapping[str, Any] = field(default_factory=dict)


def chunk_text(
    text: str,
    config: ChunkingConfig | None = None,
    *,
    metadata: Mapping[str, Any] | None = None,
) -> List[UnitDraft]:
    """Split ``text`` into overlapping drafts cut at paragraph, sentence or word boundaries."""

    config = config or ChunkingConfig()
    chunk_size = max(1, config.chunk_size)
    overlap = max(0, config.chunk_overlap)
    base_metadata: Dict[str, Any] = dict(metadata or {})
    cleaned = clean_text(text)

    if len(cleaned) <= chunk_size:
        return [UnitDraft(text=cleaned, metadata={**base_metadata, "chunk_index": 0, "total_chunks": 1})]

    pieces: List[str] = []
    start = 0
    while start < len(cleaned):
        end = start + chunk_size
        if end >= len(cleaned):
            pieces.append(cleaned[start:].strip())
            break

        end = find_best_boundary(cleaned, start, end)
        piece = cleaned[start:end].strip()
        if len(piece) >= config.min_chunk_size:
            pieces.append(piece)

        next_start = end - overlap
        start = next_start if next_start > start else end

    pieces = [piece for piece in pieces if piece] or [cleaned]
    total = len(pieces)
    return [
        UnitDraft(text=piece, metadata={**base_metadata, "chunk_index": index, "total_chunks": total})
        for index, piece in enumerate(pieces)
    ]


def find_best_boundary(text: str, start: int, ideal_end: int) -> int:
    """Return the best cut offset near ``ideal_end``.

    Searches ``BOUNDARY_WINDOW`` characters either side of the ideal end for a paragraph break,
    then a sentence end, then a space. A candidate only counts when it lies past the first
    third of the window.
    """

    window_start = max(start, ideal_end - BOUNDARY_WINDOW)
    window_end = min(len(text), ideal_end + BOUNDARY_WINDOW)
    window = text[window_start:window_end]
    min_index = len(window) / 3

    for boundaries in (PARAGRAPH_BOUNDARIES, SENTENCE_BOUNDARIES, (" ",)):
        for boundary in boundaries:
            index = window.rfind(boundary)
            if index != -1 and index > min_index:
                return window_start + index + len(boundary)
    return ideal_end


def create_units(
    text: str,
    document_id: str,
    config: ChunkingConfig | None = None,
    *,
    metadata: Mapping[str, Any] | None = None,
) -> List[RetrievableUnit]:
    """Chunk ``text`` and bind each draft to ``document_id`` with a deterministic id."""

    drafts = chunk_text(text, config)
    total = len(drafts)
    units: List[RetrievableUnit] = []
    for order, draft in enumerate(drafts):
        unit_metadata: Dict[str, Any] = {**draft.metadata, **dict(metadata or {})}
        unit_metadata["chunk_index"] = order
        unit_metadata["total_chunks"] = total
        units.append(
            RetrievableUnit(
                unit_id=f"{document_id}-{order}",
                document_id=document_id,
                origin_label=f"{document_id}#chunk-{order}",
                text=draft.text,
                metadata=unit_metadata,
            ),
        )
    return units


def merge_chunks(texts: Sequence[str], overlap: int) -> str:
    """Rebuild text from overlapping chunks, joining with a blank line when no overlap is found."""

    if not texts:
        return ""
    merged = texts[0]
    for current in texts[1:]:
        length = min(overlap, len(merged), len(current))
        found = False
        while length > 20:
            if merged[-length:] == current[:length]:
                merged += current[length:]
                found = True
                break
            length -= 10
        if not found:
            merged += "\n\n" + current
    return merged


__all__ = [
    "ChunkingConfig",
    "UnitDraft",
    "chunk_text",
    "create_units",
    "find_best_boundary",
    "merge_chunks",
]
