"""Extractive answer synthesis and prompt construction."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Sequence

from localrag.models import ConversationTurn, RankedResult, SourceRef
from localrag.text import extract_urls

INSUFFICIENT_INFORMATION = "I don't have enough information to answer that question."

DIRECT_ANSWER_MAX_CHARS = 220
SINGLE_SNIPPET_CHARS = 300
MULTI_SNIPPET_CHARS = 240
MERGED_MAX_CHARS = 700
PREVIEW_CHARS = 200
MAX_LINKS = 5
HISTORY_TURNS = 3
ELLIPSIS = "…"

_KEYWORD_STOPWORDS = frozenset(
    {"what", "is", "the", "a", "an", "of", "in", "for", "to", "and", "define", "explain", "who"}
)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class Synthesis:
    """Extractive answer candidate produced from ranked results."""

    text: str
    sources: tuple[SourceRef, ...]
    confidence: float


def synthesize_answer(
    query: str,
    results: Sequence[RankedResult],
    *,
    max_sources: int = 3,
    confidence_threshold: float = 0.8,
) -> Synthesis:
    """Build an extractive answer from ``results``.

    Confidence is the mean similarity of the top three results. A confident short top
    unit is returned verbatim; otherwise focused snippets of up to ``max_sources`` results
    are merged.
    """

    if not results:
        return Synthesis(text=INSUFFICIENT_INFORMATION, sources=(), confidence=0.0)

    samples = [result.similarity for result in results[:3]]
    confidence = max(0.0, min(1.0, sum(samples) / len(samples)))

    top = results[0]
    if top.similarity >= confidence_threshold:
        direct = top.unit.text.strip()
        if len(direct) <= DIRECT_ANSWER_MAX_CHARS:
            return Synthesis(text=direct, sources=create_sources(results[:1]), confidence=confidence)

    selected = list(results[: max(1, max_sources)])
    return Synthesis(
        text=_merge_snippets(selected, query),
        sources=create_sources(selected),
        confidence=confidence,
    )


def _merge_snippets(results: Sequence[RankedResult], query: str) -> str:
    keyword = primary_keyword(query)
    if len(results) == 1:
        return extract_focused_snippet(results[0].unit.text, keyword, SINGLE_SNIPPET_CHARS)
    snippets: List[str] = []
    for result in results[:3]:
        snippet = extract_focused_snippet(result.unit.text, keyword, MULTI_SNIPPET_CHARS)
        if snippet and snippet not in snippets:
            snippets.append(snippet)
    merged = "\n\n".join(snippets)
    if len(merged) > MERGED_MAX_CHARS:
        return merged[:MERGED_MAX_CHARS].rstrip() + ELLIPSIS
    return merged


def primary_keyword(query: str) -> str:
    """First query token that is not a question or filler word."""

    cleaned = re.sub(r"[^a-z0-9\s]", "", query.lower())
    tokens = cleaned.split()
    for token in tokens:
        if token not in _KEYWORD_STOPWORDS:
            return token
    return tokens[0] if tokens else ""


def split_sentences(text: str) -> List[str]:
    collapsed = re.sub(r"\s+", " ", text)
    return [sentence.strip() for sentence in _SENTENCE_SPLIT.split(collapsed) if sentence.strip()]


def extract_focused_snippet(text: str, keyword: str, max_chars: int) -> str:
    """Pick the first sentence mentioning ``keyword`` (else the first sentence) and cap it."""

    sentences = split_sentences(text)
    chosen = next((sentence for sentence in sentences if keyword and keyword in sentence.lower()), None)
    if chosen is None:
        chosen = sentences[0] if sentences else text[:max_chars]
    if len(chosen) > max_chars:
        chosen = chosen[:max_chars].rstrip() + ELLIPSIS
    return chosen


def first_sentence(text: str, limit: int) -> str:
    sentences = split_sentences(text.strip())
    sentence = sentences[0] if sentences else text.strip()
    if len(sentence) > limit:
        return sentence[:limit].rstrip() + ELLIPSIS
    return sentence


def create_sources(results: Sequence[RankedResult]) -> tuple[SourceRef, ...]:
    sources = []
    for result in results:
        metadata = result.unit.metadata or {}
        title = metadata.get("title")
        url = metadata.get("url")
        sources.append(
            SourceRef(
                unit_id=result.unit.unit_id,
                document_id=result.unit.document_id,
                preview=result.unit.text[:PREVIEW_CHARS],
                similarity=result.similarity,
                title=str(title) if title is not None else None,
                url=str(url) if url is not None else None,
            )
        )
    return tuple(sources)


def extract_result_urls(results: Sequence[RankedResult]) -> List[str]:
    """Unique URLs mentioned in unit text or metadata, in first-seen order."""

    urls: List[str] = []
    for result in results:
        candidates = list(extract_urls(result.unit.text))
        url = (result.unit.metadata or {}).get("url")
        if url:
            candidates.append(str(url))
        for candidate in candidates:
            if candidate not in urls:
                urls.append(candidate)
    return urls


def format_answer(text: str, urls: Sequence[str] = ()) -> str:
    if not urls:
        return text
    links = "\n".join(f"- {url}" for url in list(urls)[:MAX_LINKS])
    return f"{text}\n\n**Related links:**\n{links}"


def build_context(results: Sequence[RankedResult], max_chars: int, *, limit: int = 3) -> str:
    context = "\n\n".join(result.unit.text for result in results[:limit])
    if len(context) > max_chars:
        return context[:max_chars] + "..."
    return context


def build_generation_prompt(
    query: str,
    context: str,
    history: Sequence[ConversationTurn] | None = None,
) -> str:
    parts: List[str] = []
    if history:
        parts.append("Previous conversation:\n")
        for turn in list(history)[-HISTORY_TURNS:]:
            parts.append(f"Q: {turn.query}\nA: {turn.answer}\n\n")
    parts.append(f"Context information:\n{context}\n\n")
    parts.append(f"Question: {query}\n\n")
    parts.append("Please provide a helpful, concise answer based on the context above.")
    return "".join(parts)


__all__ = [
    "INSUFFICIENT_INFORMATION",
    "Synthesis",
    "build_context",
    "build_generation_prompt",
    "create_sources",
    "extract_focused_snippet",
    "extract_result_urls",
    "first_sentence",
    "format_answer",
    "primary_keyword",
    "synthesize_answer",
]
