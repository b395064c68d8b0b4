"""Knowledge source adapters that turn caller input into plain text."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Sequence, Union
from uuid import NAMESPACE_URL, uuid4, uuid5

import httpx
from bs4 import BeautifulSoup

from localrag.errors import InvalidSourceError


@dataclass(frozen=True)
class TextSource:
    content: str
    document_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordsSource:
    """Structured records; ``content``, ``title``, ``description`` and nested ``entries`` are read."""

    data: Any
    document_id: str | None = None


@dataclass(frozen=True)
class ListSource:
    items: Sequence[str]
    document_id: str | None = None


@dataclass(frozen=True)
class UrlSource:
    url: str
    selector: str | None = None
    document_id: str | None = None


KnowledgeSource = Union[TextSource, RecordsSource, ListSource, UrlSource]


@dataclass(frozen=True)
class SourceText:
    document_id: str
    text: str
    metadata: Mapping[str, Any]


async def resolve_source(
    source: KnowledgeSource,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> SourceText:
    """Convert ``source`` into the plain text the chunker expects."""

    if isinstance(source, TextSource):
        text = source.content or ""
        metadata: Dict[str, Any] = {**dict(source.metadata), "type": "text"}
    elif isinstance(source, RecordsSource):
        text = records_to_text(source.data)
        metadata = {"type": "records"}
    elif isinstance(source, ListSource):
        text = "\n\n".join(str(item) for item in source.items if str(item).strip())
        metadata = {"type": "list"}
    elif isinstance(source, UrlSource):
        text = await fetch_url_text(source.url, source.selector, http_client=http_client, timeout=timeout)
        metadata = {"type": "url", "url": source.url}
    else:
        raise InvalidSourceError(f"Invalid knowledge source format: {type(source).__name__}")

    if not text.strip():
        raise InvalidSourceError("Knowledge source contains no text")
    return SourceText(document_id=_document_id(source), text=text, metadata=metadata)


def records_to_text(data: Any) -> str:
    if isinstance(data, (list, tuple)):
        return "\n\n".join(records_to_text(item) for item in data).strip()
    return _record_to_text(data)


def _record_to_text(record: Any) -> str:
    if isinstance(record, str):
        return record
    if not isinstance(record, Mapping):
        return str(record)

    parts = []
    for key in ("content", "title", "description"):
        if key in record and record[key] is not None:
            parts.append(str(record[key]))
    text = "\n".join(parts)
    entries = record.get("entries")
    if isinstance(entries, (list, tuple)):
        nested = "\n\n".join(_record_to_text(entry) for entry in entries)
        text = f"{text}\n{nested}" if text else nested
    return text.strip()


async def fetch_url_text(
    url: str,
    selector: str | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> str:
    """Download ``url`` and extract its visible text, optionally scoped to a CSS selector."""

    try:
        if http_client is not None:
            response = await http_client.get(url, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise InvalidSourceError(f"Network error while fetching knowledge source {url}: {exc}") from exc

    soup = BeautifulSoup(response.text, "html.parser")
    if selector:
        element = soup.select_one(selector)
        return element.get_text(" ", strip=True) if element is not None else ""
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return soup.get_text(" ", strip=True)


def _document_id(source: KnowledgeSource) -> str:
    if source.document_id:
        return source.document_id
    if isinstance(source, UrlSource):
        return uuid5(NAMESPACE_URL, source.url).hex
    return f"doc-{uuid4().hex[:12]}"


__all__ = [
    "KnowledgeSource",
    "ListSource",
    "RecordsSource",
    "SourceText",
    "TextSource",
    "UrlSource",
    "fetch_url_text",
    "records_to_text",
    "resolve_source",
]
