"""Text normalisation helpers used by ingestion, retrieval and answering."""

from __future__ import annotations

import hashlib
import re
import unicodedata

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "from",
        "has", "have", "he", "in", "is", "it", "its", "of", "on", "that", "the",
        "they", "this", "to", "was", "will", "with",
    }
)

_URL_RE = re.compile(r"https?://[^\s<>\"]+")
_CONTROL_RE = re.compile(r"[\x00-\x09\x0b-\x1f\x7f]")
_HORIZONTAL_WS_RE = re.compile(r"[ \t\r\f\v]+")
_QUERY_PUNCT_RE = re.compile(r"[^\w\s'-]")


def clean_text(text: str) -> str:
    """Normalise unicode, quotes and whitespace while keeping paragraph breaks."""

    cleaned = unicodedata.normalize("NFKC", text)
    cleaned = cleaned.replace("\u00a0", " ").replace("\r\n", "\n").replace("\t", " ")
    cleaned = _CONTROL_RE.sub("", cleaned)
    cleaned = cleaned.replace("\u201c", '"').replace("\u201d", '"')
    cleaned = cleaned.replace("\u2018", "'").replace("\u2019", "'")
    cleaned = _HORIZONTAL_WS_RE.sub(" ", cleaned)
    cleaned = re.sub(r" *\n *", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def normalize_query(query: str) -> str:
    """Lowercase, drop punctuation (keeping in-word hyphens/apostrophes) and collapse spaces."""

    lowered = _QUERY_PUNCT_RE.sub("", query.lower())
    return re.sub(r"\s+", " ", lowered).strip()


def remove_stop_words(query: str) -> str:
    words = query.lower().split()
    return " ".join(word for word in words if word not in STOP_WORDS)


def extract_urls(text: str) -> list[str]:
    return _URL_RE.findall(text)


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max(0, max_length - 3)] + "..."


def hash_text(text: str) -> str:
    """SHA-256 hex digest used as a document content checksum."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()


__all__ = [
    "STOP_WORDS",
    "clean_text",
    "extract_urls",
    "hash_text",
    "normalize_query",
    "remove_stop_words",
    "truncate_text",
]
