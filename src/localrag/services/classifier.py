"""Rule-based query intent classification used to gate generation."""

from __future__ import annotations

import re
from typing import Sequence

from localrag.models import QueryType

_CONVERSATIONAL_PATTERNS: Sequence[re.Pattern[str]] = (
    re.compile(r"^(?:hi|hello|hey|greetings|good morning|good afternoon|good evening)\b"),
    re.compile(r"\b(?:how are you|what's up|whats up)\b"),
    re.compile(r"\b(?:thanks|thank you|thx|ty)\b"),
    re.compile(r"^(?:bye|goodbye|see you|farewell)\b"),
    re.compile(r"^(?:ok|okay|sure|alright|cool|great|awesome)\b"),
    re.compile(r"^(?:yes|yeah|yep|no|nope|nah)\b"),
)

_TIME_PATTERNS = (
    r"what time is it",
    r"what'?s the time",
    r"current time",
    r"today'?s date",
    r"what date is it",
)
_WEATHER_PATTERNS = (r"\bweather\b", r"\braining\b", r"\bforecast\b", r"\btemperature\b")
_ACTION_PATTERNS = (
    r"\bsend (?:an? )?(?:email|message)\b",
    r"\bcall someone\b",
    r"\bmake (?:a )?call\b",
    r"\bopen (?:a )?file\b",
    r"\bstart (?:a )?program\b",
)
_REALTIME_PATTERNS = (r"\bstock price\b", r"\bcurrent news\b", r"\blatest news\b", r"\bbreaking news\b")

_OUT_OF_SCOPE_PATTERNS: Sequence[re.Pattern[str]] = tuple(
    re.compile(pattern)
    for pattern in (*_TIME_PATTERNS, *_WEATHER_PATTERNS, *_ACTION_PATTERNS, *_REALTIME_PATTERNS)
)

# Explanation requests about an otherwise out-of-scope topic stay answerable.
_KNOWLEDGE_INDICATORS: Sequence[re.Pattern[str]] = (
    re.compile(r"\bexplain\b"),
    re.compile(r"\bhow does\b"),
    re.compile(r"\btell me about\b"),
    re.compile(r"\bdescribe\b"),
    re.compile(r"\bwhat is (?:the |a )?.+ (?:system|concept|theory|principle)\b"),
)

QUESTION_WORDS = ("what", "who", "where", "when", "why", "how", "which", "can", "does", "is", "are")

OUT_OF_SCOPE_RESPONSE = (
    "I'm focused on answering questions about the knowledge base. I can't help with that "
    "particular topic, but feel free to ask me anything within my domain!"
)

_CONVERSATIONAL_RESPONSES: Sequence[tuple[re.Pattern[str], str]] = (
    (re.compile(r"^(?:hi|hello|hey)\b"), "Hello! How can I help you today?"),
    (re.compile(r"^(?:thanks|thank you)\b"), "You're welcome! Feel free to ask if you have more questions."),
    (re.compile(r"^(?:bye|goodbye)\b"), "Goodbye! Have a great day!"),
    (re.compile(r"^(?:ok|okay|sure|alright)\b"), "Great! Anything else I can help with?"),
)
DEFAULT_CONVERSATIONAL_RESPONSE = "I'm here to help! What would you like to know?"


def classify_query(query: str) -> QueryType:
    """Return the intent of ``query``; checks run conversational first, then out-of-scope."""

    lowered = query.lower().strip()
    if is_conversational(lowered):
        return QueryType.CONVERSATIONAL
    if is_out_of_scope(lowered):
        return QueryType.OUT_OF_SCOPE
    if is_question(lowered):
        return QueryType.KNOWLEDGE_BASE
    return QueryType.GENERAL


def is_conversational(query: str) -> bool:
    lowered = query.lower().strip()
    return any(pattern.search(lowered) for pattern in _CONVERSATIONAL_PATTERNS)


def is_out_of_scope(query: str) -> bool:
    lowered = query.lower().strip()
    if not any(pattern.search(lowered) for pattern in _OUT_OF_SCOPE_PATTERNS):
        return False
    return not any(pattern.search(lowered) for pattern in _KNOWLEDGE_INDICATORS)


def is_question(query: str) -> bool:
    lowered = query.lower().strip()
    return lowered.endswith("?") or any(lowered.startswith(f"{word} ") for word in QUESTION_WORDS)


def should_generate(query_type: QueryType, generation_enabled: bool) -> bool:
    if not generation_enabled:
        return False
    return query_type in (QueryType.KNOWLEDGE_BASE, QueryType.GENERAL)


def conversational_response(query: str) -> str:
    lowered = query.lower().strip()
    for pattern, response in _CONVERSATIONAL_RESPONSES:
        if pattern.search(lowered):
            return response
    return DEFAULT_CONVERSATIONAL_RESPONSE


def out_of_scope_response() -> str:
    return OUT_OF_SCOPE_RESPONSE


__all__ = [
    "OUT_OF_SCOPE_RESPONSE",
    "classify_query",
    "conversational_response",
    "is_conversational",
    "is_out_of_scope",
    "is_question",
    "out_of_scope_response",
    "should_generate",
]
