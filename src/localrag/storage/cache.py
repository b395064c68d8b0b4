"""Answer cache with TTL expiry and oldest-first size eviction."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

from localrag.metrics.observability import PipelineMetrics, get_logger
from localrag.models import Answer, AnswerCacheEntry
from localrag.storage.store import KnowledgeStore

LOGGER = get_logger("cache")


@dataclass(frozen=True)
class CacheStats:
    entries: int
    max_entries: int
    ttl_seconds: int


class AnswerCache:
    """Normalised-query keyed answer cache persisted through a :class:`KnowledgeStore`."""

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        ttl_seconds: int = 86_400,
        max_entries: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock

    async def get(self, normalized_query: str) -> Answer | None:
        entry = await asyncio.to_thread(self._store.get_cache_entry, normalized_query)
        if entry is None:
            PipelineMetrics.cache_lookups.labels(result="miss").inc()
            return None
        if self._is_expired(entry):
            await asyncio.to_thread(self._store.delete_cache_entries, [normalized_query])
            PipelineMetrics.cache_lookups.labels(result="expired").inc()
            return None
        PipelineMetrics.cache_lookups.labels(result="hit").inc()
        return entry.answer

    async def put(self, normalized_query: str, answer: Answer) -> None:
        entry = AnswerCacheEntry(normalized_query=normalized_query, answer=answer, created_at=self._clock())
        await asyncio.to_thread(self._store.put_cache_entry, entry)

    async def evict_expired(self) -> int:
        entries = await asyncio.to_thread(self._store.all_cache_entries)
        expired = [entry.normalized_query for entry in entries if self._is_expired(entry)]
        if expired:
            await asyncio.to_thread(self._store.delete_cache_entries, expired)
            LOGGER.info("cache.expired_evicted", count=len(expired))
        return len(expired)

    async def enforce_limit(self) -> int:
        """Drop the oldest entries until at most ``max_entries`` remain."""

        entries = await asyncio.to_thread(self._store.all_cache_entries)
        overflow = len(entries) - self._max_entries
        if overflow <= 0:
            return 0
        oldest = sorted(entries, key=lambda entry: entry.created_at)[:overflow]
        await asyncio.to_thread(self._store.delete_cache_entries, [entry.normalized_query for entry in oldest])
        LOGGER.info("cache.size_evicted", count=overflow, limit=self._max_entries)
        return overflow

    async def stats(self) -> CacheStats:
        count = await asyncio.to_thread(self._store.count_cache_entries)
        return CacheStats(entries=count, max_entries=self._max_entries, ttl_seconds=self._ttl)

    def _is_expired(self, entry: AnswerCacheEntry) -> bool:
        return self._clock() - entry.created_at > self._ttl
