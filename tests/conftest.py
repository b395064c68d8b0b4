from __future__ import annotations

import re
from typing import Dict, Iterable, List, Sequence

import pytest

from localrag.config import Settings
from localrag.embeddings import EmbeddingConfig, EmbeddingService
from localrag.errors import StorageError
from localrag.events import ProgressChannel
from localrag.models import AnswerCacheEntry, DocumentManifest, RetrievableUnit
from localrag.services.pipeline import KnowledgeClient

VOCAB = (
    "photosynthesis",
    "light",
    "energy",
    "plants",
    "chemical",
    "mitochondria",
    "cell",
    "power",
    "ocean",
    "water",
    "salt",
    "python",
    "language",
)


class KeywordBackend:
    """Bag-of-words embedding over a fixed vocabulary; counts calls."""

    def __init__(self) -> None:
        self.query_calls = 0
        self.document_calls = 0
        self.fail = False

    def _vector(self, text: str) -> List[float]:
        tokens = re.findall(r"[a-z]+", text.lower())
        return [float(tokens.count(word)) for word in VOCAB]

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        self.document_calls += 1
        if self.fail:
            raise RuntimeError("backend down")
        return [self._vector(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        self.query_calls += 1
        if self.fail:
            raise RuntimeError("backend down")
        return self._vector(text)


class InMemoryStore:
    def __init__(self) -> None:
        self.units: Dict[str, RetrievableUnit] = {}
        self.manifests: Dict[str, DocumentManifest] = {}
        self.cache: Dict[str, AnswerCacheEntry] = {}
        self.open_calls = 0
        self.put_unit_calls = 0
        self.opened = False
        self.fail_open = False
        self.fail_writes = False

    def open(self) -> None:
        self.open_calls += 1
        if self.fail_open:
            raise StorageError("Failed to initialize storage: disk unavailable")
        self.opened = True

    def close(self) -> None:
        self.opened = False

    def put_units(self, units: Sequence[RetrievableUnit]) -> None:
        self.put_unit_calls += 1
        if self.fail_writes:
            raise StorageError("Storage operation failed: put_units")
        for unit in units:
            self.units[unit.unit_id] = unit

    def get_units_by_document(self, document_id: str) -> List[RetrievableUnit]:
        return [unit for unit in self.units.values() if unit.document_id == document_id]

    def delete_units_by_document(self, document_id: str) -> int:
        doomed = [unit_id for unit_id, unit in self.units.items() if unit.document_id == document_id]
        for unit_id in doomed:
            del self.units[unit_id]
        return len(doomed)

    def all_units(self) -> List[RetrievableUnit]:
        return list(self.units.values())

    def count_units(self) -> int:
        return len(self.units)

    def put_manifest(self, manifest: DocumentManifest) -> None:
        self.manifests[manifest.document_id] = manifest

    def get_manifest(self, document_id: str) -> DocumentManifest | None:
        return self.manifests.get(document_id)

    def delete_manifest(self, document_id: str) -> None:
        self.manifests.pop(document_id, None)

    def all_manifests(self) -> List[DocumentManifest]:
        return list(self.manifests.values())

    def put_cache_entry(self, entry: AnswerCacheEntry) -> None:
        if self.fail_writes:
            raise StorageError("Storage operation failed: put_cache_entry")
        self.cache[entry.normalized_query] = entry

    def get_cache_entry(self, normalized_query: str) -> AnswerCacheEntry | None:
        return self.cache.get(normalized_query)

    def delete_cache_entries(self, normalized_queries: Iterable[str]) -> None:
        for query in normalized_queries:
            self.cache.pop(query, None)

    def all_cache_entries(self) -> List[AnswerCacheEntry]:
        return list(self.cache.values())

    def count_cache_entries(self) -> int:
        return len(self.cache)

    def clear(self) -> None:
        self.units.clear()
        self.manifests.clear()
        self.cache.clear()


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def backend() -> KeywordBackend:
    return KeywordBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_client(store: InMemoryStore, backend: KeywordBackend, clock: FakeClock):
    def _make(orchestrator=None, **overrides) -> KnowledgeClient:
        settings = Settings(environment="test", **overrides)
        events = ProgressChannel()
        embeddings = EmbeddingService(
            EmbeddingConfig(dim=len(VOCAB)),
            backend_factory=lambda _config: backend,
            events=events,
        )
        return KnowledgeClient(
            settings,
            store=store,
            embeddings=embeddings,
            orchestrator=orchestrator,
            events=events,
            clock=clock,
        )

    return _make
