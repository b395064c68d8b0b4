"""In-memory vector retrieval over the working set of embedded units."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Protocol, Sequence

from localrag.models import RankedResult, RetrievableUnit


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for retrieval."""

    top_k: int = 5
    similarity_threshold: float = 0.25
    use_diversity: bool = True
    diversity_threshold: float = 0.95


class Retriever(Protocol):
    """Rank stored units against a query vector."""

    def retrieve(
        self,
        query_vector: Sequence[float],
        *,
        top_k: int | None = None,
        threshold: float | None = None,
        use_diversity: bool | None = None,
        diversity_threshold: float | None = None,
    ) -> Sequence[RankedResult]:
        """Return ranked results in non-increasing similarity order."""


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``; 0.0 for zero or mismatched vectors."""

    if len(a) != len(b) or not a:
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def normalize_vector(vector: Sequence[float]) -> tuple[float, ...]:
    magnitude = math.sqrt(sum(value * value for value in vector))
    if magnitude == 0.0:
        return tuple(vector)
    return tuple(value / magnitude for value in vector)


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError("Vectors must have the same length")
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


class VectorRetriever:
    """Exhaustive cosine scoring with optional near-duplicate suppression.

    The working set is an immutable snapshot replaced wholesale by :meth:`set_units`, so a
    concurrent ``retrieve`` sees either the old or the new set, never a mix.
    """

    def __init__(self, config: RetrievalConfig | None = None) -> None:
        self._config = config or RetrievalConfig()
        self._units: tuple[RetrievableUnit, ...] = ()

    def set_units(self, units: Iterable[RetrievableUnit]) -> None:
        self._units = tuple(units)

    @property
    def units(self) -> tuple[RetrievableUnit, ...]:
        return self._units

    @property
    def count(self) -> int:
        return len(self._units)

    def get_units_by_ids(self, unit_ids: Iterable[str]) -> List[RetrievableUnit]:
        wanted = set(unit_ids)
        return [unit for unit in self._units if unit.unit_id in wanted]

    def retrieve(
        self,
        query_vector: Sequence[float],
        *,
        top_k: int | None = None,
        threshold: float | None = None,
        use_diversity: bool | None = None,
        diversity_threshold: float | None = None,
    ) -> List[RankedResult]:
        limit = self._config.top_k if top_k is None else top_k
        minimum = self._config.similarity_threshold if threshold is None else threshold
        diverse = self._config.use_diversity if use_diversity is None else use_diversity
        ceiling = self._config.diversity_threshold if diversity_threshold is None else diversity_threshold
        if limit <= 0:
            return []
        snapshot = self._units
        scored: List[RankedResult] = []
        for unit in snapshot:
            if not unit.embedding:
                continue
            similarity = cosine_similarity(query_vector, unit.embedding)
            if similarity >= minimum:
                scored.append(RankedResult(unit=unit, similarity=similarity))
        # sort is stable: equal scores keep working-set order
        scored.sort(key=lambda result: result.similarity, reverse=True)
        if not diverse:
            return scored[:limit]
        return _diversify(scored, limit, ceiling)


def _diversify(results: Sequence[RankedResult], limit: int, ceiling: float) -> List[RankedResult]:
    accepted: List[RankedResult] = []
    for candidate in results:
        if len(accepted) >= limit:
            break
        embedding = candidate.unit.embedding or ()
        if all(cosine_similarity(embedding, kept.unit.embedding or ()) < ceiling for kept in accepted):
            accepted.append(candidate)
    return accepted
