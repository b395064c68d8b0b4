from __future__ import annotations

import math

import pytest

from localrag.models import RetrievableUnit
from localrag.retrieval import RetrievalConfig, VectorRetriever, cosine_similarity, euclidean_distance, normalize_vector


def _unit(unit_id: str, vector) -> RetrievableUnit:
    return RetrievableUnit(
        unit_id=unit_id,
        document_id="doc",
        origin_label=f"doc#{unit_id}",
        text=f"text {unit_id}",
        embedding=tuple(vector) if vector is not None else None,
    )


def test_cosine_similarity_basic_identities():
    v = (0.3, -1.2, 4.0)
    assert cosine_similarity(v, v) == pytest.approx(1.0)
    assert cosine_similarity((1.0, 0.0), (0.0, 1.0)) == pytest.approx(0.0)
    assert cosine_similarity(v, tuple(-x for x in v)) == pytest.approx(-1.0)


def test_cosine_similarity_degenerate_inputs_are_zero():
    assert cosine_similarity((0.0, 0.0), (1.0, 2.0)) == 0.0
    assert cosine_similarity((1.0, 2.0), (1.0, 2.0, 3.0)) == 0.0
    assert cosine_similarity((), ()) == 0.0


def test_vector_helpers():
    normalized = normalize_vector((3.0, 4.0))
    assert normalized == pytest.approx((0.6, 0.8))
    assert normalize_vector((0.0, 0.0)) == (0.0, 0.0)
    assert euclidean_distance((0.0, 0.0), (3.0, 4.0)) == pytest.approx(5.0)
    with pytest.raises(ValueError):
        euclidean_distance((1.0,), (1.0, 2.0))


def test_retrieve_orders_and_limits_results():
    retriever = VectorRetriever(RetrievalConfig(top_k=2, similarity_threshold=0.0, use_diversity=False))
    retriever.set_units(
        [
            _unit("low", (0.2, 1.0)),
            _unit("high", (1.0, 0.0)),
            _unit("mid", (1.0, 0.6)),
        ]
    )
    results = retriever.retrieve((1.0, 0.0))
    assert [result.unit.unit_id for result in results] == ["high", "mid"]
    assert results[0].similarity >= results[1].similarity


def test_retrieve_applies_threshold_and_skips_unembedded_units():
    retriever = VectorRetriever()
    retriever.set_units([_unit("none", None), _unit("orthogonal", (0.0, 1.0)), _unit("match", (1.0, 0.1))])
    results = retriever.retrieve((1.0, 0.0), threshold=0.5)
    assert [result.unit.unit_id for result in results] == ["match"]


def test_retrieve_empty_working_set_and_zero_top_k():
    retriever = VectorRetriever()
    assert retriever.retrieve((1.0, 0.0)) == []
    retriever.set_units([_unit("a", (1.0, 0.0))])
    assert retriever.retrieve((1.0, 0.0), top_k=0) == []


def test_diversity_filter_suppresses_near_duplicates():
    retriever = VectorRetriever(RetrievalConfig(top_k=5, similarity_threshold=0.0))
    retriever.set_units(
        [
            _unit("a", (1.0, 0.0)),
            _unit("a-copy", (1.0, 0.01)),
            _unit("b", (0.7, 0.7)),
        ]
    )
    results = retriever.retrieve((1.0, 0.0), use_diversity=True, diversity_threshold=0.95)
    ids = [result.unit.unit_id for result in results]
    assert ids == ["a", "b"]
    for left in results:
        for right in results:
            if left is not right:
                assert cosine_similarity(left.unit.embedding, right.unit.embedding) < 0.95


def test_diverse_results_are_strictly_descending():
    retriever = VectorRetriever(RetrievalConfig(top_k=4, similarity_threshold=0.0))
    retriever.set_units(
        [
            _unit("far", (0.2, 1.0, 0.0)),
            _unit("best", (1.0, 0.0, 0.0)),
            _unit("best-copy", (2.0, 0.0, 0.0)),
            _unit("near", (1.0, 0.3, 0.0)),
            _unit("side", (1.0, 0.0, 0.8)),
        ]
    )
    results = retriever.retrieve((1.0, 0.0, 0.0), use_diversity=True, diversity_threshold=0.95)
    similarities = [result.similarity for result in results]
    assert [result.unit.unit_id for result in results] == ["best", "side", "far"]
    assert all(left > right for left, right in zip(similarities, similarities[1:]))


def test_ties_keep_working_set_order():
    retriever = VectorRetriever(RetrievalConfig(similarity_threshold=0.0, use_diversity=False))
    retriever.set_units([_unit("first", (1.0, 0.0)), _unit("second", (2.0, 0.0))])
    results = retriever.retrieve((1.0, 0.0))
    assert [result.unit.unit_id for result in results] == ["first", "second"]
    assert results[0].similarity == pytest.approx(results[1].similarity)


def test_set_units_replaces_snapshot():
    retriever = VectorRetriever()
    units = [_unit("a", (1.0, 0.0)), _unit("b", (0.0, 1.0))]
    retriever.set_units(units)
    snapshot = retriever.units
    retriever.set_units(units[:1])
    assert len(snapshot) == 2
    assert retriever.count == 1
    assert [unit.unit_id for unit in retriever.get_units_by_ids(["a", "missing"])] == ["a"]
    assert math.isclose(retriever.retrieve((1.0, 0.0))[0].similarity, 1.0)
