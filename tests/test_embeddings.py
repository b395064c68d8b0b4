from __future__ import annotations

import math

import pytest

from localrag.embeddings import EmbeddingConfig, EmbeddingService, HashEmbeddingBackend
from localrag.embeddings.service import default_backend_factory, resolve_device
from localrag.errors import EmbeddingError
from localrag.events import ProgressChannel, ProgressStage


class FlakyBackend:
    def __init__(self, dim: int, fail_on: str | None = None) -> None:
        self.dim = dim
        self.fail_on = fail_on
        self.batches = []

    def embed_documents(self, texts):
        self.batches.append(list(texts))
        if self.fail_on is not None and self.fail_on in texts:
            raise RuntimeError("backend exploded")
        return [[float(len(text))] * self.dim for text in texts]

    def embed_query(self, text):
        if text == self.fail_on:
            raise RuntimeError("backend exploded")
        return [1.0] * self.dim


def test_hash_backend_is_deterministic_and_normalized():
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=48))
    first = backend.embed_query("hello world")
    assert len(first) == 48
    assert first == backend.embed_documents(["hello world"])[0]
    assert math.isclose(math.sqrt(sum(value * value for value in first)), 1.0)
    assert first != backend.embed_query("hello there")


def test_default_factory_uses_hash_backend_without_model():
    assert isinstance(default_backend_factory(EmbeddingConfig(use_model=False)), HashEmbeddingBackend)
    assert resolve_device("cpu") == "cpu"


async def test_embedding_service_requires_load():
    service = EmbeddingService(EmbeddingConfig(dim=4), backend_factory=lambda config: FlakyBackend(config.dim))
    assert not service.ready
    with pytest.raises(EmbeddingError):
        await service.embed("text")

    await service.load()

    assert service.ready
    assert await service.embed("text") == (1.0, 1.0, 1.0, 1.0)
    assert service.model_name == "hash-4"


async def test_load_failure_raises_embedding_error_and_emits_error():
    events = ProgressChannel()
    seen = []
    events.subscribe(seen.append)

    def broken_factory(config):
        raise OSError("model files missing")

    service = EmbeddingService(EmbeddingConfig(dim=4), backend_factory=broken_factory, events=events)
    with pytest.raises(EmbeddingError):
        await service.load()

    assert [event.stage for event in seen] == [ProgressStage.EMBEDDING_LOAD, ProgressStage.ERROR]
    assert not service.ready


async def test_query_failure_falls_back_to_zero_vector():
    service = EmbeddingService(EmbeddingConfig(dim=3), backend=FlakyBackend(3, fail_on="bad"))
    assert await service.embed("bad") == (0.0, 0.0, 0.0)


async def test_embed_batch_splits_and_reports_progress():
    events = ProgressChannel()
    seen = []
    events.subscribe(seen.append)
    backend = FlakyBackend(2, fail_on="boom")
    service = EmbeddingService(EmbeddingConfig(dim=2, batch_size=2), backend=backend, events=events)

    vectors = await service.embed_batch(["a", "bb", "boom", "dddd", "e"])

    assert [len(batch) for batch in backend.batches] == [2, 2, 1]
    assert vectors == [(1.0, 1.0), (2.0, 2.0), (0.0, 0.0), (0.0, 0.0), (1.0, 1.0)]
    assert [event.progress for event in seen] == [40, 80, 100]
    assert all(event.stage is ProgressStage.INDEXING for event in seen)


async def test_cleanup_unloads_backend():
    service = EmbeddingService(EmbeddingConfig(dim=2), backend=FlakyBackend(2))
    await service.cleanup()
    assert not service.ready
