"""Embedding backends and the async embedding service used by the pipeline."""

from __future__ import annotations

import asyncio
import hashlib
import math
from dataclasses import dataclass
from typing import Callable, List, Protocol, Sequence, Tuple

from langchain_community.embeddings import HuggingFaceEmbeddings

from localrag.errors import EmbeddingError
from localrag.events import ProgressChannel, ProgressStage
from localrag.metrics.observability import PipelineMetrics, get_logger

Vector = Tuple[float, ...]

LOGGER = get_logger("embeddings")


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dim: int = 384
    use_model: bool = False
    device: str = "auto"
    normalize: bool = True
    batch_size: int = 10
    cache_folder: str | None = None


class EmbeddingBackend(Protocol):
    """Synchronous text-to-vector capability."""

    def embed_documents(self, texts: Sequence[str]) -> Sequence[Sequence[float]]:
        """Return one vector per text."""

    def embed_query(self, text: str) -> Sequence[float]:
        """Return the vector for a single query string."""


class HashEmbeddingBackend:
    """Deterministic lightweight embedding fallback used for testing and offline runs."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def _hash_to_vector(self, text: str) -> Vector:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        vector = [byte / 255.0 for byte in raw]
        if self._config.normalize:
            return normalize(vector)
        return tuple(vector)

    def embed_documents(self, texts: Sequence[str]) -> Sequence[Vector]:
        return [self._hash_to_vector(text) for text in texts]

    def embed_query(self, text: str) -> Vector:
        return self._hash_to_vector(text)


class HuggingFaceEmbeddingBackend:
    """Sentence-transformer embeddings loaded through LangChain."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        model_kwargs = {"device": resolve_device(self._config.device)}
        if self._config.cache_folder:
            model_kwargs["cache_dir"] = self._config.cache_folder
        self._client = HuggingFaceEmbeddings(
            model_name=self._config.model,
            model_kwargs=model_kwargs,
            encode_kwargs={"normalize_embeddings": self._config.normalize},
        )
        LOGGER.info("embeddings.model_loaded", model=self._config.model, device=model_kwargs["device"])

    def embed_documents(self, texts: Sequence[str]) -> Sequence[Sequence[float]]:
        return self._client.embed_documents(list(texts))

    def embed_query(self, text: str) -> Sequence[float]:
        return self._client.embed_query(text)


def resolve_device(device: str) -> str:
    """Map ``auto`` onto the best torch device available."""

    if device != "auto":
        return device
    try:
        import torch

        if torch.cuda.is_available():
            return "cuda"
        if getattr(torch.backends, "mps", None) is not None and torch.backends.mps.is_available():
            return "mps"
    except ImportError:  # pragma: no cover
        pass
    return "cpu"


def normalize(vector: Sequence[float]) -> Vector:
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)


BackendFactory = Callable[[EmbeddingConfig], EmbeddingBackend]


def default_backend_factory(config: EmbeddingConfig) -> EmbeddingBackend:
    if not config.use_model:
        LOGGER.info("embeddings.hash_mode", dim=config.dim)
        return HashEmbeddingBackend(config)
    return HuggingFaceEmbeddingBackend(config)


class EmbeddingService:
    """Async façade over an :class:`EmbeddingBackend`.

    Model loading and inference run in worker threads. A failing backend call never
    propagates: the affected texts are embedded as zero vectors of the configured dimension.
    """

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        backend: EmbeddingBackend | None = None,
        backend_factory: BackendFactory = default_backend_factory,
        events: ProgressChannel | None = None,
    ) -> None:
        self._config = config or EmbeddingConfig()
        self._backend = backend
        self._factory = backend_factory
        self._events = events
        self._load_lock = asyncio.Lock()

    @property
    def ready(self) -> bool:
        return self._backend is not None

    @property
    def model_name(self) -> str:
        return self._config.model if self._config.use_model else f"hash-{self._config.dim}"

    @property
    def dimension(self) -> int:
        return self._config.dim

    async def load(self) -> None:
        async with self._load_lock:
            if self._backend is not None:
                return
            self._emit(ProgressStage.EMBEDDING_LOAD, f"Loading embedding model {self.model_name}...", 0)
            try:
                self._backend = await asyncio.to_thread(self._factory, self._config)
            except Exception as exc:
                self._emit(ProgressStage.ERROR, f"Failed to load embedding model: {exc}", 0)
                raise EmbeddingError(f"Failed to initialize embedding model: {exc}") from exc
            self._emit(ProgressStage.EMBEDDING_LOAD, "Embedding model ready", 100)

    async def embed(self, text: str) -> Vector:
        backend = self._require_backend()
        try:
            vector = await asyncio.to_thread(backend.embed_query, text)
        except Exception as exc:
            LOGGER.warning("embeddings.query_failed", error=str(exc))
            PipelineMetrics.embedding_fallbacks.inc()
            return self.zero_vector()
        return self._coerce(vector)

    async def embed_batch(self, texts: Sequence[str], batch_size: int | None = None) -> List[Vector]:
        backend = self._require_backend()
        size = max(1, batch_size or self._config.batch_size)
        vectors: List[Vector] = []
        for offset in range(0, len(texts), size):
            batch = list(texts[offset : offset + size])
            try:
                produced = await asyncio.to_thread(backend.embed_documents, batch)
                if len(produced) != len(batch):
                    raise ValueError(f"backend returned {len(produced)} vectors for {len(batch)} texts")
                vectors.extend(self._coerce(vector) for vector in produced)
            except Exception as exc:
                LOGGER.warning("embeddings.batch_failed", batch_size=len(batch), error=str(exc))
                PipelineMetrics.embedding_fallbacks.inc(len(batch))
                vectors.extend(self.zero_vector() for _ in batch)
            done = offset + len(batch)
            self._emit(
                ProgressStage.INDEXING,
                f"Embedding batch {offset // size + 1}...",
                round(done / len(texts) * 100),
            )
        return vectors

    def zero_vector(self) -> Vector:
        return tuple(0.0 for _ in range(self._config.dim))

    async def cleanup(self) -> None:
        self._backend = None

    def _coerce(self, vector: Sequence[float]) -> Vector:
        values = tuple(float(value) for value in vector)
        if len(values) != self._config.dim:
            LOGGER.warning("embeddings.dim_mismatch", configured=self._config.dim, actual=len(values))
        return values

    def _require_backend(self) -> EmbeddingBackend:
        if self._backend is None:
            raise EmbeddingError("Embedding model not initialized")
        return self._backend

    def _emit(self, stage: ProgressStage, message: str, progress: int) -> None:
        if self._events is not None:
            self._events.publish(stage, message, progress)
