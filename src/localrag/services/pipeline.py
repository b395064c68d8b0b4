"""Pipeline controller exposing ingest and question answering over local knowledge."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

import chromadb
import httpx

from localrag.config import Settings, get_settings
from localrag.embeddings import EmbeddingConfig, EmbeddingService
from localrag.errors import (
    GenerationError,
    GenerationTimeoutError,
    GenerationUnavailableError,
    InvalidQueryError,
    NotInitializedError,
)
from localrag.events import ProgressChannel, ProgressStage
from localrag.generation import GenerateOptions, GenerationOrchestrator, OrchestratorStatus
from localrag.ingestion import ChunkingConfig, KnowledgeSource, create_units, resolve_source
from localrag.metrics.observability import PipelineMetrics, get_logger
from localrag.models import (
    Answer,
    ConversationTurn,
    DocumentManifest,
    ProviderId,
    QueryType,
    RankedResult,
    Timing,
)
from localrag.retrieval import RetrievalConfig, VectorRetriever
from localrag.services.answerer import (
    build_context,
    build_generation_prompt,
    extract_result_urls,
    first_sentence,
    format_answer,
    synthesize_answer,
)
from localrag.services.classifier import (
    classify_query,
    conversational_response,
    out_of_scope_response,
    should_generate,
)
from localrag.storage import AnswerCache, ChromaKnowledgeStore, KnowledgeStore
from localrag.text import clean_text, hash_text, normalize_query

LOGGER = get_logger("pipeline")


class PipelineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


@dataclass(frozen=True)
class AskOptions:
    """Per-call overrides for :meth:`KnowledgeClient.ask`."""

    top_k: int | None = None
    generation_enabled: bool | None = None
    history: Sequence[ConversationTurn] = ()
    generation_timeout: float | None = None


@dataclass(frozen=True)
class IngestResult:
    document_id: str
    unit_count: int
    skipped: bool
    version_label: str
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "unit_count": self.unit_count,
            "skipped": self.skipped,
            "version_label": self.version_label,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class PipelineStatus:
    state: PipelineState
    embedding_ready: bool
    embedding_model: str
    unit_count: int
    document_count: int
    cache_entries: int
    max_cache_entries: int
    generation: OrchestratorStatus | None = None
    documents: Sequence[Mapping[str, Any]] = field(default_factory=tuple)

    @property
    def ready(self) -> bool:
        return self.state is PipelineState.READY

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "ready": self.ready,
            "embedding": {"ready": self.embedding_ready, "model": self.embedding_model},
            "generation": self.generation.to_dict() if self.generation else None,
            "storage": {
                "unit_count": self.unit_count,
                "cache_entries": self.cache_entries,
                "max_cache_entries": self.max_cache_entries,
            },
            "knowledge_base": {"document_count": self.document_count, "documents": list(self.documents)},
        }


class KnowledgeClient:
    """Owns the store, embedding service, retriever and orchestrator for one knowledge base.

    ``ask`` and ``load_knowledge`` are not mutually exclusive. A query running during an
    ingestion sees either the previous or the refreshed working set, never a partial one,
    but it may observe the knowledge base mid-update.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: KnowledgeStore,
        embeddings: EmbeddingService,
        retriever: VectorRetriever | None = None,
        orchestrator: GenerationOrchestrator | None = None,
        events: ProgressChannel | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._store = store
        self._embeddings = embeddings
        self._retriever = retriever or VectorRetriever(
            RetrievalConfig(
                top_k=settings.top_k,
                similarity_threshold=settings.similarity_threshold,
                use_diversity=settings.use_diversity,
                diversity_threshold=settings.diversity_threshold,
            )
        )
        self._orchestrator = orchestrator
        self.events = events or ProgressChannel()
        self._http_client = http_client
        self._clock = clock
        self._cache = AnswerCache(
            store,
            ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.max_cache_size,
            clock=clock,
        )
        self._chunking = ChunkingConfig(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            min_chunk_size=settings.min_chunk_size,
        )
        self._state = PipelineState.UNINITIALIZED
        self._init_lock = asyncio.Lock()
        self._init_task: asyncio.Task[None] | None = None
        self._generation_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "KnowledgeClient":
        settings = settings or get_settings()
        chroma_client = None
        if settings.chroma_host:
            chroma_client = chromadb.HttpClient(
                host=settings.chroma_host,
                port=settings.chroma_port or 8000,
                ssl=settings.chroma_ssl,
            )
        store = ChromaKnowledgeStore(
            settings.chroma_collection_prefix,
            client=chroma_client,
            persist_directory=settings.chroma_persist_dir,
        )
        events = ProgressChannel()
        embeddings = EmbeddingService(
            EmbeddingConfig(
                model=settings.embedding_model_name,
                dim=settings.embedding_dim,
                use_model=settings.use_model_embeddings,
                device=settings.embedding_device,
                batch_size=settings.embedding_batch_size,
            ),
            events=events,
        )
        orchestrator = GenerationOrchestrator.from_settings(settings) if settings.generation_enabled else None
        return cls(settings, store=store, embeddings=embeddings, orchestrator=orchestrator, events=events)

    @property
    def state(self) -> PipelineState:
        return self._state

    async def initialize(self) -> None:
        if self._state is PipelineState.READY:
            return
        if self._state is PipelineState.CLOSED:
            raise NotInitializedError("Client has been destroyed")
        async with self._init_lock:
            if self._init_task is None or self._init_task.done():
                self._init_task = asyncio.create_task(self._initialize())
            task = self._init_task
        await asyncio.shield(task)

    async def _initialize(self) -> None:
        if self._state is PipelineState.READY:
            return
        self._state = PipelineState.INITIALIZING
        self._emit(ProgressStage.INIT, "Initializing knowledge base...", 0)
        try:
            await asyncio.to_thread(self._store.open)
            await self._cache.evict_expired()
            await self._cache.enforce_limit()
            await self._embeddings.load()
            await self._refresh_working_set()
            if self._orchestrator is not None and self._settings.generation_enabled:
                self._generation_task = asyncio.create_task(self._initialize_generation())
        except Exception as exc:
            self._state = PipelineState.UNINITIALIZED
            self._emit(ProgressStage.ERROR, f"Initialization failed: {exc}", 0)
            LOGGER.error("pipeline.init_failed", error=str(exc))
            raise
        self._state = PipelineState.READY
        self._emit(ProgressStage.COMPLETE, "Knowledge base ready", 100)
        LOGGER.info("pipeline.ready", unit_count=self._retriever.count)

    async def _initialize_generation(self) -> None:
        assert self._orchestrator is not None
        self._emit(ProgressStage.GENERATION_LOAD, "Loading generation provider...", 0)
        try:
            await self._orchestrator.initialize()
        except Exception as exc:
            LOGGER.warning("pipeline.generation_init_failed", error=str(exc))
            self._emit(ProgressStage.GENERATION_LOAD, "Generation unavailable, answering from retrieval only", 100)
            return
        provider = self._orchestrator.active_provider
        if provider is None:
            self._emit(ProgressStage.GENERATION_LOAD, "No generation provider available, retrieval only", 100)
        else:
            self._emit(ProgressStage.GENERATION_LOAD, f"Generation ready ({provider.value})", 100)

    async def destroy(self) -> None:
        if self._state is PipelineState.CLOSED:
            return
        for task in (self._generation_task, self._init_task):
            if task is not None and not task.done():
                task.cancel()
        if self._orchestrator is not None:
            await self._orchestrator.cleanup()
        await self._embeddings.cleanup()
        await asyncio.to_thread(self._store.close)
        self._retriever.set_units(())
        self._state = PipelineState.CLOSED
        self.events.close()
        LOGGER.info("pipeline.closed")

    async def load_knowledge(self, source: KnowledgeSource) -> IngestResult:
        """Ingest ``source``; unchanged content is skipped based on the stored manifest checksum."""

        self._require_ready()
        started = time.perf_counter()
        self._emit(ProgressStage.INDEXING, "Processing knowledge source...", 0)
        try:
            resolved = await resolve_source(source, http_client=self._http_client)
            document_id = resolved.document_id
            text = clean_text(resolved.text)
            checksum = hash_text(text)
            existing = await asyncio.to_thread(self._store.get_manifest, document_id)
            if existing is not None and existing.content_checksum == checksum:
                PipelineMetrics.ingestion_skipped.inc()
                LOGGER.info("ingestion.unchanged", document_id=document_id)
                self._emit(ProgressStage.COMPLETE, f"Document {document_id} unchanged", 100)
                return IngestResult(
                    document_id=document_id,
                    unit_count=existing.unit_count,
                    skipped=True,
                    version_label=existing.version_label,
                    duration_ms=(time.perf_counter() - started) * 1000,
                )
            self._emit(ProgressStage.INDEXING, f"Chunking document {document_id}...", 10)
            units = create_units(text, document_id, self._chunking, metadata=resolved.metadata)
            self._emit(ProgressStage.INDEXING, f"Embedding {len(units)} chunks...", 25)
            vectors = await self._embeddings.embed_batch([unit.text for unit in units])
            embedded = [unit.with_embedding(vector) for unit, vector in zip(units, vectors)]

            self._emit(ProgressStage.INDEXING, "Saving to storage...", 90)
            try:
                # the manifest is written last; a document without one is re-ingested in full
                if existing is not None:
                    await asyncio.to_thread(self._store.delete_manifest, document_id)
                removed = await asyncio.to_thread(self._store.delete_units_by_document, document_id)
                if removed:
                    LOGGER.info("ingestion.replacing", document_id=document_id, removed_units=removed)
                await asyncio.to_thread(self._store.put_units, embedded)
                manifest = DocumentManifest(
                    document_id=document_id,
                    content_checksum=checksum,
                    version_label=_next_version(existing),
                    updated_at=self._clock(),
                    unit_count=len(embedded),
                )
                await asyncio.to_thread(self._store.put_manifest, manifest)
            finally:
                await self._refresh_working_set()
        except Exception as exc:
            self._emit(ProgressStage.ERROR, str(exc), 0)
            LOGGER.error("ingestion.failed", error=str(exc))
            raise

        duration = time.perf_counter() - started
        PipelineMetrics.observe_ingestion(duration, len(embedded))
        LOGGER.info(
            "ingestion.complete",
            document_id=document_id,
            unit_count=len(embedded),
            version=manifest.version_label,
            duration_seconds=duration,
        )
        self._emit(ProgressStage.COMPLETE, f"Indexed {len(embedded)} chunks", 100)
        return IngestResult(
            document_id=document_id,
            unit_count=len(embedded),
            skipped=False,
            version_label=manifest.version_label,
            duration_ms=duration * 1000,
        )

    async def _refresh_working_set(self) -> None:
        units = await asyncio.to_thread(self._store.all_units)
        self._retriever.set_units(units)
        PipelineMetrics.unit_count.set(len(units))

    async def ask(self, query: str, options: AskOptions | None = None) -> Answer:
        self._require_ready()
        if not query or not query.strip():
            raise InvalidQueryError("Query cannot be empty")
        options = options or AskOptions()
        started = time.perf_counter()

        query_type = classify_query(query)
        PipelineMetrics.query_types.labels(query_type=query_type.value).inc()
        if query_type is QueryType.CONVERSATIONAL:
            return _short_circuit(conversational_response(query), 1.0, query_type, "conversational", started)
        if query_type is QueryType.OUT_OF_SCOPE:
            return _short_circuit(out_of_scope_response(), 0.0, query_type, "out_of_scope", started)

        try:
            return await self._answer(query, query_type, options, started)
        except Exception as exc:
            self._emit(ProgressStage.ERROR, str(exc), 0)
            raise

    async def _answer(self, query: str, query_type: QueryType, options: AskOptions, started: float) -> Answer:
        settings = self._settings
        normalized = normalize_query(query)
        cached = await self._cache.get(normalized)
        if cached is not None:
            LOGGER.info("ask.cache_hit", query=normalized)
            return cached

        self._emit(ProgressStage.RETRIEVAL, "Searching knowledge base...", 0)
        vector = await self._embeddings.embed(normalized)
        results = self._retriever.retrieve(
            vector,
            top_k=options.top_k or settings.top_k,
            threshold=settings.similarity_threshold,
            use_diversity=settings.use_diversity,
            diversity_threshold=settings.diversity_threshold,
        )
        retrieval_seconds = time.perf_counter() - started
        PipelineMetrics.observe_retrieval(retrieval_seconds, len(results), (result.similarity for result in results))
        LOGGER.info(
            "retrieval.complete",
            query=normalized,
            result_count=len(results),
            top_similarity=results[0].similarity if results else 0.0,
            duration_seconds=retrieval_seconds,
        )

        synthesis = synthesize_answer(
            query,
            results,
            max_sources=settings.max_sources,
            confidence_threshold=settings.direct_answer_threshold,
        )
        text = synthesis.text
        sources = synthesis.sources
        if settings.single_answer_mode and results:
            text = first_sentence(results[0].unit.text, settings.answer_length_limit)
            sources = sources[:1]

        provider: ProviderId | None = None
        route = "extractive"
        generation_start = time.perf_counter()
        reason = self._gate(query_type, results, synthesis.confidence, options)
        if reason is None:
            generated, reason = await self._generate(query, results, synthesis.confidence, options)
            if generated is not None:
                text = generated
                provider = self._orchestrator.active_provider if self._orchestrator else None
                route = "generated"
        generation_ms = (time.perf_counter() - generation_start) * 1000

        if route == "generated" or not settings.single_answer_mode:
            text = format_answer(text, extract_result_urls(results))

        answer = Answer(
            text=text,
            sources=tuple(sources),
            confidence=synthesis.confidence,
            timing=Timing(
                retrieval_ms=retrieval_seconds * 1000,
                generation_ms=generation_ms,
                total_ms=(time.perf_counter() - started) * 1000,
            ),
            provider=provider,
            query_type=query_type,
            route=route,
            metadata={
                "gating": reason,
                "top_similarity": results[0].similarity if results else 0.0,
                "result_count": len(results),
            },
        )
        await self._cache.put(normalized, answer)
        await self._cache.enforce_limit()
        self._emit(ProgressStage.COMPLETE, "Answer generated", 100)
        return answer

    def _gate(
        self,
        query_type: QueryType,
        results: Sequence[RankedResult],
        confidence: float,
        options: AskOptions,
    ) -> str | None:
        """Return why generation is skipped, or ``None`` when it may run."""

        settings = self._settings
        enabled = settings.generation_enabled if options.generation_enabled is None else options.generation_enabled
        if not enabled:
            return "generation_disabled"
        if self._orchestrator is None:
            return "no_orchestrator"
        if not should_generate(query_type, enabled):
            return "query_type"
        if not results:
            return "no_results"
        if self._retriever.count < settings.min_units_for_generation:
            return "insufficient_units"
        if results[0].similarity < settings.min_generation_similarity:
            return "low_similarity"
        if settings.strict_rag and confidence >= settings.good_enough_confidence:
            return "confident_extractive"
        return None

    async def _generate(
        self,
        query: str,
        results: Sequence[RankedResult],
        confidence: float,
        options: AskOptions,
    ) -> tuple[str | None, str | None]:
        assert self._orchestrator is not None
        settings = self._settings
        context = build_context(results, settings.max_context_chars)
        prompt = build_generation_prompt(query, context, options.history)
        timeout = options.generation_timeout
        if timeout is None:
            timeout = (
                settings.generation_timeout_low_seconds
                if confidence < settings.medium_confidence
                else settings.generation_timeout_medium_seconds
            )
        self._emit(ProgressStage.GENERATION, "Enhancing answer...", 0)
        try:
            generated = await self._orchestrator.generate(prompt, GenerateOptions(context=context, timeout=timeout))
        except GenerationTimeoutError:
            return None, "generation_timeout"
        except GenerationUnavailableError:
            return None, "generation_unavailable"
        except GenerationError as exc:
            LOGGER.warning("ask.generation_failed", error=str(exc))
            return None, "generation_failed"
        generated = generated.strip()
        if len(generated) <= settings.min_generated_chars:
            return None, "short_generation"
        return generated, None

    async def get_status(self) -> PipelineStatus:
        unit_count = document_count = cache_entries = 0
        documents: list[dict[str, Any]] = []
        if self._state is PipelineState.READY:
            manifests = await asyncio.to_thread(self._store.all_manifests)
            unit_count = await asyncio.to_thread(self._store.count_units)
            cache_entries = (await self._cache.stats()).entries
            document_count = len(manifests)
            documents = [
                {
                    "document_id": manifest.document_id,
                    "version_label": manifest.version_label,
                    "unit_count": manifest.unit_count,
                    "updated_at": manifest.updated_at,
                }
                for manifest in manifests
            ]
        return PipelineStatus(
            state=self._state,
            embedding_ready=self._embeddings.ready,
            embedding_model=self._embeddings.model_name,
            unit_count=unit_count,
            document_count=document_count,
            cache_entries=cache_entries,
            max_cache_entries=self._settings.max_cache_size,
            generation=self._orchestrator.status() if self._orchestrator else None,
            documents=tuple(documents),
        )

    async def clear(self) -> None:
        self._require_ready()
        await asyncio.to_thread(self._store.clear)
        self._retriever.set_units(())
        PipelineMetrics.unit_count.set(0)
        LOGGER.info("pipeline.cleared")
        self._emit(ProgressStage.COMPLETE, "Knowledge base cleared", 100)

    def _require_ready(self) -> None:
        if self._state is not PipelineState.READY:
            raise NotInitializedError("Client not initialized. Call initialize() first.")

    def _emit(self, stage: ProgressStage, message: str, progress: int) -> None:
        self.events.publish(stage, message, progress)


def _short_circuit(text: str, confidence: float, query_type: QueryType, route: str, started: float) -> Answer:
    elapsed_ms = (time.perf_counter() - started) * 1000
    return Answer(
        text=text,
        sources=(),
        confidence=confidence,
        timing=Timing(retrieval_ms=0.0, generation_ms=elapsed_ms, total_ms=elapsed_ms),
        provider=None,
        query_type=query_type,
        route=route,
    )


def _next_version(existing: DocumentManifest | None) -> str:
    if existing is None:
        return "1"
    try:
        return str(int(existing.version_label) + 1)
    except ValueError:
        return f"{existing.version_label}+1"


__all__ = [
    "AskOptions",
    "IngestResult",
    "KnowledgeClient",
    "PipelineState",
    "PipelineStatus",
]
