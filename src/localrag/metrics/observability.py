"""Observability helpers for localrag."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "localrag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    ingestion_latency = Histogram(
        "localrag_ingestion_duration_seconds",
        "Time spent ingesting a knowledge source.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
    )
    ingestion_units = Histogram(
        "localrag_ingestion_unit_count",
        "Units produced per ingested source.",
        buckets=(0, 1, 5, 10, 20, 40, 80),
    )
    ingestion_skipped = Counter(
        "localrag_ingestion_skipped_total",
        "Sources skipped because their checksum was unchanged.",
    )
    retrieval_latency = Histogram(
        "localrag_retrieval_duration_seconds",
        "Time spent embedding the query and scoring units.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_unit_count = Histogram(
        "localrag_retrieved_unit_count",
        "Number of units returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    similarity_score = Histogram(
        "localrag_similarity_score",
        "Cosine similarity of retrieved units.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    generation_latency = Histogram(
        "localrag_generation_duration_seconds",
        "Time spent waiting on a generation provider.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
    )
    generation_outcomes = Counter(
        "localrag_generation_outcomes_total",
        "Generation attempts by provider and outcome.",
        ["provider", "outcome"],
    )
    query_types = Counter(
        "localrag_query_type_total",
        "Queries by classified type.",
        ["query_type"],
    )
    cache_lookups = Counter(
        "localrag_answer_cache_lookups_total",
        "Answer cache lookups by result.",
        ["result"],
    )
    embedding_fallbacks = Counter(
        "localrag_embedding_fallback_total",
        "Texts embedded as zero vectors after a backend failure.",
    )
    unit_count = Gauge(
        "localrag_unit_count",
        "Units in the retriever working set.",
    )

    @classmethod
    def observe_ingestion(cls, duration_seconds: float, unit_count: int) -> None:
        cls.ingestion_latency.observe(duration_seconds)
        cls.ingestion_units.observe(unit_count)

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        result_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_unit_count.observe(result_count)
        for score in scores:
            cls.similarity_score.observe(_clamp_score(score))

    @classmethod
    def observe_generation(cls, duration_seconds: float, provider: str, outcome: str) -> None:
        cls.generation_latency.observe(duration_seconds)
        cls.generation_outcomes.labels(provider=provider, outcome=outcome).inc()


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
