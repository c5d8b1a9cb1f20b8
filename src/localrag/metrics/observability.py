"""Observability helpers for localrag."""

from __future__ import annotations

import logging
from typing import Iterable

import structlog
from prometheus_client import CollectorRegistry, Gauge, Histogram

_logger_configured = False


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


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


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
    """Prometheus metrics for pipeline stages.

    Each instance owns its registry so independent engines (one per test or
    tenant) never collide on metric names.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.ingestion_latency = Histogram(
            "localrag_ingestion_duration_seconds",
            "Time spent ingesting documents.",
            buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self.registry,
        )
        self.ingestion_chunks = Histogram(
            "localrag_ingestion_chunk_count",
            "Chunks produced per ingested document.",
            buckets=(0, 1, 5, 10, 20, 40, 80),
            registry=self.registry,
        )
        self.retrieval_latency = Histogram(
            "localrag_retrieval_duration_seconds",
            "Time spent ranking chunks.",
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
            registry=self.registry,
        )
        self.retrieved_chunk_count = Histogram(
            "localrag_retrieved_chunk_count",
            "Number of chunks returned by a search.",
            buckets=(0, 1, 2, 3, 5, 8, 13),
            registry=self.registry,
        )
        self.result_score = Histogram(
            "localrag_result_score",
            "Scores of returned search results.",
            buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
            registry=self.registry,
        )
        self.generation_latency = Histogram(
            "localrag_generation_duration_seconds",
            "Time spent generating answers.",
            buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
            registry=self.registry,
        )
        self.storage_bytes = Gauge(
            "localrag_storage_bytes_used",
            "Bytes held by the local store per project.",
            ["project_id"],
            registry=self.registry,
        )
        self.current_spend = Gauge(
            "localrag_current_spend",
            "Spend in the current billing period per project.",
            ["project_id"],
            registry=self.registry,
        )
        self.budget_utilization = Gauge(
            "localrag_budget_utilization_percent",
            "Current spend as a percentage of the monthly budget.",
            ["project_id"],
            registry=self.registry,
        )

    def observe_ingestion(self, duration_seconds: float, chunk_count: int) -> None:
        self.ingestion_latency.observe(duration_seconds)
        self.ingestion_chunks.observe(chunk_count)

    def observe_retrieval(
        self,
        duration_seconds: float,
        chunk_count: int,
        scores: Iterable[float],
    ) -> None:
        self.retrieval_latency.observe(duration_seconds)
        self.retrieved_chunk_count.observe(chunk_count)
        for score in scores:
            self.result_score.observe(_clamp_score(score))

    def observe_generation(self, duration_seconds: float) -> None:
        self.generation_latency.observe(duration_seconds)

    def observe_storage(self, project_id: str, bytes_used: int) -> None:
        self.storage_bytes.labels(project_id=project_id).set(bytes_used)

    def observe_spend(self, project_id: str, spend: float, utilization: float) -> None:
        self.current_spend.labels(project_id=project_id).set(spend)
        self.budget_utilization.labels(project_id=project_id).set(utilization)


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_logger",
]
