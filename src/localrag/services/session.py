"""Per-project wiring of the ingestion, search, cost and query components."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, List

from localrag.chunking import ChunkingConfig
from localrag.config import Settings, get_settings
from localrag.costs import BudgetConfig, BudgetStatus, CostLedger, PricingTable
from localrag.embeddings import EmbeddingConfig, EmbeddingProvider, EmbeddingProviderRegistry
from localrag.ingestion import IngestionJob, IngestionPipeline, IngestionResult, SourceDocument
from localrag.metrics.observability import PipelineMetrics, get_logger
from localrag.models import ChatMessage, Document, EntityKind, SearchAlgorithm, SearchResult, StorageUsage, utcnow
from localrag.retrieval import HybridWeights, SearchEngine, SearchOptions
from localrag.services.generation import (
    GenerationConfig,
    GenerationOptions,
    GenerationProviderRegistry,
    TextGenerationProvider,
)
from localrag.services.query import PromptBuilder, PromptBuilderConfig, QueryOrchestrator, QueryOutcome
from localrag.storage import LocalStore, MemoryBackend, PersistenceBackend, SqlBackend


class ProjectSession:
    """Everything one project needs, with ingestion and queries serialized.

    Sessions for different projects may share a ``LocalStore`` but nothing
    else. Background jobs are tracked until their terminal status has been
    read through ``release``; at most ``max_jobs`` are kept, dropping the
    oldest finished ones first.
    """

    def __init__(
        self,
        project_id: str,
        store: LocalStore,
        *,
        pipeline: IngestionPipeline,
        search_engine: SearchEngine,
        ledger: CostLedger,
        orchestrator: QueryOrchestrator,
        lock: asyncio.Lock,
        max_jobs: int = 1000,
    ) -> None:
        self.project_id = project_id
        self.store = store
        self.pipeline = pipeline
        self.search_engine = search_engine
        self.ledger = ledger
        self.orchestrator = orchestrator
        self._lock = lock
        self._jobs: dict[str, IngestionJob] = {}
        self._max_jobs = max_jobs

    async def ingest(self, source: SourceDocument) -> IngestionResult:
        async with self._lock:
            return await self.pipeline.ingest(self._own(source))

    def submit(self, source: SourceDocument) -> IngestionJob:
        job = self.pipeline.submit(self._own(source))
        self._jobs[job.job_id] = job
        self._prune()
        return job

    def job(self, job_id: str) -> IngestionJob | None:
        return self._jobs.get(job_id)

    def release(self, job_id: str) -> bool:
        """Stop tracking a finished job. Jobs still running are kept."""

        job = self._jobs.get(job_id)
        if job is None or not job.status.is_terminal:
            return False
        del self._jobs[job_id]
        return True

    def _prune(self) -> None:
        # dicts keep insertion order, so the first finished jobs are the oldest
        finished = [job_id for job_id, job in self._jobs.items() if job.status.is_terminal]
        for job_id in finished[: max(0, len(self._jobs) - self._max_jobs)]:
            del self._jobs[job_id]

    async def search(self, query: str, options: SearchOptions | None = None) -> List[SearchResult]:
        async with self._lock:
            return await self.search_engine.search(self.project_id, query, options or self.orchestrator.search_options)

    async def ask(self, question: str, *, options: SearchOptions | None = None) -> QueryOutcome:
        async with self._lock:
            return await self.orchestrator.ask(question, search_options=options)

    def documents(self) -> List[Document]:
        return self.store.query(self.project_id, EntityKind.DOCUMENT)

    def delete_document(self, document_id: str) -> bool:
        document = self.store.get(EntityKind.DOCUMENT, document_id)
        if document is None or document.project_id != self.project_id:
            return False
        return self.store.delete(document_id)

    def chat_history(self, limit: int | None = None) -> List[ChatMessage]:
        return self.store.chat_history(self.project_id, limit)

    def clear_chat(self) -> int:
        return self.store.clear_chat(self.project_id)

    def storage_usage(self) -> StorageUsage:
        return self.store.usage(self.project_id)

    def evict(self, bytes_needed: int) -> List[str]:
        return self.store.evict_oldest(self.project_id, bytes_needed)

    def budget_status(self) -> BudgetStatus:
        return self.ledger.check_budget()

    def _own(self, source: SourceDocument) -> SourceDocument:
        if source.project_id != self.project_id:
            raise ValueError(f"Document belongs to project {source.project_id}, not {self.project_id}")
        return source


def build_backend(settings: Settings) -> PersistenceBackend:
    if settings.storage_backend == "sql":
        return SqlBackend(settings.resolved_database_url)
    return MemoryBackend()


def build_store(settings: Settings | None = None) -> LocalStore:
    settings = settings or get_settings()
    return LocalStore(build_backend(settings), capacity_bytes=settings.storage_capacity_bytes)


def build_embedder(settings: Settings, registry: EmbeddingProviderRegistry | None = None) -> EmbeddingProvider:
    registry = registry or EmbeddingProviderRegistry()
    return registry.create(settings.embedding_provider, EmbeddingConfig.from_settings(settings))


def build_generator(settings: Settings, registry: GenerationProviderRegistry | None = None) -> TextGenerationProvider:
    registry = registry or GenerationProviderRegistry()
    return registry.create(settings.generation_provider, GenerationConfig.from_settings(settings))


def build_session(
    project_id: str,
    settings: Settings | None = None,
    *,
    store: LocalStore | None = None,
    embedder: EmbeddingProvider | None = None,
    generator: TextGenerationProvider | None = None,
    metrics: PipelineMetrics | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> ProjectSession:
    """Construct a session; collaborators not passed in are built from ``settings``."""

    settings = settings or get_settings()
    store = store or build_store(settings)
    embedder = embedder or build_embedder(settings)
    generator = generator or build_generator(settings)
    lock = asyncio.Lock()

    ledger = CostLedger(
        store,
        project_id,
        pricing=PricingTable.from_settings(settings),
        budget=BudgetConfig(
            monthly_limit=settings.monthly_budget,
            alert_thresholds=tuple(settings.budget_alert_thresholds),
        ),
        clock=clock,
        metrics=metrics,
    )
    search_engine = SearchEngine(
        store,
        embedder,
        weights=HybridWeights(keyword=settings.hybrid_keyword_weight, semantic=settings.hybrid_semantic_weight),
        usage_sink=ledger,
        metrics=metrics,
    )
    pipeline = IngestionPipeline(
        store,
        embedder,
        chunking=ChunkingConfig(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap),
        usage_sink=ledger,
        metrics=metrics,
        lock=lock,
    )
    orchestrator = QueryOrchestrator(
        project_id,
        store,
        search_engine,
        generator,
        usage_sink=ledger,
        search_options=SearchOptions(
            algorithm=SearchAlgorithm(settings.search_algorithm),
            top_k=settings.search_top_k,
            similarity_threshold=settings.similarity_threshold,
        ),
        generation_options=GenerationOptions(
            temperature=settings.generator_temperature,
            max_tokens=settings.generator_max_new_tokens,
        ),
        prompt_builder=PromptBuilder(PromptBuilderConfig(max_context_chars=settings.max_context_chars)),
        metrics=metrics,
    )
    get_logger("session").info(
        "session.created",
        project_id=project_id,
        embedding_provider=embedder.provider_id,
        generation_provider=generator.provider_id,
    )
    return ProjectSession(
        project_id,
        store,
        pipeline=pipeline,
        search_engine=search_engine,
        ledger=ledger,
        orchestrator=orchestrator,
        lock=lock,
        max_jobs=settings.max_tracked_jobs,
    )
