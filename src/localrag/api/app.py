"""FastAPI application exposing localrag project sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Iterable, List
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from localrag.api.schemas import (
    BudgetAlertModel,
    BudgetStatusResponse,
    BudgetUpdateRequest,
    ChatHistoryResponse,
    ChatMessageModel,
    CostSummaryResponse,
    DocumentIngestionResponse,
    DocumentListResponse,
    DocumentSummary,
    EvictionRequest,
    EvictionResponse,
    JobResponse,
    QueryRequest,
    QueryResponse,
    RemovedResponse,
    SearchRequest,
    SearchResponse,
    SearchResultModel,
    StorageUsageResponse,
    TextIngestionRequest,
    UsageModel,
)
from localrag.config import Settings, get_settings
from localrag.costs import BudgetStatus
from localrag.embeddings import EmbeddingError, EmbeddingProvider
from localrag.ingestion import IngestionError, IngestionJob, SourceDocument
from localrag.metrics.observability import (
    PipelineMetrics,
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_logger,
)
from localrag.models import ChatMessage, Document, SearchAlgorithm, SearchResult, StorageUsage, UsageMetadata
from localrag.retrieval import SearchOptions
from localrag.services import (
    GenerationError,
    ProjectSession,
    TextGenerationProvider,
    build_embedder,
    build_generator,
    build_session,
    build_store,
)
from localrag.storage import LocalStore, QuotaExceededError


@dataclass
class AppDependencies:
    """Shared collaborators; one ``ProjectSession`` is built lazily per project."""

    settings: Settings
    store: LocalStore
    embedder: EmbeddingProvider
    generator: TextGenerationProvider
    metrics: PipelineMetrics
    sessions: Dict[str, ProjectSession] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock, repr=False)

    def session(self, project_id: str) -> ProjectSession:
        with self._lock:
            session = self.sessions.get(project_id)
            if session is None:
                session = build_session(
                    project_id,
                    self.settings,
                    store=self.store,
                    embedder=self.embedder,
                    generator=self.generator,
                    metrics=self.metrics,
                )
                self.sessions[project_id] = session
            return session


def _build_dependencies(settings: Settings) -> AppDependencies:
    return AppDependencies(
        settings=settings,
        store=build_store(settings),
        embedder=build_embedder(settings),
        generator=build_generator(settings),
        metrics=PipelineMetrics(),
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")
    app = FastAPI(title="localrag API", version="0.1.0")
    app.state.dependencies = deps

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def _error(request: Request, status_code: int, event: str, detail: str) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error(event, correlation_id=correlation_id, detail=detail)
        return JSONResponse(status_code=status_code, content={"detail": detail, "correlation_id": correlation_id})

    @app.exception_handler(QuotaExceededError)
    async def handle_quota_error(request: Request, exc: QuotaExceededError) -> JSONResponse:
        return _error(request, status.HTTP_507_INSUFFICIENT_STORAGE, "storage.quota_error", str(exc))

    @app.exception_handler(IngestionError)
    async def handle_ingestion_error(request: Request, exc: IngestionError) -> JSONResponse:
        return _error(request, 422, "ingestion.error", str(exc))

    @app.exception_handler(EmbeddingError)
    async def handle_embedding_error(request: Request, exc: EmbeddingError) -> JSONResponse:
        return _error(request, status.HTTP_502_BAD_GATEWAY, "embedding.error", f"{exc.provider_id}: {exc}")

    @app.exception_handler(GenerationError)
    async def handle_generation_error(request: Request, exc: GenerationError) -> JSONResponse:
        return _error(request, status.HTTP_502_BAD_GATEWAY, "generation.error", f"{exc.provider_id}: {exc}")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_session(project_id: str, dep: AppDependencies = Depends(get_dependencies)) -> ProjectSession:
        return dep.session(project_id)

    def _get_job(session: ProjectSession, job_id: str) -> IngestionJob:
        job = session.job(job_id)
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job: {job_id}")
        return job

    @app.post(
        "/projects/{project_id}/documents",
        response_model=DocumentIngestionResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def ingest_document(
        project_id: str,
        payload: TextIngestionRequest,
        session: ProjectSession = Depends(get_session),
    ) -> DocumentIngestionResponse:
        result = await session.ingest(_source(project_id, payload))
        return DocumentIngestionResponse(
            project_id=project_id,
            document=_document_summary(result.document, result.chunk_count),
            created=result.created,
        )

    @app.get("/projects/{project_id}/documents", response_model=DocumentListResponse)
    async def list_documents(project_id: str, session: ProjectSession = Depends(get_session)) -> DocumentListResponse:
        documents = [
            _document_summary(document, len(session.store.chunks_for_document(document.document_id)))
            for document in session.documents()
        ]
        return DocumentListResponse(project_id=project_id, documents=documents)

    @app.delete("/projects/{project_id}/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_document(document_id: str, session: ProjectSession = Depends(get_session)) -> Response:
        if not session.delete_document(document_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown document: {document_id}")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/projects/{project_id}/jobs", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
    async def submit_job(
        project_id: str,
        payload: TextIngestionRequest,
        session: ProjectSession = Depends(get_session),
    ) -> JobResponse:
        return _job_response(session.submit(_source(project_id, payload)))

    @app.get("/projects/{project_id}/jobs/{job_id}", response_model=JobResponse)
    async def job_status(
        job_id: str,
        wait: bool = False,
        session: ProjectSession = Depends(get_session),
    ) -> JobResponse:
        job = _get_job(session, job_id)
        if wait:
            await job.wait()
        session.release(job_id)
        return _job_response(job)

    @app.delete("/projects/{project_id}/jobs/{job_id}", response_model=JobResponse)
    async def cancel_job(job_id: str, session: ProjectSession = Depends(get_session)) -> JobResponse:
        job = _get_job(session, job_id)
        if job.cancel():
            await job.wait()
        session.release(job_id)
        return _job_response(job)

    @app.post("/projects/{project_id}/search", response_model=SearchResponse)
    async def search(
        project_id: str,
        payload: SearchRequest,
        session: ProjectSession = Depends(get_session),
    ) -> SearchResponse:
        defaults = session.orchestrator.search_options
        options = SearchOptions(
            algorithm=SearchAlgorithm(payload.algorithm) if payload.algorithm else defaults.algorithm,
            top_k=payload.top_k or defaults.top_k,
            similarity_threshold=(
                payload.similarity_threshold
                if payload.similarity_threshold is not None
                else defaults.similarity_threshold
            ),
        )
        results = await session.search(payload.query, options)
        return SearchResponse(project_id=project_id, results=_result_models(results))

    @app.post("/projects/{project_id}/query", response_model=QueryResponse)
    async def query(payload: QueryRequest, session: ProjectSession = Depends(get_session)) -> QueryResponse:
        options = None
        if payload.algorithm or payload.top_k:
            defaults = session.orchestrator.search_options
            options = SearchOptions(
                algorithm=SearchAlgorithm(payload.algorithm) if payload.algorithm else defaults.algorithm,
                top_k=payload.top_k or defaults.top_k,
                similarity_threshold=defaults.similarity_threshold,
            )
        outcome = await session.ask(payload.question, options=options)
        return QueryResponse(
            state=outcome.state.value,
            answer=outcome.answer,
            sources=_result_models(outcome.sources),
            usage=_usage_model(outcome.usage),
            error=outcome.error,
        )

    @app.get("/projects/{project_id}/chat", response_model=ChatHistoryResponse)
    async def chat_history(
        project_id: str,
        limit: int | None = None,
        session: ProjectSession = Depends(get_session),
    ) -> ChatHistoryResponse:
        messages = [_message_model(message) for message in session.chat_history(limit)]
        return ChatHistoryResponse(project_id=project_id, messages=messages)

    @app.delete("/projects/{project_id}/chat", response_model=RemovedResponse)
    async def clear_chat(session: ProjectSession = Depends(get_session)) -> RemovedResponse:
        return RemovedResponse(removed=session.clear_chat())

    @app.get("/projects/{project_id}/storage", response_model=StorageUsageResponse)
    async def storage_usage(session: ProjectSession = Depends(get_session)) -> StorageUsageResponse:
        return _storage_model(session.storage_usage())

    @app.post("/projects/{project_id}/storage/evict", response_model=EvictionResponse)
    async def evict(payload: EvictionRequest, session: ProjectSession = Depends(get_session)) -> EvictionResponse:
        evicted = session.evict(payload.bytes_needed)
        return EvictionResponse(evicted_document_ids=evicted, storage=_storage_model(session.storage_usage()))

    @app.get("/projects/{project_id}/budget", response_model=BudgetStatusResponse)
    async def budget_status(session: ProjectSession = Depends(get_session)) -> BudgetStatusResponse:
        return _budget_model(session.budget_status(), session.ledger.budget.alert_thresholds)

    @app.put("/projects/{project_id}/budget", response_model=BudgetStatusResponse)
    async def update_budget(
        payload: BudgetUpdateRequest,
        session: ProjectSession = Depends(get_session),
    ) -> BudgetStatusResponse:
        session.ledger.update_budget(payload.monthly_limit)
        return _budget_model(session.budget_status(), session.ledger.budget.alert_thresholds)

    @app.get("/projects/{project_id}/costs", response_model=CostSummaryResponse)
    async def cost_summary(session: ProjectSession = Depends(get_session)) -> CostSummaryResponse:
        ledger = session.ledger
        return CostSummaryResponse(
            current_spend=ledger.current_spend(),
            projected_monthly_cost=ledger.projected_monthly_cost(),
            utilization=ledger.utilization_percentage(),
            record_count=len(ledger.period_records()),
            breakdown={kind.value: cost for kind, cost in ledger.breakdown().items()},
        )

    @app.delete("/projects/{project_id}/costs", response_model=RemovedResponse)
    async def reset_costs(session: ProjectSession = Depends(get_session)) -> RemovedResponse:
        return RemovedResponse(removed=session.ledger.reset_metrics())

    @app.get("/metrics")
    async def metrics(dep: AppDependencies = Depends(get_dependencies)) -> Response:
        payload = generate_latest(dep.metrics.registry)
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from localrag import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    return app


def _source(project_id: str, payload: TextIngestionRequest) -> SourceDocument:
    return SourceDocument(
        project_id=project_id,
        file_name=payload.name,
        raw_text=payload.text,
        content_type=payload.content_type,
    )


def _document_summary(document: Document, chunk_count: int) -> DocumentSummary:
    return DocumentSummary(
        document_id=document.document_id,
        name=document.name,
        content_type=document.content_type,
        size_bytes=document.size_bytes,
        chunk_count=chunk_count,
        embedding_provider=document.embedding_provider,
        created_at=document.created_at,
    )


def _job_response(job: IngestionJob) -> JobResponse:
    document = None
    if job.result is not None:
        document = _document_summary(job.result.document, job.result.chunk_count)
    return JobResponse(
        job_id=job.job_id,
        project_id=job.source.project_id,
        document_name=job.source.file_name,
        status=job.status.value,
        error=job.error,
        document=document,
    )


def _result_models(results: Iterable[SearchResult]) -> List[SearchResultModel]:
    return [
        SearchResultModel(
            chunk_id=result.chunk.chunk_id,
            document_id=result.chunk.document_id,
            document_name=result.document_name,
            chunk_index=result.chunk.index,
            score=result.score,
            algorithm=result.algorithm.value,
            snippet=result.snippet,
            text=result.chunk.text,
        )
        for result in results
    ]


def _usage_model(usage: UsageMetadata | None) -> UsageModel | None:
    if usage is None:
        return None
    return UsageModel(
        tokens_used=usage.tokens_used,
        cost=usage.cost,
        latency_ms=usage.latency_ms,
        model_id=usage.model_id,
    )


def _message_model(message: ChatMessage) -> ChatMessageModel:
    return ChatMessageModel(
        message_id=message.message_id,
        role=message.role.value,
        content=message.content,
        created_at=message.created_at,
        sources=_result_models(message.sources),
        usage=_usage_model(message.usage),
        is_error=message.is_error,
    )


def _storage_model(usage: StorageUsage) -> StorageUsageResponse:
    return StorageUsageResponse(
        document_count=usage.document_count,
        chunk_count=usage.chunk_count,
        embedding_count=usage.embedding_count,
        chat_message_count=usage.chat_message_count,
        usage_record_count=usage.usage_record_count,
        bytes_used=usage.bytes_used,
        bytes_available=usage.bytes_available,
        capacity_bytes=usage.capacity_bytes,
    )


def _budget_model(budget: BudgetStatus, thresholds: Iterable[float]) -> BudgetStatusResponse:
    return BudgetStatusResponse(
        within_budget=budget.within_budget,
        current_spend=budget.current_spend,
        monthly_limit=budget.monthly_limit,
        utilization=budget.utilization,
        projected_monthly_cost=budget.projected_monthly_cost,
        alert_thresholds=list(thresholds),
        alerts=[
            BudgetAlertModel(
                threshold=alert.threshold,
                utilization=alert.utilization,
                message=alert.message,
                period=alert.period,
            )
            for alert in budget.alerts
        ],
    )
