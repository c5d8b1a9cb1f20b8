"""Document ingestion pipeline for localrag."""

from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
from uuid import NAMESPACE_URL, uuid4, uuid5

from localrag.chunking import ChunkingConfig, WindowTextSplitter, estimate_tokens, tokenize
from localrag.costs import UsageSink
from localrag.embeddings import EmbeddingError, EmbeddingProvider
from localrag.ingestion.sources import SourceDocument
from localrag.metrics.observability import PipelineMetrics, get_logger
from localrag.models import Chunk, Document, Embedding, EntityKind, OperationKind, UsageRecord, utcnow
from localrag.storage import LocalStore


class IngestionError(RuntimeError):
    """Raised when a document cannot be chunked, embedded or accepted."""

    def __init__(self, document_name: str, reason: str) -> None:
        super().__init__(f"Failed to ingest {document_name}: {reason}")
        self.document_name = document_name
        self.reason = reason


@dataclass(frozen=True)
class IngestionResult:
    document: Document
    chunk_count: int
    created: bool


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class IngestionJob:
    """Background ingestion of one document.

    ``status`` can be read any number of times without side effects and
    ``wait()`` returns as soon as the job reaches a terminal status.
    """

    def __init__(self, source: SourceDocument) -> None:
        self.job_id = uuid4().hex
        self.source = source
        self.status = JobStatus.PENDING
        self.result: Optional[IngestionResult] = None
        self.error: Optional[str] = None
        self.exception: Optional[BaseException] = None
        self._task: Optional[asyncio.Task] = None
        self._done = asyncio.Event()

    def _attach(self, task: asyncio.Task) -> None:
        self._task = task
        task.add_done_callback(self._finish)

    def _finish(self, task: asyncio.Task) -> None:
        if task.cancelled():
            self.status = JobStatus.FAILED
            self.error = "ingestion cancelled"
        elif task.exception() is not None:
            self.status = JobStatus.FAILED
            self.exception = task.exception()
            self.error = str(self.exception)
        else:
            self.status = JobStatus.COMPLETED
            self.result = task.result()
        self._done.set()

    async def wait(self) -> JobStatus:
        await self._done.wait()
        return self.status

    def cancel(self) -> bool:
        if self._task is None or self._task.done():
            return False
        return self._task.cancel()


class IngestionPipeline:
    """Chunk, embed and persist documents for a single project.

    Document, chunks and embeddings are written in one batch once every
    embedding is available, so a failure or cancellation before that point
    leaves the store untouched.
    """

    _logger = get_logger("ingestion")

    def __init__(
        self,
        store: LocalStore,
        embedder: EmbeddingProvider,
        *,
        chunking: ChunkingConfig | None = None,
        usage_sink: UsageSink | None = None,
        metrics: PipelineMetrics | None = None,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._splitter = WindowTextSplitter(chunking)
        self._usage_sink = usage_sink
        self._metrics = metrics
        self._lock = lock

    @property
    def chunking(self) -> ChunkingConfig:
        return self._splitter.config

    def submit(self, source: SourceDocument) -> IngestionJob:
        """Start ingesting ``source`` in the background. Requires a running event loop."""

        job = IngestionJob(source)
        job._attach(asyncio.create_task(self._run(job)))
        self._logger.info("ingestion.submitted", job_id=job.job_id, document=source.file_name)
        return job

    async def _run(self, job: IngestionJob) -> IngestionResult:
        if self._lock is None:
            job.status = JobStatus.PROCESSING
            return await self.ingest(job.source)
        async with self._lock:
            job.status = JobStatus.PROCESSING
            return await self.ingest(job.source)

    async def ingest(self, source: SourceDocument) -> IngestionResult:
        start = time.perf_counter()
        name = source.file_name
        if not source.raw_text.strip():
            raise IngestionError(name, "document has no text")

        content_hash = hashlib.sha256(source.raw_text.encode("utf-8")).hexdigest()
        document_id = uuid5(NAMESPACE_URL, f"{source.project_id}/{name}/{content_hash}").hex
        existing = self._store.get(EntityKind.DOCUMENT, document_id)
        if existing is not None:
            chunk_count = len(self._store.chunks_for_document(document_id))
            self._logger.info("ingestion.unchanged", document_id=document_id, document=name)
            return IngestionResult(document=existing, chunk_count=chunk_count, created=False)

        provider_id = self._embedder.provider_id
        dimension = self._embedder.dimension
        space = self._store.embedding_space(source.project_id)
        if space is not None and space != (provider_id, dimension):
            raise IngestionError(
                name,
                f"project embeddings come from {space[0]} ({space[1]} dims), "
                f"current provider is {provider_id} ({dimension} dims)",
            )

        spans = self._splitter.split_spans(source.raw_text)
        texts = [span.text for span in spans]
        try:
            vectors = await self._embedder.embed_batch(texts)
        except EmbeddingError as exc:
            self._logger.warning(
                "ingestion.embedding_failed",
                document=name,
                provider_id=exc.provider_id,
                operation=exc.operation,
            )
            raise IngestionError(name, str(exc)) from exc
        if len(vectors) != len(spans) or any(len(vector) != dimension for vector in vectors):
            raise IngestionError(name, "embedding provider returned vectors that do not match the chunks")

        document = Document(
            document_id=document_id,
            project_id=source.project_id,
            name=name,
            content=source.raw_text,
            content_type=source.content_type,
            content_hash=content_hash,
            size_bytes=len(source.raw_text.encode("utf-8")),
            embedding_provider=provider_id,
            embedding_dim=dimension,
            created_at=utcnow(),
        )
        chunks: List[Chunk] = []
        embeddings: List[Embedding] = []
        for index, (span, vector) in enumerate(zip(spans, vectors)):
            chunk_id = f"{document_id}-{index}"
            chunks.append(
                Chunk(
                    chunk_id=chunk_id,
                    document_id=document_id,
                    project_id=source.project_id,
                    index=index,
                    text=span.text,
                    start_offset=span.start,
                    end_offset=span.end,
                    keywords=frozenset(tokenize(span.text)),
                    token_count=estimate_tokens(span.text),
                )
            )
            embeddings.append(
                Embedding(
                    embedding_id=f"{chunk_id}-embedding",
                    chunk_id=chunk_id,
                    project_id=source.project_id,
                    vector=tuple(vector),
                    provider_id=provider_id,
                    dimension=dimension,
                )
            )

        batch: List[object] = [document, *chunks, *embeddings]
        bytes_written = self._store.measure(batch)
        usage: List[UsageRecord] = []
        if self._usage_sink is not None:
            usage = [
                self._usage_sink.price(
                    OperationKind.EMBEDDING,
                    sum(chunk.token_count for chunk in chunks),
                    model_id=provider_id,
                ),
                self._usage_sink.price(OperationKind.STORAGE, bytes_written),
            ]
        # Usage shares the batch, so a QuotaExceededError leaves nothing behind.
        self._store.put_many([*batch, *usage])
        if self._usage_sink is not None:
            self._usage_sink.committed(usage)

        duration = time.perf_counter() - start
        if self._metrics is not None:
            self._metrics.observe_ingestion(duration, len(chunks))
            self._metrics.observe_storage(source.project_id, self._store.usage(source.project_id).bytes_used)
        self._logger.info(
            "ingestion.complete",
            project_id=source.project_id,
            document_id=document_id,
            document=name,
            chunk_count=len(chunks),
            bytes_written=bytes_written,
            duration_seconds=duration,
        )
        return IngestionResult(document=document, chunk_count=len(chunks), created=True)


__all__ = [
    "IngestionError",
    "IngestionJob",
    "IngestionPipeline",
    "IngestionResult",
    "JobStatus",
]
