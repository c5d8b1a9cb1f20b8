"""Tests for the ingestion pipeline, background jobs and document sources."""

from __future__ import annotations

import asyncio
import zipfile
from pathlib import Path
from typing import List, Sequence

import pytest

from localrag.chunking import ChunkingConfig
from localrag.costs import CostLedger, PricingTable
from localrag.embeddings import EmbeddingConfig, EmbeddingError, HashEmbeddingProvider
from localrag.ingestion import (
    DirectorySource,
    IngestionError,
    IngestionPipeline,
    JobStatus,
    SourceDocument,
)
from localrag.models import EntityKind, OperationKind
from localrag.storage import LocalStore, QuotaExceededError

PROJECT = "p1"


class FailingEmbedder(HashEmbeddingProvider):
    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        raise EmbeddingError("model unavailable", provider_id=self.provider_id)


class BlockingEmbedder(HashEmbeddingProvider):
    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        super().__init__(config)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.started.set()
        await self.release.wait()
        return await super().embed_batch(texts)


def _source(name: str = "notes.txt", text: str = "The quick brown fox jumps over the lazy dog.") -> SourceDocument:
    return SourceDocument(project_id=PROJECT, file_name=name, raw_text=text)


def _embedder(dim: int = 8) -> HashEmbeddingProvider:
    return HashEmbeddingProvider(EmbeddingConfig(dim=dim))


@pytest.mark.asyncio
async def test_ingest_writes_document_chunks_and_embeddings():
    store = LocalStore()
    pipeline = IngestionPipeline(store, _embedder(), chunking=ChunkingConfig(chunk_size=100, chunk_overlap=20))
    result = await pipeline.ingest(_source(text="x" * 250))

    assert result.created
    assert result.chunk_count == 3
    usage = store.usage(PROJECT)
    assert (usage.document_count, usage.chunk_count, usage.embedding_count) == (1, 3, 3)
    chunks = store.chunks_for_document(result.document.document_id)
    assert [chunk.start_offset for chunk in chunks] == [0, 80, 160]
    for chunk in chunks:
        embedding = store.embedding_for_chunk(chunk.chunk_id)
        assert embedding is not None
        assert embedding.provider_id == "hash"
        assert embedding.dimension == 8
    assert store.embedding_space(PROJECT) == ("hash", 8)


@pytest.mark.asyncio
async def test_embedding_failure_leaves_store_untouched():
    store = LocalStore()
    pipeline = IngestionPipeline(store, FailingEmbedder(EmbeddingConfig(dim=8)))

    with pytest.raises(IngestionError) as excinfo:
        await pipeline.ingest(_source())

    assert excinfo.value.document_name == "notes.txt"
    assert isinstance(excinfo.value.__cause__, EmbeddingError)
    usage = store.usage(PROJECT)
    assert (usage.document_count, usage.chunk_count, usage.embedding_count) == (0, 0, 0)
    assert store.bytes_used == 0


@pytest.mark.asyncio
async def test_quota_rejection_keeps_document_count():
    store = LocalStore(capacity_bytes=6000)
    pipeline = IngestionPipeline(store, _embedder())
    await pipeline.ingest(_source())
    before = store.usage(PROJECT)

    with pytest.raises(QuotaExceededError):
        await pipeline.ingest(_source("big.txt", "lorem ipsum " * 1000))

    after = store.usage(PROJECT)
    assert after.document_count == before.document_count == 1
    assert after.bytes_used == before.bytes_used


@pytest.mark.asyncio
async def test_reingesting_identical_document_is_a_noop():
    store = LocalStore()
    pipeline = IngestionPipeline(store, _embedder())
    first = await pipeline.ingest(_source())
    second = await pipeline.ingest(_source())

    assert first.created and not second.created
    assert second.document.document_id == first.document.document_id
    assert second.chunk_count == first.chunk_count
    assert store.usage(PROJECT).document_count == 1


@pytest.mark.asyncio
async def test_changed_content_gets_a_new_document():
    store = LocalStore()
    pipeline = IngestionPipeline(store, _embedder())
    first = await pipeline.ingest(_source(text="version one"))
    second = await pipeline.ingest(_source(text="version two"))

    assert second.created
    assert first.document.document_id != second.document.document_id
    assert store.usage(PROJECT).document_count == 2


@pytest.mark.asyncio
async def test_mixed_embedding_spaces_are_rejected():
    store = LocalStore()
    await IngestionPipeline(store, _embedder(8)).ingest(_source())

    with pytest.raises(IngestionError, match="16 dims"):
        await IngestionPipeline(store, _embedder(16)).ingest(_source("other.txt", "another document"))
    assert store.usage(PROJECT).document_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   \n\t  "])
async def test_blank_documents_are_rejected(text: str):
    store = LocalStore()
    pipeline = IngestionPipeline(store, _embedder())
    with pytest.raises(IngestionError, match="no text"):
        await pipeline.ingest(_source(text=text))
    assert store.usage(PROJECT).document_count == 0


@pytest.mark.asyncio
async def test_usage_is_recorded_for_embedding_and_storage():
    store = LocalStore()
    ledger = CostLedger(
        store,
        PROJECT,
        pricing=PricingTable({OperationKind.EMBEDDING: 0.001, OperationKind.STORAGE: 0.0}),
    )
    pipeline = IngestionPipeline(store, _embedder(), usage_sink=ledger)
    result = await pipeline.ingest(_source())

    records = ledger.records()
    assert [record.kind for record in records] == [OperationKind.EMBEDDING, OperationKind.STORAGE]
    chunks = store.chunks_for_document(result.document.document_id)
    assert records[0].quantity == sum(chunk.token_count for chunk in chunks)
    assert records[0].model_id == "hash"
    assert records[1].quantity > 0


@pytest.mark.asyncio
async def test_submitted_job_completes():
    store = LocalStore()
    pipeline = IngestionPipeline(store, _embedder())
    job = pipeline.submit(_source())
    assert job.status in (JobStatus.PENDING, JobStatus.PROCESSING)

    assert await job.wait() is JobStatus.COMPLETED
    assert job.status.is_terminal
    assert job.result is not None and job.result.created
    assert job.error is None
    assert store.get(EntityKind.DOCUMENT, job.result.document.document_id) is not None


@pytest.mark.asyncio
async def test_failed_job_reports_error():
    store = LocalStore()
    pipeline = IngestionPipeline(store, _embedder())
    job = pipeline.submit(_source(text=" "))

    assert await job.wait() is JobStatus.FAILED
    assert isinstance(job.exception, IngestionError)
    assert "no text" in (job.error or "")


@pytest.mark.asyncio
async def test_cancelled_job_fails_and_writes_nothing():
    store = LocalStore()
    embedder = BlockingEmbedder(EmbeddingConfig(dim=8))
    pipeline = IngestionPipeline(store, embedder)
    job = pipeline.submit(_source())
    await embedder.started.wait()
    assert job.status is JobStatus.PROCESSING

    assert job.cancel()
    assert await job.wait() is JobStatus.FAILED
    assert job.error == "ingestion cancelled"
    assert store.usage(PROJECT).document_count == 0
    assert not job.cancel()


@pytest.mark.asyncio
async def test_jobs_sharing_a_lock_run_one_at_a_time():
    store = LocalStore()
    lock = asyncio.Lock()
    embedder = BlockingEmbedder(EmbeddingConfig(dim=8))
    pipeline = IngestionPipeline(store, embedder, lock=lock)
    first = pipeline.submit(_source("a.txt", "first document"))
    second = pipeline.submit(_source("b.txt", "second document"))
    await embedder.started.wait()

    assert first.status is JobStatus.PROCESSING
    assert second.status is JobStatus.PENDING
    embedder.release.set()
    assert await first.wait() is JobStatus.COMPLETED
    assert await second.wait() is JobStatus.COMPLETED
    assert store.usage(PROJECT).document_count == 2


def test_directory_source_reads_text_and_markdown(tmp_path: Path):
    (tmp_path / "b.md").write_text("# Title\nbody", encoding="utf-8")
    (tmp_path / "a.txt").write_text("plain text", encoding="utf-8")
    (tmp_path / "image.png").write_bytes(b"\x89PNG")
    nested = tmp_path / "nested"
    nested.mkdir()
    (nested / "c.txt").write_text("nested text", encoding="utf-8")

    flat = list(DirectorySource(tmp_path, PROJECT).documents())
    assert [document.file_name for document in flat] == ["a.txt", "b.md"]
    assert flat[0].raw_text == "plain text"
    assert flat[1].content_type == "text/markdown"
    assert all(document.project_id == PROJECT for document in flat)

    recursive = DirectorySource(tmp_path, PROJECT, recursive=True).documents()
    assert [document.file_name for document in recursive] == ["a.txt", "b.md", "nested/c.txt"]


def test_directory_source_requires_existing_directory(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        DirectorySource(tmp_path / "missing", PROJECT).paths()


def _write_pdf(path: Path, text: str) -> None:
    """Write a one-page PDF with ``text`` in Helvetica."""

    content = f"BT /F1 24 Tf 72 700 Td ({text}) Tj ET".encode("latin-1")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R "
        b"/Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length %d >>\nstream\n" % len(content) + content + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    output = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(output))
        output += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref_offset = len(output)
    output += b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1)
    for offset in offsets:
        output += b"%010d 00000 n \n" % offset
    output += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_offset)
    path.write_bytes(bytes(output))


def _write_docx(path: Path, text: str) -> None:
    """Write a minimal Word document holding one paragraph."""

    document_xml = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">'
        f"<w:body><w:p><w:r><w:t>{text}</w:t></w:r></w:p></w:body></w:document>"
    )
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr(
            "[Content_Types].xml",
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
            '<Override PartName="/word/document.xml" ContentType="application/'
            'vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/></Types>',
        )
        archive.writestr("word/document.xml", document_xml)


def test_directory_source_reads_pdf_and_docx(tmp_path: Path):
    _write_pdf(tmp_path / "report.pdf", "Hello PDF world")
    _write_docx(tmp_path / "memo.docx", "Hello DOCX world")

    documents = list(DirectorySource(tmp_path, PROJECT).documents())

    assert [document.file_name for document in documents] == ["memo.docx", "report.pdf"]
    memo, report = documents
    assert "Hello DOCX world" in memo.raw_text
    assert memo.content_type == "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    assert "Hello PDF world" in report.raw_text
    assert report.content_type == "application/pdf"


@pytest.mark.asyncio
async def test_pdf_from_directory_is_searchable_after_ingest(tmp_path: Path):
    _write_pdf(tmp_path / "report.pdf", "Quarterly revenue grew by nine percent")
    store = LocalStore()
    pipeline = IngestionPipeline(store, _embedder())

    (source,) = DirectorySource(tmp_path, PROJECT).documents()
    result = await pipeline.ingest(source)

    assert result.document.content_type == "application/pdf"
    chunks = store.chunks_for_document(result.document.document_id)
    assert any("revenue" in chunk.text for chunk in chunks)
