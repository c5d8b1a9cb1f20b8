"""CLI for evaluating localrag retrieval accuracy per search algorithm."""

from __future__ import annotations

import argparse
import asyncio
import json
import statistics
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence

from localrag.config import Settings, get_settings
from localrag.embeddings import EmbeddingConfig, HashEmbeddingProvider
from localrag.ingestion import SourceDocument
from localrag.models import SearchAlgorithm
from localrag.retrieval import SearchOptions
from localrag.services import TemplateGenerator, build_session
from localrag.storage import LocalStore

EVALUATION_PROJECT = "evaluation"


@dataclass(frozen=True)
class DocumentFixture:
    id: str
    title: str
    content: str


@dataclass(frozen=True)
class QueryFixture:
    question: str
    relevant_document_ids: Sequence[str]


@dataclass(frozen=True)
class EvaluationResult:
    algorithm: str
    total_queries: int
    hits: int
    recall_at_k: float
    mean_reciprocal_rank: float
    average_latency_ms: float
    details: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "algorithm": self.algorithm,
            "total_queries": self.total_queries,
            "hits": self.hits,
            "recall_at_k": self.recall_at_k,
            "mean_reciprocal_rank": self.mean_reciprocal_rank,
            "average_latency_ms": self.average_latency_ms,
            "details": self.details,
        }


def load_dataset(path: Path) -> tuple[list[DocumentFixture], list[QueryFixture]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    documents = [
        DocumentFixture(id=item["id"], title=item.get("title", ""), content=item["content"])
        for item in data["documents"]
    ]
    queries = [
        QueryFixture(
            question=item["question"],
            relevant_document_ids=item.get("relevant_document_ids", []),
        )
        for item in data["queries"]
    ]
    return documents, queries


async def _evaluate(
    documents: Sequence[DocumentFixture],
    queries: Sequence[QueryFixture],
    algorithms: Sequence[SearchAlgorithm],
    *,
    top_k: int,
    threshold: float,
    settings: Settings,
) -> Dict[str, EvaluationResult]:
    session = build_session(
        EVALUATION_PROJECT,
        settings,
        store=LocalStore(capacity_bytes=max(settings.storage_capacity_bytes, 64 * 1024 * 1024)),
        embedder=HashEmbeddingProvider(EmbeddingConfig(dim=settings.embedding_dim)),
        generator=TemplateGenerator(),
    )
    fixture_by_document: Dict[str, str] = {}
    for fixture in documents:
        result = await session.ingest(
            SourceDocument(project_id=EVALUATION_PROJECT, file_name=f"{fixture.id}.txt", raw_text=fixture.content)
        )
        fixture_by_document[result.document.document_id] = fixture.id

    results: Dict[str, EvaluationResult] = {}
    for algorithm in algorithms:
        options = SearchOptions(algorithm=algorithm, top_k=top_k, similarity_threshold=threshold)
        hits = 0
        reciprocal_ranks: list[float] = []
        latencies: list[float] = []
        details: list[dict] = []
        for query in queries:
            start = time.perf_counter()
            found = await session.search(query.question, options)
            latency_ms = (time.perf_counter() - start) * 1000
            latencies.append(latency_ms)
            retrieved_ids: list[str] = []
            for item in found:
                fixture_id = fixture_by_document.get(item.chunk.document_id)
                if fixture_id and fixture_id not in retrieved_ids:
                    retrieved_ids.append(fixture_id)
            relevant_set = set(query.relevant_document_ids)
            rank = None
            for index, doc_id in enumerate(retrieved_ids, start=1):
                if doc_id in relevant_set:
                    rank = index
                    break
            if rank is not None:
                hits += 1
                reciprocal_ranks.append(1 / rank)
            else:
                reciprocal_ranks.append(0.0)
            details.append(
                {
                    "question": query.question,
                    "retrieved": retrieved_ids,
                    "relevant": list(query.relevant_document_ids),
                    "latency_ms": latency_ms,
                },
            )
        total = len(queries)
        results[algorithm.value] = EvaluationResult(
            algorithm=algorithm.value,
            total_queries=total,
            hits=hits,
            recall_at_k=hits / total if total else 0.0,
            mean_reciprocal_rank=statistics.fmean(reciprocal_ranks) if reciprocal_ranks else 0.0,
            average_latency_ms=statistics.fmean(latencies) if latencies else 0.0,
            details=details,
        )
    return results


def run_evaluation(
    dataset_path: Path,
    *,
    top_k: int = 3,
    algorithms: Sequence[SearchAlgorithm] = tuple(SearchAlgorithm),
    threshold: float = 0.0,
    settings: Settings | None = None,
    json_out: Path | None = None,
    markdown_out: Path | None = None,
) -> Dict[str, EvaluationResult]:
    settings = settings or get_settings()
    documents, queries = load_dataset(dataset_path)
    results = asyncio.run(
        _evaluate(documents, queries, algorithms, top_k=top_k, threshold=threshold, settings=settings)
    )
    if json_out:
        payload = {name: result.to_dict() for name, result in results.items()}
        json_out.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    if markdown_out:
        markdown_out.write_text(_format_markdown(results, top_k), encoding="utf-8")
    return results


def _format_markdown(results: Dict[str, EvaluationResult], top_k: int) -> str:
    lines = [
        "# localrag Retrieval Evaluation",
        "",
        f"| Algorithm | Queries | Hits | Recall@{top_k} | MRR | Avg latency (ms) |",
        "| --- | --- | --- | --- | --- | --- |",
    ]
    for result in results.values():
        lines.append(
            f"| {result.algorithm} | {result.total_queries} | {result.hits} | {result.recall_at_k:.2f} "
            f"| {result.mean_reciprocal_rank:.2f} | {result.average_latency_ms:.2f} |"
        )
    return "\n".join(lines)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate localrag retrieval accuracy.")
    parser.add_argument(
        "--dataset",
        type=Path,
        default=Path("evaluations/fixtures/sample.json"),
        help="Path to evaluation dataset JSON file.",
    )
    parser.add_argument("--top-k", type=int, default=3, help="Number of results to evaluate per query")
    parser.add_argument(
        "--algorithm",
        action="append",
        choices=[algorithm.value for algorithm in SearchAlgorithm],
        default=None,
        help="Algorithm to evaluate; repeat for several (default: all)",
    )
    parser.add_argument("--threshold", type=float, default=0.0, help="Similarity threshold applied to results")
    parser.add_argument("--json-out", type=Path, default=None, help="Optional path to write JSON report")
    parser.add_argument("--markdown-out", type=Path, default=None, help="Optional path to write Markdown report")
    parser.add_argument("--min-recall", type=float, default=None, help="Override recall threshold")
    parser.add_argument("--min-mrr", type=float, default=None, help="Override MRR threshold")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = get_settings()
    min_recall = args.min_recall if args.min_recall is not None else settings.evaluation_min_recall
    min_mrr = args.min_mrr if args.min_mrr is not None else settings.evaluation_min_mrr
    algorithms = [SearchAlgorithm(name) for name in args.algorithm] if args.algorithm else list(SearchAlgorithm)

    results = run_evaluation(
        args.dataset,
        top_k=args.top_k,
        algorithms=algorithms,
        threshold=args.threshold,
        settings=settings,
        json_out=args.json_out,
        markdown_out=args.markdown_out,
    )
    print(json.dumps({name: result.to_dict() for name, result in results.items()}, indent=2))

    failed = [
        result
        for result in results.values()
        if result.recall_at_k < min_recall or result.mean_reciprocal_rank < min_mrr
    ]
    for result in failed:
        print(
            f"{result.algorithm}: evaluation failed thresholds (recall {result.recall_at_k:.2f} vs {min_recall}, "
            f"MRR {result.mean_reciprocal_rank:.2f} vs {min_mrr})",
            file=sys.stderr,
        )
    return 1 if failed else 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
