"""Keyword, semantic and hybrid ranking over the local store."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Iterable, List, Sequence

from localrag.chunking import estimate_tokens, tokenize
from localrag.costs import UsageRecorder
from localrag.embeddings import EmbeddingProvider
from localrag.metrics.observability import PipelineMetrics, get_logger
from localrag.models import Chunk, Document, EntityKind, OperationKind, SearchAlgorithm, SearchResult
from localrag.storage import LocalStore


@dataclass(frozen=True)
class HybridWeights:
    """Blend weights for hybrid ranking.

    The 0.5/0.5 default is a placeholder, not a calibrated value. With weights
    summing to 1 a hybrid score always lies between the keyword and semantic
    scores it was built from.
    """

    keyword: float = 0.5
    semantic: float = 0.5

    def __post_init__(self) -> None:
        if self.keyword < 0 or self.semantic < 0:
            raise ValueError("Hybrid weights must be non-negative")
        if self.keyword + self.semantic == 0:
            raise ValueError("At least one hybrid weight must be positive")


@dataclass(frozen=True)
class SearchOptions:
    algorithm: SearchAlgorithm = SearchAlgorithm.HYBRID
    top_k: int = 5
    similarity_threshold: float = 0.0

    def __post_init__(self) -> None:
        if self.top_k < 0:
            raise ValueError("top_k must be non-negative")


class SearchEngine:
    """Rank a project's chunks against a query.

    Chunks whose embedding was produced by another provider or has another
    dimension than the query vector are left out of semantic and hybrid
    ranking. Results under the threshold are dropped, never down-ranked.
    """

    def __init__(
        self,
        store: LocalStore,
        embedder: EmbeddingProvider,
        *,
        weights: HybridWeights | None = None,
        usage_sink: UsageRecorder | None = None,
        metrics: PipelineMetrics | None = None,
        snippet_chars: int = 200,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._weights = weights or HybridWeights()
        self._usage_sink = usage_sink
        self._metrics = metrics
        self._snippet_chars = snippet_chars
        self._logger = get_logger("retrieval")

    @property
    def weights(self) -> HybridWeights:
        return self._weights

    async def search(
        self,
        project_id: str,
        query: str,
        options: SearchOptions | None = None,
        *,
        usage_sink: UsageRecorder | None = None,
    ) -> List[SearchResult]:
        """Return at most ``top_k`` results, best first.

        ``usage_sink`` replaces the engine's own sink for this call only.
        """

        options = options or SearchOptions()
        sink = usage_sink if usage_sink is not None else self._usage_sink
        start = time.perf_counter()
        query_tokens = list(dict.fromkeys(tokenize(query)))
        if not query.strip() or options.top_k == 0:
            return []

        documents: List[Document] = self._store.query(project_id, EntityKind.DOCUMENT)
        recency = {document.document_id: position for position, document in enumerate(documents)}
        names = {document.document_id: document.name for document in documents}
        chunks: List[Chunk] = [
            chunk for chunk in self._store.query(project_id, EntityKind.CHUNK) if chunk.document_id in names
        ]

        query_vector: List[float] | None = None
        if options.algorithm is not SearchAlgorithm.KEYWORD and chunks:
            query_vector = await self._embedder.embed(query)
            if sink is not None:
                sink.record_usage(
                    OperationKind.EMBEDDING,
                    estimate_tokens(query),
                    model_id=self._embedder.provider_id,
                )

        scored: List[tuple[float, Chunk]] = []
        for chunk in chunks:
            score = self._score(chunk, query_tokens, query_vector, options.algorithm)
            if score is None or score < options.similarity_threshold:
                continue
            scored.append((score, chunk))

        scored.sort(
            key=lambda item: (
                -item[0],
                -recency[item[1].document_id],
                names[item[1].document_id],
                item[1].index,
            )
        )
        results = [
            SearchResult(
                chunk=chunk,
                document_name=names[chunk.document_id],
                score=score,
                algorithm=options.algorithm,
                snippet=self._snippet(chunk.text, query_tokens),
            )
            for score, chunk in scored[: options.top_k]
        ]

        duration = time.perf_counter() - start
        if self._metrics is not None:
            self._metrics.observe_retrieval(duration, len(results), (result.score for result in results))
        self._logger.info(
            "search.complete",
            project_id=project_id,
            algorithm=options.algorithm.value,
            candidate_count=len(chunks),
            result_count=len(results),
            threshold=options.similarity_threshold,
            duration_seconds=duration,
        )
        return results

    def _score(
        self,
        chunk: Chunk,
        query_tokens: Sequence[str],
        query_vector: Sequence[float] | None,
        algorithm: SearchAlgorithm,
    ) -> float | None:
        keyword = keyword_score(query_tokens, chunk.keywords or tokenize(chunk.text))
        if algorithm is SearchAlgorithm.KEYWORD:
            return keyword
        semantic = self._semantic_score(chunk, query_vector)
        if semantic is None:
            return None
        if algorithm is SearchAlgorithm.SEMANTIC:
            return semantic
        blended = self._weights.keyword * keyword + self._weights.semantic * semantic
        return _clamp(blended)

    def _semantic_score(self, chunk: Chunk, query_vector: Sequence[float] | None) -> float | None:
        if query_vector is None:
            return None
        embedding = self._store.embedding_for_chunk(chunk.chunk_id)
        if embedding is None:
            return None
        if embedding.provider_id != self._embedder.provider_id or embedding.dimension != len(query_vector):
            return None
        if len(embedding.vector) != len(query_vector):
            return None
        return _clamp(cosine_similarity(query_vector, embedding.vector))

    def _snippet(self, text: str, query_tokens: Sequence[str]) -> str:
        limit = self._snippet_chars
        if len(text) <= limit:
            return text
        lowered = text.lower()
        positions = [lowered.find(token) for token in query_tokens]
        hits = [position for position in positions if position >= 0]
        anchor = min(hits) if hits else 0
        begin = max(0, min(anchor - limit // 4, len(text) - limit))
        snippet = text[begin : begin + limit]
        prefix = "..." if begin > 0 else ""
        suffix = "..." if begin + limit < len(text) else ""
        return f"{prefix}{snippet}{suffix}"


def keyword_score(query_tokens: Sequence[str], chunk_tokens: Iterable[str]) -> float:
    """Share of unique query tokens present in the chunk."""

    unique_query = set(query_tokens)
    if not unique_query:
        return 0.0
    overlap = len(unique_query.intersection(chunk_tokens))
    return overlap / len(unique_query)


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    if len(left) != len(right):
        raise ValueError("Vectors must have the same dimensions")
    dot = sum(a * b for a, b in zip(left, right))
    norm_left = math.sqrt(sum(a * a for a in left))
    norm_right = math.sqrt(sum(b * b for b in right))
    if norm_left == 0.0 or norm_right == 0.0:
        return 0.0
    return dot / (norm_left * norm_right)


def _clamp(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


__all__ = [
    "HybridWeights",
    "SearchEngine",
    "SearchOptions",
    "cosine_similarity",
    "keyword_score",
]
