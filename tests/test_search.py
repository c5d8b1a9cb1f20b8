from __future__ import annotations

from typing import List, Tuple

import pytest

from localrag.chunking import ChunkingConfig, estimate_tokens
from localrag.embeddings import EmbeddingConfig, HashEmbeddingProvider
from localrag.ingestion import IngestionPipeline, SourceDocument
from localrag.models import OperationKind, SearchAlgorithm
from localrag.retrieval import HybridWeights, SearchEngine, SearchOptions, cosine_similarity, keyword_score
from localrag.storage import LocalStore

PROJECT = "p1"


class RecordingSink:
    def __init__(self) -> None:
        self.calls: List[Tuple[OperationKind, int, str | None]] = []

    def record_usage(self, kind: OperationKind, quantity: int, *, model_id: str | None = None) -> None:
        self.calls.append((kind, quantity, model_id))


async def _ingest(store: LocalStore, embedder: HashEmbeddingProvider, *documents: Tuple[str, str]) -> None:
    pipeline = IngestionPipeline(store, embedder, chunking=ChunkingConfig(chunk_size=300, chunk_overlap=30))
    for name, text in documents:
        await pipeline.ingest(SourceDocument(project_id=PROJECT, file_name=name, raw_text=text))


CORPUS = (
    ("handbook.txt", "annual leave entitlement policy"),
    ("ops.txt", "server maintenance window schedule"),
    ("benefits.txt", "health insurance and leave of absence rules"),
    ("security.txt", "password rotation policy for all servers"),
)


@pytest.mark.asyncio
async def test_leave_policy_keyword_scenario():
    store = LocalStore()
    embedder = HashEmbeddingProvider(EmbeddingConfig(dim=64))
    await _ingest(store, embedder, CORPUS[0], CORPUS[1])
    engine = SearchEngine(store, embedder)

    everything = await engine.search(
        PROJECT, "leave policy", SearchOptions(algorithm=SearchAlgorithm.KEYWORD, top_k=10, similarity_threshold=0.0)
    )
    scores = {result.document_name: result.score for result in everything}
    assert scores["handbook.txt"] > 0
    assert scores["ops.txt"] == 0

    filtered = await engine.search(
        PROJECT, "leave policy", SearchOptions(algorithm=SearchAlgorithm.KEYWORD, top_k=10, similarity_threshold=0.1)
    )
    assert [result.document_name for result in filtered] == ["handbook.txt"]
    assert filtered[0].algorithm is SearchAlgorithm.KEYWORD
    assert filtered[0].snippet == "annual leave entitlement policy"


@pytest.mark.asyncio
@pytest.mark.parametrize("algorithm", list(SearchAlgorithm))
async def test_raising_threshold_never_adds_results(algorithm: SearchAlgorithm):
    store = LocalStore()
    embedder = HashEmbeddingProvider(EmbeddingConfig(dim=64))
    await _ingest(store, embedder, *CORPUS)
    engine = SearchEngine(store, embedder)

    counts = []
    for threshold in (0.0, 0.1, 0.25, 0.5, 0.75, 1.0):
        results = await engine.search(
            PROJECT,
            "leave policy for servers",
            SearchOptions(algorithm=algorithm, top_k=50, similarity_threshold=threshold),
        )
        assert all(result.score >= threshold for result in results)
        assert [result.score for result in results] == sorted((result.score for result in results), reverse=True)
        counts.append(len(results))
    assert counts == sorted(counts, reverse=True)


@pytest.mark.asyncio
async def test_hybrid_score_lies_between_component_scores():
    store = LocalStore()
    embedder = HashEmbeddingProvider(EmbeddingConfig(dim=64))
    await _ingest(store, embedder, *CORPUS)
    engine = SearchEngine(store, embedder, weights=HybridWeights(keyword=0.3, semantic=0.7))

    def by_chunk(results):
        return {result.chunk.chunk_id: result.score for result in results}

    query = "leave policy"
    options = {"top_k": 50, "similarity_threshold": 0.0}
    keyword = by_chunk(await engine.search(PROJECT, query, SearchOptions(algorithm=SearchAlgorithm.KEYWORD, **options)))
    semantic = by_chunk(await engine.search(PROJECT, query, SearchOptions(algorithm=SearchAlgorithm.SEMANTIC, **options)))
    hybrid = by_chunk(await engine.search(PROJECT, query, SearchOptions(algorithm=SearchAlgorithm.HYBRID, **options)))

    assert set(hybrid) == set(keyword) == set(semantic)
    for chunk_id, score in hybrid.items():
        low, high = sorted((keyword[chunk_id], semantic[chunk_id]))
        assert low - 1e-9 <= score <= high + 1e-9
        assert score == pytest.approx(0.3 * keyword[chunk_id] + 0.7 * semantic[chunk_id])


@pytest.mark.asyncio
async def test_embeddings_from_another_space_are_excluded():
    store = LocalStore()
    await _ingest(store, HashEmbeddingProvider(EmbeddingConfig(dim=16)), CORPUS[0])

    wider = SearchEngine(store, HashEmbeddingProvider(EmbeddingConfig(dim=32)))
    for algorithm in (SearchAlgorithm.SEMANTIC, SearchAlgorithm.HYBRID):
        assert await wider.search(PROJECT, "leave policy", SearchOptions(algorithm=algorithm)) == []
    keyword = await wider.search(PROJECT, "leave policy", SearchOptions(algorithm=SearchAlgorithm.KEYWORD))
    assert len(keyword) == 1

    class OtherProvider(HashEmbeddingProvider):
        provider_id = "other"

    other = SearchEngine(store, OtherProvider(EmbeddingConfig(dim=16)))
    assert await other.search(PROJECT, "leave policy", SearchOptions(algorithm=SearchAlgorithm.SEMANTIC)) == []


@pytest.mark.asyncio
async def test_ties_prefer_most_recent_document():
    store = LocalStore()
    embedder = HashEmbeddingProvider(EmbeddingConfig(dim=64))
    await _ingest(store, embedder, ("older.txt", "leave policy"), ("newer.txt", "leave policy"))
    engine = SearchEngine(store, embedder)
    results = await engine.search(PROJECT, "leave", SearchOptions(algorithm=SearchAlgorithm.KEYWORD))
    assert [result.document_name for result in results] == ["newer.txt", "older.txt"]
    assert results[0].score == results[1].score == 1.0


@pytest.mark.asyncio
async def test_top_k_bounds_results_after_filtering():
    store = LocalStore()
    embedder = HashEmbeddingProvider(EmbeddingConfig(dim=64))
    await _ingest(store, embedder, *CORPUS)
    engine = SearchEngine(store, embedder)
    results = await engine.search(
        PROJECT, "policy", SearchOptions(algorithm=SearchAlgorithm.KEYWORD, top_k=1, similarity_threshold=0.5)
    )
    assert len(results) == 1
    assert results[0].document_name == "security.txt"


@pytest.mark.asyncio
async def test_query_embedding_usage_is_reported():
    store = LocalStore()
    embedder = HashEmbeddingProvider(EmbeddingConfig(dim=64))
    await _ingest(store, embedder, CORPUS[0])
    sink = RecordingSink()
    engine = SearchEngine(store, embedder, usage_sink=sink)

    await engine.search(PROJECT, "leave policy", SearchOptions(algorithm=SearchAlgorithm.KEYWORD))
    assert sink.calls == []
    await engine.search(PROJECT, "leave policy", SearchOptions(algorithm=SearchAlgorithm.SEMANTIC))
    assert sink.calls == [(OperationKind.EMBEDDING, estimate_tokens("leave policy"), "hash")]


@pytest.mark.asyncio
async def test_empty_query_and_empty_project_return_nothing():
    store = LocalStore()
    embedder = HashEmbeddingProvider(EmbeddingConfig(dim=64))
    engine = SearchEngine(store, embedder)
    assert await engine.search(PROJECT, "anything") == []
    await _ingest(store, embedder, CORPUS[0])
    assert await engine.search(PROJECT, "   ") == []
    assert await engine.search("other-project", "leave") == []


@pytest.mark.asyncio
async def test_snippet_is_centred_on_first_match():
    store = LocalStore()
    embedder = HashEmbeddingProvider(EmbeddingConfig(dim=64))
    text = "filler text " * 20 + "the parental leave rules are generous"
    await _ingest(store, embedder, ("long.txt", text))
    engine = SearchEngine(store, embedder)
    results = await engine.search(PROJECT, "parental", SearchOptions(algorithm=SearchAlgorithm.KEYWORD))
    snippet = results[0].snippet
    assert "parental" in snippet
    assert snippet.startswith("...")
    assert len(snippet) <= 200 + 6


def test_scoring_helpers():
    assert keyword_score(["leave", "policy"], {"leave", "annual"}) == 0.5
    assert keyword_score([], {"leave"}) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 0.0])


def test_invalid_weights_rejected():
    with pytest.raises(ValueError):
        HybridWeights(keyword=-0.1, semantic=1.0)
    with pytest.raises(ValueError):
        HybridWeights(keyword=0.0, semantic=0.0)
