"""Retrieval components."""

from .service import HybridWeights, SearchEngine, SearchOptions, cosine_similarity, keyword_score

__all__ = [
    "HybridWeights",
    "SearchEngine",
    "SearchOptions",
    "cosine_similarity",
    "keyword_score",
]
