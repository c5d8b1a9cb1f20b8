"""Document chunking."""

from .splitter import ChunkingConfig, ChunkSpan, WindowTextSplitter, chunk, estimate_tokens, spans, tokenize

__all__ = [
    "ChunkingConfig",
    "ChunkSpan",
    "WindowTextSplitter",
    "chunk",
    "estimate_tokens",
    "spans",
    "tokenize",
]
