"""Deterministic fixed-window chunking with exact character offsets."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, List

from langchain_text_splitters import TextSplitter

_TOKEN_PATTERN = re.compile(r"\w+")


def tokenize(text: str) -> list[str]:
    """Lower-cased word tokens, in order of appearance."""

    return _TOKEN_PATTERN.findall(text.lower())


def estimate_tokens(text: str) -> int:
    # Roughly four characters per model token.
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class ChunkingConfig:
    """Window size and overlap, both in characters."""

    chunk_size: int = 1000
    chunk_overlap: int = 200

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError(
                f"chunk_overlap must satisfy 0 <= overlap < chunk_size, got {self.chunk_overlap}"
            )

    @property
    def step(self) -> int:
        return self.chunk_size - self.chunk_overlap


@dataclass(frozen=True)
class ChunkSpan:
    start: int
    end: int
    text: str


class WindowTextSplitter(TextSplitter):
    """Slide a ``chunk_size`` window forward by ``chunk_size - chunk_overlap``.

    The window that reaches the end of the text is the last one, so a text no
    longer than ``chunk_size`` becomes a single chunk. Nothing is stripped or
    normalised: dropping the first ``chunk_overlap`` characters of every chunk
    after the first and concatenating reproduces the input exactly.
    """

    def __init__(self, config: ChunkingConfig | None = None, **kwargs: Any) -> None:
        self._window = config or ChunkingConfig()
        super().__init__(
            chunk_size=self._window.chunk_size,
            chunk_overlap=self._window.chunk_overlap,
            strip_whitespace=False,
            **kwargs,
        )

    @property
    def config(self) -> ChunkingConfig:
        return self._window

    def split_spans(self, text: str) -> List[ChunkSpan]:
        if not text:
            return []
        size = self._window.chunk_size
        step = self._window.step
        length = len(text)
        spans: List[ChunkSpan] = []
        start = 0
        while True:
            end = min(start + size, length)
            spans.append(ChunkSpan(start=start, end=end, text=text[start:end]))
            if end >= length:
                break
            start += step
        return spans

    def split_text(self, text: str) -> List[str]:
        return [span.text for span in self.split_spans(text)]


def chunk(text: str, config: ChunkingConfig | None = None) -> List[str]:
    """Split ``text`` into ordered chunk texts."""

    return WindowTextSplitter(config).split_text(text)


def spans(text: str, config: ChunkingConfig | None = None) -> List[ChunkSpan]:
    """Split ``text`` into ordered chunks with their ``[start, end)`` offsets."""

    return WindowTextSplitter(config).split_spans(text)
