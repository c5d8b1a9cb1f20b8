"""Embedding providers for localrag."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Protocol, Sequence, runtime_checkable

import httpx
from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from localrag.chunking import tokenize
from localrag.config import Settings

LOGGER = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Raised when a provider cannot produce embeddings."""

    def __init__(self, message: str, *, provider_id: str, operation: str = "embed") -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.operation = operation


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration shared by embedding providers."""

    model: str = "BAAI/bge-small-en-v1.5"
    dim: int = 384
    device: str | None = None
    normalize: bool = True
    cache_folder: str | None = None
    max_input_chars: int = 8000
    api_url: str = "https://api.openai.com/v1/embeddings"
    api_key: str | None = None
    batch_size: int = 20
    timeout: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingConfig":
        return cls(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            device=settings.embedding_device,
            max_input_chars=settings.embedding_max_input_chars,
            api_url=settings.embedding_api_url,
            api_key=settings.embedding_api_key,
            batch_size=settings.embedding_batch_size,
            timeout=settings.embedding_timeout_seconds,
            normalize=settings.embedding_normalize,
            cache_folder=settings.embedding_cache_folder,
        )


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Capability: turn text into fixed-length vectors.

    ``embed_batch(texts)`` must equal ``[await embed(t) for t in texts]``.
    """

    provider_id: str
    dimension: int
    max_input_chars: int

    async def embed(self, text: str) -> List[float]:
        """Return the vector for a single text."""

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Return one vector per input text, in order."""


def _normalize(vector: Sequence[float]) -> List[float]:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0.0:
        return [0.0 for _ in vector]
    return [value / norm for value in vector]


class _ProviderBase:
    provider_id = "base"

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    @property
    def dimension(self) -> int:
        return self._config.dim

    @property
    def max_input_chars(self) -> int:
        return self._config.max_input_chars

    def _check_inputs(self, texts: Sequence[str]) -> None:
        for index, text in enumerate(texts):
            if len(text) > self._config.max_input_chars:
                raise EmbeddingError(
                    f"Input {index} has {len(text)} characters, limit is {self._config.max_input_chars}",
                    provider_id=self.provider_id,
                    operation="validate_input",
                )

    def _check_vectors(self, vectors: Sequence[Sequence[float]], expected: int) -> List[List[float]]:
        if len(vectors) != expected:
            LOGGER.error("Embedding backend returned %d vectors for %d inputs", len(vectors), expected)
            raise EmbeddingError(
                "Mismatch between number of inputs and embedding vectors",
                provider_id=self.provider_id,
            )
        checked: List[List[float]] = []
        for vector in vectors:
            if len(vector) != self.dimension:
                raise EmbeddingError(
                    f"Embedding dim mismatch: configured={self.dimension}, actual={len(vector)}",
                    provider_id=self.provider_id,
                )
            values = [float(value) for value in vector]
            checked.append(_normalize(values) if self._config.normalize else values)
        return checked

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]


class HashEmbeddingProvider(_ProviderBase):
    """Deterministic in-process embeddings from hashed token counts.

    Texts sharing tokens get a positive cosine similarity, which is enough for
    offline use and tests. No model download is needed.
    """

    provider_id = "hash"

    def _hash_to_vector(self, text: str) -> List[float]:
        vector = [0.0] * self._config.dim
        for token in tokenize(text):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:8], "big") % self._config.dim] += 1.0
        return _normalize(vector) if self._config.normalize else vector

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self._check_inputs(texts)
        return [self._hash_to_vector(text) for text in texts]


class HuggingFaceEmbeddingProvider(_ProviderBase):
    """Local sentence-embedding model loaded through LangChain."""

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        client: LangChainEmbeddings | None = None,
    ) -> None:
        super().__init__(config)
        self.provider_id = f"huggingface:{self._config.model}"
        if client is not None:
            self._client = client
            return
        try:
            model_kwargs = {"device": self._config.device} if self._config.device else {}
            self._client = HuggingFaceEmbeddings(
                model_name=self._config.model,
                model_kwargs=model_kwargs,
                cache_folder=self._config.cache_folder,
                encode_kwargs={"normalize_embeddings": self._config.normalize},
            )
        except Exception as exc:
            raise EmbeddingError(
                f"Failed to load embedding model {self._config.model}: {exc}",
                provider_id=self.provider_id,
                operation="load_model",
            ) from exc
        LOGGER.info("Loaded embedding model %s", self._config.model)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        self._check_inputs(texts)
        try:
            vectors = await asyncio.to_thread(self._client.embed_documents, list(texts))
        except Exception as exc:
            raise EmbeddingError(
                f"Embedding model failed: {exc}", provider_id=self.provider_id
            ) from exc
        return self._check_vectors(vectors, len(texts))


class OpenAIEmbeddingProvider(_ProviderBase):
    """Remote embeddings from an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(config)
        self.provider_id = f"openai:{self._config.model}"
        self._transport = transport

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        self._check_inputs(texts)
        headers = {"Authorization": f"Bearer {self._config.api_key}"} if self._config.api_key else {}
        vectors: List[List[float]] = []
        async with httpx.AsyncClient(timeout=self._config.timeout, transport=self._transport) as client:
            for start in range(0, len(texts), self._config.batch_size):
                batch = list(texts[start : start + self._config.batch_size])
                payload = {"model": self._config.model, "input": batch}
                try:
                    response = await client.post(self._config.api_url, json=payload, headers=headers)
                    response.raise_for_status()
                    data = response.json()
                except httpx.HTTPError as exc:
                    LOGGER.error(
                        "Embedding request failed (%s): batch size=%d, error=%s",
                        type(exc).__name__,
                        len(batch),
                        str(exc),
                    )
                    raise EmbeddingError(
                        f"Embedding request failed: {type(exc).__name__}",
                        provider_id=self.provider_id,
                    ) from exc
                except ValueError as exc:
                    raise EmbeddingError(
                        "Embedding response is not valid JSON",
                        provider_id=self.provider_id,
                    ) from exc
                vectors.extend(self._extract_embeddings(data))
        return self._check_vectors(vectors, len(texts))

    def _extract_embeddings(self, data: object) -> List[List[float]]:
        if not isinstance(data, dict) or not isinstance(data.get("data"), list):
            raise EmbeddingError("Embedding response missing 'data' list", provider_id=self.provider_id)
        records = sorted(data["data"], key=lambda record: record.get("index", 0) if isinstance(record, dict) else 0)
        embeddings: List[List[float]] = []
        for index, record in enumerate(records):
            vector = record.get("embedding") if isinstance(record, dict) else None
            if not isinstance(vector, list) or not all(isinstance(x, (float, int)) for x in vector):
                raise EmbeddingError(
                    f"Malformed embedding record at index {index}", provider_id=self.provider_id
                )
            embeddings.append([float(x) for x in vector])
        return embeddings


EmbeddingFactory = Callable[[EmbeddingConfig], EmbeddingProvider]

DEFAULT_EMBEDDING_FACTORIES: Mapping[str, EmbeddingFactory] = {
    "hash": HashEmbeddingProvider,
    "huggingface": HuggingFaceEmbeddingProvider,
    "openai": OpenAIEmbeddingProvider,
}


class EmbeddingProviderRegistry:
    """Maps provider identifiers to factories, resolved once at construction."""

    def __init__(self, factories: Mapping[str, EmbeddingFactory] | None = None) -> None:
        if factories is None:
            factories = DEFAULT_EMBEDDING_FACTORIES
        self._factories: Dict[str, EmbeddingFactory] = dict(factories)

    def register(self, provider_id: str, factory: EmbeddingFactory) -> None:
        self._factories[provider_id] = factory

    def available(self) -> List[str]:
        return sorted(self._factories)

    def create(self, provider_id: str, config: EmbeddingConfig | None = None) -> EmbeddingProvider:
        try:
            factory = self._factories[provider_id]
        except KeyError:
            raise KeyError(
                f"Unknown embedding provider '{provider_id}'; available: {', '.join(self.available())}"
            ) from None
        return factory(config or EmbeddingConfig())
