"""Shared domain models used across the localrag engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityKind(str, Enum):
    """Kinds of records persisted by the local store."""

    DOCUMENT = "document"
    CHUNK = "chunk"
    EMBEDDING = "embedding"
    CHAT_MESSAGE = "chat_message"
    USAGE_RECORD = "usage_record"


class SearchAlgorithm(str, Enum):
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class OperationKind(str, Enum):
    """Billable operation kinds metered by the cost ledger."""

    EMBEDDING = "embedding"
    GENERATION = "generation"
    STORAGE = "storage"


@dataclass(frozen=True)
class Document:
    """A raw uploaded document owned by a single project."""

    document_id: str
    project_id: str
    name: str
    content: str
    content_type: str
    content_hash: str
    size_bytes: int
    embedding_provider: str
    embedding_dim: int
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Chunk:
    """Contiguous span of a document's text, the unit of retrieval."""

    chunk_id: str
    document_id: str
    project_id: str
    index: int
    text: str
    start_offset: int
    end_offset: int
    keywords: frozenset[str] = frozenset()
    token_count: int = 0


@dataclass(frozen=True)
class Embedding:
    """Vector for exactly one chunk, tagged with the space it lives in."""

    embedding_id: str
    chunk_id: str
    project_id: str
    vector: Tuple[float, ...]
    provider_id: str
    dimension: int


@dataclass(frozen=True)
class SearchResult:
    """Chunk returned from the search engine with its score."""

    chunk: Chunk
    document_name: str
    score: float
    algorithm: SearchAlgorithm
    snippet: str


@dataclass(frozen=True)
class UsageMetadata:
    tokens_used: int
    cost: float
    latency_ms: float
    model_id: str


@dataclass(frozen=True)
class ChatMessage:
    message_id: str
    project_id: str
    role: MessageRole
    content: str
    created_at: datetime = field(default_factory=utcnow)
    sources: Tuple[SearchResult, ...] = ()
    usage: UsageMetadata | None = None
    is_error: bool = False


@dataclass(frozen=True)
class UsageRecord:
    """One metered operation. Costs are fixed at record time."""

    record_id: str
    project_id: str
    kind: OperationKind
    quantity: int
    cost: float
    created_at: datetime = field(default_factory=utcnow)
    model_id: str | None = None


@dataclass(frozen=True)
class StorageUsage:
    document_count: int
    chunk_count: int
    embedding_count: int
    chat_message_count: int
    usage_record_count: int
    bytes_used: int
    capacity_bytes: int

    @property
    def bytes_available(self) -> int:
        return max(self.capacity_bytes - self.bytes_used, 0)


ENTITY_TYPES: dict[EntityKind, type] = {
    EntityKind.DOCUMENT: Document,
    EntityKind.CHUNK: Chunk,
    EntityKind.EMBEDDING: Embedding,
    EntityKind.CHAT_MESSAGE: ChatMessage,
    EntityKind.USAGE_RECORD: UsageRecord,
}


def kind_of(entity: object) -> EntityKind:
    for kind, entity_type in ENTITY_TYPES.items():
        if isinstance(entity, entity_type):
            return kind
    raise TypeError(f"Unsupported entity type: {type(entity).__name__}")


def entity_id(entity: object) -> str:
    kind = kind_of(entity)
    attribute = {
        EntityKind.DOCUMENT: "document_id",
        EntityKind.CHUNK: "chunk_id",
        EntityKind.EMBEDDING: "embedding_id",
        EntityKind.CHAT_MESSAGE: "message_id",
        EntityKind.USAGE_RECORD: "record_id",
    }[kind]
    return getattr(entity, attribute)
