"""Quota-enforcing local store for documents, chunks, embeddings and history."""

from __future__ import annotations

from dataclasses import dataclass
from threading import RLock
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from pydantic import TypeAdapter

from localrag.metrics.observability import get_logger
from localrag.models import (
    ENTITY_TYPES,
    ChatMessage,
    Chunk,
    Document,
    Embedding,
    EntityKind,
    StorageUsage,
    entity_id,
    kind_of,
)
from localrag.storage.backends import Delete, MemoryBackend, PersistenceBackend, Put

DEFAULT_CAPACITY_BYTES = 8 * 1024 * 1024

_ADAPTERS: Mapping[EntityKind, TypeAdapter] = {kind: TypeAdapter(cls) for kind, cls in ENTITY_TYPES.items()}


class QuotaExceededError(RuntimeError):
    """Raised when a write would push the store past its capacity ceiling."""

    def __init__(self, requested_bytes: int, available_bytes: int, capacity_bytes: int) -> None:
        super().__init__(
            f"Storage quota exceeded: write needs {requested_bytes} bytes, "
            f"{available_bytes} of {capacity_bytes} available"
        )
        self.requested_bytes = requested_bytes
        self.available_bytes = available_bytes
        self.capacity_bytes = capacity_bytes


@dataclass(frozen=True)
class _Stored:
    entity: object
    size: int


class LocalStore:
    """Typed, quota-bounded view over a persistence backend.

    Every record is mirrored in memory (insertion ordered) and written through
    to the backend. Writes that would exceed ``capacity_bytes`` are rejected
    whole; the store never evicts on its own.
    """

    def __init__(
        self,
        backend: PersistenceBackend | None = None,
        *,
        capacity_bytes: int = DEFAULT_CAPACITY_BYTES,
    ) -> None:
        if capacity_bytes <= 0:
            raise ValueError("capacity_bytes must be positive")
        self._backend = backend or MemoryBackend()
        self._capacity = capacity_bytes
        self._lock = RLock()
        self._records: Dict[EntityKind, Dict[str, _Stored]] = {kind: {} for kind in EntityKind}
        self._chunks_by_document: Dict[str, List[str]] = {}
        self._embedding_by_chunk: Dict[str, str] = {}
        self._bytes_used = 0
        self._logger = get_logger("storage")
        self._load()

    @property
    def capacity_bytes(self) -> int:
        return self._capacity

    @property
    def bytes_used(self) -> int:
        with self._lock:
            return self._bytes_used

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, entity: object) -> None:
        self.put_many([entity])

    def measure(self, entities: Sequence[object]) -> int:
        """Bytes ``entities`` occupy once stored, ignoring records they would replace."""

        return sum(_size(payload) for _, payload in _encode(entities).values())

    def put_many(self, entities: Sequence[object]) -> None:
        """Write all entities or none of them."""

        encoded = _encode(entities)
        if not encoded:
            return
        with self._lock:
            delta = 0
            for (kind, key), (_, payload) in encoded.items():
                previous = self._records[kind].get(key)
                delta += _size(payload) - (previous.size if previous else 0)
            if self._bytes_used + delta > self._capacity:
                available = self._capacity - self._bytes_used
                self._logger.warning(
                    "storage.quota_exceeded",
                    requested_bytes=delta,
                    available_bytes=available,
                    capacity_bytes=self._capacity,
                )
                raise QuotaExceededError(delta, available, self._capacity)
            puts: List[Put] = [(kind.value, key, payload) for (kind, key), (_, payload) in encoded.items()]
            self._backend.write_batch(puts, [])
            for (kind, key), (entity, payload) in encoded.items():
                self._index(kind, key, entity, _size(payload))

    def delete(self, document_id: str) -> bool:
        """Remove a document with its chunks and embeddings before returning."""

        with self._lock:
            if document_id not in self._records[EntityKind.DOCUMENT]:
                return False
            chunk_ids = list(self._chunks_by_document.get(document_id, []))
            embedding_ids = [
                self._embedding_by_chunk[chunk_id]
                for chunk_id in chunk_ids
                if chunk_id in self._embedding_by_chunk
            ]
            targets: List[Tuple[EntityKind, str]] = [(EntityKind.DOCUMENT, document_id)]
            targets.extend((EntityKind.CHUNK, chunk_id) for chunk_id in chunk_ids)
            targets.extend((EntityKind.EMBEDDING, emb_id) for emb_id in embedding_ids)
            self._remove(targets)
        self._logger.info(
            "storage.document_deleted",
            document_id=document_id,
            chunk_count=len(chunk_ids),
            embedding_count=len(embedding_ids),
        )
        return True

    def evict_oldest(self, project_id: str, bytes_needed: int) -> List[str]:
        """Delete the project's oldest documents until ``bytes_needed`` fit.

        Only runs when a caller asks for it. Returns the evicted document ids,
        which may be every document of the project if that still is not enough.
        """

        evicted: List[str] = []
        with self._lock:
            for document in self.query(project_id, EntityKind.DOCUMENT):
                if self._capacity - self._bytes_used >= bytes_needed:
                    break
                self.delete(document.document_id)
                evicted.append(document.document_id)
        if evicted:
            self._logger.info("storage.evicted", project_id=project_id, document_ids=evicted)
        return evicted

    def clear_chat(self, project_id: str) -> int:
        return self._truncate(project_id, EntityKind.CHAT_MESSAGE)

    def reset_usage(self, project_id: str) -> int:
        return self._truncate(project_id, EntityKind.USAGE_RECORD)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, kind: EntityKind, key: str) -> object | None:
        with self._lock:
            stored = self._records[kind].get(key)
            return stored.entity if stored else None

    def query(self, project_id: str, kind: EntityKind) -> List:
        """All entities of ``kind`` owned by ``project_id``.

        Insertion order, except chunks which follow their document's insertion
        order and then their own ``index``.
        """

        with self._lock:
            items = [
                stored.entity
                for stored in self._records[kind].values()
                if getattr(stored.entity, "project_id", None) == project_id
            ]
            if kind is EntityKind.CHUNK:
                position = {key: pos for pos, key in enumerate(self._records[EntityKind.DOCUMENT])}
                items.sort(key=lambda chunk: (position.get(chunk.document_id, len(position)), chunk.index))
            return items

    def chunks_for_document(self, document_id: str) -> List[Chunk]:
        with self._lock:
            chunks = [
                self._records[EntityKind.CHUNK][chunk_id].entity
                for chunk_id in self._chunks_by_document.get(document_id, [])
            ]
        return sorted(chunks, key=lambda chunk: chunk.index)

    def embedding_for_chunk(self, chunk_id: str) -> Embedding | None:
        with self._lock:
            embedding_key = self._embedding_by_chunk.get(chunk_id)
            if embedding_key is None:
                return None
            return self._records[EntityKind.EMBEDDING][embedding_key].entity

    def chat_history(self, project_id: str, limit: int | None = None) -> List[ChatMessage]:
        messages = self.query(project_id, EntityKind.CHAT_MESSAGE)
        if limit is not None:
            return messages[-limit:] if limit > 0 else []
        return messages

    def embedding_space(self, project_id: str) -> Tuple[str, int] | None:
        """Provider id and dimension shared by the project's documents."""

        documents: List[Document] = self.query(project_id, EntityKind.DOCUMENT)
        if not documents:
            return None
        return documents[0].embedding_provider, documents[0].embedding_dim

    def usage(self, project_id: str | None = None) -> StorageUsage:
        with self._lock:
            counts: Dict[EntityKind, int] = {}
            scoped_bytes = 0
            for kind, records in self._records.items():
                count = 0
                for stored in records.values():
                    if project_id is None or getattr(stored.entity, "project_id", None) == project_id:
                        count += 1
                        scoped_bytes += stored.size
                counts[kind] = count
            return StorageUsage(
                document_count=counts[EntityKind.DOCUMENT],
                chunk_count=counts[EntityKind.CHUNK],
                embedding_count=counts[EntityKind.EMBEDDING],
                chat_message_count=counts[EntityKind.CHAT_MESSAGE],
                usage_record_count=counts[EntityKind.USAGE_RECORD],
                bytes_used=self._bytes_used if project_id is None else scoped_bytes,
                capacity_bytes=self._capacity,
            )

    def close(self) -> None:
        self._backend.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load(self) -> None:
        for namespace, key, payload in self._backend.load():
            kind = EntityKind(namespace)
            entity = _ADAPTERS[kind].validate_json(payload)
            self._index(kind, key, entity, _size(payload))

    def _index(self, kind: EntityKind, key: str, entity: object, size: int) -> None:
        previous = self._records[kind].get(key)
        if previous is not None:
            self._bytes_used -= previous.size
        self._records[kind][key] = _Stored(entity=entity, size=size)
        self._bytes_used += size
        if kind is EntityKind.CHUNK and previous is None:
            self._chunks_by_document.setdefault(entity.document_id, []).append(key)
        elif kind is EntityKind.EMBEDDING:
            self._embedding_by_chunk[entity.chunk_id] = key

    def _remove(self, targets: Iterable[Tuple[EntityKind, str]]) -> None:
        targets = [target for target in targets if target[1] in self._records[target[0]]]
        deletes: List[Delete] = [(kind.value, key) for kind, key in targets]
        self._backend.write_batch([], deletes)
        for kind, key in targets:
            stored = self._records[kind].pop(key)
            self._bytes_used -= stored.size
            entity = stored.entity
            if kind is EntityKind.CHUNK:
                siblings = self._chunks_by_document.get(entity.document_id, [])
                if key in siblings:
                    siblings.remove(key)
                if not siblings:
                    self._chunks_by_document.pop(entity.document_id, None)
            elif kind is EntityKind.EMBEDDING:
                self._embedding_by_chunk.pop(entity.chunk_id, None)

    def _truncate(self, project_id: str, kind: EntityKind) -> int:
        with self._lock:
            targets = [
                (kind, key)
                for key, stored in self._records[kind].items()
                if getattr(stored.entity, "project_id", None) == project_id
            ]
            self._remove(targets)
        self._logger.info("storage.truncated", project_id=project_id, kind=kind.value, count=len(targets))
        return len(targets)


def _encode(entities: Sequence[object]) -> Dict[Tuple[EntityKind, str], Tuple[object, str]]:
    encoded: Dict[Tuple[EntityKind, str], Tuple[object, str]] = {}
    for entity in entities:
        kind = kind_of(entity)
        encoded[(kind, entity_id(entity))] = (entity, _ADAPTERS[kind].dump_json(entity).decode("utf-8"))
    return encoded


def _size(payload: str) -> int:
    return len(payload.encode("utf-8"))


__all__ = [
    "DEFAULT_CAPACITY_BYTES",
    "LocalStore",
    "QuotaExceededError",
]
