"""Persistence backends behind the local store.

A backend is a dumb namespaced key/value medium. It only has to replay its
records in insertion order and apply a batch of puts and deletes atomically;
quota, typing and indexing live in :class:`localrag.storage.store.LocalStore`.
"""

from __future__ import annotations

from pathlib import Path
from threading import RLock
from typing import Dict, Iterator, Protocol, Sequence, Tuple

from sqlalchemy import Integer, String, Text, UniqueConstraint, create_engine, delete, select
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

Put = Tuple[str, str, str]
Delete = Tuple[str, str]


class PersistenceBackend(Protocol):
    """Storage medium contract required by the local store."""

    def load(self) -> Iterator[Put]:
        """Yield ``(namespace, key, value)`` for every record in insertion order."""

    def write_batch(self, puts: Sequence[Put], deletes: Sequence[Delete]) -> None:
        """Apply all puts and deletes, or none of them."""

    def close(self) -> None:
        """Release any held resources."""


class MemoryBackend:
    """In-process backend; contents vanish with the process."""

    def __init__(self) -> None:
        self._data: Dict[Tuple[str, str], str] = {}
        self._lock = RLock()

    def load(self) -> Iterator[Put]:
        with self._lock:
            snapshot = list(self._data.items())
        for (namespace, key), value in snapshot:
            yield namespace, key, value

    def write_batch(self, puts: Sequence[Put], deletes: Sequence[Delete]) -> None:
        with self._lock:
            staged = dict(self._data)
            for namespace, key, value in puts:
                staged[(namespace, key)] = value
            for namespace, key in deletes:
                staged.pop((namespace, key), None)
            self._data = staged

    def close(self) -> None:
        return None


class Base(DeclarativeBase):
    pass


class RecordRow(Base):
    __tablename__ = "localrag_records"
    __table_args__ = (UniqueConstraint("namespace", "record_key", name="uq_namespace_key"),)

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    namespace: Mapped[str] = mapped_column(String(64), index=True)
    record_key: Mapped[str] = mapped_column(String(255))
    value: Mapped[str] = mapped_column(Text)


class SqlBackend:
    """SQLAlchemy backend; an SQLite file gives durable single-user storage."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        self._engine = create_engine(url, echo=echo, future=True)
        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)

    def load(self) -> Iterator[Put]:
        with self._session_factory() as session:
            rows = session.execute(select(RecordRow).order_by(RecordRow.seq)).scalars().all()
        for row in rows:
            yield row.namespace, row.record_key, row.value

    def write_batch(self, puts: Sequence[Put], deletes: Sequence[Delete]) -> None:
        with self._session_factory.begin() as session:
            for namespace, key, value in puts:
                existing = session.execute(
                    select(RecordRow).where(RecordRow.namespace == namespace, RecordRow.record_key == key)
                ).scalar_one_or_none()
                if existing is None:
                    session.add(RecordRow(namespace=namespace, record_key=key, value=value))
                else:
                    existing.value = value
            for namespace, key in deletes:
                session.execute(
                    delete(RecordRow).where(RecordRow.namespace == namespace, RecordRow.record_key == key)
                )

    def close(self) -> None:
        self._engine.dispose()
