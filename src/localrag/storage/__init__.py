"""Local persistence."""

from .backends import MemoryBackend, PersistenceBackend, SqlBackend
from .store import DEFAULT_CAPACITY_BYTES, LocalStore, QuotaExceededError

__all__ = [
    "DEFAULT_CAPACITY_BYTES",
    "LocalStore",
    "MemoryBackend",
    "PersistenceBackend",
    "QuotaExceededError",
    "SqlBackend",
]
