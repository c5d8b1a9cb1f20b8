"""Runtime configuration for the localrag engine."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="localrag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    data_dir: Path = Path("./data")

    # Storage
    storage_backend: Literal["memory", "sql"] = "memory"
    database_url: str | None = None  # defaults to sqlite under data_dir
    storage_capacity_bytes: int = 8 * 1024 * 1024

    # Chunking
    chunk_size: int = 1000
    chunk_overlap: int = 200

    # Background ingestion jobs kept per project
    max_tracked_jobs: int = 1000

    # Embeddings
    embedding_provider: str = "hash"
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = 384
    embedding_max_input_chars: int = 8000
    embedding_device: str | None = None
    embedding_api_url: str = "https://api.openai.com/v1/embeddings"
    embedding_api_key: str | None = None
    embedding_batch_size: int = 20
    embedding_timeout_seconds: float = 60.0
    embedding_normalize: bool = True
    embedding_cache_folder: str | None = None

    # Generation
    generation_provider: str = "template"
    generator_model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    generator_max_new_tokens: int = 512
    generator_temperature: float = 0.7
    generator_device: str | None = None
    generation_api_url: str = "https://api.openai.com/v1/chat/completions"
    generation_api_key: str | None = None
    generation_timeout_seconds: float = 60.0

    # Search
    search_algorithm: Literal["keyword", "semantic", "hybrid"] = "hybrid"
    search_top_k: int = 5
    similarity_threshold: float = 0.3
    # Placeholder weights, not calibrated against relevance judgments.
    hybrid_keyword_weight: float = 0.5
    hybrid_semantic_weight: float = 0.5
    max_context_chars: int = 4000

    # Budget & pricing (USD)
    monthly_budget: float = 100.0
    budget_alert_thresholds: tuple[float, ...] = (60.0, 80.0, 100.0)
    price_per_generation_token: float = 0.00003
    price_per_embedding_token: float = 0.0000001
    price_per_storage_byte: float = 0.023 / (1024**3)

    evaluation_min_recall: float = 0.5
    evaluation_min_mrr: float = 0.5

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{(self.data_dir / 'localrag.db').as_posix()}"


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
