"""Runtime configuration for the localrag pipeline."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# (min, max) bounds applied to user supplied values
VALIDATION_CONSTRAINTS: dict[str, tuple[float, float]] = {
    "chunk_size": (50, 2000),
    "chunk_overlap": (0, 500),
    "top_k": (1, 50),
    "similarity_threshold": (0.0, 1.0),
    "cache_ttl_seconds": (60, 7 * 24 * 60 * 60),
    "max_cache_size": (10, 1000),
}

EMBEDDING_MODELS: dict[str, dict[str, object]] = {
    "english": {
        "name": "sentence-transformers/all-MiniLM-L6-v2",
        "dimensions": 384,
        "description": "Fast, lightweight model for English text",
    },
    "multilingual": {
        "name": "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2",
        "dimensions": 384,
        "description": "Supports 50+ languages",
    },
}


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="localrag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Storage
    chroma_persist_dir: Path | None = Path("./.localrag")
    chroma_collection_prefix: str = "localrag"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False
    cache_ttl_seconds: int = 24 * 60 * 60
    max_cache_size: int = 100

    # Embedding
    embedding_model: str = "english"
    embedding_dim: int = 384
    use_model_embeddings: bool = False
    embedding_device: Literal["auto", "cpu", "cuda", "mps"] = "auto"
    embedding_batch_size: int = 10

    # Chunking
    chunk_size: int = 900
    chunk_overlap: int = 120
    min_chunk_size: int = 100

    # Retrieval
    top_k: int = 5
    similarity_threshold: float = 0.25
    use_diversity: bool = True
    diversity_threshold: float = 0.95

    # Generation
    generation_enabled: bool = True
    preferred_provider: Literal["on-device", "local-model", "none"] = "on-device"
    provider_fallback_order: tuple[str, ...] = ("on-device", "local-model")
    on_device_base_url: str = "http://localhost:11434/v1"
    on_device_api_key: str = "local"
    on_device_model: str = "qwen2.5:0.5b"
    on_device_timeout_seconds: float = 5.0
    local_model_name: str = "Qwen/Qwen2.5-0.5B-Instruct"
    local_model_device: str | None = None
    local_model_timeout_seconds: float = 10.0
    fallback_timeout_seconds: float = 2.0
    generator_max_new_tokens: int = 150
    generator_temperature: float = 0.7
    generator_top_k: int = 50
    generator_top_p: float = 0.9
    generator_repetition_penalty: float = 1.2

    # Generation gating
    strict_rag: bool = True
    min_generation_similarity: float = 0.55
    min_units_for_generation: int = 5
    max_context_chars: int = 1800
    good_enough_confidence: float = 0.75
    medium_confidence: float = 0.5
    generation_timeout_medium_seconds: float = 3.0
    generation_timeout_low_seconds: float = 5.0
    min_generated_chars: int = 50

    # Answer formatting
    max_sources: int = 3
    direct_answer_threshold: float = 0.8
    single_answer_mode: bool = False
    answer_length_limit: int = 320

    # API
    api_key: str | None = None  # if set, required in X-API-Key header

    @model_validator(mode="after")
    def _clamp_ranges(self) -> "Settings":
        for name, (low, high) in VALIDATION_CONSTRAINTS.items():
            value = getattr(self, name)
            clamped = max(low, min(high, value))
            if clamped != value:
                setattr(self, name, type(value)(clamped))
        return self

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def embedding_model_name(self) -> str:
        """Resolve model aliases (``english``, ``multilingual``) to a model id."""

        preset = EMBEDDING_MODELS.get(self.embedding_model)
        if preset is None:
            return self.embedding_model
        return str(preset["name"])


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
