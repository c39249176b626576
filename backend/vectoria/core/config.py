"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "VECTORIA_"
DEFAULT_CONFIG_PATH = Path("~/.config/vectoria/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("embeddings", "model"): "embedding_model",
    ("embeddings", "backend"): "embedding_backend",
    ("embeddings", "dimension"): "embedding_dim",
    ("embeddings", "max_length"): "embedding_max_length",
    ("embeddings", "batch_size"): "embedding_batch_size",
    ("embeddings", "cache_size"): "embedding_cache_size",
    ("embeddings", "summary_max_tokens"): "summary_max_tokens",
    ("chunking", "enabled"): "chunking_enabled",
    ("chunking", "chunk_size"): "chunk_size",
    ("chunking", "chunk_overlap"): "chunk_overlap",
    ("chunking", "min_chunk_size"): "min_chunk_size",
    ("chunking", "batch_size"): "chunk_batch_size",
    ("chunking", "max_workers"): "chunk_max_workers",
    ("umap", "n_neighbors"): "umap_n_neighbors",
    ("umap", "min_dist"): "umap_min_dist",
    ("umap", "metric"): "umap_metric",
    ("umap", "clustering_dimensions"): "umap_clustering_dimensions",
    ("umap", "n_epochs"): "umap_n_epochs",
    ("umap", "approximate_threshold"): "umap_approximate_threshold",
    ("umap", "random_state"): "umap_random_state",
    ("hdbscan", "min_cluster_size"): "hdbscan_min_cluster_size",
    ("hdbscan", "min_samples"): "hdbscan_min_samples",
    ("hdbscan", "metric"): "hdbscan_metric",
    ("keywords", "metadata_top_n"): "keywords_metadata_top_n",
    ("keywords", "viz_top_n"): "keywords_viz_top_n",
    ("retrieval", "num_results"): "num_results",
    ("retrieval", "retrieval_k"): "retrieval_k",
    ("retrieval", "similarity_threshold"): "similarity_threshold",
    ("retrieval", "vector_weight"): "vector_weight",
    ("retrieval", "rrf_k"): "rrf_k",
    ("retrieval", "max_chunks_per_parent"): "max_chunks_per_parent",
    ("llm", "backend"): "generation_backend",
    ("llm", "model"): "generation_model",
    ("llm", "host"): "generation_host",
    ("llm", "temperature"): "temperature",
    ("llm", "max_tokens"): "max_tokens",
    ("llm", "context_window_size"): "context_window_size",
    ("llm", "system_prompt"): "system_prompt",
    ("llm", "user_template"): "user_template",
}

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant answering questions based on provided documents.\n"
    "Use [Doc N] to cite sources. If information is missing, say so. Keep answers clear and focused."
)

DEFAULT_USER_TEMPLATE = "Documents:\n{context}\n\nQuestion: {question}\n\nAnswer based on the documents above:"


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".vectoria" / "vectoria.db")

    embedding_model: str = "intfloat/e5-small-v2"
    embedding_backend: Literal["hashed", "sentence-transformers"] = "hashed"
    embedding_dim: int = Field(default=384, ge=8)
    embedding_max_length: int = Field(default=256, ge=8)
    embedding_batch_size: int = Field(default=32, ge=1)
    embedding_cache_size: int = Field(default=5000, ge=0)
    summary_max_tokens: int = Field(default=256, ge=1)

    chunking_enabled: bool = True
    chunk_size: int = Field(default=512, ge=16)
    chunk_overlap: int = Field(default=128, ge=0)
    min_chunk_size: int = Field(default=50, ge=0)
    chunk_batch_size: int = Field(default=50, ge=1)
    chunk_max_workers: int = Field(default=4, ge=1)

    umap_n_neighbors: int = Field(default=15, ge=2)
    umap_min_dist: float = Field(default=0.1, ge=0.0)
    umap_metric: Literal["cosine", "euclidean"] = "cosine"
    umap_clustering_dimensions: int = Field(default=15, ge=2)
    umap_n_epochs: int = Field(default=500, ge=1)
    umap_approximate_threshold: int = Field(default=10000, ge=2)
    umap_random_state: int = 42

    hdbscan_min_cluster_size: int = Field(default=5, ge=1)
    hdbscan_min_samples: int = Field(default=5, ge=1)
    hdbscan_metric: str = "euclidean"
    keywords_metadata_top_n: int = Field(default=10, ge=1)
    keywords_viz_top_n: int = Field(default=3, ge=1)

    num_results: int = Field(default=5, ge=1)
    retrieval_k: int = Field(default=60, ge=1)
    similarity_threshold: float = 0.0
    vector_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    rrf_k: int = Field(default=60, ge=1)
    max_chunks_per_parent: int = Field(default=5, ge=1)

    generation_backend: Literal["template", "ollama"] = "template"
    generation_model: str = "qwen2.5:1.5b"
    generation_host: str = "http://127.0.0.1:11434"
    temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, ge=1)
    context_window_size: int = Field(default=2048, ge=128)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    user_template: str = DEFAULT_USER_TEMPLATE

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("db_path", mode="before")
    @classmethod
    def _expand_db_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("db_path must be a path or string")

    @field_validator("user_template")
    @classmethod
    def _require_placeholders(cls, value: str) -> str:
        if "{context}" not in value or "{question}" not in value:
            raise ValueError("user_template must contain {context} and {question}")
        return value

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with VECTORIA_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings", "DEFAULT_SYSTEM_PROMPT", "DEFAULT_USER_TEMPLATE"]
