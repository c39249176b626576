"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from vectoria.core.config import Settings, get_settings
from vectoria.datasets.dataset import Dataset, Workspace
from vectoria.db.blobs import SQLiteBlobStore
from vectoria.db.sqlite import SQLiteDatabase
from vectoria.ingest.embeddings import EmbeddingService, build_embedding_service
from vectoria.ingest.pipeline import DatasetPipeline, ProcessingOptions
from vectoria.retrieval import QueryService
from vectoria.retrieval.generation import build_generator
from vectoria.storage.registry import DatasetRegistry

_DB: SQLiteDatabase | None = None
_WORKSPACE: Workspace | None = None
_EMBEDDINGS: EmbeddingService | None = None
_PIPELINE: DatasetPipeline | None = None
_QUERY_SERVICE: QueryService | None = None
_REGISTRY: DatasetRegistry | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


def get_database() -> SQLiteDatabase:
    global _DB
    if _DB is None:
        db = SQLiteDatabase(get_app_settings().db_path)
        db.ensure_schema()
        _DB = db
    return _DB


def get_workspace() -> Workspace:
    global _WORKSPACE
    if _WORKSPACE is None:
        _WORKSPACE = Workspace()
    return _WORKSPACE


def get_embedding_service() -> EmbeddingService:
    global _EMBEDDINGS
    if _EMBEDDINGS is None:
        _EMBEDDINGS = build_embedding_service(get_app_settings())
    return _EMBEDDINGS


def get_pipeline() -> DatasetPipeline:
    global _PIPELINE
    if _PIPELINE is None:
        _PIPELINE = DatasetPipeline(
            embedding_service=get_embedding_service(),
            options=ProcessingOptions.from_settings(get_app_settings()),
        )
    return _PIPELINE


def get_query_service() -> QueryService:
    global _QUERY_SERVICE
    if _QUERY_SERVICE is None:
        settings = get_app_settings()
        _QUERY_SERVICE = QueryService(
            settings=settings,
            embedding_service=get_embedding_service(),
            generator=build_generator(settings),
        )
    return _QUERY_SERVICE


def get_registry() -> DatasetRegistry:
    global _REGISTRY
    if _REGISTRY is None:
        _REGISTRY = DatasetRegistry(SQLiteBlobStore(get_database()))
    return _REGISTRY


def get_dataset(dataset_id: str) -> Dataset:
    """Open dataset by id, loading a saved one into the workspace on first use."""
    workspace = get_workspace()
    if dataset_id in workspace:
        return workspace.get(dataset_id)
    dataset = get_registry().load(dataset_id)
    return workspace.add(dataset)


def reset_dependencies() -> None:
    """Drop every cached singleton; the next request rebuilds them."""
    global _DB, _WORKSPACE, _EMBEDDINGS, _PIPELINE, _QUERY_SERVICE, _REGISTRY
    if _DB is not None:
        _DB.close()
    get_app_settings.cache_clear()
    get_settings.cache_clear()
    _DB = None
    _WORKSPACE = None
    _EMBEDDINGS = None
    _PIPELINE = None
    _QUERY_SERVICE = None
    _REGISTRY = None


__all__ = [
    "get_app_settings",
    "get_database",
    "get_workspace",
    "get_embedding_service",
    "get_pipeline",
    "get_query_service",
    "get_registry",
    "get_dataset",
    "reset_dependencies",
]
