"""Administrative routes for Vectoria."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from vectoria.api.dependencies import get_app_settings, get_embedding_service, get_workspace
from vectoria.core.config import Settings
from vectoria.core.metrics import metrics_response
from vectoria.datasets.dataset import Workspace
from vectoria.ingest.embeddings import EmbeddingService

router = APIRouter()


@router.get("/health", summary="Liveness check")
async def health() -> dict[str, bool]:
    return {"ok": True}


@router.get("/status", summary="Runtime configuration and open datasets")
async def status(
    settings: Settings = Depends(get_app_settings),
    embeddings: EmbeddingService = Depends(get_embedding_service),
    workspace: Workspace = Depends(get_workspace),
) -> dict[str, Any]:
    return {
        "embedding_model": embeddings.model_name,
        "embedding_dimension": embeddings.dimension,
        "embedding_cache_entries": embeddings.cache_len,
        "generation_backend": settings.generation_backend,
        "open_datasets": len(workspace),
    }


@router.get("/metrics", summary="Prometheus metrics")
async def get_metrics():
    return metrics_response()


__all__ = ["router"]
