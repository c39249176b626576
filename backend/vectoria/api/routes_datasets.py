"""Dataset processing, listing and import/export routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Response

from vectoria.api.dependencies import get_dataset, get_pipeline, get_registry, get_workspace
from vectoria.core.errors import DatasetNotFoundError
from vectoria.datasets.dataset import Dataset, Workspace, get_visualization_data
from vectoria.ingest.pipeline import DatasetPipeline
from vectoria.ingest.records import records_to_documents
from vectoria.models.dto import DatasetListResponse, DeleteResponse, ProcessRequest, ProcessResponse
from vectoria.storage.registry import DatasetRegistry
from vectoria.storage.serialization import dumps, export_dataset, import_dataset

router = APIRouter()


@router.post("", response_model=ProcessResponse, summary="Process records into a dataset")
def process_records(
    request: ProcessRequest,
    pipeline: DatasetPipeline = Depends(get_pipeline),
    workspace: Workspace = Depends(get_workspace),
    registry: DatasetRegistry = Depends(get_registry),
) -> ProcessResponse:
    batch = records_to_documents(
        request.records,
        text_column=request.text_column,
        metadata_columns=request.metadata_columns,
        id_column=request.id_column,
    )
    created = not (request.dataset_id and request.dataset_id in workspace)
    if created:
        dataset = workspace.create(name=request.name or "", dataset_id=request.dataset_id)
    else:
        dataset = workspace.get(request.dataset_id)
    try:
        summary = pipeline.process_dataset(
            dataset,
            batch.documents,
            empty_row_count=batch.empty_row_count,
            excluded_columns=batch.excluded_columns,
        )
    except Exception:
        if created and dataset.artifacts is None:
            workspace.remove(dataset.id)
        raise
    if request.persist:
        registry.save(dataset)
    return ProcessResponse(dataset=dataset.describe(), summary=summary.to_dict())


@router.get("", response_model=DatasetListResponse, summary="List open and saved datasets")
async def list_datasets(
    workspace: Workspace = Depends(get_workspace),
    registry: DatasetRegistry = Depends(get_registry),
) -> DatasetListResponse:
    return DatasetListResponse(
        open=[dataset.describe() for dataset in workspace],
        saved=registry.list(),
    )


@router.post("/import", summary="Import an exported dataset")
def import_payload(
    payload: dict[str, Any] = Body(...),
    persist: bool = False,
    workspace: Workspace = Depends(get_workspace),
    registry: DatasetRegistry = Depends(get_registry),
) -> dict[str, Any]:
    dataset = workspace.add(import_dataset(payload))
    if persist:
        registry.save(dataset)
    return dataset.describe()


@router.get("/{dataset_id}", summary="Describe a dataset")
async def describe_dataset(dataset: Dataset = Depends(get_dataset)) -> dict[str, Any]:
    return dataset.describe()


@router.delete("/{dataset_id}", response_model=DeleteResponse, summary="Close and delete a dataset")
async def delete_dataset(
    dataset_id: str,
    workspace: Workspace = Depends(get_workspace),
    registry: DatasetRegistry = Depends(get_registry),
) -> DeleteResponse:
    deleted = 0
    if dataset_id in workspace:
        workspace.remove(dataset_id)
        deleted += 1
    if registry.delete(dataset_id):
        deleted += 1
    if not deleted:
        raise DatasetNotFoundError(f"Dataset '{dataset_id}' not found")
    return DeleteResponse(status="ok", deleted=deleted)


@router.get("/{dataset_id}/visualization", summary="2D points and cluster summaries")
def visualization(dataset: Dataset = Depends(get_dataset)) -> dict[str, Any]:
    data = get_visualization_data(dataset)
    stats = data["stats"]
    # JSON object keys must be strings
    for key in ("cluster_sizes", "avg_probability"):
        stats[key] = {str(label): value for label, value in stats[key].items()}
    return data


@router.get("/{dataset_id}/export", summary="Export a processed dataset")
def export(dataset: Dataset = Depends(get_dataset)) -> Response:
    return Response(content=dumps(export_dataset(dataset)), media_type="application/json")


@router.post("/{dataset_id}/save", summary="Persist a dataset to the blob store")
def save(dataset: Dataset = Depends(get_dataset), registry: DatasetRegistry = Depends(get_registry)) -> dict[str, Any]:
    if dataset.artifacts is None:
        raise HTTPException(status_code=409, detail="Dataset has not been processed")
    return registry.save(dataset)


__all__ = ["router"]
