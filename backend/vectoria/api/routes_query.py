"""Search and question-answering routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from vectoria.api.dependencies import get_dataset, get_query_service
from vectoria.datasets.dataset import Dataset
from vectoria.models.dto import AskRequest, AskResponse, CancelResponse, SearchRequest, SearchResponse, SearchResult
from vectoria.retrieval.search import QueryService

router = APIRouter()


@router.post("/{dataset_id}/search", response_model=SearchResponse, summary="Keyword or semantic document search")
def search(
    request: SearchRequest,
    dataset: Dataset = Depends(get_dataset),
    service: QueryService = Depends(get_query_service),
) -> SearchResponse:
    hits = service.search(
        dataset,
        request.query,
        search_type=request.search_type,
        k=request.k,
        min_score=request.min_score,
    )
    return SearchResponse(
        dataset_id=dataset.id,
        search_type=request.search_type,
        results=[SearchResult(**hit.to_dict()) for hit in hits],
    )


@router.post("/{dataset_id}/ask", summary="Answer a question from the dataset")
def ask(
    request: AskRequest,
    dataset: Dataset = Depends(get_dataset),
    service: QueryService = Depends(get_query_service),
):
    kwargs: dict[str, Any] = {
        "scope": request.scope,
        "num_results": request.num_results,
        "retrieval_k": request.retrieval_k,
        "vector_weight": request.vector_weight,
        "temperature": request.temperature,
        "max_tokens": request.max_tokens,
    }
    if request.stream:
        stream = service.stream_question(dataset, request.question, **kwargs)
        return StreamingResponse(iter(stream), media_type="text/plain")
    result = service.ask_question(dataset, request.question, **kwargs)
    return AskResponse(**result.to_dict())


@router.post("/{dataset_id}/ask/cancel", response_model=CancelResponse, summary="Stop in-flight answers")
async def cancel(dataset_id: str, service: QueryService = Depends(get_query_service)) -> CancelResponse:
    return CancelResponse(dataset_id=dataset_id, cancelled=service.cancel(dataset_id))


@router.get("/{dataset_id}/history", summary="Conversation history for a dataset")
async def history(dataset_id: str, service: QueryService = Depends(get_query_service)) -> list[dict[str, str]]:
    return service.history(dataset_id)


@router.delete("/{dataset_id}/history", summary="Clear conversation history")
async def clear_history(dataset_id: str, service: QueryService = Depends(get_query_service)) -> dict[str, bool]:
    service.clear_history(dataset_id)
    return {"ok": True}


__all__ = ["router"]
