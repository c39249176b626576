"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ProcessRequest(BaseModel):
    records: list[dict[str, Any]] = Field(description="Tabular rows, one dict per record")
    text_column: str = "text"
    metadata_columns: list[str] | None = Field(default=None, description="Defaults to every other column")
    id_column: str | None = None
    name: str | None = None
    dataset_id: str | None = Field(default=None, description="Re-process an existing dataset in place")
    persist: bool = Field(default=False, description="Save the processed dataset to the blob store")


class ProcessResponse(BaseModel):
    dataset: dict[str, Any]
    summary: dict[str, Any]


class DatasetListResponse(BaseModel):
    open: list[dict[str, Any]]
    saved: list[dict[str, Any]]


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    search_type: Literal["keyword", "semantic"] = "keyword"
    k: int = Field(default=10, ge=1, le=200)
    min_score: float = 0.0


class SearchResult(BaseModel):
    id: str
    score: float
    text: str
    metadata: dict[str, Any]


class SearchResponse(BaseModel):
    dataset_id: str
    search_type: str
    results: list[SearchResult]


class AskRequest(BaseModel):
    question: str = Field(min_length=1)
    scope: list[str] | None = Field(default=None, description="Restrict retrieval to these document ids")
    num_results: int | None = Field(default=None, ge=1, le=50)
    retrieval_k: int | None = Field(default=None, ge=1, le=500)
    vector_weight: float | None = Field(default=None, ge=0.0, le=1.0)
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False


class AskResponse(BaseModel):
    question: str
    answer: str
    sources: list[dict[str, Any]]
    retrieval_metrics: dict[str, Any]
    context_limited: bool
    was_stopped: bool
    model: str
    dataset_version: int
    elapsed_ms: int


class CancelResponse(BaseModel):
    dataset_id: str
    cancelled: int


class DeleteResponse(BaseModel):
    status: Literal["ok", "noop"]
    deleted: int


__all__ = [
    "ProcessRequest",
    "ProcessResponse",
    "DatasetListResponse",
    "SearchRequest",
    "SearchResult",
    "SearchResponse",
    "AskRequest",
    "AskResponse",
    "CancelResponse",
    "DeleteResponse",
]
