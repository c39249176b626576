"""Internal dataclasses representing dataset entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

MetadataValue = Union[str, int, float, bool, None]

NOISE_LABEL = -1


@dataclass(slots=True)
class Document:
    id: str
    text: str
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    cluster_keywords: list[str] = field(default_factory=list)
    cluster_keyword_scores: list["KeywordScore"] = field(default_factory=list)
    cluster_keywords_viz: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "metadata": dict(self.metadata),
            "cluster_keywords": list(self.cluster_keywords),
            "cluster_keyword_scores": [item.to_dict() for item in self.cluster_keyword_scores],
            "cluster_keywords_viz": list(self.cluster_keywords_viz),
        }


@dataclass(slots=True)
class Chunk:
    id: str
    parent_id: str
    position: int
    text: str
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    total_chunks: int = 1


@dataclass(slots=True, frozen=True)
class KeywordScore:
    keyword: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"keyword": self.keyword, "score": self.score}


@dataclass(slots=True)
class Cluster:
    label: int
    member_count: int
    keywords: list[KeywordScore] = field(default_factory=list)
    viz_keywords: list[str] = field(default_factory=list)
    probability_by_member: dict[str, float] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return "Noise" if self.label == NOISE_LABEL else f"Cluster {self.label}"


@dataclass(slots=True)
class ProcessingSummary:
    """Outcome of a processing run, including degradable conditions."""

    dataset_id: str
    version: int = 0
    num_documents: int = 0
    num_chunks: int = 0
    empty_row_count: int = 0
    duplicate_count: int = 0
    excluded_columns: list[str] = field(default_factory=list)
    num_clusters: int = 0
    noise_count: int = 0
    timings: dict[str, float] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    fallbacks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "version": self.version,
            "num_documents": self.num_documents,
            "num_chunks": self.num_chunks,
            "empty_row_count": self.empty_row_count,
            "duplicate_count": self.duplicate_count,
            "excluded_columns": list(self.excluded_columns),
            "num_clusters": self.num_clusters,
            "noise_count": self.noise_count,
            "timings": dict(self.timings),
            "warnings": list(self.warnings),
            "fallbacks": list(self.fallbacks),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ProcessingSummary":
        return cls(
            dataset_id=str(payload.get("dataset_id", "")),
            version=int(payload.get("version", 0)),
            num_documents=int(payload.get("num_documents", 0)),
            num_chunks=int(payload.get("num_chunks", 0)),
            empty_row_count=int(payload.get("empty_row_count", 0)),
            duplicate_count=int(payload.get("duplicate_count", 0)),
            excluded_columns=list(payload.get("excluded_columns", [])),
            num_clusters=int(payload.get("num_clusters", 0)),
            noise_count=int(payload.get("noise_count", 0)),
            timings={str(k): float(v) for k, v in (payload.get("timings") or {}).items()},
            warnings=list(payload.get("warnings", [])),
            fallbacks=list(payload.get("fallbacks", [])),
        )


__all__ = [
    "MetadataValue",
    "NOISE_LABEL",
    "Document",
    "Chunk",
    "KeywordScore",
    "Cluster",
    "ProcessingSummary",
]
