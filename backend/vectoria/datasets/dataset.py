"""Dataset handles, immutable artifact snapshots and the workspace."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

import numpy as np

from vectoria.clustering.density import ClusteringResult, cluster_stats
from vectoria.core.errors import DatasetNotFoundError, IndexNotBuiltError
from vectoria.models.entities import NOISE_LABEL, Chunk, Document, ProcessingSummary
from vectoria.reduction.validation import normalize_projection
from vectoria.retrieval.hybrid import HybridIndex
from vectoria.utils.ids import new_id
from vectoria.utils.time import utc_now


class PipelineState(str, Enum):
    EMPTY = "empty"
    CHUNKING = "chunking"
    EMBEDDING_PARENT = "embedding_parent"
    EMBEDDING_CHUNK = "embedding_chunk"
    INDEXING = "indexing"
    REDUCING_CLUSTERING = "reducing_clustering"
    REDUCING_VISUALIZATION = "reducing_visualization"
    CLUSTERING = "clustering"
    SAVED = "saved"


@dataclass(slots=True, frozen=True)
class DatasetArtifacts:
    """Everything one processing run published, swapped in as a unit."""

    version: int
    documents: tuple[Document, ...]
    chunks: tuple[Chunk, ...]
    chunk_to_parent: dict[str, str]
    parent_vectors: np.ndarray
    chunk_vectors: np.ndarray
    document_index: HybridIndex
    chunk_index: HybridIndex
    projection_clustering: np.ndarray
    projection_2d: np.ndarray
    clustering: ClusteringResult
    summary: ProcessingSummary
    model_name: str = ""
    dimension: int = 0
    created: str = field(default_factory=lambda: utc_now().isoformat())
    documents_by_id: dict[str, Document] = field(init=False, repr=False)
    chunks_by_id: dict[str, Chunk] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "documents_by_id", {doc.id: doc for doc in self.documents})
        object.__setattr__(self, "chunks_by_id", {chunk.id: chunk for chunk in self.chunks})

    def chunk_ids_for(self, document_ids: set[str]) -> set[str]:
        return {chunk.id for chunk in self.chunks if chunk.parent_id in document_ids}


class Dataset:
    """Aggregate root: an id, a version counter and the current snapshot."""

    def __init__(self, dataset_id: str | None = None, name: str = "") -> None:
        self.id = dataset_id or new_id("ds")
        self.name = name or self.id
        self.created_at = utc_now()
        self.state = PipelineState.EMPTY
        self.processing_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._version = 0
        self._artifacts: DatasetArtifacts | None = None

    @property
    def version(self) -> int:
        return self._version

    @property
    def artifacts(self) -> DatasetArtifacts | None:
        return self._artifacts

    def require_artifacts(self) -> DatasetArtifacts:
        artifacts = self._artifacts
        if artifacts is None:
            raise IndexNotBuiltError(f"Dataset {self.id} has not been processed")
        return artifacts

    def start_run(self) -> int:
        """Reserve a new version; readers holding the old one observe the bump."""
        with self._state_lock:
            self._version += 1
            return self._version

    def set_state(self, state: PipelineState) -> None:
        self.state = state

    def publish(self, artifacts: DatasetArtifacts) -> None:
        with self._state_lock:
            self._artifacts = artifacts
            self.state = PipelineState.SAVED

    def abort_run(self) -> None:
        self.state = PipelineState.SAVED if self._artifacts is not None else PipelineState.EMPTY

    def describe(self) -> dict[str, Any]:
        artifacts = self._artifacts
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state.value,
            "version": self._version,
            "created_at": self.created_at.isoformat(),
            "num_documents": len(artifacts.documents) if artifacts else 0,
            "num_chunks": len(artifacts.chunks) if artifacts else 0,
            "num_clusters": artifacts.clustering.num_clusters if artifacts else 0,
        }


def get_visualization_data(dataset: Dataset) -> dict[str, Any]:
    """Read-only snapshot for display: normalized 2D points plus cluster summaries."""
    artifacts = dataset.require_artifacts()
    coords = normalize_projection(artifacts.projection_2d) if len(artifacts.documents) else np.zeros((0, 2))
    labels = artifacts.clustering.labels
    probabilities = artifacts.clustering.probabilities
    points = []
    for row, document in enumerate(artifacts.documents):
        label = int(labels[row]) if row < len(labels) else NOISE_LABEL
        points.append(
            {
                "id": document.id,
                "x": float(coords[row, 0]) if coords.shape[1] > 0 else 0.5,
                "y": float(coords[row, 1]) if coords.shape[1] > 1 else 0.5,
                "cluster": label,
                "cluster_label": document.metadata.get("cluster_label"),
                "probability": float(probabilities[row]) if row < len(probabilities) else 0.0,
                "keywords": list(document.cluster_keywords_viz),
            }
        )
    clusters = [
        {
            "label": cluster.label,
            "name": cluster.display_name,
            "member_count": cluster.member_count,
            "keywords": [item.to_dict() for item in cluster.keywords],
            "viz_keywords": list(cluster.viz_keywords),
        }
        for _, cluster in sorted(artifacts.clustering.clusters.items())
    ]
    return {
        "dataset_id": dataset.id,
        "version": artifacts.version,
        "points": points,
        "clusters": clusters,
        "stats": cluster_stats(labels, probabilities),
    }


class Workspace:
    """Registry of open datasets keyed by id."""

    def __init__(self) -> None:
        self._datasets: dict[str, Dataset] = {}
        self._lock = threading.Lock()

    def create(self, name: str = "", dataset_id: str | None = None) -> Dataset:
        dataset = Dataset(dataset_id=dataset_id, name=name)
        self.add(dataset)
        return dataset

    def add(self, dataset: Dataset) -> Dataset:
        with self._lock:
            self._datasets[dataset.id] = dataset
        return dataset

    def get(self, dataset_id: str) -> Dataset:
        with self._lock:
            dataset = self._datasets.get(dataset_id)
        if dataset is None:
            raise DatasetNotFoundError(f"Dataset '{dataset_id}' not found")
        return dataset

    def remove(self, dataset_id: str) -> Dataset:
        with self._lock:
            dataset = self._datasets.pop(dataset_id, None)
        if dataset is None:
            raise DatasetNotFoundError(f"Dataset '{dataset_id}' not found")
        return dataset

    def __contains__(self, dataset_id: object) -> bool:
        return dataset_id in self._datasets

    def __iter__(self) -> Iterator[Dataset]:
        with self._lock:
            return iter(list(self._datasets.values()))

    def __len__(self) -> int:
        return len(self._datasets)


__all__ = [
    "PipelineState",
    "DatasetArtifacts",
    "Dataset",
    "Workspace",
    "get_visualization_data",
]
