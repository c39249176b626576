"""Export and import of processed datasets."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import numpy as np
import orjson

from vectoria.clustering.density import ClusteringResult, build_clusters, reconcile_outputs
from vectoria.clustering.keywords import ClusterKeywords
from vectoria.core.errors import ImportFormatError
from vectoria.datasets.dataset import Dataset, DatasetArtifacts
from vectoria.ingest.chunker import ChunkingResult, Passage, build_chunks
from vectoria.ingest.pipeline import build_chunk_index, build_document_index, verify_chunk_parents
from vectoria.models.entities import Chunk, Document, KeywordScore, ProcessingSummary
from vectoria.utils.time import utc_now

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
EXPORT_SCHEMA = "three-tier-v1"
REQUIRED_SECTIONS = ("metadata", "documents", "embeddings")


def export_dataset(dataset: Dataset) -> dict[str, Any]:
    """Plain-data snapshot of the published artifacts (JSON compatible)."""
    artifacts = dataset.require_artifacts()
    clustering = artifacts.clustering
    visualization: dict[str, Any] = {
        "projection_2d": np.asarray(artifacts.projection_2d, dtype=np.float64).tolist(),
        "projection_clustering": np.asarray(artifacts.projection_clustering, dtype=np.float64).tolist(),
        "clusters": [int(label) for label in clustering.labels.tolist()],
        "probabilities": [float(value) for value in clustering.probabilities.tolist()],
        "cluster_keywords": {str(label): entry.to_dict() for label, entry in sorted(clustering.keywords.items())},
    }
    return {
        "metadata": {
            "version": EXPORT_VERSION,
            "schema": EXPORT_SCHEMA,
            "created": artifacts.created,
            "model": artifacts.model_name,
            "dimension": artifacts.dimension,
            "num_documents": len(artifacts.documents),
            "num_chunks": len(artifacts.chunks),
            "dataset_id": dataset.id,
            "name": dataset.name,
            "dataset_version": artifacts.version,
        },
        "documents": [document.to_dict() for document in artifacts.documents],
        "embeddings": {
            "parent": {"vectors": np.asarray(artifacts.parent_vectors).tolist(), "mode": "query"},
            "chunks": {"vectors": np.asarray(artifacts.chunk_vectors).tolist(), "mode": "passage"},
            "chunk_map": dict(artifacts.chunk_to_parent),
        },
        "chunks": [
            {
                "chunk_id": chunk.id,
                "parent_id": chunk.parent_id,
                "text": chunk.text,
                "position": chunk.position,
                "total_chunks": chunk.total_chunks,
                "metadata": dict(chunk.metadata),
            }
            for chunk in artifacts.chunks
        ],
        "visualization": visualization,
        "summary": artifacts.summary.to_dict(),
    }


def dumps(payload: Mapping[str, Any]) -> bytes:
    return orjson.dumps(payload, option=orjson.OPT_SERIALIZE_NUMPY | orjson.OPT_NON_STR_KEYS)


def loads(data: bytes | str) -> dict[str, Any]:
    try:
        payload = orjson.loads(data)
    except orjson.JSONDecodeError as exc:
        raise ImportFormatError(f"Export payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ImportFormatError("Export payload must be a JSON object")
    return payload


def import_dataset(
    payload: Mapping[str, Any],
    dataset_id: str | None = None,
    name: str | None = None,
) -> Dataset:
    """Rebuild a dataset from an export payload.

    Both tiers get fresh vector and lexical indices built from the stored raw
    vectors, so nothing derived is trusted from the payload except the
    projections and cluster assignments.
    """
    missing = [section for section in REQUIRED_SECTIONS if section not in payload]
    if missing:
        raise ImportFormatError(f"Export payload is missing sections: {', '.join(missing)}")
    metadata = payload["metadata"] or {}
    schema = metadata.get("schema")
    if schema is not None and schema != EXPORT_SCHEMA:
        raise ImportFormatError(f"Unsupported export schema '{schema}'")

    documents = [_document_from_dict(item) for item in payload["documents"] or []]
    if not documents:
        raise ImportFormatError("Export payload contains no documents")
    embeddings = payload["embeddings"] or {}
    parent_vectors = _matrix((embeddings.get("parent") or {}).get("vectors"), "parent")
    if parent_vectors.shape[0] != len(documents):
        raise ImportFormatError(f"{len(documents)} documents but {parent_vectors.shape[0]} parent vectors")

    summary = (
        ProcessingSummary.from_dict(payload["summary"])
        if payload.get("summary")
        else ProcessingSummary(dataset_id="", num_documents=len(documents))
    )
    chunked, chunk_vectors = _restore_chunks(payload, embeddings, documents, parent_vectors, summary)
    verify_chunk_parents(chunked, documents)

    n = len(documents)
    visualization = payload.get("visualization") or {}
    projection_2d = _projection(visualization.get("projection_2d"), n, 2, "projection_2d", summary)
    projection_clustering = (
        _projection(visualization.get("projection_clustering"), n, None, "projection_clustering", summary)
        if visualization.get("projection_clustering") is not None
        else projection_2d.copy()
    )
    clustering = _restore_clustering(visualization, documents, summary)

    dataset = Dataset(dataset_id=dataset_id or metadata.get("dataset_id"), name=name or metadata.get("name", ""))
    version = dataset.start_run()
    summary.dataset_id = dataset.id
    summary.version = version
    summary.num_documents = n
    summary.num_chunks = len(chunked.chunks)
    summary.num_clusters = clustering.num_clusters
    summary.noise_count = clustering.noise_count
    artifacts = DatasetArtifacts(
        version=version,
        documents=tuple(documents),
        chunks=tuple(chunked.chunks),
        chunk_to_parent=dict(chunked.chunk_to_parent),
        parent_vectors=parent_vectors,
        chunk_vectors=chunk_vectors,
        document_index=build_document_index(documents, parent_vectors),
        chunk_index=build_chunk_index(chunked.chunks, chunk_vectors),
        projection_clustering=projection_clustering,
        projection_2d=projection_2d,
        clustering=clustering,
        summary=summary,
        model_name=str(metadata.get("model", "")),
        dimension=int(parent_vectors.shape[1]),
        created=str(metadata.get("created") or utc_now().isoformat()),
    )
    dataset.publish(artifacts)
    logger.info("Imported dataset %s: %s documents, %s chunks", dataset.id, n, len(chunked.chunks))
    return dataset


def _document_from_dict(item: Mapping[str, Any]) -> Document:
    if not isinstance(item, Mapping) or "id" not in item or "text" not in item:
        raise ImportFormatError("Every document needs 'id' and 'text'")
    return Document(
        id=str(item["id"]),
        text=str(item["text"]),
        metadata=dict(item.get("metadata") or {}),
        cluster_keywords=list(item.get("cluster_keywords") or []),
        cluster_keyword_scores=[
            KeywordScore(keyword=str(entry["keyword"]), score=float(entry["score"]))
            for entry in item.get("cluster_keyword_scores") or []
        ],
        cluster_keywords_viz=list(item.get("cluster_keywords_viz") or []),
    )


def _chunk_from_dict(record: Mapping[str, Any]) -> Chunk:
    if not isinstance(record, Mapping) or "chunk_id" not in record or "parent_id" not in record:
        raise ImportFormatError("Every chunk needs 'chunk_id' and 'parent_id'")
    return Chunk(
        id=str(record["chunk_id"]),
        parent_id=str(record["parent_id"]),
        position=int(record.get("position", 0)),
        text=str(record.get("text", "")),
        metadata=dict(record.get("metadata") or {}),
        total_chunks=int(record.get("total_chunks", 1)),
    )


def _restore_chunks(
    payload: Mapping[str, Any],
    embeddings: Mapping[str, Any],
    documents: list[Document],
    parent_vectors: np.ndarray,
    summary: ProcessingSummary,
) -> tuple[ChunkingResult, np.ndarray]:
    records = payload.get("chunks")
    if not records:
        # whole documents stand in for the chunk tier
        message = "Export has no chunk records; documents are used as single chunks"
        logger.warning(message)
        summary.warnings.append(message)
        result = ChunkingResult()
        for document in documents:
            for chunk in build_chunks(document.id, [Passage(position=0, text=document.text)], document.metadata):
                result.chunks.append(chunk)
                result.chunk_to_parent[chunk.id] = chunk.parent_id
        return result, parent_vectors.copy()

    chunks = [_chunk_from_dict(record) for record in records]
    chunk_vectors = _matrix((embeddings.get("chunks") or {}).get("vectors"), "chunk")
    if chunk_vectors.shape[0] != len(chunks):
        raise ImportFormatError(f"{len(chunks)} chunks but {chunk_vectors.shape[0]} chunk vectors")
    chunk_map = embeddings.get("chunk_map")
    if not chunk_map:
        logger.info("Rebuilding chunk map from %s chunk records", len(chunks))
        chunk_map = {chunk.id: chunk.parent_id for chunk in chunks}
    return ChunkingResult(chunks=chunks, chunk_to_parent={str(k): str(v) for k, v in chunk_map.items()}), chunk_vectors


def _restore_clustering(
    visualization: Mapping[str, Any],
    documents: list[Document],
    summary: ProcessingSummary,
) -> ClusteringResult:
    n = len(documents)
    warnings: list[str] = []
    labels, probabilities = reconcile_outputs(
        n,
        visualization.get("clusters") if visualization.get("clusters") is not None else [-1] * n,
        visualization.get("probabilities") if visualization.get("probabilities") is not None else [0.0] * n,
        warnings,
    )
    summary.warnings.extend(warnings)
    keywords: dict[int, ClusterKeywords] = {}
    for label, entry in (visualization.get("cluster_keywords") or {}).items():
        keywords[int(label)] = ClusterKeywords(
            metadata=list(entry.get("metadata") or []),
            scored=[
                KeywordScore(keyword=str(item["keyword"]), score=float(item["score"]))
                for item in entry.get("scored") or []
            ],
            viz=list(entry.get("viz") or []),
        )
    return ClusteringResult(
        labels=labels,
        probabilities=probabilities,
        clusters=build_clusters([doc.id for doc in documents], labels, probabilities, keywords),
        keywords=keywords,
        warnings=warnings,
        invoked=False,
    )


def _matrix(values: Any, label: str) -> np.ndarray:
    if values is None:
        raise ImportFormatError(f"Export payload has no {label} vectors")
    try:
        matrix = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise ImportFormatError(f"{label} vectors are not a numeric matrix") from exc
    if matrix.size == 0:
        return matrix.reshape(0, 0)
    if matrix.ndim != 2:
        raise ImportFormatError(f"{label} vectors must be a 2D matrix")
    return matrix


def _projection(values: Any, n: int, dims: int | None, label: str, summary: ProcessingSummary) -> np.ndarray:
    if values is None:
        message = f"Export has no {label}; points are placed at the origin"
        logger.warning(message)
        summary.warnings.append(message)
        return np.zeros((n, dims or 2), dtype=np.float64)
    try:
        coords = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise ImportFormatError(f"{label} is not a numeric matrix") from exc
    if coords.ndim != 2 or coords.shape[0] != n or (dims is not None and coords.shape[1] != dims):
        raise ImportFormatError(f"{label} has shape {coords.shape}, expected ({n}, {dims or 'k'})")
    return coords


__all__ = ["EXPORT_VERSION", "EXPORT_SCHEMA", "export_dataset", "import_dataset", "dumps", "loads"]
