"""k-nearest-neighbor graph construction."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import faiss
import numpy as np

logger = logging.getLogger(__name__)

_NORM_FLOOR = 1e-12
_EXACT_BLOCK_ROWS = 1024
HNSW_M = 16
HNSW_EF_CONSTRUCTION = 200


@dataclass(slots=True)
class KnnGraph:
    indices: np.ndarray
    distances: np.ndarray
    approximate: bool = False

    @property
    def n_neighbors(self) -> int:
        return int(self.indices.shape[1])


def normalize_rows(data: np.ndarray) -> np.ndarray:
    norms = np.maximum(np.linalg.norm(data, axis=1, keepdims=True), _NORM_FLOOR)
    return (data / norms).astype(np.float32)


def exact_knn(data: np.ndarray, k: int, metric: str = "cosine") -> KnnGraph:
    """Brute-force neighbors in row blocks, excluding each point itself."""
    n = data.shape[0]
    points = normalize_rows(data) if metric == "cosine" else data.astype(np.float32)
    sq_norms = np.einsum("ij,ij->i", points, points)
    indices = np.empty((n, k), dtype=np.int64)
    distances = np.empty((n, k), dtype=np.float32)
    for start in range(0, n, _EXACT_BLOCK_ROWS):
        stop = min(n, start + _EXACT_BLOCK_ROWS)
        block = points[start:stop]
        if metric == "cosine":
            dist = 1.0 - block @ points.T
        else:
            dist = sq_norms[start:stop, None] - 2.0 * (block @ points.T) + sq_norms[None, :]
        np.maximum(dist, 0.0, out=dist)
        rows = np.arange(stop - start)
        dist[rows, rows + start] = np.inf
        nearest = np.argpartition(dist, k - 1, axis=1)[:, :k]
        nearest_dist = np.take_along_axis(dist, nearest, axis=1)
        order = np.argsort(nearest_dist, axis=1, kind="stable")
        indices[start:stop] = np.take_along_axis(nearest, order, axis=1)
        distances[start:stop] = np.take_along_axis(nearest_dist, order, axis=1)
    if metric != "cosine":
        distances = np.sqrt(distances)
    return KnnGraph(indices=indices, distances=distances, approximate=False)


def approximate_knn(data: np.ndarray, k: int, metric: str = "cosine") -> KnnGraph:
    """HNSW neighbors through faiss; self matches are removed."""
    n, dim = data.shape
    if metric == "cosine":
        points = normalize_rows(data)
        index = faiss.IndexHNSWFlat(dim, HNSW_M, faiss.METRIC_INNER_PRODUCT)
    else:
        points = np.ascontiguousarray(data, dtype=np.float32)
        index = faiss.IndexHNSWFlat(dim, HNSW_M, faiss.METRIC_L2)
    index.hnsw.efConstruction = HNSW_EF_CONSTRUCTION
    index.add(points)
    index.hnsw.efSearch = max(2 * k, 50)
    raw_scores, raw_ids = index.search(points, k + 1)

    indices = np.empty((n, k), dtype=np.int64)
    distances = np.empty((n, k), dtype=np.float32)
    for row in range(n):
        keep = [(int(j), float(s)) for j, s in zip(raw_ids[row], raw_scores[row]) if j != row and j >= 0][:k]
        if not keep:
            keep = [((row + 1) % n, 1.0 if metric == "cosine" else 0.0)]
        while len(keep) < k:
            keep.append(keep[-1])
        indices[row] = [j for j, _ in keep]
        if metric == "cosine":
            distances[row] = [max(0.0, 1.0 - s) for _, s in keep]
        else:
            distances[row] = [np.sqrt(max(0.0, s)) for _, s in keep]
    return KnnGraph(indices=indices, distances=distances, approximate=True)


def knn_graph(data: np.ndarray, k: int, metric: str = "cosine", approximate_threshold: int = 10000) -> KnnGraph:
    n = data.shape[0]
    if n < 2:
        raise ValueError("At least two points are required for a neighbor graph")
    k = max(1, min(k, n - 1))
    if n > approximate_threshold:
        logger.info("Using HNSW neighbors for %s points (k=%s)", n, k)
        return approximate_knn(data, k, metric)
    return exact_knn(data, k, metric)


__all__ = ["KnnGraph", "normalize_rows", "exact_knn", "approximate_knn", "knn_graph"]
