"""Fuzzy neighbor graph and stochastic layout optimization."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np
from scipy import sparse
from scipy.optimize import curve_fit
from sklearn.decomposition import PCA

from vectoria.core.control import CancellationToken
from vectoria.core.errors import ProcessingCancelled
from vectoria.reduction.neighbors import KnnGraph

logger = logging.getLogger(__name__)

SMOOTH_K_TOLERANCE = 1e-5
MIN_K_DIST_SCALE = 1e-3
BANDWIDTH_ITERATIONS = 64
GRADIENT_CLIP = 4.0
INIT_SCALE = 10.0
PROGRESS_EVERY = 10


@dataclass(slots=True)
class LayoutEdges:
    head: np.ndarray
    tail: np.ndarray
    weight: np.ndarray


def smooth_knn_distances(distances: np.ndarray, n_iter: int = BANDWIDTH_ITERATIONS) -> tuple[np.ndarray, np.ndarray]:
    """Per-point (rho, sigma) so that each membership row sums to ``log2(k)``.

    ``rho`` is the distance to the nearest non-identical neighbor; ``sigma`` is
    found by bisection for all rows at once.
    """
    n, k = distances.shape
    target = np.log2(k) if k > 1 else 1.0
    positive = np.where(distances > 0, distances, np.inf)
    rho = positive.min(axis=1)
    rho[~np.isfinite(rho)] = 0.0

    lo = np.zeros(n)
    hi = np.full(n, np.inf)
    mid = np.ones(n)
    for _ in range(n_iter):
        shifted = np.maximum(distances - rho[:, None], 0.0)
        psum = np.exp(-shifted / mid[:, None]).sum(axis=1)
        if np.all(np.abs(psum - target) < SMOOTH_K_TOLERANCE):
            break
        too_big = psum > target
        hi = np.where(too_big, mid, hi)
        lo = np.where(too_big, lo, mid)
        mid = np.where(np.isinf(hi), mid * 2.0, (lo + hi) / 2.0)

    mean_all = float(distances.mean()) if distances.size else 0.0
    row_means = distances.mean(axis=1)
    floor = np.where(rho > 0, MIN_K_DIST_SCALE * row_means, MIN_K_DIST_SCALE * mean_all)
    sigma = np.maximum(mid, floor)
    sigma[sigma <= 0] = 1.0
    return rho, sigma


def fuzzy_simplicial_set(graph: KnnGraph) -> sparse.csr_matrix:
    """Membership strengths of the kNN graph symmetrized by fuzzy union."""
    n, k = graph.indices.shape
    rho, sigma = smooth_knn_distances(graph.distances.astype(np.float64))
    shifted = np.maximum(graph.distances - rho[:, None], 0.0)
    values = np.exp(-shifted / sigma[:, None]).ravel()
    rows = np.repeat(np.arange(n), k)
    cols = graph.indices.ravel()
    keep = rows != cols
    membership = sparse.coo_matrix((values[keep], (rows[keep], cols[keep])), shape=(n, n)).tocsr()
    membership.sum_duplicates()
    transpose = membership.transpose().tocsr()
    product = membership.multiply(transpose)
    union = membership + transpose - product
    union.eliminate_zeros()
    return union.tocsr()


def find_ab_params(min_dist: float, spread: float = 1.0) -> tuple[float, float]:
    """Fit ``1 / (1 + a * d^(2b))`` to the target membership curve for ``min_dist``."""

    def curve(x, a, b):
        return 1.0 / (1.0 + a * x ** (2 * b))

    xv = np.linspace(0, spread * 3, 300)
    yv = np.where(xv < min_dist, 1.0, np.exp(-(xv - min_dist) / spread))
    params, _ = curve_fit(curve, xv, yv)
    return float(params[0]), float(params[1])


def graph_edges(graph: sparse.csr_matrix, n_epochs: int) -> LayoutEdges:
    coo = graph.tocoo()
    weights = coo.data.astype(np.float64)
    if weights.size:
        cutoff = weights.max() / float(n_epochs)
        keep = weights >= cutoff
    else:
        keep = np.zeros(0, dtype=bool)
    return LayoutEdges(head=coo.row[keep].astype(np.int64), tail=coo.col[keep].astype(np.int64), weight=weights[keep])


def random_init(n: int, dim: int, rng: np.random.Generator) -> np.ndarray:
    return rng.uniform(-INIT_SCALE, INIT_SCALE, size=(n, dim))


def pca_init(data: np.ndarray, dim: int, rng: np.random.Generator) -> np.ndarray:
    """Leading principal components scaled into the random-init box."""
    n, features = data.shape
    components = max(1, min(dim, n, features))
    projected = PCA(n_components=components, random_state=int(rng.integers(0, 2**31 - 1))).fit_transform(data)
    if components < dim:
        filler = rng.normal(scale=1e-4, size=(n, dim - components))
        projected = np.hstack([projected, filler])
    scale = float(np.abs(projected).max())
    if not np.isfinite(scale) or scale <= 0:
        return random_init(n, dim, rng)
    jitter = rng.normal(scale=1e-4, size=projected.shape)
    return projected / scale * INIT_SCALE + jitter


def optimize_layout(
    embedding: np.ndarray,
    edges: LayoutEdges,
    n_epochs: int,
    a: float,
    b: float,
    rng: np.random.Generator,
    learning_rate: float = 1.0,
    negative_sample_rate: int = 5,
    progress: Callable[[float, str], None] | None = None,
    cancel: CancellationToken | None = None,
    stage: str = "reduce",
) -> np.ndarray:
    """Epoch-driven SGD over sampled edges with negative sampling.

    Edges are visited at a rate proportional to their weight. Each visit
    pulls the endpoints together and pushes the head away from
    ``negative_sample_rate`` random points. Per-coordinate gradients are
    clipped, the learning rate decays linearly to zero and non-finite
    coordinates are reset to 0 after every epoch.
    """
    n, dim = embedding.shape
    if edges.weight.size == 0 or n_epochs <= 0:
        return embedding

    epochs_per_sample = edges.weight.max() / edges.weight
    next_sample = epochs_per_sample.copy()
    epochs_per_negative = epochs_per_sample / max(negative_sample_rate, 1)
    next_negative = epochs_per_negative.copy()

    for epoch in range(n_epochs):
        if cancel is not None and cancel.cancelled:
            raise ProcessingCancelled(stage)
        alpha = learning_rate * (1.0 - epoch / float(n_epochs))
        active = np.flatnonzero(next_sample <= epoch + 1)
        if active.size:
            heads = edges.head[active]
            tails = edges.tail[active]
            diff = embedding[heads] - embedding[tails]
            dist_sq = np.einsum("ij,ij->i", diff, diff)
            coeff = np.zeros_like(dist_sq)
            positive = dist_sq > 0
            coeff[positive] = (-2.0 * a * b * dist_sq[positive] ** (b - 1.0)) / (
                a * dist_sq[positive] ** b + 1.0
            )
            grad = np.clip(coeff[:, None] * diff, -GRADIENT_CLIP, GRADIENT_CLIP) * alpha
            _scatter_add(embedding, heads, grad)
            _scatter_add(embedding, tails, -grad)
            next_sample[active] += epochs_per_sample[active]

            if negative_sample_rate > 0:
                counts = np.floor((epoch + 1 - next_negative[active]) / epochs_per_negative[active]).astype(np.int64)
                counts = np.maximum(counts, 0)
                if counts.sum():
                    neg_heads = np.repeat(heads, counts)
                    neg_tails = rng.integers(0, n, size=neg_heads.size)
                    neg_diff = embedding[neg_heads] - embedding[neg_tails]
                    neg_sq = np.einsum("ij,ij->i", neg_diff, neg_diff)
                    neg_coeff = (2.0 * b) / ((0.001 + neg_sq) * (a * neg_sq**b + 1.0))
                    neg_grad = np.where(
                        (neg_sq > 0)[:, None],
                        np.clip(neg_coeff[:, None] * neg_diff, -GRADIENT_CLIP, GRADIENT_CLIP),
                        GRADIENT_CLIP,
                    )
                    neg_grad[neg_heads == neg_tails] = 0.0
                    _scatter_add(embedding, neg_heads, neg_grad * alpha)
                next_negative[active] += counts * epochs_per_negative[active]

        bad = ~np.isfinite(embedding)
        if bad.any():
            embedding[bad] = 0.0
        if progress is not None and ((epoch + 1) % PROGRESS_EVERY == 0 or epoch + 1 == n_epochs):
            progress((epoch + 1) / n_epochs, f"epoch {epoch + 1}/{n_epochs}")
    return embedding


def _scatter_add(target: np.ndarray, rows: np.ndarray, values: np.ndarray) -> None:
    n = target.shape[0]
    for column in range(target.shape[1]):
        target[:, column] += np.bincount(rows, weights=values[:, column], minlength=n)


__all__ = [
    "LayoutEdges",
    "smooth_knn_distances",
    "fuzzy_simplicial_set",
    "find_ab_params",
    "graph_edges",
    "random_init",
    "pca_init",
    "optimize_layout",
]
