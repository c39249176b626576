"""Tests for density clustering and keyword extraction."""

import numpy as np
import pytest

from vectoria.clustering import density
from vectoria.clustering.density import (
    ClusteringOptions,
    DensityClusterer,
    cluster_stats,
    outliers,
    reconcile_outputs,
)
from vectoria.clustering.keywords import KeywordOptions, extract_cluster_keywords
from vectoria.models.entities import Document


def _blobs(seed: int = 3) -> np.ndarray:
    rng = np.random.default_rng(seed)
    centers = np.array([[0.0, 0.0], [10.0, 10.0], [-10.0, 10.0]])
    return np.vstack([center + rng.normal(scale=0.3, size=(15, 2)) for center in centers])


@pytest.mark.parametrize("min_cluster_size", [1, 5, 50])
@pytest.mark.parametrize("n", [0, 1, 4])
def test_small_datasets_skip_hdbscan(monkeypatch: pytest.MonkeyPatch, min_cluster_size: int, n: int) -> None:
    calls = []

    class Spy:
        def __init__(self, **kwargs) -> None:
            calls.append(kwargs)

        def fit_predict(self, data):
            self.probabilities_ = np.ones(len(data))
            return np.zeros(len(data), dtype=np.int64)

    monkeypatch.setattr(density, "HDBSCAN", Spy)
    result = DensityClusterer().cluster(np.zeros((n, 2)), ClusteringOptions(min_cluster_size=min_cluster_size))

    assert len(result.labels) == n
    assert len(result.probabilities) == n
    if n < max(2, min_cluster_size):
        assert calls == []
        assert not result.invoked
        assert (result.labels == -1).all()
        assert (result.probabilities == 0.0).all()
    else:
        assert len(calls) == 1
        assert result.invoked


def test_single_point_with_unit_cluster_size_is_noise() -> None:
    result = DensityClusterer().cluster(np.array([[0.5, 0.5]]), ClusteringOptions(min_cluster_size=1, min_samples=1))
    assert not result.invoked
    assert result.labels.tolist() == [-1]
    assert result.probabilities.tolist() == [0.0]


def test_four_points_are_all_noise() -> None:
    result = DensityClusterer().cluster(np.random.default_rng(0).normal(size=(4, 2)), ClusteringOptions())
    assert result.labels.tolist() == [-1, -1, -1, -1]
    assert result.probabilities.tolist() == [0.0, 0.0, 0.0, 0.0]
    assert result.num_clusters == 0
    assert result.noise_count == 4


def test_separated_blobs_form_clusters() -> None:
    result = DensityClusterer().cluster(_blobs(), ClusteringOptions(min_cluster_size=5, min_samples=3))
    assert result.invoked
    assert result.num_clusters >= 3
    assert len(result.labels) == 45
    assert ((result.probabilities >= 0.0) & (result.probabilities <= 1.0)).all()


def test_reconcile_pads_and_truncates_with_sentinels() -> None:
    warnings: list[str] = []
    labels, probabilities = reconcile_outputs(4, [0, 1], [0.9, 0.8], warnings)
    assert labels.tolist() == [0, 1, -1, -1]
    assert probabilities.tolist() == [0.9, 0.8, 0.0, 0.0]
    assert len(warnings) == 2

    labels, probabilities = reconcile_outputs(2, [0, 0, 1], [0.5, 0.5, 0.5], [])
    assert labels.tolist() == [0, 0]
    assert probabilities.tolist() == [0.5, 0.5]


def test_missing_probabilities_use_compatibility_defaults() -> None:
    labels, probabilities = reconcile_outputs(3, [0, -1, 2], None, [])
    assert probabilities.tolist() == [1.0, 0.5, 1.0]
    _, probabilities = reconcile_outputs(3, [0, -1, 2], [None, None, 0.25], [])
    assert probabilities.tolist() == [1.0, 0.5, 0.25]
    _, probabilities = reconcile_outputs(2, [0, 0], [float("nan"), 3.0], [])
    assert probabilities.tolist() == [0.0, 1.0]


def test_keywords_rank_by_member_share() -> None:
    texts = [
        "orbital telescope galaxy",
        "galaxy spectra telescope",
        "galaxy nebula",
        "bread butter oven",
        "bread flour oven",
        "noise document ignored",
    ]
    labels = [0, 0, 0, 1, 1, -1]
    keywords = extract_cluster_keywords(texts, labels, KeywordOptions(metadata_top_n=3, viz_top_n=2))
    assert set(keywords) == {0, 1}
    assert keywords[0].metadata[0] == "galaxy"
    assert keywords[0].scored[0].score == pytest.approx(1.0)
    assert keywords[0].viz == keywords[0].metadata[:2]
    assert keywords[1].metadata[:2] == ["bread", "oven"]
    assert "ignored" not in {kw for entry in keywords.values() for kw in entry.metadata}


def test_cluster_documents_attach_keywords() -> None:
    points = _blobs()
    words = ["astronomy galaxy", "baking bread", "finance stocks"]
    documents = [Document(id=f"d{i}", text=f"{words[i // 15]} item{i}") for i in range(45)]
    result = DensityClusterer().cluster(points, ClusteringOptions(min_cluster_size=5, min_samples=3), documents)
    labelled = [label for label in result.clusters if label != -1]
    assert labelled
    for label in labelled:
        assert result.clusters[label].keywords


def test_stats_and_outliers() -> None:
    labels = np.array([0, 0, 1, -1])
    probabilities = np.array([0.9, 0.4, 1.0, 0.0])
    stats = cluster_stats(labels, probabilities)
    assert stats["num_clusters"] == 2
    assert stats["num_noise"] == 1
    assert stats["noise_percentage"] == pytest.approx(25.0)
    assert stats["cluster_sizes"] == {0: 2, 1: 1}
    assert outliers(["a", "b", "c", "d"], labels, probabilities) == ["b", "d"]
