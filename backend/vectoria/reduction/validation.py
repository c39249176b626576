"""Post-hoc checks on projected coordinates."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

import numpy as np

from vectoria.core.errors import NumericAnomalyError

EXTREME_MAGNITUDE = 1e6
COLLAPSE_STD = 1e-6

ANOMALY_NAN = "nan"
ANOMALY_INFINITE = "infinite"
ANOMALY_EXTREME = "extreme"
ANOMALY_COLLAPSED = "collapsed"


@dataclass(slots=True)
class ProjectionReport:
    n_points: int
    dimensions: int
    nan_count: int = 0
    inf_count: int = 0
    extreme_count: int = 0
    std_per_dim: list[float] = field(default_factory=list)
    kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind is None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def inspect_projection(coords: np.ndarray) -> ProjectionReport:
    """Count anomalies; ``kind`` names the first failure in severity order."""
    array = np.asarray(coords, dtype=np.float64)
    if array.ndim != 2:
        array = array.reshape(len(array), -1)
    n, dims = array.shape
    report = ProjectionReport(n_points=n, dimensions=dims)
    if n == 0:
        return report
    report.nan_count = int(np.isnan(array).sum())
    report.inf_count = int(np.isinf(array).sum())
    finite = array[np.isfinite(array).all(axis=1)]
    report.extreme_count = int((np.abs(finite) > EXTREME_MAGNITUDE).sum())
    if finite.shape[0]:
        report.std_per_dim = [float(value) for value in finite.std(axis=0)]

    if report.nan_count:
        report.kind = ANOMALY_NAN
    elif report.inf_count:
        report.kind = ANOMALY_INFINITE
    elif report.extreme_count:
        report.kind = ANOMALY_EXTREME
    elif n > 1 and report.std_per_dim and max(report.std_per_dim) < COLLAPSE_STD:
        report.kind = ANOMALY_COLLAPSED
    return report


def validate_projection(coords: np.ndarray, label: str = "projection") -> ProjectionReport:
    """Raise ``NumericAnomalyError`` for any non-finite, extreme or collapsed layout."""
    report = inspect_projection(coords)
    if report.kind is not None:
        raise NumericAnomalyError(report.kind, report=report, label=label)
    return report


def normalize_projection(coords: np.ndarray) -> np.ndarray:
    """Rescale each axis to ``[0, 1]``; constant axes map to 0.5."""
    array = np.asarray(coords, dtype=np.float64)
    if array.size == 0:
        return array.copy()
    low = array.min(axis=0)
    span = array.max(axis=0) - low
    safe = np.where(span > 0, span, 1.0)
    scaled = (array - low) / safe
    scaled[:, span <= 0] = 0.5
    return scaled


__all__ = [
    "ProjectionReport",
    "inspect_projection",
    "validate_projection",
    "normalize_projection",
    "ANOMALY_NAN",
    "ANOMALY_INFINITE",
    "ANOMALY_EXTREME",
    "ANOMALY_COLLAPSED",
]
