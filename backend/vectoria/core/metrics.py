"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

REQUEST_COUNT = Counter(
    "vectoria_requests_total",
    "Total HTTP requests",
    labelnames=("endpoint", "method", "status"),
    registry=REGISTRY,
)

REQUEST_LATENCY = Histogram(
    "vectoria_request_latency_seconds",
    "Latency of HTTP requests",
    labelnames=("endpoint", "method"),
    registry=REGISTRY,
)

STAGE_DURATION = Histogram(
    "vectoria_stage_duration_seconds",
    "Duration of dataset processing stages",
    labelnames=("stage",),
    registry=REGISTRY,
)

STAGE_FAILURES = Counter(
    "vectoria_stage_failures_total",
    "Dataset processing runs aborted by a stage failure",
    labelnames=("stage",),
    registry=REGISTRY,
)

DATASET_DOCUMENTS = Gauge(
    "vectoria_dataset_documents",
    "Number of documents in the most recently published dataset",
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "STAGE_DURATION",
    "STAGE_FAILURES",
    "DATASET_DOCUMENTS",
    "metrics_response",
]
