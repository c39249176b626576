"""Exception taxonomy shared across the pipeline."""

from __future__ import annotations

from typing import Any


class VectoriaError(Exception):
    """Base class for all Vectoria errors."""


class InputValidationError(VectoriaError):
    """Raised when documents are rejected before any stage runs."""


class StageFailure(VectoriaError):
    """A pipeline stage raised; the run was aborted."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"Stage '{stage}' failed: {cause}")
        self.stage = stage
        self.cause = cause


class ConsistencyViolation(VectoriaError):
    """Artifacts that must stay aligned were found out of step."""


class NumericAnomalyError(VectoriaError):
    """A projection contains non-finite, extreme or collapsed coordinates."""

    def __init__(self, kind: str, report: Any = None, label: str = "projection") -> None:
        super().__init__(f"{label}: numeric anomaly '{kind}'")
        self.kind = kind
        self.report = report
        self.label = label


class EmbeddingCountMismatch(VectoriaError):
    """The embedding backend returned a different number of vectors than inputs."""

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"Expected {expected} embeddings, received {received}")
        self.expected = expected
        self.received = received


class IndexNotBuiltError(VectoriaError):
    """A search was attempted against an index that has not been built."""


class DatasetNotFoundError(VectoriaError):
    """No dataset with the requested id exists."""


class ImportFormatError(VectoriaError):
    """An import payload does not match the export format."""


class ProcessingCancelled(VectoriaError):
    """A processing run was cancelled; nothing was published."""

    def __init__(self, stage: str) -> None:
        super().__init__(f"Processing cancelled during '{stage}'")
        self.stage = stage


__all__ = [
    "VectoriaError",
    "InputValidationError",
    "StageFailure",
    "ConsistencyViolation",
    "NumericAnomalyError",
    "EmbeddingCountMismatch",
    "IndexNotBuiltError",
    "DatasetNotFoundError",
    "ImportFormatError",
    "ProcessingCancelled",
]
