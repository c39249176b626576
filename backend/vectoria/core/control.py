"""Cancellation tokens and progress sinks for long-running work."""

from __future__ import annotations

import threading
from typing import Callable, Protocol


class ProgressSink(Protocol):
    def __call__(self, stage: str, fraction: float, message: str = "") -> None:
        ...


class CancellationToken:
    """Cooperative stop signal polled at fixed checkpoints."""

    def __init__(self, predicate: Callable[[], bool] | None = None) -> None:
        self._event = threading.Event()
        self._predicate = predicate

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._predicate is not None and self._predicate():
            self._event.set()
            return True
        return False


def noop_progress(stage: str, fraction: float, message: str = "") -> None:
    return None


def scaled_progress(sink: ProgressSink | None, stage: str, start: float, end: float) -> Callable[[float], None]:
    """Map a component-local [0, 1] fraction into a slice of overall progress."""
    target = sink or noop_progress
    span = end - start

    def report(fraction: float, message: str = "") -> None:
        bounded = min(1.0, max(0.0, fraction))
        target(stage, start + bounded * span, message)

    return report


__all__ = ["ProgressSink", "CancellationToken", "noop_progress", "scaled_progress"]
