"""Logging utilities for Vectoria."""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, MutableMapping

import orjson

_DEFAULT_LEVEL = os.environ.get("VECTORIA_LOG_LEVEL", "INFO")
CONTEXT_PREFIX = "ctx_"


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``ctx_*`` extras become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - thin wrapper
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        payload.update(record_context(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode("utf-8")


class TextFormatter(logging.Formatter):
    """Plain-text lines with the dataset context appended as ``key=value``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if context:
            line += " " + " ".join(f"{key}={value}" for key, value in context.items())
        return line


class DatasetLogAdapter(logging.LoggerAdapter):
    """Stamps every record with the dataset id and optional run fields."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        for key, value in (self.extra or {}).items():
            extra.setdefault(f"{CONTEXT_PREFIX}{key}", value)
        kwargs["extra"] = extra
        return msg, kwargs


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """``ctx_*`` attributes of a record, keyed without the prefix."""
    return {
        key[len(CONTEXT_PREFIX) :]: value
        for key, value in record.__dict__.items()
        if key.startswith(CONTEXT_PREFIX)
    }


def configure_logging(level: str | int = _DEFAULT_LEVEL, use_json: bool = True) -> None:
    """Configure root logger with optional JSON formatting."""
    logging.captureWarnings(True)
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if use_json else TextFormatter())
    root.handlers = [handler]


def get_logger(name: str = "vectoria") -> logging.Logger:
    """Return configured logger, configuring root on first call."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


def dataset_logger(logger: logging.Logger, dataset_id: str, **context: Any) -> DatasetLogAdapter:
    return DatasetLogAdapter(logger, {"dataset": dataset_id, **context})


__all__ = [
    "configure_logging",
    "get_logger",
    "dataset_logger",
    "record_context",
    "DatasetLogAdapter",
    "JsonFormatter",
    "TextFormatter",
]
