"""Tests for logging helpers."""

from __future__ import annotations

import logging

import orjson

from vectoria.core.logging import JsonFormatter, TextFormatter, dataset_logger


class ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def _capture() -> tuple[logging.Logger, ListHandler]:
    logger = logging.getLogger("vectoria.tests.logging")
    logger.propagate = False
    handler = ListHandler()
    logger.handlers = [handler]
    logger.setLevel(logging.INFO)
    return logger, handler


def test_dataset_context_reaches_json_output() -> None:
    logger, handler = _capture()
    dataset_logger(logger, "ds_1", stage="clustering").info("Stage %s finished", "clustering")
    payload = orjson.loads(JsonFormatter().format(handler.records[0]))
    assert payload["message"] == "Stage clustering finished"
    assert payload["dataset"] == "ds_1"
    assert payload["stage"] == "clustering"


def test_explicit_extra_wins_over_adapter_context() -> None:
    logger, handler = _capture()
    dataset_logger(logger, "ds_1", version=1).info("run", extra={"ctx_version": 2})
    line = TextFormatter().format(handler.records[0])
    assert "dataset=ds_1" in line
    assert "version=2" in line
    assert "version=1" not in line
