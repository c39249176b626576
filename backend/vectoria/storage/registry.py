"""Persisted dataset registry on top of a blob store."""

from __future__ import annotations

import logging
from typing import Any

import orjson

from vectoria.core.errors import DatasetNotFoundError
from vectoria.datasets.dataset import Dataset
from vectoria.db.blobs import BlobStore
from vectoria.storage.serialization import dumps, export_dataset, import_dataset, loads
from vectoria.utils.time import utc_now

logger = logging.getLogger(__name__)

DATASETS_NAMESPACE = "datasets"
INDEX_NAMESPACE = "dataset_index"


class DatasetRegistry:
    """Saves export payloads under ``datasets`` and a small listing entry under ``dataset_index``."""

    def __init__(self, store: BlobStore) -> None:
        self.store = store

    def save(self, dataset: Dataset) -> dict[str, Any]:
        payload = export_dataset(dataset)
        entry = dataset.describe()
        entry["saved_at"] = utc_now().isoformat()
        self.store.put(DATASETS_NAMESPACE, dataset.id, dumps(payload))
        self.store.put(INDEX_NAMESPACE, dataset.id, orjson.dumps(entry))
        logger.info("Saved dataset %s (%s documents)", dataset.id, entry["num_documents"])
        return entry

    def load(self, dataset_id: str) -> Dataset:
        blob = self.store.get(DATASETS_NAMESPACE, dataset_id)
        if blob is None:
            raise DatasetNotFoundError(f"Dataset '{dataset_id}' has not been saved")
        return import_dataset(loads(blob), dataset_id=dataset_id)

    def delete(self, dataset_id: str) -> bool:
        removed = self.store.delete(DATASETS_NAMESPACE, dataset_id)
        self.store.delete(INDEX_NAMESPACE, dataset_id)
        if removed:
            logger.info("Deleted saved dataset %s", dataset_id)
        return removed

    def list(self) -> list[dict[str, Any]]:
        entries = []
        for key in self.store.keys(INDEX_NAMESPACE):
            blob = self.store.get(INDEX_NAMESPACE, key)
            if blob is not None:
                entries.append(orjson.loads(blob))
        return entries

    def __contains__(self, dataset_id: object) -> bool:
        return isinstance(dataset_id, str) and dataset_id in self.store.keys(DATASETS_NAMESPACE)


__all__ = ["DatasetRegistry", "DATASETS_NAMESPACE", "INDEX_NAMESPACE"]
