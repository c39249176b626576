"""Namespaced key/blob storage used to persist datasets."""

from __future__ import annotations

import threading
from typing import Protocol

from vectoria.db.sqlite import SQLiteDatabase
from vectoria.utils.time import now_ms


class BlobStore(Protocol):
    def put(self, namespace: str, key: str, blob: bytes) -> None:
        ...

    def get(self, namespace: str, key: str) -> bytes | None:
        ...

    def delete(self, namespace: str, key: str) -> bool:
        ...

    def keys(self, namespace: str) -> list[str]:
        ...


class SQLiteBlobStore:
    """Blob store backed by a single ``blobs`` table."""

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db
        self.db.ensure_schema()

    def put(self, namespace: str, key: str, blob: bytes) -> None:
        with self.db.transaction() as cur:
            cur.execute(
                """
                INSERT INTO blobs(namespace, key, blob, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET
                    blob=excluded.blob,
                    updated_at=excluded.updated_at
                """,
                (namespace, key, bytes(blob), now_ms()),
            )

    def get(self, namespace: str, key: str) -> bytes | None:
        rows = self.db.query("SELECT blob FROM blobs WHERE namespace = ? AND key = ?", (namespace, key))
        if not rows:
            return None
        return bytes(rows[0]["blob"])

    def delete(self, namespace: str, key: str) -> bool:
        with self.db.transaction() as cur:
            cur.execute("DELETE FROM blobs WHERE namespace = ? AND key = ?", (namespace, key))
            return cur.rowcount > 0

    def keys(self, namespace: str) -> list[str]:
        rows = self.db.query("SELECT key FROM blobs WHERE namespace = ? ORDER BY key", (namespace,))
        return [row["key"] for row in rows]


class InMemoryBlobStore:
    def __init__(self) -> None:
        self._data: dict[tuple[str, str], bytes] = {}
        self._lock = threading.Lock()

    def put(self, namespace: str, key: str, blob: bytes) -> None:
        with self._lock:
            self._data[(namespace, key)] = bytes(blob)

    def get(self, namespace: str, key: str) -> bytes | None:
        with self._lock:
            return self._data.get((namespace, key))

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            return self._data.pop((namespace, key), None) is not None

    def keys(self, namespace: str) -> list[str]:
        with self._lock:
            return sorted(key for ns, key in self._data if ns == namespace)


__all__ = ["BlobStore", "SQLiteBlobStore", "InMemoryBlobStore"]
