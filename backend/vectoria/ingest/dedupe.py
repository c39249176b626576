"""Deduplication helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from vectoria.models.entities import Document
from vectoria.utils.hashing import sha256_text


@dataclass(slots=True)
class DedupeResult:
    documents: list[Document] = field(default_factory=list)
    duplicate_count: int = 0
    empty_count: int = 0


def document_hash(document: Document) -> str:
    """Compute a stable hash of the document text."""
    return sha256_text(document.text)


def dedupe_documents(documents: Iterable[Document]) -> DedupeResult:
    """Drop empty documents and exact-text duplicates, keeping the first occurrence."""
    seen: set[str] = set()
    result = DedupeResult()
    for document in documents:
        if not document.text or not document.text.strip():
            result.empty_count += 1
            continue
        digest = document_hash(document)
        if digest in seen:
            result.duplicate_count += 1
            continue
        seen.add(digest)
        result.documents.append(document)
    return result


__all__ = ["DedupeResult", "document_hash", "dedupe_documents"]
