"""ID helpers."""

from __future__ import annotations

import uuid


def new_id(prefix: str | None = None) -> str:
    """Generate a random UUID4 string with optional prefix."""
    base = uuid.uuid4().hex
    return f"{prefix}_{base}" if prefix else base


def chunk_id(parent_id: str, position: int) -> str:
    """Deterministic chunk id so re-chunking the same document is idempotent."""
    return f"{parent_id}_chunk_{position}"


def document_id(row_index: int) -> str:
    return f"doc_{row_index}"
