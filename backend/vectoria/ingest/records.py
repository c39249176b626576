"""Turn tabular records into documents."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from vectoria.core.errors import InputValidationError
from vectoria.models.entities import Document, MetadataValue
from vectoria.utils.ids import document_id

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecordBatch:
    documents: list[Document] = field(default_factory=list)
    empty_row_count: int = 0
    excluded_columns: list[str] = field(default_factory=list)


def records_to_documents(
    rows: Sequence[Mapping[str, Any]],
    text_column: str,
    metadata_columns: Iterable[str] | None = None,
    id_column: str | None = None,
) -> RecordBatch:
    """Build documents from row mappings.

    Every column other than the text column becomes metadata unless
    ``metadata_columns`` restricts the set. Values that are not scalars
    (lists, dicts, ...) cannot live in the metadata bag; their columns are
    excluded and reported.
    """
    if not rows:
        raise InputValidationError("No rows supplied")
    if not any(text_column in row for row in rows):
        raise InputValidationError(f"Text column '{text_column}' not found in records")

    wanted = set(metadata_columns) if metadata_columns is not None else None
    excluded: list[str] = []
    batch = RecordBatch()
    for index, row in enumerate(rows):
        raw_text = row.get(text_column)
        text = "" if raw_text is None else str(raw_text)
        if not text.strip():
            batch.empty_row_count += 1
            continue
        metadata: dict[str, MetadataValue] = {}
        for key, value in row.items():
            if key == text_column or key == id_column:
                continue
            if wanted is not None and key not in wanted:
                continue
            coerced, ok = coerce_scalar(value)
            if not ok:
                if key not in excluded:
                    excluded.append(key)
                continue
            metadata[str(key)] = coerced
        identifier = str(row[id_column]) if id_column and row.get(id_column) is not None else document_id(index)
        batch.documents.append(Document(id=identifier, text=text, metadata=metadata))

    batch.excluded_columns = excluded
    if batch.empty_row_count:
        logger.info("Dropped %s rows with empty text", batch.empty_row_count)
    if excluded:
        logger.warning("Excluded non-scalar columns from metadata: %s", ", ".join(excluded))
    return batch


def coerce_scalar(value: Any) -> tuple[MetadataValue, bool]:
    """Return (value, True) for metadata-safe scalars, (None, False) otherwise."""
    if value is None or isinstance(value, (str, bool)):
        return value, True
    if isinstance(value, int):
        return value, True
    if isinstance(value, float):
        return (value if math.isfinite(value) else None), True
    return None, False


def validate_documents(documents: Sequence[Document]) -> None:
    """Reject malformed documents before any stage runs."""
    seen: set[str] = set()
    for position, document in enumerate(documents):
        if not isinstance(document, Document):
            raise InputValidationError(f"Item {position} is not a Document")
        if not document.id or not isinstance(document.id, str):
            raise InputValidationError(f"Document at position {position} has no id")
        if not isinstance(document.text, str):
            raise InputValidationError(f"Document {document.id} text must be a string")
        if document.id in seen:
            raise InputValidationError(f"Duplicate document id '{document.id}'")
        seen.add(document.id)
        for key, value in document.metadata.items():
            _, ok = coerce_scalar(value)
            if not ok:
                raise InputValidationError(f"Document {document.id} metadata '{key}' is not a scalar")


__all__ = ["RecordBatch", "records_to_documents", "coerce_scalar", "validate_documents"]
