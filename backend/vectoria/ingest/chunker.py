"""Chunking utilities."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterator, Mapping, Sequence

from vectoria.models.entities import Chunk, Document, MetadataValue
from vectoria.utils.ids import chunk_id

logger = logging.getLogger(__name__)

SHORT_DOCUMENT_FACTOR = 1.2


@dataclass(slots=True, frozen=True)
class ChunkingOptions:
    chunk_size: int = 512
    chunk_overlap: int = 128
    min_chunk_size: int = 50
    batch_size: int = 50
    max_workers: int = 4
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")


@dataclass(slots=True)
class ChunkingResult:
    chunks: list[Chunk] = field(default_factory=list)
    chunk_to_parent: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class Passage:
    position: int
    text: str


def split_passages(text: str, options: ChunkingOptions) -> list[Passage]:
    """Split text into overlapping character passages.

    Documents no longer than ``1.2 * chunk_size`` come back whole. Longer text
    is cut into ``chunk_size`` windows sharing ``chunk_overlap`` characters;
    windows shorter than ``min_chunk_size`` after stripping are dropped.
    Positions are renumbered after dropping so they stay contiguous.
    """
    if not text or not text.strip():
        return []
    if not options.enabled or len(text) <= options.chunk_size * SHORT_DOCUMENT_FACTOR:
        return [Passage(position=0, text=text.strip())]

    kept = [window for window in _iter_windows(text, options) if len(window) >= options.min_chunk_size]
    return [Passage(position=idx, text=window) for idx, window in enumerate(kept)]


def _iter_windows(text: str, options: ChunkingOptions) -> Iterator[str]:
    step = options.chunk_size - options.chunk_overlap
    length = len(text)
    start = 0
    while start < length:
        end = min(length, start + options.chunk_size)
        window = text[start:end].strip()
        if window:
            yield window
        if end >= length:
            break
        start += step


def chunk_document(
    doc_id: str,
    text: str,
    options: ChunkingOptions | None = None,
    metadata: Mapping[str, MetadataValue] | None = None,
) -> list[Chunk]:
    """Chunk one document; any split failure degrades to a single chunk."""
    if not doc_id or not isinstance(doc_id, str):
        raise ValueError("doc_id must be a non-empty string")
    opts = options or ChunkingOptions()
    if not text or not str(text).strip():
        logger.warning("Empty text for document %s, returning no chunks", doc_id)
        return []
    try:
        passages = split_passages(text, opts)
    except Exception as exc:
        logger.warning("Chunking failed for document %s, keeping it whole: %s", doc_id, exc)
        passages = [Passage(position=0, text=str(text).strip())]
    return build_chunks(doc_id, passages, metadata or {})


def build_chunks(
    parent_id: str,
    passages: Sequence[Passage],
    parent_metadata: Mapping[str, MetadataValue],
) -> list[Chunk]:
    """Attach ids and parent metadata to passages."""
    total = len(passages)
    chunks = []
    for passage in passages:
        metadata = dict(parent_metadata)
        metadata.update(
            {
                "parent_id": parent_id,
                "chunk_position": f"{passage.position + 1}/{total}",
                "chunk_chars": len(passage.text),
            }
        )
        chunks.append(
            Chunk(
                id=chunk_id(parent_id, passage.position),
                parent_id=parent_id,
                position=passage.position,
                text=passage.text,
                metadata=metadata,
                total_chunks=total,
            )
        )
    return chunks


def chunk_documents(documents: Sequence[Document], options: ChunkingOptions | None = None) -> ChunkingResult:
    """Chunk documents in fixed-size batches, preserving document order."""
    opts = options or ChunkingOptions()
    result = ChunkingResult()
    with ThreadPoolExecutor(max_workers=opts.max_workers) as pool:
        for start in range(0, len(documents), opts.batch_size):
            batch = documents[start : start + opts.batch_size]
            batch_chunks = pool.map(lambda doc: chunk_document(doc.id, doc.text, opts, doc.metadata), batch)
            for chunks in batch_chunks:
                for chunk in chunks:
                    result.chunks.append(chunk)
                    result.chunk_to_parent[chunk.id] = chunk.parent_id
    logger.info("Created %s chunks from %s documents", len(result.chunks), len(documents))
    return result


def chunk_size_warning(options: ChunkingOptions, embedding_max_length: int) -> str | None:
    """Report when passages are likely longer than the embedding model accepts."""
    if not options.enabled:
        return None
    estimated_tokens = -(-options.chunk_size // 4)
    if estimated_tokens > embedding_max_length:
        return (
            f"Chunk size ({options.chunk_size} chars ~ {estimated_tokens} tokens) exceeds "
            f"embedding max_length ({embedding_max_length}); chunk text may be truncated"
        )
    return None


__all__ = [
    "ChunkingOptions",
    "ChunkingResult",
    "Passage",
    "split_passages",
    "chunk_document",
    "build_chunks",
    "chunk_documents",
    "chunk_size_warning",
]
