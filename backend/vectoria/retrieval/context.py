"""Grouping retrieved chunks by parent and assembling bounded prompt context."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from vectoria.models.entities import Chunk, Document, MetadataValue
from vectoria.retrieval.hybrid import FusedHit
from vectoria.utils.text import estimate_tokens, normalize

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
_QUESTION_BUFFER_TOKENS = 150
_MIN_CONTEXT_TOKENS = 500


@dataclass(slots=True)
class ScoredChunk:
    chunk_id: str
    parent_id: str
    position: int
    text: str
    score: float


@dataclass(slots=True)
class ParentGroup:
    parent_id: str
    chunks: list[ScoredChunk] = field(default_factory=list)
    max_score: float = 0.0
    avg_score: float = 0.0
    metadata: dict[str, MetadataValue] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "parent_id": self.parent_id,
            "score": self.max_score,
            "avg_score": self.avg_score,
            "metadata": dict(self.metadata),
            "chunks": [
                {"chunk_id": c.chunk_id, "position": c.position, "score": c.score, "text": c.text}
                for c in self.chunks
            ],
        }


@dataclass(slots=True)
class ContextResult:
    context: str
    context_limited: bool
    tokens_used: int
    max_tokens: int


def group_chunks_by_parent(
    hits: Sequence[FusedHit],
    chunks: Mapping[str, Chunk],
    documents: Mapping[str, Document],
    top_k: int,
    max_chunks_per_parent: int = 5,
) -> list[ParentGroup]:
    """Group fused chunk hits under their parent document.

    Each parent keeps its best ``max_chunks_per_parent`` chunks, re-sorted into
    reading order. Parents are ranked by their best chunk score.
    """
    groups: dict[str, ParentGroup] = {}
    for hit in hits:
        chunk = chunks.get(hit.id)
        if chunk is None:
            continue
        group = groups.setdefault(chunk.parent_id, ParentGroup(parent_id=chunk.parent_id))
        group.chunks.append(
            ScoredChunk(
                chunk_id=chunk.id,
                parent_id=chunk.parent_id,
                position=chunk.position,
                text=chunk.text,
                score=hit.score,
            )
        )
        group.max_score = max(group.max_score, hit.score)

    for group in groups.values():
        group.chunks.sort(key=lambda item: item.score, reverse=True)
        del group.chunks[max_chunks_per_parent:]
        group.avg_score = sum(item.score for item in group.chunks) / len(group.chunks)
        group.chunks.sort(key=lambda item: item.position)
        parent = documents.get(group.parent_id)
        if parent is not None:
            group.metadata = dict(parent.metadata)

    ordered = sorted(groups.values(), key=lambda group: group.max_score, reverse=True)
    return ordered[:top_k]


def context_budget(context_window: int, system_prompt: str, max_tokens: int) -> int:
    """Tokens left for retrieved context after the prompt and the answer."""
    available = context_window - estimate_tokens(system_prompt) - _QUESTION_BUFFER_TOKENS - max_tokens
    return max(_MIN_CONTEXT_TOKENS, available)


def build_chunked_context(
    groups: Sequence[ParentGroup],
    budget: int,
    include_metadata: bool = True,
) -> ContextResult:
    parts: list[str] = []
    used = 0
    limited = False
    for index, group in enumerate(groups, start=1):
        section = f"[Doc {index}]"
        if include_metadata:
            meta = _format_metadata(group.metadata)
            if meta:
                section += f"\n   Metadata: {meta}"
        section += "\n   Relevant passages:"
        added = 0
        for chunk in group.chunks:
            line = f"\n   » {normalize(chunk.text)}"
            tokens = estimate_tokens(line)
            if used + tokens >= budget:
                limited = True
                if not parts and not added:
                    # the best passage alone overflows; keep its head
                    line = line[: max(0, budget - used - 1) * 4]
                    section += line
                    used += estimate_tokens(line)
                    added += 1
                break
            section += line
            used += tokens
            added += 1
        if added:
            parts.append(section)
        if limited or used >= budget:
            limited = True
            break
    return ContextResult(context="\n\n".join(parts), context_limited=limited, tokens_used=used, max_tokens=budget)


def build_document_context(
    documents: Sequence[tuple[str, str, Mapping[str, MetadataValue]]],
    budget: int,
    include_metadata: bool = True,
) -> ContextResult:
    """Context from whole documents given as (id, text, metadata) triples."""
    parts: list[str] = []
    used = 0
    limited = False
    for index, (_, text, metadata) in enumerate(documents, start=1):
        item = f"[Doc {index}] {normalize(text)}"
        if include_metadata:
            meta = _format_metadata(metadata)
            if meta:
                item += f"\n   ({meta})"
        tokens = estimate_tokens(item)
        if used + tokens >= budget:
            limited = True
            break
        parts.append(item)
        used += tokens
    return ContextResult(context="\n\n".join(parts), context_limited=limited, tokens_used=used, max_tokens=budget)


def build_prompt(template: str, context: str, question: str) -> str:
    return template.replace("{context}", context).replace("{question}", question)


def strip_think_blocks(text: str) -> str:
    """Remove ``<think>...</think>`` reasoning sections from model output."""
    return _THINK_RE.sub("", text).strip()


def _format_metadata(metadata: Mapping[str, MetadataValue]) -> str:
    items: Iterable[tuple[str, MetadataValue]] = (
        (key, value)
        for key, value in metadata.items()
        if not key.startswith("chunk_") and key not in {"parent_id", "text"} and value is not None
    )
    return ", ".join(f"{key}: {value}" for key, value in items)


__all__ = [
    "ScoredChunk",
    "ParentGroup",
    "ContextResult",
    "group_chunks_by_parent",
    "context_budget",
    "build_chunked_context",
    "build_document_context",
    "build_prompt",
    "strip_think_blocks",
]
