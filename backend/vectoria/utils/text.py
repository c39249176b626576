"""Text processing helpers."""

from __future__ import annotations

import re


WHITESPACE_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s]")


def normalize(text: str) -> str:
    """Collapse whitespace and strip."""
    return WHITESPACE_RE.sub(" ", text).strip()


def tokenize(text: str) -> list[str]:
    """Lowercase, drop punctuation and split on whitespace."""
    return [token for token in _PUNCT_RE.sub(" ", str(text or "").lower()).split() if token]


def estimate_tokens(text: str) -> int:
    """Rough token estimate at ~4 characters per token."""
    return max(1, -(-len(text) // 4))
