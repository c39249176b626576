"""Retrieval components: indices, fusion, context assembly and question answering."""

from .vector_index import VectorIndex
from .lexical import LexicalIndex
from .hybrid import HybridIndex, fuse_hits, reciprocal_rank_fusion
from .search import QueryService

__all__ = [
    "VectorIndex",
    "LexicalIndex",
    "HybridIndex",
    "QueryService",
    "reciprocal_rank_fusion",
    "fuse_hits",
]
