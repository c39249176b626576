"""Search and question-answering over a processed dataset."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Iterator, Literal

from vectoria.core.config import Settings
from vectoria.core.control import CancellationToken
from vectoria.core.errors import ConsistencyViolation
from vectoria.core.logging import dataset_logger, get_logger
from vectoria.core.metrics import REQUEST_COUNT, REQUEST_LATENCY
from vectoria.ingest.embeddings import EmbeddingService
from vectoria.retrieval.context import (
    ContextResult,
    ParentGroup,
    build_chunked_context,
    build_document_context,
    build_prompt,
    context_budget,
    group_chunks_by_parent,
    strip_think_blocks,
)
from vectoria.retrieval.generation import GenerationBackend, TemplateGenerator, clamp_generation_params
from vectoria.retrieval.hybrid import fuse_hits
from vectoria.utils.time import elapsed_ms

if TYPE_CHECKING:
    from vectoria.datasets.dataset import Dataset, DatasetArtifacts

logger = get_logger(__name__)

SearchType = Literal["keyword", "semantic"]
HISTORY_LIMIT = 20
NO_CONTEXT_ANSWER = "I could not find any relevant documents to answer that question."


@dataclass(slots=True)
class SearchHit:
    id: str
    score: float
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "score": self.score, "text": self.text, "metadata": dict(self.metadata)}


@dataclass(slots=True)
class Retrieval:
    groups: list[ParentGroup] = field(default_factory=list)
    parent_hits: list[SearchHit] = field(default_factory=list)
    chunk_based: bool = True
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AnswerResult:
    question: str
    answer: str
    sources: list[dict[str, Any]] = field(default_factory=list)
    retrieval_metrics: dict[str, Any] = field(default_factory=dict)
    context_limited: bool = False
    was_stopped: bool = False
    model: str = ""
    dataset_version: int = 0
    elapsed_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "answer": self.answer,
            "sources": list(self.sources),
            "retrieval_metrics": dict(self.retrieval_metrics),
            "context_limited": self.context_limited,
            "was_stopped": self.was_stopped,
            "model": self.model,
            "dataset_version": self.dataset_version,
            "elapsed_ms": self.elapsed_ms,
        }


class AnswerStream:
    """Iterates generated tokens; ``result`` is set once iteration ends."""

    def __init__(self, tokens: Iterator[str]) -> None:
        self._tokens = tokens
        self.result: AnswerResult | None = None

    def __iter__(self) -> Iterator[str]:
        return self._tokens


class QueryService:
    """Coordinates lexical, semantic and fused retrieval plus generation."""

    def __init__(
        self,
        settings: Settings,
        embedding_service: EmbeddingService,
        generator: GenerationBackend | None = None,
    ) -> None:
        self.settings = settings
        self.embedding_service = embedding_service
        self.generator = generator or TemplateGenerator()
        self._history: dict[str, deque[dict[str, str]]] = {}
        self._active: dict[str, set[CancellationToken]] = {}
        self._lock = threading.Lock()

    # Search -----------------------------------------------------------

    def search(
        self,
        dataset: Dataset,
        query: str,
        search_type: SearchType = "keyword",
        k: int = 10,
        min_score: float = 0.0,
    ) -> list[SearchHit]:
        """Document-tier search: BM25 by default, query-mode embedding when semantic."""
        start_time = time.perf_counter()
        artifacts = dataset.require_artifacts()
        index = artifacts.document_index
        if search_type == "semantic":
            vector = self.embedding_service.embed_batch([query], mode="query")[0]
            hits = [
                SearchHit(id=hit.id, score=hit.score, text=hit.text, metadata=hit.metadata)
                for hit in index.search_vector(vector, k=k, min_score=min_score)
            ]
        elif search_type == "keyword":
            hits = [
                SearchHit(id=hit.id, score=hit.score, text=hit.text, metadata=hit.metadata)
                for hit in index.search_lexical(query, k=k)
                if hit.score >= min_score
            ]
        else:
            raise ValueError(f"Unknown search type '{search_type}'")
        REQUEST_LATENCY.labels(endpoint="search", method="POST").observe(time.perf_counter() - start_time)
        REQUEST_COUNT.labels(endpoint="search", method="POST", status="200").inc()
        return hits

    # Question answering -----------------------------------------------

    def ask_question(
        self,
        dataset: Dataset,
        question: str,
        scope: Iterable[str] | None = None,
        num_results: int | None = None,
        retrieval_k: int | None = None,
        vector_weight: float | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> AnswerResult:
        """Retrieve fused chunk context and generate a single-shot answer."""
        stream = self.stream_question(
            dataset,
            question,
            scope=scope,
            num_results=num_results,
            retrieval_k=retrieval_k,
            vector_weight=vector_weight,
            temperature=temperature,
            max_tokens=max_tokens,
            cancel=cancel,
            incremental=False,
        )
        for _ in stream:
            pass
        if stream.result is None:
            raise ConsistencyViolation("Answer stream finished without a result")
        return stream.result

    def stream_question(
        self,
        dataset: Dataset,
        question: str,
        scope: Iterable[str] | None = None,
        num_results: int | None = None,
        retrieval_k: int | None = None,
        vector_weight: float | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        cancel: CancellationToken | None = None,
        incremental: bool = True,
    ) -> AnswerStream:
        """Prepare retrieval now and return a lazily generated token stream.

        Generation stops when ``cancel`` fires, when :meth:`cancel` is called
        for the dataset, or when the dataset is re-processed underneath.
        """
        started = time.perf_counter()
        if not question or not question.strip():
            raise ValueError("question must not be empty")
        artifacts = dataset.require_artifacts()
        version = artifacts.version
        # a later run bumps the counter; an aborted earlier one already did
        run_version = dataset.version
        settings = self.settings
        top_n = num_results or settings.num_results
        weight = settings.vector_weight if vector_weight is None else vector_weight
        temp, tokens_cap = clamp_generation_params(
            settings.temperature if temperature is None else temperature,
            settings.max_tokens if max_tokens is None else max_tokens,
            settings.max_tokens,
        )

        retrieval = self._retrieve(artifacts, question, scope, top_n, retrieval_k or settings.retrieval_k, weight)
        budget = context_budget(settings.context_window_size, settings.system_prompt, tokens_cap)
        if retrieval.chunk_based:
            context = build_chunked_context(retrieval.groups, budget)
            sources = [group.to_dict() for group in retrieval.groups]
        else:
            context = build_document_context(
                [(hit.id, hit.text, hit.metadata) for hit in retrieval.parent_hits], budget
            )
            sources = [hit.to_dict() for hit in retrieval.parent_hits]

        token = CancellationToken(
            lambda: (cancel is not None and cancel.cancelled) or dataset.version != run_version
        )
        stream = AnswerStream(iter(()))
        result = AnswerResult(
            question=question,
            answer="",
            sources=sources,
            retrieval_metrics=retrieval.metrics,
            context_limited=context.context_limited,
            model=getattr(self.generator, "name", ""),
            dataset_version=version,
        )
        stream._tokens = self._generate(
            dataset, question, context, result, stream, token, temp, tokens_cap, started, incremental
        )
        return stream

    def cancel(self, dataset_id: str) -> int:
        """Stop every in-flight generation for ``dataset_id``; returns how many."""
        with self._lock:
            tokens = list(self._active.get(dataset_id, ()))
        for token in tokens:
            token.cancel()
        if tokens:
            logger.info("Cancelled %s active generations for dataset %s", len(tokens), dataset_id)
        return len(tokens)

    def history(self, dataset_id: str) -> list[dict[str, str]]:
        with self._lock:
            return list(self._history.get(dataset_id, ()))

    def clear_history(self, dataset_id: str) -> None:
        with self._lock:
            self._history.pop(dataset_id, None)

    # ------------------------------------------------------------------

    def _retrieve(
        self,
        artifacts: DatasetArtifacts,
        question: str,
        scope: Iterable[str] | None,
        num_results: int,
        retrieval_k: int,
        vector_weight: float,
    ) -> Retrieval:
        settings = self.settings
        allowed_docs = {str(item) for item in scope} if scope is not None else None
        allowed_chunks = artifacts.chunk_ids_for(allowed_docs) if allowed_docs is not None else None
        question_vector = self.embedding_service.embed_batch([question], mode="query")[0]

        vector_hits = []
        if vector_weight > 0.0:
            vector_hits = artifacts.chunk_index.search_vector(
                question_vector, k=retrieval_k, min_score=settings.similarity_threshold, allow=allowed_chunks
            )
        lexical_hits = []
        if vector_weight < 1.0:
            lexical_hits = artifacts.chunk_index.search_lexical(question, k=retrieval_k, allow=allowed_chunks)

        fused, method = fuse_hits(vector_hits, lexical_hits, vector_weight=vector_weight, k=settings.rrf_k)
        if method == "weighted_rrf" and not lexical_hits:
            method = "vector_only"
        fused = fused[: num_results * settings.max_chunks_per_parent * 2]
        groups = group_chunks_by_parent(
            fused,
            artifacts.chunks_by_id,
            artifacts.documents_by_id,
            top_k=num_results,
            max_chunks_per_parent=settings.max_chunks_per_parent,
        )
        metrics: dict[str, Any] = {
            "vector_count": len(vector_hits),
            "bm25_count": len(lexical_hits),
            "fused_count": len(fused),
            "parent_count": len(groups),
            "fusion_method": method,
            "scope_size": len(allowed_docs) if allowed_docs is not None else None,
            "requested_k": retrieval_k,
        }
        if allowed_docs is not None and not groups:
            logger.warning("No scoped chunks matched; falling back to scoped document search")
            parent_hits = [
                SearchHit(id=hit.id, score=hit.score, text=hit.text, metadata=hit.metadata)
                for hit in artifacts.document_index.search_vector(
                    question_vector, k=num_results, min_score=settings.similarity_threshold, allow=allowed_docs
                )
            ]
            metrics["parent_count"] = len(parent_hits)
            metrics["fallback"] = "parent_scope"
            return Retrieval(parent_hits=parent_hits, chunk_based=False, metrics=metrics)
        return Retrieval(groups=groups, chunk_based=True, metrics=metrics)

    def _generate(
        self,
        dataset: Dataset,
        question: str,
        context: ContextResult,
        result: AnswerResult,
        stream: AnswerStream,
        token: CancellationToken,
        temperature: float,
        max_tokens: int,
        started: float,
        incremental: bool,
    ) -> Iterator[str]:
        with self._lock:
            self._active.setdefault(dataset.id, set()).add(token)
        try:
            if not context.context:
                result.answer = NO_CONTEXT_ANSWER
                return
            prompt = build_prompt(self.settings.user_template, context.context, question)
            pieces: list[str] = []
            if incremental:
                for piece in self.generator.stream(
                    prompt,
                    system=self.settings.system_prompt,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    cancel=token,
                ):
                    if token.cancelled:
                        break
                    pieces.append(piece)
                    yield piece
            elif not token.cancelled:
                pieces.append(
                    self.generator.generate(
                        prompt, system=self.settings.system_prompt, temperature=temperature, max_tokens=max_tokens
                    )
                )
            if token.cancelled:
                # partial output is discarded
                result.was_stopped = True
                result.answer = ""
                dataset_logger(logger, dataset.id, version=result.dataset_version).info("Generation stopped")
                return
            result.answer = strip_think_blocks("".join(pieces))
            self._remember(dataset.id, question, result.answer)
        finally:
            with self._lock:
                active = self._active.get(dataset.id)
                if active is not None:
                    active.discard(token)
                    if not active:
                        self._active.pop(dataset.id, None)
            result.elapsed_ms = elapsed_ms(started)
            stream.result = result
            REQUEST_LATENCY.labels(endpoint="ask", method="POST").observe(time.perf_counter() - started)
            REQUEST_COUNT.labels(endpoint="ask", method="POST", status="200").inc()

    def _remember(self, dataset_id: str, question: str, answer: str) -> None:
        with self._lock:
            history = self._history.setdefault(dataset_id, deque(maxlen=HISTORY_LIMIT))
            history.append({"question": question, "answer": answer})


__all__ = ["QueryService", "SearchHit", "AnswerResult", "AnswerStream", "SearchType"]
