"""Hybrid retrieval: semantic and lexical rankings fused by reciprocal rank."""

from __future__ import annotations

import math
import numbers
import time
from dataclasses import dataclass, replace
from typing import Dict, List, Protocol, Sequence, Tuple

from opentelemetry import trace

from common.logging import get_logger

from .config_cache import LibraryConfigCache
from .errors import InvalidInput, InvalidInputCode
from .metrics import RAG_QUERY_CANDIDATES, RAG_QUERY_LATENCY_MS, RAG_QUERY_TOTAL
from .query_normalizer import QueryNormalizer
from .schemas import (
    SCORE_KEY,
    SCORE_SEMANTIC_KEY,
    SCORE_TEXT_KEY,
    Chunk,
    HybridSearchRequest,
)
from .settings import RagSettings
from .vector_store import ScoredChunk

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

__all__ = [
    "FusionResult",
    "HybridRanker",
    "RankedChunk",
    "assign_ranks",
    "fuse_candidates",
    "reciprocal_rank",
]


class CandidateStore(Protocol):
    """Retrieval primitives the ranker needs from the chunk store."""

    settings: RagSettings
    config_cache: LibraryConfigCache

    def websearch_to_tsquery(self, phrase: str) -> str | None:
        ...

    def semantic_candidates(
        self, vector: Sequence[float], library_ids: Sequence[int], limit: int
    ) -> List[ScoredChunk]:
        ...

    def lexical_candidates(
        self,
        expression: str,
        library_ids: Sequence[int],
        limit: int,
        *,
        degraded: bool = False,
    ) -> List[ScoredChunk]:
        ...


RankedChunk = Tuple[Chunk, int]


@dataclass(frozen=True)
class FusionResult:
    chunks: List[Chunk]
    fused_candidates: int


def reciprocal_rank(rank: int, k: int) -> float:
    return 1.0 / (k + rank)


def assign_ranks(candidates: Sequence[ScoredChunk]) -> List[RankedChunk]:
    """Rank pre-ordered candidates, giving tied raw scores the same rank.

    Ranks follow SQL ``RANK()``: the first row is 1 and a row after a tie
    skips the tied positions.
    """

    ranked: List[RankedChunk] = []
    previous: float | None = None
    current_rank = 0
    for position, (chunk, raw_score) in enumerate(candidates, start=1):
        if previous is None or not math.isclose(
            raw_score, previous, rel_tol=0.0, abs_tol=1e-12
        ):
            current_rank = position
        previous = raw_score
        ranked.append((chunk, current_rank))
    return ranked


def _chunk_key(chunk: Chunk) -> int:
    return int(chunk.id) if chunk.id is not None else -1


def fuse_candidates(
    semantic: Sequence[RankedChunk],
    lexical: Sequence[RankedChunk],
    *,
    k: int,
    semantic_weight: float,
    textual_weight: float,
) -> FusionResult:
    """Outer-join both rankings on chunk id and keep the ``k`` best.

    ``score = score_semantic * semantic_weight + score_text * textual_weight``
    where each mode score is ``1 / (k + rank)`` and a missing mode scores
    ``0.0``. Ties are broken by ascending chunk id.
    """

    chunks: Dict[int, Chunk] = {}
    semantic_scores: Dict[int, float] = {}
    text_scores: Dict[int, float] = {}
    for chunk, rank in semantic:
        chunk_id = _chunk_key(chunk)
        chunks.setdefault(chunk_id, chunk)
        semantic_scores[chunk_id] = reciprocal_rank(rank, k)
    for chunk, rank in lexical:
        chunk_id = _chunk_key(chunk)
        chunks.setdefault(chunk_id, chunk)
        text_scores[chunk_id] = reciprocal_rank(rank, k)

    scored: List[Tuple[float, int, Chunk]] = []
    for chunk_id, source in chunks.items():
        score_semantic = semantic_scores.get(chunk_id, 0.0)
        score_text = text_scores.get(chunk_id, 0.0)
        score = score_semantic * semantic_weight + score_text * textual_weight
        annotated = replace(
            source,
            metadata={
                **source.metadata,
                SCORE_SEMANTIC_KEY: score_semantic,
                SCORE_TEXT_KEY: score_text,
                SCORE_KEY: score,
            },
        )
        scored.append((score, chunk_id, annotated))

    scored.sort(key=lambda item: (-item[0], item[1]))
    return FusionResult(
        chunks=[chunk for _, _, chunk in scored[:k]],
        fused_candidates=len(scored),
    )


def _validate_library_ids(library_ids: Sequence[int] | None) -> List[int]:
    if not library_ids:
        raise InvalidInput(
            InvalidInputCode.LIBRARIES_REQUIRED,
            "at least one library id is required",
            field="library_ids",
        )
    return [int(value) for value in library_ids]


def _vector_or_none(query_vector: Sequence[float] | None) -> List[float] | None:
    # len() instead of truthiness so array types with ambiguous bool work
    if query_vector is None or len(query_vector) == 0:
        return None
    return [float(value) for value in query_vector]


def _validate_weight(value: float | None, field: str) -> float | None:
    if value is None:
        return None
    weight = float(value)
    if not math.isfinite(weight) or weight < 0:
        raise InvalidInput(
            InvalidInputCode.WEIGHT_INVALID,
            f"{field} must be a non-negative number",
            field=field,
            context={field: value},
        )
    return weight


class HybridRanker:
    """Runs semantic, lexical and fused hybrid queries against a chunk store."""

    def __init__(
        self,
        store: CandidateStore,
        *,
        normalizer: QueryNormalizer | None = None,
        settings: RagSettings | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or store.settings
        self._config_cache = store.config_cache
        self._normalizer = normalizer or QueryNormalizer(store)

    def _resolve_k(self, k: int | None) -> int:
        if k is None:
            return self._settings.search_top_k
        if isinstance(k, bool) or not isinstance(k, numbers.Integral) or k < 1:
            raise InvalidInput(
                InvalidInputCode.TOP_K_INVALID,
                "k must be a positive integer",
                field="k",
                context={"k": k},
            )
        return int(k)

    def resolve_weights(
        self,
        library_ids: Sequence[int],
        semantic_weight: float | None = None,
        textual_weight: float | None = None,
    ) -> Tuple[float, float]:
        """Pick the fusion weights for a query scoped to ``library_ids``.

        Explicit weights win; a single explicit weight implies its complement.
        Otherwise the libraries' own weights apply when every scoped library
        defines the same pair, and the configured defaults apply last.
        """

        semantic = _validate_weight(semantic_weight, "semantic_weight")
        textual = _validate_weight(textual_weight, "textual_weight")
        if semantic is not None and textual is not None:
            return semantic, textual
        if semantic is not None:
            return semantic, max(0.0, 1.0 - semantic)
        if textual is not None:
            return max(0.0, 1.0 - textual), textual

        configs = self._config_cache.get_many(library_ids)
        pairs = {
            (config.semantic_weight, config.textual_weight)
            for config in configs.values()
        }
        if len(configs) == len(set(library_ids)) and len(pairs) == 1:
            library_semantic, library_textual = next(iter(pairs))
            if library_semantic is not None and library_textual is not None:
                return float(library_semantic), float(library_textual)
        return self._settings.semantic_weight, self._settings.textual_weight

    def _prepare_text(self, query_text: str | None) -> str | None:
        if query_text is None or not str(query_text).strip():
            return None
        return self._normalizer.sanitize(query_text)

    def search(self, request: HybridSearchRequest) -> List[Chunk]:
        return self.hybrid_search(
            request.library_ids,
            query_text=request.query_text,
            query_vector=request.query_vector,
            k=request.k,
            semantic_weight=request.semantic_weight,
            textual_weight=request.textual_weight,
            broad=request.broad,
        )

    def hybrid_search(
        self,
        library_ids: Sequence[int],
        *,
        query_text: str | None = None,
        query_vector: Sequence[float] | None = None,
        k: int | None = None,
        semantic_weight: float | None = None,
        textual_weight: float | None = None,
        broad: bool = True,
    ) -> List[Chunk]:
        """Return the ``k`` best chunks by fused semantic and lexical rank.

        Each chunk's metadata carries ``score_semantic``, ``score_text`` and
        the combined ``score``. A mode without input is skipped and
        contributes nothing to the score.
        """

        scoped = _validate_library_ids(library_ids)
        top_k = self._resolve_k(k)
        vector = _vector_or_none(query_vector)
        clean_phrase = self._prepare_text(query_text)
        if vector is None and clean_phrase is None:
            raise InvalidInput(
                InvalidInputCode.QUERY_REQUIRED,
                "either query_text or query_vector is required",
                field="query",
            )
        weights = self.resolve_weights(scoped, semantic_weight, textual_weight)

        started = time.perf_counter()
        with tracer.start_as_current_span("rag.hybrid.search") as span:
            span.set_attribute("rag.k", top_k)
            span.set_attribute("rag.libraries", len(scoped))
            semantic_ranked: List[RankedChunk] = []
            lexical_ranked: List[RankedChunk] = []
            if vector is not None:
                candidates = self._store.semantic_candidates(vector, scoped, 2 * top_k)
                semantic_ranked = assign_ranks(candidates)
                RAG_QUERY_CANDIDATES.labels(type="semantic").observe(len(candidates))
            if clean_phrase is not None:
                lexical = self._normalizer.expression_for(clean_phrase, broad=broad)
                candidates = self._store.lexical_candidates(
                    lexical.expression, scoped, 2 * top_k, degraded=lexical.degraded
                )
                lexical_ranked = assign_ranks(candidates)
                RAG_QUERY_CANDIDATES.labels(type="lexical").observe(len(candidates))

            result = fuse_candidates(
                semantic_ranked,
                lexical_ranked,
                k=top_k,
                semantic_weight=weights[0],
                textual_weight=weights[1],
            )

        duration_ms = (time.perf_counter() - started) * 1000
        RAG_QUERY_TOTAL.labels(mode="hybrid").inc()
        RAG_QUERY_LATENCY_MS.labels(mode="hybrid").observe(duration_ms)
        logger.info(
            "rag.hybrid.search",
            libraries=scoped,
            k=top_k,
            semantic_weight=weights[0],
            textual_weight=weights[1],
            semantic_candidates=len(semantic_ranked),
            lexical_candidates=len(lexical_ranked),
            fused_candidates=result.fused_candidates,
            returned=len(result.chunks),
            duration_ms=round(duration_ms, 2),
        )
        return result.chunks

    def semantic_search(
        self,
        query_vector: Sequence[float],
        library_ids: Sequence[int],
        k: int | None = None,
    ) -> List[Chunk]:
        """Nearest chunks scored ``1 / (1 + distance)``."""

        scoped = _validate_library_ids(library_ids)
        top_k = self._resolve_k(k)
        vector = _vector_or_none(query_vector)
        if vector is None:
            raise InvalidInput(
                InvalidInputCode.QUERY_REQUIRED,
                "query_vector is required",
                field="query_vector",
            )
        started = time.perf_counter()
        candidates = self._store.semantic_candidates(vector, scoped, top_k)
        results = []
        for chunk, distance in candidates:
            score = 1.0 / (1.0 + distance)
            results.append(
                replace(
                    chunk,
                    metadata={**chunk.metadata, SCORE_SEMANTIC_KEY: score, SCORE_KEY: score},
                )
            )
        RAG_QUERY_TOTAL.labels(mode="semantic").inc()
        RAG_QUERY_LATENCY_MS.labels(mode="semantic").observe(
            (time.perf_counter() - started) * 1000
        )
        logger.debug("rag.semantic.search", libraries=scoped, k=top_k, returned=len(results))
        return results

    def text_search(
        self,
        query_text: str,
        library_ids: Sequence[int],
        k: int | None = None,
        *,
        broad: bool = True,
    ) -> List[Chunk]:
        """Chunks matching ``query_text`` scored by ``ts_rank_cd``."""

        scoped = _validate_library_ids(library_ids)
        top_k = self._resolve_k(k)
        clean_phrase = self._normalizer.sanitize(query_text)
        started = time.perf_counter()
        lexical = self._normalizer.expression_for(clean_phrase, broad=broad)
        candidates = self._store.lexical_candidates(
            lexical.expression, scoped, top_k, degraded=lexical.degraded
        )
        results = [
            replace(
                chunk,
                metadata={**chunk.metadata, SCORE_TEXT_KEY: score, SCORE_KEY: score},
            )
            for chunk, score in candidates
        ]
        RAG_QUERY_TOTAL.labels(mode="text").inc()
        RAG_QUERY_LATENCY_MS.labels(mode="text").observe(
            (time.perf_counter() - started) * 1000
        )
        logger.debug("rag.text.search", libraries=scoped, k=top_k, returned=len(results))
        return results
