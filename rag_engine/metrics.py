"""Prometheus instrumentation for the retrieval engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

RAG_CHUNKS_WRITTEN = Counter(
    "rag_engine_chunks_written_total",
    "Number of chunk rows inserted or updated in the pgvector store.",
    ["operation"],
)
RAG_VECTORS_REPAIRED = Counter(
    "rag_engine_vectors_repaired_total",
    "Number of vectors padded or truncated to the library embedding dimension.",
    ["direction"],
)
RAG_CONFIG_CACHE_REFRESHES = Counter(
    "rag_engine_config_cache_refreshes_total",
    "Number of library configuration cache rebuilds.",
    ["status"],
)
RAG_QUERY_TOTAL = Counter(
    "rag_engine_query_total",
    "Number of retrieval queries executed.",
    ["mode"],
)
RAG_LEXICAL_FALLBACK_TOTAL = Counter(
    "rag_engine_lexical_fallback_total",
    "Number of phrases that fell back to the cleaned text instead of a tsquery.",
    ["reason"],
)
RAG_STORAGE_FAILURES = Counter(
    "rag_engine_storage_failures_total",
    "Number of store operations aborted by a database error.",
    ["operation"],
)
RAG_QUERY_LATENCY_MS = Histogram(
    "rag_engine_query_latency_ms",
    "Latency of retrieval queries in milliseconds.",
    ["mode"],
    buckets=(5, 10, 20, 50, 100, 200, 500, 1000, 2000),
)
RAG_QUERY_CANDIDATES = Histogram(
    "rag_engine_query_candidates",
    "Number of candidates considered per retrieval mode.",
    ["type"],
    buckets=(1, 5, 10, 20, 50, 100),
)

__all__ = [
    "RAG_CHUNKS_WRITTEN",
    "RAG_CONFIG_CACHE_REFRESHES",
    "RAG_LEXICAL_FALLBACK_TOTAL",
    "RAG_QUERY_CANDIDATES",
    "RAG_QUERY_LATENCY_MS",
    "RAG_QUERY_TOTAL",
    "RAG_STORAGE_FAILURES",
    "RAG_VECTORS_REPAIRED",
]
