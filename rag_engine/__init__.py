"""Hybrid (pgvector + full-text) retrieval engine for RAG backends."""

from __future__ import annotations

from .checksum import compute_checksum, is_checksum_valid
from .config_cache import LibraryConfigCache, LibraryConfigSource, PgLibraryConfigSource
from .errors import (
    InvalidInput,
    InvalidInputCode,
    PartialBatchFailure,
    RagEngineError,
    StorageFailure,
)
from .hybrid_ranker import HybridRanker, fuse_candidates
from .query_normalizer import QueryNormalizer, broaden, sanitize
from .schemas import Chunk, ChunkKind, HybridSearchRequest, LibraryConfig
from .settings import RagConfigurationError, RagSettings, get_settings
from .vector_schema import render_schema_sql
from .vector_store import PgVectorChunkStore, get_default_store, reset_default_store
from .vector_utils import repair_vector

__all__ = [
    "Chunk",
    "ChunkKind",
    "HybridRanker",
    "HybridSearchRequest",
    "InvalidInput",
    "InvalidInputCode",
    "LibraryConfig",
    "LibraryConfigCache",
    "LibraryConfigSource",
    "PartialBatchFailure",
    "PgLibraryConfigSource",
    "PgVectorChunkStore",
    "QueryNormalizer",
    "RagConfigurationError",
    "RagEngineError",
    "RagSettings",
    "StorageFailure",
    "broaden",
    "compute_checksum",
    "fuse_candidates",
    "get_default_store",
    "get_settings",
    "is_checksum_valid",
    "render_schema_sql",
    "repair_vector",
    "reset_default_store",
    "sanitize",
]
