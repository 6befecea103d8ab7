"""Environment-driven configuration for the retrieval engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import environ

__all__ = [
    "DISTANCE_OPERATORS",
    "RagConfigurationError",
    "RagConfigErrorCode",
    "RagSettings",
    "get_settings",
    "load_settings",
    "reset_settings_cache",
]


class RagConfigurationError(ValueError):
    """Raised when the engine configuration is invalid."""


class RagConfigErrorCode:
    """Machine-readable error codes for configuration issues."""

    DIMENSION_INVALID = "RAG_CONFIG_DIM_INVALID"
    TTL_INVALID = "RAG_CONFIG_TTL_INVALID"
    TOP_K_INVALID = "RAG_CONFIG_TOP_K_INVALID"
    WEIGHT_INVALID = "RAG_CONFIG_WEIGHT_INVALID"
    POOL_INVALID = "RAG_CONFIG_POOL_INVALID"
    DISTANCE_OPERATOR_UNKNOWN = "RAG_CONFIG_DISTANCE_UNKNOWN"
    SCHEMA_REQUIRED = "RAG_CONFIG_SCHEMA_REQUIRED"


# pgvector operators keyed by the metric name accepted in RAG_DISTANCE_OPERATOR
DISTANCE_OPERATORS: dict[str, str] = {
    "cosine": "<=>",
    "l2": "<->",
}


def _format_error(code: str, message: str) -> str:
    return f"{code}: {message}"


@dataclass(frozen=True, slots=True)
class RagSettings:
    """Validated runtime settings for the store, cache and ranker."""

    database_url: str | None = None
    schema: str = "rag"
    pool_minconn: int = 1
    pool_maxconn: int = 5
    statement_timeout_ms: int = 15000
    default_embedding_dimension: int = 1536
    config_cache_ttl_minutes: float = 30.0
    search_top_k: int = 10
    semantic_weight: float = 0.6
    textual_weight: float = 0.4
    text_search_config: str = "portuguese"
    distance_metric: str = "cosine"
    library_table: str = "libraries"

    def __post_init__(self) -> None:
        if not self.schema:
            raise RagConfigurationError(
                _format_error(
                    RagConfigErrorCode.SCHEMA_REQUIRED, "vector schema must be set"
                )
            )
        if self.default_embedding_dimension <= 0:
            raise RagConfigurationError(
                _format_error(
                    RagConfigErrorCode.DIMENSION_INVALID,
                    "default embedding dimension must be positive",
                )
            )
        if self.config_cache_ttl_minutes < 0:
            raise RagConfigurationError(
                _format_error(
                    RagConfigErrorCode.TTL_INVALID,
                    "config cache ttl must not be negative",
                )
            )
        if self.search_top_k < 1:
            raise RagConfigurationError(
                _format_error(
                    RagConfigErrorCode.TOP_K_INVALID, "search top_k must be >= 1"
                )
            )
        for name in ("semantic_weight", "textual_weight"):
            if getattr(self, name) < 0:
                raise RagConfigurationError(
                    _format_error(
                        RagConfigErrorCode.WEIGHT_INVALID, f"{name} must not be negative"
                    )
                )
        if self.pool_minconn < 1 or self.pool_maxconn < self.pool_minconn:
            raise RagConfigurationError(
                _format_error(
                    RagConfigErrorCode.POOL_INVALID,
                    "invalid connection pool configuration",
                )
            )
        if self.distance_metric not in DISTANCE_OPERATORS:
            raise RagConfigurationError(
                _format_error(
                    RagConfigErrorCode.DISTANCE_OPERATOR_UNKNOWN,
                    f"unsupported distance metric '{self.distance_metric}'",
                )
            )

    @property
    def config_cache_ttl_seconds(self) -> float:
        return self.config_cache_ttl_minutes * 60.0

    @property
    def distance_operator(self) -> str:
        return DISTANCE_OPERATORS[self.distance_metric]


def load_settings(env: environ.Env | None = None) -> RagSettings:
    """Build :class:`RagSettings` from the process environment."""

    env = env or environ.Env()
    env_file = os.getenv("RAG_ENV_FILE")
    if env_file and Path(env_file).is_file():
        environ.Env.read_env(env_file)

    database_url = env.str("RAG_DATABASE_URL", default="") or env.str(
        "DATABASE_URL", default=""
    )
    return RagSettings(
        database_url=database_url or None,
        schema=env.str("RAG_VECTOR_SCHEMA", default="rag").strip(),
        pool_minconn=env.int("RAG_POOL_MINCONN", default=1),
        pool_maxconn=env.int("RAG_POOL_MAXCONN", default=5),
        statement_timeout_ms=env.int("RAG_STATEMENT_TIMEOUT_MS", default=15000),
        default_embedding_dimension=env.int("RAG_DEFAULT_EMBEDDING_DIM", default=1536),
        config_cache_ttl_minutes=env.float("RAG_CONFIG_CACHE_TTL_MINUTES", default=30.0),
        search_top_k=env.int("RAG_SEARCH_TOP_K", default=10),
        semantic_weight=env.float("RAG_SEMANTIC_WEIGHT", default=0.6),
        textual_weight=env.float("RAG_TEXTUAL_WEIGHT", default=0.4),
        text_search_config=env.str("RAG_TEXT_SEARCH_CONFIG", default="portuguese"),
        distance_metric=env.str("RAG_DISTANCE_OPERATOR", default="cosine").lower(),
        library_table=env.str("RAG_LIBRARY_TABLE", default="libraries"),
    )


@lru_cache(maxsize=1)
def get_settings() -> RagSettings:
    """Return the process-wide settings, loading them on first use."""

    return load_settings()


def reset_settings_cache() -> None:
    get_settings.cache_clear()
