"""Time-bounded cache of per-library retrieval configuration."""

from __future__ import annotations

import json
import threading
import time
from contextlib import AbstractContextManager
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Protocol

import psycopg2
from psycopg2 import sql
from psycopg2.extras import RealDictCursor
from pydantic import ValidationError

from common.logging import get_logger

from .errors import StorageFailure
from .metrics import RAG_CONFIG_CACHE_REFRESHES, RAG_STORAGE_FAILURES
from .schemas import LibraryConfig, LibraryMetadata

logger = get_logger(__name__)

__all__ = [
    "LibraryConfigCache",
    "LibraryConfigSource",
    "PgLibraryConfigSource",
    "library_config_from_row",
]


class LibraryConfigSource(Protocol):
    """Upstream provider of library configuration."""

    def list_all(self) -> Iterable[LibraryConfig]:
        ...


def _coerce_metadata(value: object) -> Mapping[str, Any]:
    if value is None:
        return {}
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    return value if isinstance(value, Mapping) else {}


def _optional_float(value: object) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def library_config_from_row(
    row: Mapping[str, Any], *, default_dimension: int
) -> LibraryConfig:
    """Build a :class:`LibraryConfig` from a library row.

    The embedding dimension lives in the row's JSON metadata; weight columns
    win over weights found in the metadata. Unusable metadata falls back to
    ``default_dimension``.
    """

    library_id = int(row["id"])
    try:
        metadata = LibraryMetadata.model_validate(_coerce_metadata(row.get("metadata")))
    except ValidationError as exc:
        logger.warning(
            "rag.config.metadata_invalid",
            library_id=library_id,
            errors=exc.error_count(),
        )
        metadata = LibraryMetadata()

    semantic = _optional_float(row.get("semantic_weight"))
    textual = _optional_float(row.get("textual_weight"))
    return LibraryConfig(
        library_id=library_id,
        embedding_dimension=metadata.embedding_dimension or default_dimension,
        semantic_weight=semantic if semantic is not None else metadata.semantic_weight,
        textual_weight=textual if textual is not None else metadata.textual_weight,
    )


class PgLibraryConfigSource:
    """Reads every library row from the upstream library table."""

    def __init__(
        self,
        connection_factory: Callable[[], AbstractContextManager[Any]],
        *,
        table: str = "libraries",
        default_dimension: int = 1536,
    ) -> None:
        self._connection_factory = connection_factory
        self._table = sql.Identifier(*table.strip().split("."))
        self._default_dimension = default_dimension

    def list_all(self) -> list[LibraryConfig]:
        query = sql.SQL(
            "SELECT id, semantic_weight, textual_weight, metadata FROM {}"
        ).format(self._table)
        try:
            with self._connection_factory() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query)
                    rows = cur.fetchall()
        except psycopg2.Error as exc:
            RAG_STORAGE_FAILURES.labels(operation="list_library_configs").inc()
            raise StorageFailure("list_library_configs", str(exc).strip()) from exc
        return [
            library_config_from_row(row, default_dimension=self._default_dimension)
            for row in rows
        ]


class LibraryConfigCache:
    """Whole-table snapshot of :class:`LibraryConfig` with a refresh TTL.

    Lookups read an immutable snapshot that is swapped in one assignment, so
    readers never block each other and never see a half-built map. A lock
    serialises refreshes; threads that lose the race reuse the fresh snapshot.
    """

    def __init__(
        self,
        source: LibraryConfigSource,
        *,
        ttl_seconds: float = 1800.0,
        default_dimension: int = 1536,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._ttl_seconds = float(ttl_seconds)
        self._default_dimension = int(default_dimension)
        self._clock = clock
        self._snapshot: Mapping[int, LibraryConfig] = MappingProxyType({})
        self._last_refresh: float | None = None
        self._refresh_lock = threading.Lock()

    @property
    def default_dimension(self) -> int:
        return self._default_dimension

    def _is_stale(self, now: float) -> bool:
        last = self._last_refresh
        return last is None or now > last + self._ttl_seconds

    def _refresh(self) -> None:
        started = self._clock()
        try:
            configs = list(self._source.list_all())
        except StorageFailure:
            RAG_CONFIG_CACHE_REFRESHES.labels(status="error").inc()
            logger.error("rag.config.refresh_failed", exc_info=True)
            raise
        snapshot = {config.library_id: config for config in configs}
        self._snapshot = MappingProxyType(snapshot)
        self._last_refresh = started
        RAG_CONFIG_CACHE_REFRESHES.labels(status="ok").inc()
        logger.info("rag.config.refreshed", libraries=len(snapshot))

    def _current(self) -> Mapping[int, LibraryConfig]:
        if self._is_stale(self._clock()):
            with self._refresh_lock:
                if self._is_stale(self._clock()):
                    self._refresh()
        return self._snapshot

    def get(self, library_id: int) -> LibraryConfig | None:
        """Return the configuration of ``library_id`` or ``None`` when unknown."""

        return self._current().get(int(library_id))

    def get_many(self, library_ids: Iterable[int]) -> dict[int, LibraryConfig]:
        snapshot = self._current()
        found: dict[int, LibraryConfig] = {}
        for library_id in library_ids:
            config = snapshot.get(int(library_id))
            if config is not None:
                found[config.library_id] = config
        return found

    def dimension_for(self, library_id: int) -> int:
        config = self.get(library_id)
        if config is None:
            logger.debug(
                "rag.config.default_dimension",
                library_id=library_id,
                dimension=self._default_dimension,
            )
            return self._default_dimension
        return config.embedding_dimension

    def invalidate(self) -> None:
        """Force the next lookup to rebuild the snapshot."""

        with self._refresh_lock:
            self._last_refresh = None
