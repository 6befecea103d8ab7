"""pgvector-backed persistence and candidate retrieval for text chunks."""

from __future__ import annotations

import atexit
import math
import threading
from contextlib import contextmanager
from typing import Any, ClassVar, Iterable, Iterator, Mapping, Optional, Sequence, cast

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from common.logging import get_logger, log_context, mask_value

from . import queries
from .checksum import compute_checksum, find_duplicate
from .config_cache import LibraryConfigCache, PgLibraryConfigSource
from .errors import (
    InvalidInput,
    InvalidInputCode,
    PartialBatchFailure,
    StorageFailure,
)
from .metrics import RAG_CHUNKS_WRITTEN, RAG_STORAGE_FAILURES
from .row_mapping import decode_chunk_row, extract_score
from .schemas import CHECKSUM_KEY, Chunk, ChunkKind, coerce_chunk_kind
from .settings import RagConfigurationError, RagSettings, get_settings
from .vector_schema import render_schema_sql
from .vector_utils import format_vector, repair_vector

logger = get_logger(__name__)

__all__ = [
    "PgVectorChunkStore",
    "ScoredChunk",
    "get_default_store",
    "reset_default_store",
]

ScoredChunk = tuple[Chunk, float]


def _validate_chunk(chunk: Chunk, *, index: int | None = None) -> None:
    context: dict[str, object | None] = {"index": index, "chunk_id": chunk.id}
    if chunk.library_id is None:
        raise InvalidInput(
            InvalidInputCode.CHUNK_INVALID,
            "chunk library_id is required",
            field="library_id",
            context=context,
        )
    if chunk.document_id is None:
        raise InvalidInput(
            InvalidInputCode.CHUNK_INVALID,
            "chunk document_id is required",
            field="document_id",
            context=context,
        )
    if not chunk.text or not chunk.text.strip():
        raise InvalidInput(
            InvalidInputCode.CHUNK_INVALID,
            "chunk text must not be empty",
            field="text",
            context=context,
        )
    try:
        coerce_chunk_kind(chunk.kind)
    except (KeyError, ValueError) as exc:
        raise InvalidInput(
            InvalidInputCode.CHUNK_INVALID,
            f"unknown chunk kind '{chunk.kind}'",
            field="kind",
            context=context,
        ) from exc


class PgVectorChunkStore:
    """Chunk persistence on PostgreSQL with pgvector and full-text search.

    Vectors are repaired to the owning library's embedding dimension on
    every write and every read. Each public operation runs in its own
    transaction with ``statement_timeout`` applied; driver errors surface as
    :class:`~rag_engine.errors.StorageFailure`.
    """

    _SCHEMAS_READY: ClassVar[set[str]] = set()
    _SCHEMA_LOCK: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        pool: Any,
        *,
        settings: RagSettings | None = None,
        config_cache: LibraryConfigCache | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._schema = self._settings.schema.strip()
        self._text_search_config = self._settings.text_search_config.strip()
        self._pool = pool
        self._semantic_sql = queries.build_semantic_candidates_sql(
            self._settings.distance_operator
        )
        if config_cache is None:
            config_cache = LibraryConfigCache(
                PgLibraryConfigSource(
                    self._connection,
                    table=self._settings.library_table,
                    default_dimension=self._settings.default_embedding_dimension,
                ),
                ttl_seconds=self._settings.config_cache_ttl_seconds,
                default_dimension=self._settings.default_embedding_dimension,
            )
        self._config_cache = config_cache

    @classmethod
    def from_env(cls, settings: RagSettings | None = None) -> "PgVectorChunkStore":
        settings = settings or get_settings()
        if not settings.database_url:
            raise RagConfigurationError(
                "Neither RAG_DATABASE_URL nor DATABASE_URL is set; "
                "cannot initialise PgVectorChunkStore"
            )
        pool = ThreadedConnectionPool(
            settings.pool_minconn, settings.pool_maxconn, settings.database_url
        )
        logger.info(
            "rag.store.pool_created",
            dsn=mask_value(settings.database_url),
            schema=settings.schema,
            minconn=settings.pool_minconn,
            maxconn=settings.pool_maxconn,
        )
        return cls(pool, settings=settings)

    @property
    def settings(self) -> RagSettings:
        return self._settings

    @property
    def config_cache(self) -> LibraryConfigCache:
        return self._config_cache

    def close(self) -> None:
        """Close all pooled connections."""

        self._pool.closeall()

    # ------------------------------------------------------------------ #
    # connection handling

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        conn = self._pool.getconn()
        try:
            self._prepare_connection(conn)
            yield conn
        finally:
            self._pool.putconn(conn)

    def _prepare_connection(self, conn: Any) -> None:
        with conn.cursor() as cur:
            cur.execute(
                sql.SQL("SET search_path TO {}, public").format(
                    sql.Identifier(self._schema)
                )
            )

    @contextmanager
    def _transaction(
        self, operation: str, *, ids: Iterable[object] = ()
    ) -> Iterator[Any]:
        """Yield a dict cursor inside one transaction.

        Commits when the body completes and rolls back on any exception.
        """

        ids = tuple(ids)
        try:
            with self._connection() as conn:
                try:
                    with conn.cursor(cursor_factory=RealDictCursor) as cur:
                        cur.execute(
                            "SET LOCAL statement_timeout = %s",
                            (str(self._settings.statement_timeout_ms),),
                        )
                        yield cur
                    conn.commit()
                except BaseException:
                    conn.rollback()
                    raise
        except psycopg2.Error as exc:
            message = str(exc).strip() or exc.__class__.__name__
            RAG_STORAGE_FAILURES.labels(operation=operation).inc()
            logger.error(
                "rag.store.failed",
                operation=operation,
                ids=list(ids),
                error=message,
            )
            raise StorageFailure(operation, message, ids=ids) from exc

    def _dimension_for(self, library_id: int) -> int:
        return self._config_cache.dimension_for(library_id)

    def _decode(self, row: Mapping[str, Any]) -> Chunk:
        return decode_chunk_row(row, self._dimension_for)

    def _vector_literal(
        self, vector: Sequence[float] | None, library_id: int
    ) -> str | None:
        repaired = repair_vector(vector, self._dimension_for(library_id))
        if repaired is None:
            return None
        return format_vector(repaired)

    @staticmethod
    def _metadata_with_checksum(chunk: Chunk) -> dict[str, Any]:
        metadata = dict(chunk.metadata or {})
        if not metadata.get(CHECKSUM_KEY):
            checksum = compute_checksum(chunk.text)
            if checksum:
                metadata[CHECKSUM_KEY] = checksum
        return metadata

    def _insert_params(self, chunk: Chunk) -> tuple[object, ...]:
        return (
            chunk.library_id,
            chunk.document_id,
            chunk.parent_chunk_id,
            coerce_chunk_kind(chunk.kind).value,
            chunk.text,
            chunk.order_in_parent,
            self._vector_literal(chunk.vector, chunk.library_id),
            Json(self._metadata_with_checksum(chunk)),
        )

    # ------------------------------------------------------------------ #
    # schema and health

    def ensure_schema(self) -> bool:
        """Create the vector extension and chunk table once per process.

        Returns ``True`` when DDL was executed and ``False`` when the schema
        had already been prepared by this process.
        """

        if self._schema in self._SCHEMAS_READY:
            return False
        with self._SCHEMA_LOCK:
            if self._schema in self._SCHEMAS_READY:
                return False
            ddl = render_schema_sql(self._schema, self._text_search_config)
            with self._transaction("ensure_schema") as cur:
                cur.execute(ddl)
            self._SCHEMAS_READY.add(self._schema)
        logger.info("rag.store.schema_ready", schema=self._schema)
        return True

    def health_check(self) -> bool:
        """Run a lightweight query to assert connectivity."""

        with self._transaction("health_check") as cur:
            cur.execute(queries.HEALTH_CHECK_SQL)
            cur.fetchone()
        return True

    # ------------------------------------------------------------------ #
    # writes

    def save(self, chunk: Chunk) -> int:
        """Insert ``chunk`` and return its id.

        Chunks that already carry an id are updated instead. The new id is
        also assigned to ``chunk.id``.
        """

        _validate_chunk(chunk)
        if chunk.id is not None:
            self.update(chunk)
            return int(chunk.id)

        params = self._insert_params(chunk)
        with log_context(library_id=chunk.library_id, document_id=chunk.document_id):
            with self._transaction(
                "save", ids=(chunk.library_id, chunk.document_id)
            ) as cur:
                cur.execute(queries.INSERT_CHUNK_SQL, params)
                row = cur.fetchone()
            chunk_id = int(row["id"])
            chunk.id = chunk_id
            RAG_CHUNKS_WRITTEN.labels(operation="insert").inc()
            logger.debug("rag.store.save", chunk_id=chunk_id)
        return chunk_id

    def save_all(self, chunks: Sequence[Chunk]) -> list[int]:
        """Insert ``chunks`` in one transaction and return ids in input order.

        The batch is all-or-nothing: a failing row rolls back every row and
        raises :class:`PartialBatchFailure` carrying the failing index.
        Chunks that already have an id are rejected.
        """

        batch = list(chunks)
        if not batch:
            return []
        for index, chunk in enumerate(batch):
            _validate_chunk(chunk, index=index)
            if chunk.id is not None:
                raise InvalidInput(
                    InvalidInputCode.CHUNK_INVALID,
                    "save_all only inserts new chunks",
                    field="id",
                    context={"index": index, "chunk_id": chunk.id},
                )
        prepared = [self._insert_params(chunk) for chunk in batch]
        document_ids = sorted({chunk.document_id for chunk in batch})

        ids: list[int] = []
        with self._transaction("save_all", ids=document_ids) as cur:
            for index, params in enumerate(prepared):
                try:
                    cur.execute(queries.INSERT_CHUNK_SQL, params)
                    row = cur.fetchone()
                except psycopg2.Error as exc:
                    RAG_STORAGE_FAILURES.labels(operation="save_all").inc()
                    logger.error(
                        "rag.store.batch_failed",
                        failed_index=index,
                        batch_size=len(batch),
                        document_ids=document_ids,
                        error=str(exc).strip(),
                    )
                    raise PartialBatchFailure(
                        "save_all",
                        str(exc).strip() or exc.__class__.__name__,
                        failed_index=index,
                        batch_size=len(batch),
                        ids=document_ids,
                    ) from exc
                ids.append(int(row["id"]))

        for chunk, chunk_id in zip(batch, ids):
            chunk.id = chunk_id
        RAG_CHUNKS_WRITTEN.labels(operation="insert").inc(len(ids))
        logger.info("rag.store.save_all", inserted=len(ids), document_ids=document_ids)
        return ids

    def update(self, chunk: Chunk) -> int:
        """Rewrite every mutable column of ``chunk``; returns the rowcount."""

        _validate_chunk(chunk)
        if chunk.id is None:
            raise InvalidInput(
                InvalidInputCode.CHUNK_INVALID,
                "update requires a chunk id",
                field="id",
            )
        params = (
            chunk.document_id,
            chunk.parent_chunk_id,
            coerce_chunk_kind(chunk.kind).value,
            chunk.text,
            chunk.order_in_parent,
            self._vector_literal(chunk.vector, chunk.library_id),
            Json(self._metadata_with_checksum(chunk)),
            chunk.id,
        )
        with log_context(library_id=chunk.library_id, document_id=chunk.document_id):
            with self._transaction("update", ids=(chunk.id,)) as cur:
                cur.execute(queries.UPDATE_CHUNK_SQL, params)
                rowcount = cur.rowcount
            if rowcount:
                RAG_CHUNKS_WRITTEN.labels(operation="update").inc(rowcount)
            logger.debug("rag.store.update", chunk_id=chunk.id, rowcount=rowcount)
        return rowcount

    def _library_of(self, chunk_id: int, *, operation: str) -> int | None:
        with self._transaction(operation, ids=(chunk_id,)) as cur:
            cur.execute(queries.SELECT_CHUNK_LIBRARY_SQL, (chunk_id,))
            row = cur.fetchone()
        return None if row is None else int(row["library_id"])

    def update_embedding_vector(
        self, chunk_id: int, vector: Sequence[float] | None
    ) -> bool:
        """Attach ``vector`` to an existing chunk.

        The vector is repaired to the dimension of the chunk's library.
        Returns ``False`` when no such chunk exists.
        """

        library_id = self._library_of(chunk_id, operation="update_embedding_vector")
        if library_id is None:
            logger.info("rag.store.update_vector_missing", chunk_id=chunk_id)
            return False
        literal = self._vector_literal(vector, library_id)
        with log_context(library_id=library_id):
            with self._transaction("update_embedding_vector", ids=(chunk_id,)) as cur:
                cur.execute(queries.UPDATE_EMBEDDING_SQL, (literal, chunk_id))
                rowcount = cur.rowcount
            if rowcount:
                RAG_CHUNKS_WRITTEN.labels(operation="update_vector").inc()
            logger.debug("rag.store.update_vector", chunk_id=chunk_id, rowcount=rowcount)
        return rowcount > 0

    def update_metadata(self, chunk_id: int, metadata: Mapping[str, Any]) -> bool:
        """Merge ``metadata`` into the stored metadata of ``chunk_id``."""

        with self._transaction("update_metadata", ids=(chunk_id,)) as cur:
            cur.execute(queries.UPDATE_METADATA_SQL, (Json(dict(metadata)), chunk_id))
            rowcount = cur.rowcount
        return rowcount > 0

    def delete(self, chunk_id: int) -> bool:
        with self._transaction("delete", ids=(chunk_id,)) as cur:
            cur.execute(queries.DELETE_CHUNK_SQL, (chunk_id,))
            rowcount = cur.rowcount
        logger.debug("rag.store.delete", chunk_id=chunk_id, rowcount=rowcount)
        return rowcount > 0

    def delete_by_document(self, document_id: int) -> int:
        """Remove every chunk of ``document_id`` in a single statement."""

        with log_context(document_id=document_id):
            with self._transaction("delete_by_document", ids=(document_id,)) as cur:
                cur.execute(queries.DELETE_BY_DOCUMENT_SQL, (document_id,))
                rowcount = cur.rowcount
            logger.info("rag.store.delete_by_document", deleted=rowcount)
        return rowcount

    def count_by_document(self, document_id: int) -> int:
        with self._transaction("count_by_document", ids=(document_id,)) as cur:
            cur.execute(queries.COUNT_BY_DOCUMENT_SQL, (document_id,))
            row = cur.fetchone()
        return int(row["total"]) if row else 0

    # ------------------------------------------------------------------ #
    # reads

    def _fetch_chunks(
        self, operation: str, query: str, params: tuple[object, ...]
    ) -> list[Chunk]:
        with self._transaction(operation, ids=params) as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        return [self._decode(row) for row in rows]

    def find_by_id(self, chunk_id: int) -> Optional[Chunk]:
        chunks = self._fetch_chunks("find_by_id", queries.SELECT_BY_ID_SQL, (chunk_id,))
        return chunks[0] if chunks else None

    def find_all(self) -> list[Chunk]:
        return self._fetch_chunks("find_all", queries.SELECT_ALL_SQL, ())

    def find_by_document(self, document_id: int) -> list[Chunk]:
        return self._fetch_chunks(
            "find_by_document", queries.SELECT_BY_DOCUMENT_SQL, (document_id,)
        )

    def find_by_library(self, library_id: int) -> list[Chunk]:
        return self._fetch_chunks(
            "find_by_library", queries.SELECT_BY_LIBRARY_SQL, (library_id,)
        )

    def find_by_parent(self, parent_chunk_id: int) -> list[Chunk]:
        return self._fetch_chunks(
            "find_by_parent", queries.SELECT_BY_PARENT_SQL, (parent_chunk_id,)
        )

    def find_by_kind(
        self, library_ids: Sequence[int], kind: ChunkKind | str
    ) -> list[Chunk]:
        return self._fetch_chunks(
            "find_by_kind",
            queries.SELECT_BY_KIND_SQL,
            ([int(value) for value in library_ids], coerce_chunk_kind(kind).value),
        )

    def find_duplicate_document(self, library_id: int, content: str) -> Optional[int]:
        """Return the id of a document in ``library_id`` with the same content.

        Content is compared through its normalised CRC-64 checksum; ``None``
        is returned for blank content or when no chunk carries the checksum.
        """

        checksum = compute_checksum(content)
        if checksum is None:
            return None
        with self._transaction("find_duplicate_document", ids=(library_id,)) as cur:
            cur.execute(queries.SELECT_BY_CHECKSUM_SQL, (library_id, checksum))
            rows = cur.fetchall()
        match = find_duplicate(
            checksum, [(row["document_id"], row["checksum"]) for row in rows]
        )
        return None if match is None else int(cast(int, match))

    # ------------------------------------------------------------------ #
    # retrieval primitives

    def websearch_to_tsquery(self, phrase: str) -> str | None:
        """Run the engine's websearch phrase transform on ``phrase``."""

        with self._transaction("websearch_to_tsquery") as cur:
            cur.execute(
                queries.WEBSEARCH_TO_TSQUERY_SQL, (self._text_search_config, phrase)
            )
            row = cur.fetchone()
        if not row:
            return None
        return row["expression"]

    def semantic_candidates(
        self, vector: Sequence[float], library_ids: Sequence[int], limit: int
    ) -> list[ScoredChunk]:
        """Return up to ``limit`` chunks closest to ``vector`` with their distance."""

        scoped = [int(value) for value in library_ids]
        params = (format_vector(vector), scoped, len(vector), int(limit))
        with self._transaction("semantic_candidates", ids=scoped) as cur:
            cur.execute(self._semantic_sql, params)
            rows = cur.fetchall()
        return [
            (self._decode(row), extract_score(row, "distance", default=math.inf))
            for row in rows
        ]

    def lexical_candidates(
        self,
        expression: str,
        library_ids: Sequence[int],
        limit: int,
        *,
        degraded: bool = False,
    ) -> list[ScoredChunk]:
        """Return up to ``limit`` chunks matching ``expression`` with ``ts_rank_cd``."""

        scoped = [int(value) for value in library_ids]
        query = queries.build_lexical_candidates_sql(degraded=degraded)
        params = (self._text_search_config, expression, scoped, int(limit))
        with self._transaction("lexical_candidates", ids=scoped) as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        return [(self._decode(row), extract_score(row, "lscore")) for row in rows]


_DEFAULT_STORE: PgVectorChunkStore | None = None
_DEFAULT_STORE_LOCK = threading.Lock()


def get_default_store() -> PgVectorChunkStore:
    global _DEFAULT_STORE
    if _DEFAULT_STORE is None:
        with _DEFAULT_STORE_LOCK:
            if _DEFAULT_STORE is None:
                _DEFAULT_STORE = PgVectorChunkStore.from_env()
    return cast(PgVectorChunkStore, _DEFAULT_STORE)


def reset_default_store() -> None:
    global _DEFAULT_STORE
    with _DEFAULT_STORE_LOCK:
        if _DEFAULT_STORE is not None:
            _DEFAULT_STORE.close()
        _DEFAULT_STORE = None


atexit.register(reset_default_store)
