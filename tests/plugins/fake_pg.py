"""In-memory stand-ins for a psycopg2 pool backed by a pgvector database.

The fake cursor dispatches on the SQL text issued by the chunk store and
emulates just enough of PostgreSQL to exercise it: transactional writes,
pgvector distances and a simplified tsquery matcher.
"""

from __future__ import annotations

import copy
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

import psycopg2
import psycopg2.pool
import pytest
from psycopg2 import sql as pg_sql

from rag_engine.hybrid_ranker import HybridRanker
from rag_engine.settings import RagSettings, reset_settings_cache
from rag_engine.vector_store import PgVectorChunkStore

_WORD_RE = re.compile(r"[^\W_]+")
_KINDS = {"full_text", "summary", "qa", "chapter", "chunk"}


def _parse_vector(literal: object) -> list[float] | None:
    if literal is None:
        return None
    text = str(literal).strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    if not text.strip():
        return []
    return [float(part) for part in text.split(",")]


def _format_vector(values: list[float] | None) -> str | None:
    if values is None:
        return None
    return "[" + ",".join(repr(float(value)) for value in values) + "]"


def _unwrap_json(value: object) -> dict[str, Any]:
    adapted = getattr(value, "adapted", value)
    return dict(adapted or {})


def _render_sql(query: object) -> str:
    """Render psycopg2 composed SQL the way the server would receive it."""

    if isinstance(query, pg_sql.Composed):
        return "".join(_render_sql(part) for part in query.seq)
    if isinstance(query, pg_sql.SQL):
        return query.string
    if isinstance(query, pg_sql.Identifier):
        return ".".join('"' + part.replace('"', '""') + '"' for part in query.strings)
    if isinstance(query, pg_sql.Literal):
        return repr(query.wrapped)
    return str(query)


def _lexemes(text: str) -> list[str]:
    return [word.lower() for word in _WORD_RE.findall(text or "")]


def fake_websearch_to_tsquery(phrase: str) -> str:
    """Tiny websearch_to_tsquery: words AND-joined, ``-word`` negated."""

    terms: list[str] = []
    for token in (phrase or "").split():
        negated = token.startswith("-")
        words = _lexemes(token)
        if not words:
            continue
        for word in words:
            terms.append(f"!'{word}'" if negated else f"'{word}'")
    return " & ".join(terms)


def _match_tsquery(expression: str, lexemes: list[str]) -> tuple[bool, float]:
    """Evaluate ``a & !b | c`` style expressions (no parentheses)."""

    present = set(lexemes)
    matched = False
    rank = 0.0
    for group in expression.split(" | "):
        group_ok = True
        group_rank = 0.0
        for term in group.split(" & "):
            term = term.strip()
            negated = term.startswith("!")
            word = term.lstrip("!").strip("'")
            if not word:
                continue
            if negated:
                if word in present:
                    group_ok = False
            elif word in present:
                group_rank += lexemes.count(word)
            else:
                group_ok = False
        if group_ok:
            matched = True
            rank += group_rank
    return matched, rank / 10.0


def _cosine_distance(left: list[float], right: list[float]) -> float:
    dot = math.fsum(a * b for a, b in zip(left, right))
    norm = math.sqrt(math.fsum(a * a for a in left)) * math.sqrt(
        math.fsum(b * b for b in right)
    )
    if norm == 0:
        return math.nan
    return 1.0 - dot / norm


def _l2_distance(left: list[float], right: list[float]) -> float:
    return math.sqrt(math.fsum((a - b) ** 2 for a, b in zip(left, right)))


@dataclass
class FailureRule:
    fragment: str
    on_call: int = 1
    error: Exception = field(
        default_factory=lambda: psycopg2.OperationalError("simulated failure")
    )
    seen: int = 0
    times: int = 1

    def check(self, sql_text: str) -> None:
        if self.times <= 0 or self.fragment not in sql_text:
            return
        self.seen += 1
        if self.seen >= self.on_call:
            self.times -= 1
            raise self.error


@dataclass
class _State:
    chunks: dict[int, dict[str, Any]] = field(default_factory=dict)
    next_id: int = 1


class FakeDatabase:
    """Shared state behind every fake connection."""

    def __init__(self) -> None:
        self.state = _State()
        self.libraries: list[dict[str, Any]] = []
        self.executed: list[tuple[str, object]] = []
        self.failures: list[FailureRule] = []
        self.ddl: list[str] = []
        self.websearch: Callable[[str], str | None] = fake_websearch_to_tsquery
        self.commits = 0
        self.rollbacks = 0

    def add_library(
        self,
        library_id: int,
        *,
        dimension: int | None = None,
        semantic_weight: float | None = None,
        textual_weight: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        meta = dict(metadata or {})
        if dimension is not None:
            meta["embedding_dimension"] = dimension
        self.libraries.append(
            {
                "id": library_id,
                "semantic_weight": semantic_weight,
                "textual_weight": textual_weight,
                "metadata": meta,
            }
        )

    def fail_on(
        self,
        fragment: str,
        *,
        on_call: int = 1,
        error: Exception | None = None,
        times: int = 1,
    ) -> FailureRule:
        rule = FailureRule(fragment=fragment.lower(), on_call=on_call, times=times)
        if error is not None:
            rule.error = error
        self.failures.append(rule)
        return rule

    def statements(self, fragment: str) -> list[tuple[str, object]]:
        needle = fragment.lower()
        return [entry for entry in self.executed if needle in entry[0].lower()]

    @property
    def rows(self) -> dict[int, dict[str, Any]]:
        return self.state.chunks


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn
        self._result: list[dict[str, Any]] = []
        self.rowcount = -1

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False

    def close(self) -> None:
        pass

    def fetchone(self) -> dict[str, Any] | None:
        return self._result[0] if self._result else None

    def fetchall(self) -> list[dict[str, Any]]:
        return list(self._result)

    # -- dispatch ---------------------------------------------------------

    def execute(self, sql: str, params: Iterable[object] | None = None) -> None:
        db = self._conn.db
        text = " ".join(_render_sql(sql).split()).lower()
        params = tuple(params or ())
        db.executed.append((text, params))
        for rule in db.failures:
            rule.check(text)

        state = self._conn.working_state()
        self._result = []
        self.rowcount = -1

        if text.startswith("set "):
            return
        if "create extension" in text:
            db.ddl.append(str(sql))
            return
        if text.startswith("select websearch_to_tsquery"):
            self._result = [{"expression": db.websearch(str(params[1]))}]
            return
        if text.startswith("select 1"):
            self._result = [{"ok": 1}]
            return
        if text.startswith("insert into chunks"):
            self._insert(state, params)
            return
        if text.startswith("update chunks"):
            self._update(state, text, params)
            return
        if text.startswith("delete from chunks"):
            self._delete(state, text, params)
            return
        if "count(*)" in text:
            total = sum(1 for row in state.chunks.values() if row["document_id"] == params[0])
            self._result = [{"total": total}]
            return
        if text.startswith("select library_id from chunks"):
            row = state.chunks.get(params[0])
            self._result = [{"library_id": row["library_id"]}] if row else []
            return
        if text.startswith("select id, semantic_weight"):
            self._result = [copy.deepcopy(row) for row in db.libraries]
            return
        if "->> 'checksum'" in text and "lower(" in text:
            library_id, checksum = params
            self._result = [
                {"document_id": row["document_id"], "checksum": row["metadata"].get("checksum")}
                for row in self._ordered(state)
                if row["library_id"] == library_id
                and str(row["metadata"].get("checksum", "")).lower() == checksum
            ]
            return
        if "ts_rank_cd" in text:
            self._lexical(state, text, params)
            return
        if "vector_dims" in text:
            self._semantic(state, text, params)
            return
        self._select(state, text, params)

    # -- writes -----------------------------------------------------------

    def _insert(self, state: _State, params: tuple[object, ...]) -> None:
        (library_id, document_id, parent_id, kind, text, order, embedding, metadata) = params
        if kind not in _KINDS:
            raise psycopg2.IntegrityError("invalid kind")
        if not text:
            raise psycopg2.IntegrityError("text must not be empty")
        now = datetime.now(timezone.utc)
        chunk_id = state.next_id
        state.next_id += 1
        state.chunks[chunk_id] = {
            "id": chunk_id,
            "library_id": library_id,
            "document_id": document_id,
            "parent_chunk_id": parent_id,
            "kind": kind,
            "text": text,
            "order_in_parent": order,
            "embedding": _parse_vector(embedding),
            "metadata": _unwrap_json(metadata),
            "created_at": now,
            "updated_at": now,
        }
        self.rowcount = 1
        self._result = [{"id": chunk_id}]

    def _update(self, state: _State, text: str, params: tuple[object, ...]) -> None:
        now = datetime.now(timezone.utc)
        if text.startswith("update chunks set embedding"):
            embedding, chunk_id = params
            row = state.chunks.get(chunk_id)
            if row is not None:
                row["embedding"] = _parse_vector(embedding)
                row["updated_at"] = now
        elif text.startswith("update chunks set metadata"):
            metadata, chunk_id = params
            row = state.chunks.get(chunk_id)
            if row is not None:
                row["metadata"] = {**row["metadata"], **_unwrap_json(metadata)}
                row["updated_at"] = now
        else:
            (document_id, parent_id, kind, body, order, embedding, metadata, chunk_id) = params
            row = state.chunks.get(chunk_id)
            if row is not None:
                row.update(
                    document_id=document_id,
                    parent_chunk_id=parent_id,
                    kind=kind,
                    text=body,
                    order_in_parent=order,
                    embedding=_parse_vector(embedding),
                    metadata=_unwrap_json(metadata),
                    updated_at=now,
                )
        self.rowcount = 1 if row is not None else 0

    def _delete(self, state: _State, text: str, params: tuple[object, ...]) -> None:
        column = "document_id" if "where document_id" in text else "id"
        doomed = [key for key, row in state.chunks.items() if row[column] == params[0]]
        for key in doomed:
            del state.chunks[key]
        self.rowcount = len(doomed)

    # -- reads ------------------------------------------------------------

    @staticmethod
    def _ordered(state: _State) -> list[dict[str, Any]]:
        return sorted(
            state.chunks.values(),
            key=lambda row: (
                row["document_id"],
                -1 if row["order_in_parent"] is None else row["order_in_parent"],
                row["id"],
            ),
        )

    @staticmethod
    def _project(row: dict[str, Any], **extra: object) -> dict[str, Any]:
        projected = dict(row)
        projected["embedding"] = _format_vector(row["embedding"])
        projected["searchable_text"] = " ".join(
            f"'{word}'" for word in sorted(set(_lexemes(row["text"])))
        )
        projected["metadata"] = copy.deepcopy(row["metadata"])
        projected.update(extra)
        return projected

    def _select(self, state: _State, text: str, params: tuple[object, ...]) -> None:
        rows = self._ordered(state)
        if "where id = %s" in text:
            rows = [row for row in rows if row["id"] == params[0]]
        elif "where document_id = %s" in text:
            rows = [row for row in rows if row["document_id"] == params[0]]
        elif "where library_id = %s" in text:
            rows = [row for row in rows if row["library_id"] == params[0]]
        elif "where parent_chunk_id = %s" in text:
            rows = [row for row in rows if row["parent_chunk_id"] == params[0]]
        elif "kind = %s" in text:
            scoped, kind = params
            rows = [row for row in rows if row["library_id"] in scoped and row["kind"] == kind]
        self._result = [self._project(row) for row in rows]

    def _semantic(self, state: _State, text: str, params: tuple[object, ...]) -> None:
        literal, scoped, dims, limit = params
        query = _parse_vector(literal) or []
        distance = _l2_distance if "<->" in text else _cosine_distance
        skip_zero = "vector_norm(embedding) > 0" in text
        scored = [
            (distance(row["embedding"], query), row["id"], row)
            for row in state.chunks.values()
            if row["library_id"] in scoped
            and row["embedding"] is not None
            and len(row["embedding"]) == dims
            and not (skip_zero and not any(row["embedding"]))
        ]
        # PostgreSQL orders NaN after every number
        scored.sort(
            key=lambda item: (
                math.isnan(item[0]),
                0.0 if math.isnan(item[0]) else item[0],
                item[1],
            )
        )
        self._result = [
            self._project(row, distance=value) for value, _, row in scored[:limit]
        ]

    def _lexical(self, state: _State, text: str, params: tuple[object, ...]) -> None:
        _config, expression, scoped, limit = params
        expression = str(expression)
        if "websearch_to_tsquery(%s::regconfig" in text:
            expression = self._conn.db.websearch(expression) or ""
        scored = []
        for row in state.chunks.values():
            if row["library_id"] not in scoped or not expression:
                continue
            matched, rank = _match_tsquery(expression, _lexemes(row["text"]))
            if matched:
                scored.append((rank, row["id"], row))
        scored.sort(key=lambda item: (-item[0], item[1]))
        self._result = [
            self._project(row, lscore=rank) for rank, _, row in scored[:limit]
        ]


class FakeConnection:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self._work: _State | None = None
        self.closed = False

    def working_state(self) -> _State:
        if self._work is None:
            self._work = copy.deepcopy(self.db.state)
        return self._work

    def cursor(self, cursor_factory: object | None = None) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        if self._work is not None:
            self.db.state = self._work
        self._work = None
        self.db.commits += 1

    def rollback(self) -> None:
        self._work = None
        self.db.rollbacks += 1


class FakePool:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self.checked_out = 0
        self.closed = False

    def getconn(self) -> FakeConnection:
        if self.closed:
            raise psycopg2.pool.PoolError("connection pool is closed")
        self.checked_out += 1
        return FakeConnection(self.db)

    def putconn(self, conn: FakeConnection) -> None:
        self.checked_out -= 1

    def closeall(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def isolated_settings():
    reset_settings_cache()
    try:
        yield
    finally:
        reset_settings_cache()


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def fake_pool(fake_db: FakeDatabase) -> FakePool:
    return FakePool(fake_db)


@pytest.fixture
def rag_settings() -> RagSettings:
    return RagSettings(
        database_url="postgresql://fake/rag",
        default_embedding_dimension=4,
        search_top_k=10,
    )


@pytest.fixture
def chunk_store(fake_pool: FakePool, rag_settings: RagSettings, monkeypatch):
    monkeypatch.setattr(PgVectorChunkStore, "_SCHEMAS_READY", set())
    store = PgVectorChunkStore(fake_pool, settings=rag_settings)
    yield store
    store.close()


@pytest.fixture
def ranker(chunk_store: PgVectorChunkStore) -> HybridRanker:
    return HybridRanker(chunk_store)
