"""SQL statements issued by the chunk store.

Table names are unqualified; the store pins ``search_path`` to the vector
schema on every pooled connection.
"""

from __future__ import annotations

CHUNK_COLUMNS = (
    "id, library_id, document_id, parent_chunk_id, kind, text, order_in_parent, "
    "embedding::text AS embedding, searchable_text::text AS searchable_text, "
    "metadata, created_at, updated_at"
)

CHUNK_ORDER = "document_id, order_in_parent NULLS FIRST, id"

INSERT_CHUNK_SQL = """
    INSERT INTO chunks (
        library_id, document_id, parent_chunk_id, kind, text,
        order_in_parent, embedding, metadata
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s::vector, %s)
    RETURNING id
"""

UPDATE_CHUNK_SQL = """
    UPDATE chunks
    SET document_id = %s,
        parent_chunk_id = %s,
        kind = %s,
        text = %s,
        order_in_parent = %s,
        embedding = %s::vector,
        metadata = %s,
        updated_at = now()
    WHERE id = %s
"""

UPDATE_EMBEDDING_SQL = """
    UPDATE chunks
    SET embedding = %s::vector,
        updated_at = now()
    WHERE id = %s
"""

UPDATE_METADATA_SQL = """
    UPDATE chunks
    SET metadata = COALESCE(metadata, '{}'::jsonb) || %s::jsonb,
        updated_at = now()
    WHERE id = %s
"""

SELECT_CHUNK_LIBRARY_SQL = "SELECT library_id FROM chunks WHERE id = %s"

DELETE_CHUNK_SQL = "DELETE FROM chunks WHERE id = %s"

DELETE_BY_DOCUMENT_SQL = "DELETE FROM chunks WHERE document_id = %s"

COUNT_BY_DOCUMENT_SQL = "SELECT COUNT(*) AS total FROM chunks WHERE document_id = %s"

SELECT_BY_ID_SQL = f"SELECT {CHUNK_COLUMNS} FROM chunks WHERE id = %s"

SELECT_ALL_SQL = f"SELECT {CHUNK_COLUMNS} FROM chunks ORDER BY {CHUNK_ORDER}"

SELECT_BY_DOCUMENT_SQL = (
    f"SELECT {CHUNK_COLUMNS} FROM chunks WHERE document_id = %s ORDER BY {CHUNK_ORDER}"
)

SELECT_BY_LIBRARY_SQL = (
    f"SELECT {CHUNK_COLUMNS} FROM chunks WHERE library_id = %s ORDER BY {CHUNK_ORDER}"
)

SELECT_BY_PARENT_SQL = (
    f"SELECT {CHUNK_COLUMNS} FROM chunks WHERE parent_chunk_id = %s "
    f"ORDER BY {CHUNK_ORDER}"
)

SELECT_BY_KIND_SQL = (
    f"SELECT {CHUNK_COLUMNS} FROM chunks WHERE library_id = ANY(%s) AND kind = %s "
    f"ORDER BY {CHUNK_ORDER}"
)

SELECT_BY_CHECKSUM_SQL = """
    SELECT document_id, metadata ->> 'checksum' AS checksum
    FROM chunks
    WHERE library_id = %s
      AND lower(metadata ->> 'checksum') = %s
    ORDER BY document_id, id
"""

WEBSEARCH_TO_TSQUERY_SQL = (
    "SELECT websearch_to_tsquery(%s::regconfig, %s)::text AS expression"
)

HEALTH_CHECK_SQL = "SELECT 1 AS ok"


def build_semantic_candidates_sql(distance_operator: str) -> str:
    """Nearest neighbours by ``distance_operator``, closest first.

    Rows whose stored dimension differs from the query vector are skipped
    since pgvector refuses to compare them. Zero vectors are skipped too:
    their cosine distance is NaN, which PostgreSQL sorts last.
    """

    return f"""
    SELECT {CHUNK_COLUMNS},
           embedding {distance_operator} %s::vector AS distance
    FROM chunks
    WHERE library_id = ANY(%s)
      AND embedding IS NOT NULL
      AND vector_dims(embedding) = %s
      AND vector_norm(embedding) > 0
    ORDER BY distance ASC, id ASC
    LIMIT %s
    """


def build_lexical_candidates_sql(*, degraded: bool) -> str:
    """Lexical matches by ``ts_rank_cd``, most relevant first.

    Degraded expressions are plain phrases and go through
    ``websearch_to_tsquery`` instead of ``to_tsquery``.
    """

    parser = "websearch_to_tsquery" if degraded else "to_tsquery"
    return f"""
    SELECT {CHUNK_COLUMNS},
           ts_rank_cd(searchable_text, query) AS lscore
    FROM chunks
    CROSS JOIN {parser}(%s::regconfig, %s) AS query
    WHERE library_id = ANY(%s)
      AND searchable_text @@ query
    ORDER BY lscore DESC, id ASC
    LIMIT %s
    """
