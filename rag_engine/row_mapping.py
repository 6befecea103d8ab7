"""Translate chunk table rows into :class:`~rag_engine.schemas.Chunk` objects."""

from __future__ import annotations

import json
import math
from typing import Any, Callable, Mapping

from common.logging import get_logger

from .schemas import Chunk, coerce_chunk_kind
from .vector_utils import coerce_vector_values, repair_vector

logger = get_logger(__name__)

__all__ = ["decode_chunk_row", "extract_score"]


def _decode_metadata(value: object) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            logger.warning("rag.row.metadata_unparseable", length=len(value))
            return {}
    return dict(value) if isinstance(value, Mapping) else {}


def _optional_int(value: object) -> int | None:
    return None if value is None else int(value)


def decode_chunk_row(
    row: Mapping[str, Any], dimension_for: Callable[[int], int]
) -> Chunk:
    """Build a chunk from ``row`` and repair its vector to the library dimension."""

    library_id = int(row["library_id"])
    vector = coerce_vector_values(row.get("embedding"))
    if vector is not None:
        vector = list(repair_vector(vector, dimension_for(library_id)))
    return Chunk(
        id=int(row["id"]),
        library_id=library_id,
        document_id=int(row["document_id"]),
        parent_chunk_id=_optional_int(row.get("parent_chunk_id")),
        kind=coerce_chunk_kind(row.get("kind") or "chunk"),
        text=row.get("text") or "",
        order_in_parent=_optional_int(row.get("order_in_parent")),
        vector=vector,
        searchable_text=row.get("searchable_text"),
        metadata=_decode_metadata(row.get("metadata")),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def extract_score(
    row: Mapping[str, Any], key: str, *, default: float = 0.0
) -> float:
    """Return ``row[key]`` as float, or ``default`` when absent or not finite.

    Distances pass ``math.inf`` so an unusable distance ranks as the worst
    match instead of the best one.
    """

    raw = row.get(key)
    if raw is None:
        logger.debug("rag.row.score_missing", key=key, chunk_id=row.get("id"))
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.debug("rag.row.score_invalid", key=key, chunk_id=row.get("id"))
        return default
    if not math.isfinite(value):
        logger.debug("rag.row.score_invalid", key=key, chunk_id=row.get("id"))
        return default
    return value
