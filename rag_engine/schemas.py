"""Data contracts shared by the store, the config cache and the ranker."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

SCORE_SEMANTIC_KEY = "score_semantic"
SCORE_TEXT_KEY = "score_text"
SCORE_KEY = "score"
CHECKSUM_KEY = "checksum"


class ChunkKind(str, Enum):
    """Embedding flavour of a chunk."""

    FULL_TEXT = "full_text"
    SUMMARY = "summary"
    QA = "qa"
    CHAPTER = "chapter"
    CHUNK = "chunk"


def coerce_chunk_kind(value: object) -> ChunkKind:
    """Return the :class:`ChunkKind` for an enum member, name or db value."""

    if isinstance(value, ChunkKind):
        return value
    text = str(value).strip()
    try:
        return ChunkKind(text.lower())
    except ValueError:
        return ChunkKind[text.upper()]


@dataclass
class Chunk:
    """A retrievable unit of text plus an optional embedding vector."""

    library_id: int
    document_id: int
    text: str
    kind: ChunkKind = ChunkKind.CHUNK
    parent_chunk_id: Optional[int] = None
    order_in_parent: Optional[int] = None
    vector: Optional[List[float]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    searchable_text: Optional[str] = None
    """Engine-maintained lexical representation; never written by callers."""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def score(self) -> float:
        return float(self.metadata.get(SCORE_KEY, 0.0) or 0.0)


@dataclass(frozen=True, slots=True)
class LibraryConfig:
    """Per-library retrieval configuration mirrored from the upstream store."""

    library_id: int
    embedding_dimension: int
    semantic_weight: float | None = None
    textual_weight: float | None = None


class LibraryMetadata(BaseModel):
    """Retrieval-relevant subset of a library's JSON metadata."""

    embedding_dimension: int | None = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("embedding_dimension", "embeddingDimension"),
    )
    semantic_weight: float | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("semantic_weight", "semanticWeight"),
    )
    textual_weight: float | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("textual_weight", "textualWeight"),
    )

    model_config = ConfigDict(extra="ignore")


class HybridSearchRequest(BaseModel):
    """Parameters of a hybrid query."""

    library_ids: list[int]
    query_text: str | None = None
    query_vector: list[float] | None = None
    k: int | None = None
    semantic_weight: float | None = None
    textual_weight: float | None = None
    broad: bool = True

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("query_text")
    @classmethod
    def _blank_text_is_absent(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("query_vector")
    @classmethod
    def _empty_vector_is_absent(cls, value: list[float] | None) -> list[float] | None:
        if not value:
            return None
        return value
