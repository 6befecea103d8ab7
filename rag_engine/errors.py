"""Error taxonomy raised by the retrieval engine."""

from __future__ import annotations

from typing import Iterable, Mapping, Sequence

__all__ = [
    "InvalidInput",
    "InvalidInputCode",
    "PartialBatchFailure",
    "RagEngineError",
    "StorageFailure",
]


class RagEngineError(Exception):
    """Base class carrying a machine-readable ``code``."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        context: Mapping[str, object | None] | None = None,
    ) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.context = dict(context or {})


class InvalidInputCode:
    """Machine-readable input validation codes."""

    PHRASE_REQUIRED = "RAG_INPUT_PHRASE_REQUIRED"
    PHRASE_EMPTY_AFTER_CLEANUP = "RAG_INPUT_PHRASE_EMPTY"
    QUERY_REQUIRED = "RAG_INPUT_QUERY_REQUIRED"
    LIBRARIES_REQUIRED = "RAG_INPUT_LIBRARIES_REQUIRED"
    TOP_K_INVALID = "RAG_INPUT_TOP_K_INVALID"
    WEIGHT_INVALID = "RAG_INPUT_WEIGHT_INVALID"
    CHUNK_INVALID = "RAG_INPUT_CHUNK_INVALID"


class InvalidInput(RagEngineError, ValueError):
    """Raised synchronously, before any I/O, for malformed requests."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        field: str | None = None,
        context: Mapping[str, object | None] | None = None,
    ) -> None:
        super().__init__(code, message, context=context)
        self.field = field


class StorageFailure(RagEngineError):
    """Raised when the underlying database call fails.

    ``operation`` names the store operation and ``ids`` the affected chunk,
    document or library identifiers so callers can log and alert.
    """

    CODE = "RAG_STORAGE_FAILURE"

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        ids: Iterable[object] | None = None,
    ) -> None:
        self.operation = operation
        self.ids: tuple[object, ...] = tuple(ids or ())
        super().__init__(
            self.CODE,
            f"{operation} failed: {message}",
            context={"operation": operation, "ids": list(self.ids)},
        )


class PartialBatchFailure(StorageFailure):
    """Raised when one row of ``save_all`` fails.

    The batch is atomic: when this is raised no row of the batch was
    persisted. ``failed_index`` is the position of the offending chunk in the
    input sequence.
    """

    CODE = "RAG_BATCH_FAILURE"

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        failed_index: int,
        batch_size: int,
        ids: Sequence[object] | None = None,
    ) -> None:
        self.failed_index = failed_index
        self.batch_size = batch_size
        super().__init__(operation, message, ids=ids)
        self.context.update({"failed_index": failed_index, "batch_size": batch_size})
