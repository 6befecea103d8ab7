"""JSON logging for the retrieval engine built on structlog."""

from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import sys
from typing import Iterator, MutableMapping, TextIO

import structlog
from opentelemetry import trace

__all__ = ["configure_logging", "get_logger", "log_context", "mask_value"]

# Only these keys may be bound through log_context().
_CONTEXT_FIELDS = frozenset({"library_id", "document_id", "operation"})
_BOUND_CONTEXT: contextvars.ContextVar[dict[str, str]] = contextvars.ContextVar(
    "rag_log_context"
)

_SERVICE_FIELDS: dict[str, str] = {
    "service.name": os.getenv("SERVICE_NAME", "rag-engine"),
    "service.version": os.getenv("SERVICE_VERSION", "unknown"),
    "deployment.environment": os.getenv("DEPLOY_ENV", "unknown"),
}

_structlog_ready = False


def _bound_context() -> dict[str, str]:
    return _BOUND_CONTEXT.get({})


@contextlib.contextmanager
def log_context(**fields: object) -> Iterator[None]:
    """Attach library/document identifiers to every record logged in the block.

    Unknown keys and ``None`` values are ignored; nested blocks extend the
    outer context and restore it on exit.
    """

    extra = {
        key: str(value)
        for key, value in fields.items()
        if key in _CONTEXT_FIELDS and value is not None
    }
    token = _BOUND_CONTEXT.set({**_bound_context(), **extra})
    try:
        yield
    finally:
        _BOUND_CONTEXT.reset(token)


def mask_value(value: str | None) -> str:
    """Hide all but the first and last two characters of a secret (DSNs, keys)."""

    if not value:
        return "-"
    text = str(value)
    if len(text) <= 4:
        return "***"
    return f"{text[:2]}***{text[-2:]}"


def _add_service_fields(
    _: structlog.typing.WrappedLogger,
    __: str,
    event_dict: MutableMapping[str, object],
) -> MutableMapping[str, object]:
    for key, value in _SERVICE_FIELDS.items():
        event_dict.setdefault(key, value)
    return event_dict


def _add_bound_context(
    _: structlog.typing.WrappedLogger,
    __: str,
    event_dict: MutableMapping[str, object],
) -> MutableMapping[str, object]:
    for key, value in _bound_context().items():
        if event_dict.get(key) in (None, ""):
            event_dict[key] = value
    return event_dict


def _add_trace_ids(
    _: structlog.typing.WrappedLogger,
    __: str,
    event_dict: MutableMapping[str, object],
) -> MutableMapping[str, object]:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    else:
        event_dict.setdefault("trace_id", None)
        event_dict.setdefault("span_id", None)
    return event_dict


def _pre_chain() -> list[structlog.types.Processor]:
    return [
        _add_service_fields,
        _add_bound_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        _add_trace_ids,
    ]


def _install_root_handler(stream: TextIO, level: int) -> None:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=_pre_chain(),
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)


def configure_logging(stream: TextIO | None = None) -> None:
    """Route structlog and stdlib records as JSON lines to ``stream``.

    The root handler is replaced on every call; structlog itself is only
    configured once per process. ``LOG_LEVEL`` selects the threshold.
    """

    global _structlog_ready

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    _install_root_handler(stream or sys.stderr, level)
    if _structlog_ready:
        return

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_pre_chain(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _structlog_ready = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
