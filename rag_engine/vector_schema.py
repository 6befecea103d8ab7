"""DDL rendering for the chunk table and its lexical index trigger."""

from __future__ import annotations

import re
from pathlib import Path

from .settings import RagConfigurationError


class VectorSchemaError(RagConfigurationError):
    """Raised when the chunk schema DDL cannot be generated."""


class VectorSchemaErrorCode:
    """Machine-readable error codes for schema rendering failures."""

    TEMPLATE_NOT_FOUND = "SCHEMA_TEMPLATE_MISSING"
    IDENTIFIER_INVALID = "SCHEMA_IDENTIFIER_INVALID"
    RENDER_FAILED = "SCHEMA_RENDER_FAILED"


_SCHEMA_TEMPLATE_PATH = Path(__file__).resolve().parent / "sql" / "schema.sql"

_SCHEMA_PLACEHOLDER = "{{SCHEMA_NAME}}"
_TEXT_SEARCH_CONFIG_PLACEHOLDER = "{{TEXT_SEARCH_CONFIG}}"
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


def _format_error(code: str, message: str) -> str:
    return f"{code}: {message}"


def validate_identifier(value: str, *, label: str) -> str:
    """Return ``value`` when it is a plain (optionally schema-qualified) identifier."""

    candidate = (value or "").strip()
    if not _IDENTIFIER_RE.match(candidate):
        raise VectorSchemaError(
            _format_error(
                VectorSchemaErrorCode.IDENTIFIER_INVALID,
                f"{label} '{value}' is not a valid SQL identifier",
            )
        )
    return candidate


def _load_schema_template() -> str:
    try:
        return _SCHEMA_TEMPLATE_PATH.read_text(encoding="utf-8")
    except FileNotFoundError as exc:  # pragma: no cover - packaging error
        raise VectorSchemaError(
            _format_error(
                VectorSchemaErrorCode.TEMPLATE_NOT_FOUND,
                f"Schema template missing at {_SCHEMA_TEMPLATE_PATH}",
            )
        ) from exc


def _render_schema_sql(schema: str, text_search_config: str, template: str) -> str:
    schema = validate_identifier(schema, label="schema")
    text_search_config = validate_identifier(
        text_search_config, label="text search configuration"
    )
    for placeholder in (_SCHEMA_PLACEHOLDER, _TEXT_SEARCH_CONFIG_PLACEHOLDER):
        if placeholder not in template:
            raise VectorSchemaError(
                _format_error(
                    VectorSchemaErrorCode.RENDER_FAILED,
                    f"Schema template does not contain the {placeholder} placeholder",
                )
            )
    rendered = template.replace(_SCHEMA_PLACEHOLDER, schema)
    return rendered.replace(_TEXT_SEARCH_CONFIG_PLACEHOLDER, text_search_config)


def render_schema_sql(schema: str, text_search_config: str = "portuguese") -> str:
    """Render the chunk table DDL for ``schema``."""

    return _render_schema_sql(schema, text_search_config, _load_schema_template())


__all__ = [
    "VectorSchemaError",
    "VectorSchemaErrorCode",
    "render_schema_sql",
    "validate_identifier",
]
