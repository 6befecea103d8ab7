"""Turn free-text phrases into safe, optionally broadened tsquery expressions."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from common.logging import get_logger

from .errors import InvalidInput, InvalidInputCode, StorageFailure
from .metrics import RAG_LEXICAL_FALLBACK_TOTAL

logger = get_logger(__name__)

__all__ = [
    "LexicalExpressionEngine",
    "LexicalQuery",
    "QueryNormalizer",
    "broaden",
    "sanitize",
]

# A leading "-" directly before a word is the websearch exclusion operator.
_NEGATED_WORD_RE = re.compile(r"(?<=\s)-(?=[^\W_])")
_DISALLOWED_RE = re.compile(r"[^\w\s]+|_+")
_DANGLING_NEGATION_RE = re.compile(r"-(?![^\W_])")
_WHITESPACE_RE = re.compile(r"\s+")

_AND_KEYWORD = " AND "
_NOT_KEYWORD = " NOT "
_NEGATION_PREFIX = " -"

_EXCLUSION_MARKER = " & !"
_EXCLUSION_PLACEHOLDER = " <#-#> "
_AND_JOIN = " & "
_OR_JOIN = " | "


class LexicalExpressionEngine(Protocol):
    """Anything able to run the engine's phrase-to-tsquery transform."""

    def websearch_to_tsquery(self, phrase: str) -> str | None:
        ...


@dataclass(frozen=True, slots=True)
class LexicalQuery:
    """A normalised lexical expression.

    ``degraded`` marks expressions that are the cleaned phrase instead of a
    tsquery because the engine transform failed or returned nothing.
    """

    expression: str
    degraded: bool = False


def _collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text)


def _replace_repeatedly(text: str, old: str, new: str) -> str:
    # overlapping keywords ("a AND AND b") share their separating space
    while old in text:
        text = text.replace(old, new)
    return text


def sanitize(phrase: str | None) -> str:
    """Strip operator characters and map boolean keywords to websearch syntax.

    Raises :class:`InvalidInput` for missing or blank phrases and for phrases
    that contain nothing searchable once cleaned.
    """

    if phrase is None or not str(phrase).strip():
        raise InvalidInput(
            InvalidInputCode.PHRASE_REQUIRED,
            "query phrase must not be empty",
            field="query_text",
        )

    text = f" {_collapse(str(phrase))} "
    text = _NEGATED_WORD_RE.sub("NOT ", text)
    text = _DISALLOWED_RE.sub(" ", text)
    text = f" {_collapse(text).strip()} "
    text = _replace_repeatedly(text, _AND_KEYWORD, " ")
    text = _replace_repeatedly(text, _NOT_KEYWORD, _NEGATION_PREFIX)
    text = _DANGLING_NEGATION_RE.sub(" ", text)
    cleaned = _collapse(text).strip()

    if not cleaned:
        raise InvalidInput(
            InvalidInputCode.PHRASE_EMPTY_AFTER_CLEANUP,
            "query phrase has no searchable terms",
            field="query_text",
            context={"phrase_length": len(str(phrase))},
        )
    return cleaned


def broaden(expression: str) -> str:
    """Turn AND-joins into OR-joins while leaving exclusions intact."""

    protected = expression.replace(_EXCLUSION_MARKER, _EXCLUSION_PLACEHOLDER)
    widened = protected.replace(_AND_JOIN, _OR_JOIN)
    return widened.replace(_EXCLUSION_PLACEHOLDER, _EXCLUSION_MARKER)


class QueryNormalizer:
    """Sanitize, transform and broaden user phrases for lexical search."""

    def __init__(self, engine: LexicalExpressionEngine) -> None:
        self._engine = engine

    def sanitize(self, phrase: str | None) -> str:
        return sanitize(phrase)

    def broaden(self, expression: str) -> str:
        return broaden(expression)

    def transform(self, clean_phrase: str) -> LexicalQuery:
        """Run the engine transform, degrading to ``clean_phrase`` on failure."""

        try:
            expression = self._engine.websearch_to_tsquery(clean_phrase)
        except StorageFailure as exc:
            RAG_LEXICAL_FALLBACK_TOTAL.labels(reason="error").inc()
            logger.warning(
                "rag.query.lexical_fallback",
                reason="error",
                error=exc.message,
                phrase_length=len(clean_phrase),
            )
            return LexicalQuery(clean_phrase, degraded=True)

        if not expression or not expression.strip():
            RAG_LEXICAL_FALLBACK_TOTAL.labels(reason="empty").inc()
            logger.info(
                "rag.query.lexical_fallback",
                reason="empty",
                phrase_length=len(clean_phrase),
            )
            return LexicalQuery(clean_phrase, degraded=True)
        return LexicalQuery(expression.strip())

    def to_lexical_expression(self, clean_phrase: str) -> str:
        return self.transform(clean_phrase).expression

    def expression_for(self, clean_phrase: str, *, broad: bool = True) -> LexicalQuery:
        """Transform an already sanitized phrase, broadening it when asked."""

        lexical = self.transform(clean_phrase)
        if broad and not lexical.degraded:
            return LexicalQuery(self.broaden(lexical.expression))
        return lexical

    def prepare(self, phrase: str | None, *, broad: bool = True) -> LexicalQuery:
        """Sanitize ``phrase`` and return the (optionally broadened) expression."""

        return self.expression_for(self.sanitize(phrase), broad=broad)

    def normalize(self, phrase: str | None, broad: bool = True) -> str:
        return self.prepare(phrase, broad=broad).expression
