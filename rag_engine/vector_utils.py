"""Helpers for repairing, formatting and decoding embedding vectors."""

from __future__ import annotations

import math
import re
import struct
from array import array
from typing import Sequence

from common.logging import get_logger

from .metrics import RAG_VECTORS_REPAIRED

logger = get_logger(__name__)

_ZERO_EPSILON = 1e-12

__all__ = [
    "coerce_vector_values",
    "format_vector",
    "l2_normalise",
    "repair_vector",
]


def l2_normalise(values: Sequence[float]) -> list[float]:
    """Scale ``values`` to unit length.

    A vector whose norm is effectively zero is returned as zeros instead of
    being rejected.
    """

    floats = [float(value) for value in values]
    norm_sq = math.fsum(value * value for value in floats)
    if norm_sq <= _ZERO_EPSILON:
        return [0.0] * len(floats)
    norm = math.sqrt(norm_sq)
    if not math.isfinite(norm) or norm <= _ZERO_EPSILON:
        return [0.0] * len(floats)
    scale = 1.0 / norm
    return [value * scale for value in floats]


def repair_vector(
    vector: Sequence[float] | None, target_dimension: int
) -> Sequence[float] | None:
    """Return ``vector`` adjusted to ``target_dimension`` entries.

    ``None`` vectors, targets of one or less and vectors that already have the
    target length are returned as-is. Anything else is truncated or
    zero-padded into a fresh list and L2-normalised. The input is never
    mutated, so repairing twice yields the same result as repairing once.
    """

    if vector is None or target_dimension <= 1:
        return vector
    length = len(vector)
    if length == target_dimension:
        return vector

    direction = "truncate" if length > target_dimension else "pad"
    resized = [float(value) for value in vector[:target_dimension]]
    resized.extend([0.0] * (target_dimension - len(resized)))
    RAG_VECTORS_REPAIRED.labels(direction=direction).inc()
    logger.debug(
        "rag.vector.repaired",
        original_dimension=length,
        target_dimension=target_dimension,
        direction=direction,
    )
    return l2_normalise(resized)


def format_vector(values: Sequence[float]) -> str:
    """Render ``values`` as a pgvector text literal."""

    return "[" + ",".join(f"{float(value):.6f}" for value in values) + "]"


def coerce_vector_values(value: object) -> list[float] | None:
    """Attempt to coerce a database value into a list of floats."""

    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("[") and stripped.endswith("]"):
            stripped = stripped[1:-1].strip()
        if not stripped:
            return []
        parts = [component for component in re.split(r"[\s,]+", stripped) if component]
        try:
            return [float(component) for component in parts]
        except (TypeError, ValueError):
            return None
    if isinstance(value, memoryview):
        if value.ndim == 1 and value.format in {"f", "d"}:
            return [float(component) for component in value]
        return coerce_vector_values(value.tobytes())
    if isinstance(value, (bytes, bytearray)):
        return _decode_binary_vector(bytes(value))
    if isinstance(value, Sequence):
        try:
            return [float(component) for component in value]
        except (TypeError, ValueError):
            return None
    tolist = getattr(value, "tolist", None)
    if callable(tolist):
        converted = tolist()
        if isinstance(converted, Sequence) and not isinstance(
            converted, (str, bytes, bytearray)
        ):
            try:
                return [float(component) for component in converted]
            except (TypeError, ValueError):
                return None
    return None


def _decode_binary_vector(data: bytes) -> list[float] | None:
    # pgvector binary format: uint16 dim, uint16 unused, then big-endian float4s
    if len(data) >= 4:
        dimension = struct.unpack("!H", data[:2])[0]
        payload = data[4:]
        if dimension == 0:
            return [] if not payload else None
        if len(payload) == dimension * struct.calcsize("!f"):
            return [float(c) for c in struct.unpack(f"!{dimension}f", payload)]
    for typecode in ("f", "d"):
        try:
            arr = array(typecode)
            arr.frombytes(data)
        except (ValueError, OverflowError):
            continue
        return [float(component) for component in arr]
    return None
