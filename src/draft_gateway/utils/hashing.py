"""Hashing helpers and the canonical JSON form used for signing.

``canonical_json`` renders a JSON-like value so that two semantically equal
values always produce the same bytes:

- object keys are sorted lexicographically
- arrays keep their order
- primitives use their JSON encoding (``1`` and ``"1"`` differ)
- separators are compact and output is UTF-8 (no ASCII escaping)

A key that is missing is simply absent from the output. A key that is present
with ``None`` is rendered as ``null``, so ``{}`` and ``{"a": None}`` hash
differently.
"""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any


def sha256_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError("NaN and Infinity cannot be canonicalized")
        return value
    if isinstance(value, dict):
        normalized: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Object keys must be strings, got {type(key).__name__}")
            normalized[key] = _normalize(item)
        return normalized
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    raise TypeError(f"Value of type {type(value).__name__} is not JSON-like")


def canonical_json(value: Any) -> str:
    return json.dumps(
        _normalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonical_hash(value: Any) -> str:
    """SHA-256 hex digest of ``canonical_json(value)``."""
    return sha256_text(canonical_json(value))
