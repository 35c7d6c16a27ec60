"""JSON serialization utilities for stored rows and responses."""

from __future__ import annotations

import datetime
import decimal
import json
from typing import Any


def json_default(obj: object) -> object:
    """JSON serializer for objects not serializable by default json code."""
    if isinstance(obj, (datetime.date, datetime.datetime)):
        return obj.isoformat()
    if isinstance(obj, decimal.Decimal):
        if obj == obj.to_integral_value():
            return int(obj)
        return float(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    return str(obj)


def dumps(value: Any) -> str:
    return json.dumps(value, default=json_default, ensure_ascii=False)


def loads_or(value: str | None, default: Any) -> Any:
    """Decode a stored JSON column, returning ``default`` for NULL/empty."""
    if not value:
        return default
    return json.loads(value)
