"""
Canonical serialization for values that cross a process or wire boundary.

Integers outside the IEEE-754 safe range are stringified so that JSON
consumers never silently lose precision.
"""

import dataclasses
import hashlib
import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

MAX_SAFE_INTEGER = 2 ** 53 - 1


def to_serializable(value: Any) -> Any:
    """Recursively convert a value into JSON-safe primitives.

    - ints beyond +/-(2**53 - 1) become decimal strings
    - Decimal becomes its normalized string form
    - datetime becomes ISO-8601
    - Enum becomes its value
    - dataclasses, dicts, lists, tuples and sets are walked
    - bytes become hex
    """
    if value is None or isinstance(value, (bool, str, float)):
        return value
    if isinstance(value, int):
        if abs(value) > MAX_SAFE_INTEGER:
            return str(value)
        return value
    if isinstance(value, Decimal):
        return format_decimal(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return to_serializable(value.value)
    if isinstance(value, bytes):
        return value.hex()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_serializable(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, dict):
        return {str(k): to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_serializable(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(to_serializable(v) for v in value)
    raise TypeError(f"Cannot serialize value of type {type(value).__name__}")


def canonical_json(value: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators."""
    return json.dumps(
        to_serializable(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def fingerprint(value: Any) -> str:
    """sha256 over the canonical JSON of a value."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def format_decimal(value: Decimal) -> str:
    """Plain-notation string without trailing zeros ("1.50" -> "1.5", "0E-18" -> "0")."""
    if value == 0:
        return "0"
    text = format(value.normalize(), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
