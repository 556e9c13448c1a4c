"""Snapshot value boundary: the values that can be stored as resource state.

Attributes and driver snapshots are persisted as JSON, so the allowed types
are the JSON universe (recursive for containers):
  - None, bool, int, float, str
  - dict[str, SnapshotValue]  (string keys only)
  - list[SnapshotValue], tuple[SnapshotValue, ...]

FORBIDDEN: bytes, sets, NaN/infinite floats, arbitrary objects
"""

import math
from collections.abc import Mapping, Sequence
from typing import Any


def is_snapshot_value(value: Any) -> bool:
    """Check if a value can be stored in a resource snapshot.

    Examples:
        >>> is_snapshot_value({"endpoint": "https://x", "port": 443})
        True
        >>> is_snapshot_value(b"raw")
        False
        >>> is_snapshot_value({1: "a"})  # non-string key
        False
        >>> is_snapshot_value(float("nan"))
        False
    """
    if value is None:
        return True

    if isinstance(value, (bool, int, str)):
        return True

    if isinstance(value, float):
        return math.isfinite(value)

    if isinstance(value, (bytes, bytearray)):
        return False

    if isinstance(value, Mapping):
        if not isinstance(value, dict):
            return False
        for key, val in value.items():
            if not isinstance(key, str) or not is_snapshot_value(val):
                return False
        return True

    if isinstance(value, Sequence) and not isinstance(value, str):
        return all(is_snapshot_value(item) for item in value)

    return False


def to_snapshot(value: Any) -> Any:
    """Normalize a snapshot value to plain JSON containers (tuples -> lists).

    Raises:
        TypeError: If value is not a snapshot value.
    """
    if not is_snapshot_value(value):
        raise TypeError(
            f"Cannot store {type(value).__name__} in a snapshot. "
            f"Value must be JSON-compatible (use is_snapshot_value() to check)."
        )
    return _normalize(value)


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    return value
