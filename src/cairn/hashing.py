"""Recursive hashing utilities for attribute sets and snapshots."""

import hashlib
from collections.abc import Mapping, Sequence
from typing import Any


def hash_value(value: Any) -> str:
    """Recursively hash a value to produce a deterministic SHA-256 hash.

    Supports:
    - dict/Mapping: Sorts keys, recursively hashes values
    - list/tuple/Sequence: Recursively hashes each element
    - str, int, float, bool: Direct hashing, tagged by type so that
      1, 1.0, True and "1" hash differently
    - None: Special hash value

    Lists and tuples hash identically, so a value survives a JSON round trip
    with the same digest.

    Args:
        value: The value to hash.

    Returns:
        A hexadecimal SHA-256 hash string (64 characters).

    Raises:
        TypeError: If value type is not supported.
    """
    if value is None:
        return hashlib.sha256(b"None").hexdigest()

    if isinstance(value, str):
        return hashlib.sha256(b"s:" + value.encode("utf-8")).hexdigest()

    # bool before int since bool is a subclass of int
    if isinstance(value, bool):
        return hashlib.sha256(b"b:" + str(value).encode("utf-8")).hexdigest()

    if isinstance(value, int):
        return hashlib.sha256(b"i:" + str(value).encode("utf-8")).hexdigest()

    if isinstance(value, float):
        return hashlib.sha256(b"f:" + repr(value).encode("utf-8")).hexdigest()

    if isinstance(value, Mapping):
        # Sort keys for canonical ordering
        sorted_items = sorted(value.items(), key=lambda x: x[0])
        hasher = hashlib.sha256(b"m:")
        for key, val in sorted_items:
            hasher.update(hash_value(key).encode("utf-8"))
            hasher.update(hash_value(val).encode("utf-8"))
        return hasher.hexdigest()

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        hasher = hashlib.sha256(b"l:")
        for item in value:
            hasher.update(hash_value(item).encode("utf-8"))
        return hasher.hexdigest()

    raise TypeError(
        f"Unsupported type for hashing: {type(value).__name__}. "
        f"Value must be dict, list, str, int, float, bool, or None."
    )


def hash_attributes(attributes: dict[str, Any]) -> str:
    """Hash a resolved attribute mapping to produce its digest.

    Two attribute mappings have the same digest exactly when applying one
    after the other would be a no-op.
    """
    return hash_value(attributes)
