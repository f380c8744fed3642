"""
Canonical JSON serialization and SHA-256 hashing.

Everything hashed for audit purposes goes through canonicalize() first so that key
insertion order never affects a digest. Arrays keep their order.
"""
import hashlib
import json
from typing import Any, Union


def canonicalize(value: Any) -> str:
    """
    Serialize a JSON-compatible value deterministically.

    Object keys are sorted recursively; arrays are left in order.

    Args:
        value: Dict, list or scalar made of JSON types.

    Returns:
        Compact JSON string.
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def sha256_hex(data: Union[str, bytes]) -> str:
    """Hex SHA-256 digest of text (UTF-8) or bytes."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hash_value(value: Any) -> str:
    """Hash of the canonical form of a JSON-compatible value."""
    return sha256_hex(canonicalize(value))
