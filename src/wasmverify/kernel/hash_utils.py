"""Hash utilities with explicit canonicalization rules for stable hashing.

This module provides canonicalization and hashing functions that guarantee
stable, deterministic output across different Python versions and environments.

Key rules:
- Object keys sorted recursively
- Arrays preserve order
- Floats BANNED (hard validation error)
- Strings normalized to NFC
- Non-JSON types forbidden

Wasm hashes are plain lowercase hex SHA-256 digests. Hashes coming from
outside (ledger snapshots, issue text) may carry a ``0x`` or ``sha256:``
prefix or upper-case digits; ``normalize_hash`` maps all of those onto the
canonical form so that matching is exact string equality.
"""

import json
import hashlib
import re
import unicodedata
from typing import Any, Mapping, Union


class CanonicalizationError(ValueError):
    """Raised when an object cannot be canonicalized."""
    pass


_HEX_RE = re.compile(r"^[0-9a-f]+$")
_HASH_PREFIXES = ("sha256:", "0x")


def _normalize_string(s: str) -> str:
    """Normalize string to NFC (Unicode Normalization Form Canonical Composition)."""
    return unicodedata.normalize('NFC', s)


def _validate_json_type(obj: Any, path: str = "") -> None:
    """Validate that object contains only JSON-compatible types.

    Raises CanonicalizationError if non-JSON types are found.
    """
    if obj is None:
        return
    elif isinstance(obj, bool):
        return
    elif isinstance(obj, int):
        return
    elif isinstance(obj, float):
        raise CanonicalizationError(
            f"Floats are not allowed (at {path}). Use strings for decimals instead."
        )
    elif isinstance(obj, str):
        return
    elif isinstance(obj, Mapping):
        for key, value in obj.items():
            if not isinstance(key, str):
                raise CanonicalizationError(
                    f"Dictionary keys must be strings at {path}, got {type(key).__name__}"
                )
            _validate_json_type(value, f"{path}.{key}" if path else key)
    elif isinstance(obj, (list, tuple)):
        for i, item in enumerate(obj):
            _validate_json_type(item, f"{path}[{i}]" if path else f"[{i}]")
    else:
        raise CanonicalizationError(
            f"Non-JSON type at {path}: {type(obj).__name__}. "
            f"Only None, bool, int, str, dict, and list are allowed."
        )


def _canonicalize_value(obj: Any) -> Any:
    if obj is None or isinstance(obj, (bool, int)):
        return obj
    elif isinstance(obj, str):
        return _normalize_string(obj)
    elif isinstance(obj, Mapping):
        return {
            _normalize_string(k): _canonicalize_value(v)
            for k, v in sorted(obj.items())
        }
    elif isinstance(obj, (list, tuple)):
        return [_canonicalize_value(item) for item in obj]
    else:
        raise CanonicalizationError(
            f"Unsupported type: {type(obj).__name__}"
        )


def canonicalize_json(obj: Any) -> str:
    """Canonicalize a JSON-serializable object to a stable string representation.

    Args:
        obj: The object to canonicalize

    Returns:
        Canonical JSON string

    Raises:
        CanonicalizationError: If object contains floats, non-JSON types, or other invalid values
    """
    _validate_json_type(obj)
    canonicalized = _canonicalize_value(obj)
    return json.dumps(canonicalized, sort_keys=True, ensure_ascii=False, separators=(',', ':'))


def hash_wasm(content: Union[str, bytes]) -> str:
    """Compute the Wasm hash of an artifact: lowercase hex SHA256, no prefix."""
    if isinstance(content, str):
        content_bytes = content.encode('utf-8')
    else:
        content_bytes = content
    return hashlib.sha256(content_bytes).hexdigest()


def normalize_hash(value: str) -> str:
    """Map a contract hash onto its canonical form (lowercase hex, no prefix).

    Raises:
        ValueError: If the value is empty or not hexadecimal after stripping
    """
    if not isinstance(value, str):
        raise ValueError(f"hash must be a string, got {type(value).__name__}")
    h = value.strip().lower()
    for prefix in _HASH_PREFIXES:
        if h.startswith(prefix):
            h = h[len(prefix):]
            break
    if not h or not _HEX_RE.match(h):
        raise ValueError(f"not a hexadecimal hash: '{value}'")
    return h


def hashes_equal(a: str, b: str) -> bool:
    """Exact content-hash equality after normalization."""
    return normalize_hash(a) == normalize_hash(b)
