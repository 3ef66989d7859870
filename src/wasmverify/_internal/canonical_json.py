"""Centralized canonical JSON serialization.

Every record file, and every hash computed over JSON, goes through this
function so that record bytes are stable across platforms.
"""

import json
from typing import Any


def canonical_dumps(obj: Any) -> str:
    """
    Canonical JSON serialization for byte-stable records.

    Rules:
    - UTF-8 encoding
    - Sorted keys
    - Stable separators (",", ":")
    - No trailing whitespace

    Args:
        obj: Python object to serialize

    Returns:
        Canonical JSON string (UTF-8 encoded)
    """
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False
    )
