"""Rust toolchain and Wasm target selection."""

from typing import Any, Optional, Tuple

# Rust releases after 1.84 build Soroban contracts for the wasm32v1-none target.
_V1_NONE_AFTER: Tuple[int, int] = (1, 84)
TARGET_V1_NONE = "wasm32v1-none"
TARGET_UNKNOWN_UNKNOWN = "wasm32-unknown-unknown"

META_SECTION = "sc_meta_v0"
META_RUST_VERSION_KEY = "rsver"


class ToolchainError(ValueError):
    """Raised when a toolchain version cannot be used."""
    pass


def rust_version_from_metadata(metadata: Any) -> Optional[str]:
    """Find the ``rsver`` value in a contract metadata document.

    The document is a JSON array of meta entries, e.g.
    ``[{"sc_meta_v0": {"key": "rsver", "val": "1.81.0"}}, ...]``.
    """
    if not isinstance(metadata, list):
        return None
    for item in metadata:
        if not isinstance(item, dict):
            continue
        meta = item.get(META_SECTION)
        if isinstance(meta, dict) and meta.get("key") == META_RUST_VERSION_KEY:
            val = meta.get("val")
            if isinstance(val, str) and val:
                return val
    return None


def parse_version(toolchain: str) -> Tuple[int, int]:
    """Parse the (major, minor) part of a toolchain version like ``1.81.0``."""
    parts = toolchain.split(".")
    if len(parts) < 2:
        raise ToolchainError(
            f"Invalid Rust toolchain version format '{toolchain}' (expected format: x.y.z)"
        )
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        raise ToolchainError(
            f"Failed to parse Rust toolchain version '{toolchain}' as a valid semantic version"
        )


def select_target(toolchain: str) -> str:
    if parse_version(toolchain) > _V1_NONE_AFTER:
        return TARGET_V1_NONE
    return TARGET_UNKNOWN_UNKNOWN


def wasm_file_stem(package: str) -> str:
    """Cargo writes package ``my-contract`` as ``my_contract.wasm``."""
    return package.replace("-", "_")
