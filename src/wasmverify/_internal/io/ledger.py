"""Ledger snapshots of deployed contract code hashes.

A snapshot is loaded once, never mutated, and shared by every verification
worker in the process. ``refresh`` replaces the whole snapshot atomically;
workers holding the old one keep a consistent view.
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

import requests

from wasmverify.errors import BuildError, LedgerUnavailable
from wasmverify.kernel.hash_utils import normalize_hash
from wasmverify.kernel.record import LedgerEntry
from wasmverify.kernel.toolchain import rust_version_from_metadata

logger = logging.getLogger(__name__)

WASM_METADATA_URL = (
    "https://github.com/leighmcculloch/stellar-contract-wasms/raw/refs/heads/main/meta/{hash}.json"
)
DEFAULT_NETWORK = "mainnet"


class LedgerSnapshot:
    """Immutable view of contract hashes deployed on one or more networks."""

    def __init__(self, entries: Iterable[LedgerEntry], source: Optional[str] = None):
        index: Dict[str, LedgerEntry] = {}
        for entry in entries:
            # first entry for a hash wins; snapshots list each hash once in practice
            index.setdefault(entry.contract_hash, entry)
        self._index = index
        self.source = source
        self.loaded_at = time.monotonic()

    def __len__(self) -> int:
        return len(self._index)

    def lookup(self, contract_hash: str) -> Optional[LedgerEntry]:
        try:
            key = normalize_hash(contract_hash)
        except ValueError:
            return None
        return self._index.get(key)

    @classmethod
    def from_data(cls, data: Any, source: Optional[str] = None) -> "LedgerSnapshot":
        """Build a snapshot from decoded JSON.

        Accepted shapes:
        - a list of ``{"contract_hash", "network", "deployment_metadata"}`` objects
        - a mapping of hash -> ``{"network", ...metadata}``
        - ``{"network": "...", "hashes": [...]}``
        """
        entries = []
        if isinstance(data, list):
            for item in data:
                if not isinstance(item, Mapping):
                    raise ValueError(f"Ledger entry must be an object, got {type(item).__name__}")
                entries.append(LedgerEntry(**item))
        elif isinstance(data, Mapping) and "hashes" in data:
            network = data.get("network", DEFAULT_NETWORK)
            for h in data["hashes"]:
                entries.append(LedgerEntry(contract_hash=h, network=network))
        elif isinstance(data, Mapping):
            for h, meta in data.items():
                if meta is not None and not isinstance(meta, Mapping):
                    raise ValueError(f"Metadata for {h} must be an object, got {type(meta).__name__}")
                meta = dict(meta or {})
                network = meta.pop("network", DEFAULT_NETWORK)
                entries.append(LedgerEntry(contract_hash=h, network=network, deployment_metadata=meta))
        else:
            raise ValueError(f"Unsupported ledger snapshot shape: {type(data).__name__}")
        return cls(entries, source=source)


def load_snapshot(
    source: Union[str, Path],
    session: Optional[requests.Session] = None,
    timeout: float = 30.0,
) -> LedgerSnapshot:
    """Load a snapshot from a JSON file path or an http(s) URL.

    Raises:
        LedgerUnavailable: If the snapshot cannot be read or parsed
    """
    source_str = str(source)
    try:
        if source_str.startswith(("http://", "https://")):
            http = session or requests.Session()
            response = http.get(source_str, timeout=timeout)
            response.raise_for_status()
            data = response.json()
        else:
            with open(source_str, "r", encoding="utf-8") as f:
                data = json.load(f)
        snapshot = LedgerSnapshot.from_data(data, source=source_str)
    except (OSError, TypeError, ValueError, requests.RequestException) as e:
        raise LedgerUnavailable(f"Cannot load ledger snapshot from {source_str}: {e}")
    logger.info("Loaded ledger snapshot with %d entries from %s", len(snapshot), source_str)
    return snapshot


class LedgerCache:
    """Process-wide holder of the current snapshot with an init/refresh lifecycle."""

    def __init__(
        self,
        loader: Callable[[], LedgerSnapshot],
        max_age_seconds: Optional[float] = None,
    ):
        self._loader = loader
        self._max_age = max_age_seconds
        self._snapshot: Optional[LedgerSnapshot] = None
        self._lock = threading.Lock()

    def init(self) -> LedgerSnapshot:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = self._loader()
            return self._snapshot

    def refresh(self) -> LedgerSnapshot:
        """Reload the snapshot; on failure the previous snapshot stays in place."""
        snapshot = self._loader()
        with self._lock:
            self._snapshot = snapshot
        return snapshot

    def snapshot(self) -> LedgerSnapshot:
        current = self._snapshot
        if current is None:
            raise LedgerUnavailable("Ledger snapshot has not been initialized")
        if self._max_age is not None and time.monotonic() - current.loaded_at > self._max_age:
            raise LedgerUnavailable(
                f"Ledger snapshot from {current.source} is older than {self._max_age} seconds"
            )
        return current

    def lookup(self, contract_hash: str) -> Optional[LedgerEntry]:
        return self.snapshot().lookup(contract_hash)


_ledger: Optional[LedgerCache] = None
_ledger_lock = threading.Lock()


def init_ledger(
    source: Union[str, Path],
    session: Optional[requests.Session] = None,
    timeout: float = 30.0,
    max_age_seconds: Optional[float] = None,
) -> LedgerCache:
    """Install and load the process-wide ledger cache."""
    global _ledger
    cache = LedgerCache(
        lambda: load_snapshot(source, session=session, timeout=timeout),
        max_age_seconds=max_age_seconds,
    )
    cache.init()
    with _ledger_lock:
        _ledger = cache
    return cache


def get_ledger() -> LedgerCache:
    if _ledger is None:
        raise LedgerUnavailable("Ledger has not been initialized; call init_ledger() first")
    return _ledger


def refresh_ledger() -> LedgerSnapshot:
    return get_ledger().refresh()


def reset_ledger() -> None:
    global _ledger
    with _ledger_lock:
        _ledger = None


class WasmMetadataClient:
    """Reads contract meta (``sc_meta_v0`` entries) published per Wasm hash."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        url_template: str = WASM_METADATA_URL,
    ):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.url_template = url_template

    def fetch(self, wasm_hash: str) -> Any:
        """Published metadata for a hash.

        Raises:
            BuildError: If the metadata cannot be fetched; without it the
                toolchain for the build is unknown
        """
        url = self.url_template.format(hash=normalize_hash(wasm_hash))
        logger.info("Fetching Wasm metadata for hash %s from %s", wasm_hash, url)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise BuildError(f"Could not find Rust toolchain version: cannot fetch Wasm metadata from {url}: {e}")

    def rust_version(self, wasm_hash: str) -> Optional[str]:
        return rust_version_from_metadata(self.fetch(wasm_hash))
