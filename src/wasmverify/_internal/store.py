"""Append-only verification record store.

Layout::

    <root>/<wasm_hash>.json             verified records, write-once
    <root>/unverified/<wasm_hash>.json  unverified records, write-once

Inserts are insert-if-absent: the file is created with O_CREAT | O_EXCL, so
across threads and processes exactly one writer wins for a given path.
Losers read back and return the winner's record. An unverified record never
blocks a later verified one because they live in separate namespaces.
"""

import json
import logging
import os
import threading
import weakref
from pathlib import Path
from typing import Iterator, Optional, Tuple, Union

from wasmverify.errors import RecordNotFound, StorageError, StoreConflict
from wasmverify.kernel.hash_utils import normalize_hash
from wasmverify.kernel.record import VerificationRecord, VerificationStatus
from wasmverify._internal.canonical_json import canonical_dumps

logger = logging.getLogger(__name__)

UNVERIFIED_DIR = "unverified"


class RecordStore:
    """Directory of write-once record files keyed by wasm hash."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        # Entries disappear once no insert holds the lock.
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def path_for(self, wasm_hash: str, status: VerificationStatus) -> Path:
        name = f"{normalize_hash(wasm_hash)}.json"
        if status == VerificationStatus.VERIFIED:
            return self.root / name
        if status == VerificationStatus.UNVERIFIED:
            return self.root / UNVERIFIED_DIR / name
        raise ValueError(f"Records with status '{status.value}' are not persisted")

    def _read(self, path: Path) -> Optional[VerificationRecord]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return VerificationRecord(**json.load(f))
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Cannot read record {path}: {e}") from e
        except ValueError as e:
            raise StorageError(f"Corrupt record file {path}: {e}") from e

    def get(self, wasm_hash: str, status: VerificationStatus = VerificationStatus.VERIFIED) -> Optional[VerificationRecord]:
        return self._read(self.path_for(wasm_hash, status))

    def get_verified(self, wasm_hash: str) -> Optional[VerificationRecord]:
        return self.get(wasm_hash, VerificationStatus.VERIFIED)

    def get_any(self, wasm_hash: str) -> VerificationRecord:
        """The verified record for a hash, else the unverified one."""
        record = self.get_verified(wasm_hash) or self.get(wasm_hash, VerificationStatus.UNVERIFIED)
        if record is None:
            raise RecordNotFound(f"No record for wasm hash {wasm_hash}")
        return record

    def _create_exclusive(self, path: Path, payload: str) -> None:
        """Write ``payload`` to a new file; raise StoreConflict if it exists.

        The content is staged in a temp file and hard-linked into place so
        readers never observe a partially written record.
        """
        tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except OSError as e:
            raise StorageError(f"Cannot write record {path}: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.link(tmp, path)
        except FileExistsError:
            raise StoreConflict(f"Record already exists: {path.name}")
        except OSError as e:
            raise StorageError(f"Cannot write record {path}: {e}") from e
        finally:
            tmp.unlink(missing_ok=True)

    def insert_if_absent(self, record: VerificationRecord) -> Tuple[VerificationRecord, bool]:
        """Atomically persist ``record`` unless one exists for its hash and status.

        Returns:
            (stored record, inserted) where stored record is the existing one
            when another writer got there first
        """
        if not record.persistable:
            raise ValueError(f"Records with status '{record.status.value}' are not persisted")
        path = self.path_for(record.wasm_hash, record.status)
        payload = canonical_dumps(record.model_dump(mode="json")) + "\n"
        with self._lock_for(str(path)):
            try:
                self._create_exclusive(path, payload)
            except StoreConflict:
                existing = self._read(path)
                if existing is None:
                    raise
                logger.info("Record for %s already present; keeping existing", record.wasm_hash)
                return existing, False
        logger.info("Persisted %s record %s", record.status.value, path)
        return record, True

    def iter_records(self) -> Iterator[VerificationRecord]:
        for directory in (self.root, self.root / UNVERIFIED_DIR):
            if not directory.is_dir():
                continue
            for path in sorted(directory.glob("*.json")):
                record = self._read(path)
                if record is not None:
                    yield record
