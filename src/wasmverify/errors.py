"""Error taxonomy for the verification pipeline.

Every error carries a FailureCode plus enough context (request id, failing
stage) for the surrounding automation to report it against the originating
request. None of these are retried inside the pipeline.
"""

from typing import Optional

from wasmverify.codes import FailureCode


class VerificationError(Exception):
    """Base exception for pipeline failures."""

    code: FailureCode = FailureCode.INVALID_REQUEST

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        request_id: Optional[str] = None,
        code: Optional[FailureCode] = None,
    ):
        if code is not None:
            self.code = code
        self.message = message
        self.stage = stage
        self.request_id = request_id
        super().__init__(f"[{self.code.value}] {message}")

    def with_context(self, *, stage: Optional[str] = None, request_id: Optional[str] = None) -> "VerificationError":
        """Fill in stage/request id if the raiser did not know them."""
        if self.stage is None:
            self.stage = stage
        if self.request_id is None:
            self.request_id = request_id
        return self


class FetchError(VerificationError):
    """Source unreachable or commit missing."""
    code = FailureCode.FETCH_ERROR


class BuildError(VerificationError):
    """Compilation or toolchain failure."""
    code = FailureCode.BUILD_ERROR

    def __init__(self, message: str, *, build_log: str = "", **kwargs):
        self.build_log = build_log
        super().__init__(message, **kwargs)


class NonDeterminismDetected(VerificationError):
    """Repeated builds of identical inputs produced different artifacts."""
    code = FailureCode.NON_DETERMINISTIC_BUILD

    def __init__(self, message: str, *, observed_hashes=(), **kwargs):
        self.observed_hashes = tuple(observed_hashes)
        super().__init__(message, **kwargs)


class LedgerUnavailable(VerificationError):
    """Ledger snapshot cannot be queried."""
    code = FailureCode.LEDGER_UNAVAILABLE


class StoreConflict(VerificationError):
    """A concurrent insert for the same hash won the race."""
    code = FailureCode.STORE_CONFLICT


class VerificationCancelled(VerificationError):
    """The request was cancelled before its record was written."""
    code = FailureCode.CANCELLED


class InvalidTransition(VerificationError):
    """Illegal state machine transition."""
    code = FailureCode.INVALID_TRANSITION


class RecordNotFound(VerificationError):
    """No persisted record exists for a hash."""
    code = FailureCode.RECORD_NOT_FOUND


class StorageError(VerificationError):
    """Sandbox, record store or build log I/O failed."""
    code = FailureCode.STORAGE_ERROR
