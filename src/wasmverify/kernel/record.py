"""Build artifacts, ledger entries and verification records."""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .hash_utils import hash_wasm, normalize_hash


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    BUILD_FAILED = "build_failed"


class BuildArtifact(BaseModel):
    """One compiled Wasm binary produced by a build.

    Only the hash and the log outlive the pipeline run.
    """
    binary: bytes
    content_hash: str
    build_log: str = ""
    variant: str = "unoptimized"

    model_config = ConfigDict(frozen=True, extra="forbid")

    @classmethod
    def from_bytes(cls, binary: bytes, build_log: str = "", variant: str = "unoptimized") -> "BuildArtifact":
        return cls(binary=binary, content_hash=hash_wasm(binary), build_log=build_log, variant=variant)


class LedgerEntry(BaseModel):
    """A contract code hash deployed on a network. Never mutated."""
    contract_hash: str
    network: str
    deployment_metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("contract_hash")
    @classmethod
    def validate_contract_hash(cls, v: str) -> str:
        return normalize_hash(v)


class VerificationRecord(BaseModel):
    """Persisted, immutable outcome of one pipeline run.

    At most one record with status=verified exists per wasm_hash.
    """
    format: str = "wasmverify.record"
    version: str = "0.1"
    wasm_hash: str
    status: VerificationStatus
    matched_ledger_entry: Optional[LedgerEntry] = None
    timestamp: str  # ISO 8601
    source_commit: str
    repository_url: str
    build_parameters: Dict[str, str] = Field(default_factory=dict)
    request_id: Optional[str] = None
    requested_by: Optional[str] = None
    variant: Optional[str] = None
    build_log_sha256: Optional[str] = None
    expected_hash: Optional[str] = None
    expected_hash_matched: Optional[bool] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("wasm_hash")
    @classmethod
    def validate_wasm_hash(cls, v: str) -> str:
        return normalize_hash(v)

    @property
    def network(self) -> Optional[str]:
        if self.matched_ledger_entry is None:
            return None
        return self.matched_ledger_entry.network

    @property
    def persistable(self) -> bool:
        return self.status in (VerificationStatus.VERIFIED, VerificationStatus.UNVERIFIED)


class Failure(BaseModel):
    """Failed(reason): terminal outcome of a request that is never persisted."""
    request_id: Optional[str]
    stage: Optional[str]
    code: str
    message: str
    status: VerificationStatus = VerificationStatus.BUILD_FAILED

    model_config = ConfigDict(frozen=True, extra="forbid")
