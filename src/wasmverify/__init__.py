"""wasmverify: reproducible-build verification of deployed contract Wasm."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("wasmverify")
except PackageNotFoundError:
    __version__ = "dev"

from wasmverify.pipeline import CancelToken, Pipeline, build_pipeline
from wasmverify.kernel.request import VerificationRequest
from wasmverify.kernel.record import (
    BuildArtifact,
    Failure,
    LedgerEntry,
    VerificationRecord,
    VerificationStatus,
)
from wasmverify.codes import FailureCode
from wasmverify.errors import (
    BuildError,
    FetchError,
    LedgerUnavailable,
    NonDeterminismDetected,
    StorageError,
    VerificationCancelled,
    VerificationError,
)

__all__ = [
    "__version__",
    "Pipeline",
    "CancelToken",
    "build_pipeline",
    "VerificationRequest",
    "VerificationRecord",
    "VerificationStatus",
    "BuildArtifact",
    "LedgerEntry",
    "Failure",
    "FailureCode",
    "VerificationError",
    "FetchError",
    "BuildError",
    "NonDeterminismDetected",
    "LedgerUnavailable",
    "VerificationCancelled",
    "StorageError",
]
