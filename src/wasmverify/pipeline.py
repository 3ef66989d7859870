"""Verification pipeline: Fetch -> Build -> Hash -> Lookup -> Record.

High-level entry points for turning a VerificationRequest into a
VerificationRecord. Integrating automation should use ``Pipeline`` (or the
``build_pipeline`` factory) instead of importing from ``_internal``.
"""

import hashlib
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from wasmverify.errors import (
    BuildError,
    NonDeterminismDetected,
    StorageError,
    VerificationCancelled,
    VerificationError,
)
from wasmverify.kernel.hash_utils import hash_wasm, hashes_equal, normalize_hash
from wasmverify.kernel.record import (
    BuildArtifact,
    Failure,
    LedgerEntry,
    VerificationRecord,
    VerificationStatus,
)
from wasmverify.kernel.request import VerificationRequest
from wasmverify.kernel.stages import RequestState, Stage
from wasmverify.logging_config import request_context
from wasmverify._internal.build.builder import Builder
from wasmverify._internal.build.sandbox import BuildSandbox, build_sandbox
from wasmverify._internal.io.source import SourceFetcher
from wasmverify._internal.store import RecordStore

logger = logging.getLogger(__name__)

Outcome = Union[VerificationRecord, Failure]


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class CancelToken:
    """Cooperative cancellation flag shared between a caller and a run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: Stage) -> None:
        if self._event.is_set():
            raise VerificationCancelled(f"Request cancelled during {stage.value}")


class Pipeline:
    """Runs verification requests against one ledger and one record store.

    Args:
        fetcher: materializes source trees
        builder: produces candidate artifacts, preferred first
        ledger: anything with ``lookup(contract_hash) -> Optional[LedgerEntry]``
        store: record store shared by all runs
        determinism_runs: how many times each request is built; all runs must agree
        work_dir: parent directory for sandboxes (system temp dir if None)
        build_logs_dir: when set, each request's build log is kept as ``<request_id>.log``
    """

    def __init__(
        self,
        fetcher: SourceFetcher,
        builder: Builder,
        ledger,
        store: RecordStore,
        determinism_runs: int = 2,
        work_dir: Optional[Path] = None,
        build_logs_dir: Optional[Path] = None,
        clock: Callable[[], str] = _utc_now,
        hasher: Callable[[bytes], str] = hash_wasm,
    ):
        if determinism_runs < 1:
            raise ValueError("determinism_runs must be at least 1")
        self.fetcher = fetcher
        self.builder = builder
        self.ledger = ledger
        self.store = store
        self.determinism_runs = determinism_runs
        self.work_dir = work_dir
        self.build_logs_dir = build_logs_dir
        self.clock = clock
        self.hasher = hasher

    # -- stages -------------------------------------------------------------

    def _build(
        self,
        request: VerificationRequest,
        sandbox: BuildSandbox,
        cancel: CancelToken,
    ) -> List[List[BuildArtifact]]:
        runs = []
        for attempt in range(self.determinism_runs):
            cancel.check(Stage.BUILDING)
            sandbox.reset_workspace()
            logger.info("Build attempt %d/%d", attempt + 1, self.determinism_runs)
            runs.append(self.builder.build(request, sandbox))
        return runs

    def _hash(self, runs: List[List[BuildArtifact]]) -> List[BuildArtifact]:
        if not runs or not runs[0]:
            raise BuildError("Build produced no artifacts")
        hashed_runs = [
            [a.model_copy(update={"content_hash": normalize_hash(self.hasher(a.binary))}) for a in run]
            for run in runs
        ]
        signatures = [tuple((a.variant, a.content_hash) for a in run) for run in hashed_runs]
        if len(set(signatures)) > 1:
            observed = sorted({h for sig in signatures for _, h in sig})
            raise NonDeterminismDetected(
                f"{len(runs)} builds of identical inputs produced different artifacts: "
                + "; ".join(",".join(f"{v}={h}" for v, h in sig) for sig in signatures),
                observed_hashes=observed,
            )
        for artifact in hashed_runs[0]:
            logger.info("Computed SHA256 hash of %s Wasm file: %s", artifact.variant, artifact.content_hash)
        return hashed_runs[0]

    def _lookup(self, artifacts: List[BuildArtifact]):
        """First candidate found on the ledger wins; unoptimized is tried first.

        LedgerUnavailable propagates: an outage must never read as "not found".
        """
        for artifact in artifacts:
            entry: Optional[LedgerEntry] = self.ledger.lookup(artifact.content_hash)
            if entry is not None:
                logger.info("Hash %s (%s) found on %s", artifact.content_hash, artifact.variant, entry.network)
                return artifact, entry
            logger.info("Hash %s (%s) not found on ledger", artifact.content_hash, artifact.variant)
        return artifacts[0], None

    def _record(
        self,
        request: VerificationRequest,
        artifact: BuildArtifact,
        entry: Optional[LedgerEntry],
        candidates: Sequence[BuildArtifact],
    ) -> VerificationRecord:
        existing = self.store.get_verified(artifact.content_hash)
        if existing is not None:
            logger.info("Wasm hash %s already verified; returning existing record", artifact.content_hash)
            return existing

        expected_matched = None
        if request.expected_hash is not None:
            expected_matched = any(hashes_equal(a.content_hash, request.expected_hash) for a in candidates)

        record = VerificationRecord(
            wasm_hash=artifact.content_hash,
            status=VerificationStatus.VERIFIED if entry is not None else VerificationStatus.UNVERIFIED,
            matched_ledger_entry=entry,
            timestamp=self.clock(),
            source_commit=request.commit_hash,
            repository_url=request.repository_url,
            build_parameters=dict(request.build_parameters),
            request_id=request.request_id,
            requested_by=request.requested_by,
            variant=artifact.variant,
            build_log_sha256=hashlib.sha256(artifact.build_log.encode("utf-8")).hexdigest(),
            expected_hash=request.expected_hash,
            expected_hash_matched=expected_matched,
        )
        stored, inserted = self.store.insert_if_absent(record)
        if not inserted:
            logger.info("Concurrent request recorded %s first", stored.wasm_hash)
        return stored

    def _keep_build_log(self, request: VerificationRequest, artifact: BuildArtifact) -> None:
        if self.build_logs_dir is None:
            return
        self.build_logs_dir.mkdir(parents=True, exist_ok=True)
        name = (request.request_id or "request").replace(":", "_")
        (self.build_logs_dir / f"{name}.log").write_text(artifact.build_log, encoding="utf-8")

    def _fail(self, state: RequestState, request: VerificationRequest, error: VerificationError) -> None:
        error.with_context(stage=state.stage.value, request_id=request.request_id)
        state.fail(error.code.value)
        logger.error("Verification failed at %s: %s", error.stage, error.message)

    # -- entry points ---------------------------------------------------------

    def run(self, request: VerificationRequest, cancel: Optional[CancelToken] = None) -> VerificationRecord:
        """Verify one request.

        Returns:
            The persisted (or pre-existing) VerificationRecord

        Raises:
            VerificationError: FetchError, BuildError, NonDeterminismDetected,
                LedgerUnavailable, StorageError or VerificationCancelled,
                with stage and request id filled in. Nothing is persisted in
                that case.
        """
        cancel = cancel or CancelToken()
        state = RequestState(request.request_id)
        with request_context(request.request_id):
            logger.info(
                "Verifying %s at %s (params=%s)",
                request.repository_url, request.commit_hash, request.build_parameters,
            )
            try:
                with build_sandbox(self.work_dir) as sandbox:
                    cancel.check(state.stage)
                    state.advance(Stage.FETCHING)
                    self.fetcher.fetch(request, sandbox.source_dir)

                    cancel.check(state.stage)
                    state.advance(Stage.BUILDING)
                    runs = self._build(request, sandbox, cancel)

                state.advance(Stage.HASHING)
                candidates = self._hash(runs)
                self._keep_build_log(request, candidates[0])

                state.advance(Stage.MATCHING)
                artifact, entry = self._lookup(candidates)

                cancel.check(state.stage)
                record = self._record(request, artifact, entry, candidates)
                state.advance(
                    Stage.VERIFIED if record.status == VerificationStatus.VERIFIED else Stage.UNVERIFIED
                )
            except VerificationError as e:
                self._fail(state, request, e)
                raise
            except OSError as e:
                # Sandbox, build log and store I/O outside the typed adapters.
                err = StorageError(f"I/O failure while {state.stage.value}: {e}")
                self._fail(state, request, err)
                raise err from e
            logger.info("Verification finished: %s %s", record.status.value, record.wasm_hash)
        return record

    def verify(self, request: VerificationRequest, cancel: Optional[CancelToken] = None) -> Outcome:
        """Like ``run`` but returns a non-persisted Failure instead of raising."""
        try:
            return self.run(request, cancel=cancel)
        except VerificationError as e:
            return Failure(
                request_id=e.request_id,
                stage=e.stage,
                code=e.code.value,
                message=e.message,
            )

    def verify_many(
        self,
        requests: Sequence[VerificationRequest],
        max_workers: int = 2,
        cancel: Optional[CancelToken] = None,
    ) -> List[Outcome]:
        """Verify independent requests concurrently; results keep input order."""
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wasmverify") as pool:
            return list(pool.map(lambda r: self.verify(r, cancel=cancel), requests))


def build_pipeline(settings=None, ledger=None, fetcher: Optional[SourceFetcher] = None) -> Pipeline:
    """Assemble a Pipeline from settings with the default GitHub fetcher and Stellar builder."""
    import requests

    from wasmverify.config import get_settings
    from wasmverify._internal.build.builder import StellarCliBuilder
    from wasmverify._internal.io.ledger import WasmMetadataClient, get_ledger
    from wasmverify._internal.io.source import GitHubArchiveFetcher

    settings = settings or get_settings()
    session = requests.Session()
    if fetcher is None:
        fetcher = GitHubArchiveFetcher(
            session=session,
            timeout=settings.http_timeout,
            max_bytes=settings.max_archive_bytes,
        )
    builder = StellarCliBuilder(
        metadata_client=WasmMetadataClient(
            session=session,
            timeout=settings.http_timeout,
            url_template=settings.wasm_metadata_url,
        ),
        timeout=settings.build_timeout,
        install_toolchain=settings.install_toolchain,
    )
    return Pipeline(
        fetcher=fetcher,
        builder=builder,
        ledger=ledger if ledger is not None else get_ledger(),
        store=RecordStore(settings.records_dir),
        determinism_runs=settings.determinism_runs,
        work_dir=settings.work_dir,
        build_logs_dir=settings.build_logs_dir,
    )
