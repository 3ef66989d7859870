"""End-to-end pipeline tests with in-process fetcher, builder and ledger."""

import hashlib
import json
import threading

import pytest

from wasmverify.codes import FailureCode
from wasmverify.errors import (
    BuildError,
    FetchError,
    LedgerUnavailable,
    NonDeterminismDetected,
    StorageError,
    VerificationCancelled,
)
from wasmverify.kernel.record import (
    BuildArtifact,
    Failure,
    LedgerEntry,
    VerificationRecord,
    VerificationStatus,
)
from wasmverify.kernel.request import VerificationRequest
from wasmverify.pipeline import CancelToken, Pipeline, build_pipeline
from wasmverify._internal.io.ledger import LedgerSnapshot, WasmMetadataClient
from wasmverify._internal.store import RecordStore

from conftest import DownLedger, FailingBuilder, FakeBuilder, FakeFetcher, FakeSession, FlakyBuilder


def deadbeef(_binary):
    return "0xdeadbeef"


def _persisted(records_dir):
    if not records_dir.exists():
        return []
    return sorted(p.relative_to(records_dir).as_posix() for p in records_dir.rglob("*.json"))


class TestScenarios:

    def test_verified_on_mainnet(self, make_pipeline, request_abc, deadbeef_ledger, records_dir):
        pipeline = make_pipeline(ledger=deadbeef_ledger, hasher=deadbeef)
        record = pipeline.run(request_abc)

        assert record.status == VerificationStatus.VERIFIED
        assert record.wasm_hash == "deadbeef"
        assert record.network == "mainnet"
        assert record.source_commit == "abc123"
        assert record.timestamp == "2026-10-17T12:00:00Z"
        assert record.requested_by == "alice"
        assert record.request_id == request_abc.request_id
        assert _persisted(records_dir) == ["deadbeef.json"]

    def test_unverified_when_hash_not_on_ledger(self, make_pipeline, request_abc, records_dir):
        ledger = LedgerSnapshot([LedgerEntry(contract_hash="cafebabe", network="mainnet")])
        record = make_pipeline(ledger=ledger, hasher=deadbeef).run(request_abc)

        assert record.status == VerificationStatus.UNVERIFIED
        assert record.matched_ledger_entry is None
        assert _persisted(records_dir) == ["unverified/deadbeef.json"]

    def test_unknown_commit_fails_at_fetch(self, make_pipeline, records_dir):
        request = VerificationRequest(repository_url="github.com/example/contract", commit_hash="zzz999")
        with pytest.raises(FetchError) as excinfo:
            make_pipeline().run(request)

        assert excinfo.value.code == FailureCode.FETCH_ERROR
        assert excinfo.value.stage == "fetching"
        assert excinfo.value.request_id == request.request_id
        assert _persisted(records_dir) == []

    def test_real_hash_is_sha256_of_binary(self, make_pipeline, request_abc):
        class FixedBuilder(FakeBuilder):
            def build(self, request, sandbox):
                return [BuildArtifact.from_bytes(b"\x00asm fixed", build_log="ok")]

        record = make_pipeline(builder=FixedBuilder()).run(request_abc)
        assert record.wasm_hash == hashlib.sha256(b"\x00asm fixed").hexdigest()
        assert record.build_log_sha256 == hashlib.sha256(b"ok").hexdigest()


class TestDeterminismAndIdempotence:

    def test_same_request_twice_yields_same_hash_and_one_record(self, make_pipeline, request_abc, deadbeef_ledger, records_dir):
        pipeline = make_pipeline(ledger=deadbeef_ledger, hasher=deadbeef)
        first = pipeline.run(request_abc)
        second = pipeline.run(request_abc)

        assert first.wasm_hash == second.wasm_hash
        assert second == first
        assert _persisted(records_dir) == ["deadbeef.json"]

    def test_builds_repeat_in_the_same_sandbox(self, make_pipeline, request_abc):
        builder = FakeBuilder()
        make_pipeline(builder=builder, determinism_runs=3).run(request_abc)
        assert builder.calls == 3
        assert len(set(builder.sandboxes)) == 1

    def test_non_deterministic_build_is_detected(self, make_pipeline, request_abc, records_dir):
        with pytest.raises(NonDeterminismDetected) as excinfo:
            make_pipeline(builder=FlakyBuilder()).run(request_abc)

        assert excinfo.value.stage == "hashing"
        assert len(excinfo.value.observed_hashes) == 2
        assert _persisted(records_dir) == []

    def test_single_run_skips_determinism_check(self, make_pipeline, request_abc):
        record = make_pipeline(builder=FlakyBuilder(), determinism_runs=1).run(request_abc)
        assert record.status == VerificationStatus.UNVERIFIED

    def test_determinism_runs_must_be_positive(self, make_pipeline):
        with pytest.raises(ValueError):
            make_pipeline(determinism_runs=0)


class TestFailures:

    def test_build_error_is_not_persisted(self, make_pipeline, request_abc, records_dir):
        with pytest.raises(BuildError) as excinfo:
            make_pipeline(builder=FailingBuilder()).run(request_abc)

        assert excinfo.value.stage == "building"
        assert "cannot find value" in str(excinfo.value)
        assert excinfo.value.build_log == "cargo failed"
        assert _persisted(records_dir) == []

    def test_ledger_outage_is_not_recorded_as_unverified(self, make_pipeline, request_abc, records_dir):
        with pytest.raises(LedgerUnavailable) as excinfo:
            make_pipeline(ledger=DownLedger()).run(request_abc)

        assert excinfo.value.stage == "matching"
        assert _persisted(records_dir) == []

    def test_verify_returns_failure_instead_of_raising(self, make_pipeline, records_dir):
        request = VerificationRequest(repository_url="example/contract", commit_hash="zzz999")
        outcome = make_pipeline().verify(request)

        assert isinstance(outcome, Failure)
        assert outcome.status == VerificationStatus.BUILD_FAILED
        assert outcome.code == "FETCH_ERROR"
        assert outcome.stage == "fetching"
        assert outcome.request_id == request.request_id
        assert _persisted(records_dir) == []

    def test_sandbox_removed_after_failure(self, make_pipeline, request_abc, work_dir):
        with pytest.raises(BuildError):
            make_pipeline(builder=FailingBuilder()).run(request_abc)
        assert list(work_dir.iterdir()) == []

    def test_unusable_record_store_fails_each_request(self, make_pipeline, tmp_path):
        blocker = tmp_path / "records-file"
        blocker.write_text("not a directory", encoding="utf-8")
        requests = [
            VerificationRequest(repository_url="example/contract", commit_hash="abc123"),
            VerificationRequest(repository_url="example/contract", commit_hash="zzz999"),
        ]
        pipeline = make_pipeline(store=RecordStore(blocker), hasher=deadbeef)
        outcomes = pipeline.verify_many(requests)

        assert all(isinstance(o, Failure) for o in outcomes)
        assert [o.code for o in outcomes] == ["STORAGE_ERROR", "FETCH_ERROR"]
        assert outcomes[0].stage == "matching"
        assert outcomes[0].request_id == requests[0].request_id

    def test_unusable_work_dir_is_storage_error(self, make_pipeline, request_abc, tmp_path):
        blocker = tmp_path / "work-file"
        blocker.write_text("", encoding="utf-8")
        with pytest.raises(StorageError) as excinfo:
            make_pipeline(work_dir=blocker).run(request_abc)

        assert excinfo.value.code == FailureCode.STORAGE_ERROR
        assert excinfo.value.stage == "pending"
        assert excinfo.value.request_id == request_abc.request_id
        assert isinstance(excinfo.value.__cause__, OSError)

    def test_unwritable_build_log_dir_is_not_persisted(self, make_pipeline, request_abc, tmp_path, records_dir):
        blocker = tmp_path / "logs-file"
        blocker.write_text("", encoding="utf-8")
        outcome = make_pipeline(build_logs_dir=blocker).verify(request_abc)

        assert isinstance(outcome, Failure)
        assert (outcome.code, outcome.stage) == ("STORAGE_ERROR", "hashing")
        assert _persisted(records_dir) == []

    def test_unpublished_toolchain_metadata_fails_at_build(self, make_pipeline, request_abc):
        class MetadataBuilder(FakeBuilder):
            def build(self, request, sandbox):
                WasmMetadataClient(session=FakeSession()).rust_version("deadbeef")
                return super().build(request, sandbox)

        outcome = make_pipeline(builder=MetadataBuilder()).verify(request_abc)
        assert (outcome.code, outcome.stage) == ("BUILD_ERROR", "building")


class TestCancellation:

    def test_cancel_before_start(self, make_pipeline, request_abc, records_dir, work_dir):
        token = CancelToken()
        token.cancel()
        fetcher = FakeFetcher()
        with pytest.raises(VerificationCancelled) as excinfo:
            make_pipeline(fetcher=fetcher).run(request_abc, cancel=token)

        assert excinfo.value.code == FailureCode.CANCELLED
        assert excinfo.value.stage == "pending"
        assert fetcher.calls == []
        assert list(work_dir.iterdir()) == []
        assert _persisted(records_dir) == []

    def test_cancel_during_build_cleans_up(self, make_pipeline, request_abc, records_dir, work_dir):
        token = CancelToken()

        class CancellingBuilder(FakeBuilder):
            def build(self, request, sandbox):
                artifacts = super().build(request, sandbox)
                token.cancel()
                return artifacts

        builder = CancellingBuilder()
        with pytest.raises(VerificationCancelled) as excinfo:
            make_pipeline(builder=builder, determinism_runs=2).run(request_abc, cancel=token)

        assert excinfo.value.stage == "building"
        assert builder.calls == 1
        assert list(work_dir.iterdir()) == []
        assert _persisted(records_dir) == []


class TestRecords:

    def test_existing_verified_record_short_circuits(self, make_pipeline, request_abc, deadbeef_ledger, store):
        first = make_pipeline(ledger=deadbeef_ledger, hasher=deadbeef).run(request_abc)

        other = VerificationRequest(
            repository_url="github.com/example/fork",
            commit_hash="abc123",
            build_parameters={"opt-level": "z"},
        )
        second = make_pipeline(ledger=deadbeef_ledger, hasher=deadbeef).run(other)

        assert second == first
        assert second.repository_url == "github.com/example/contract"
        assert len(list(store.iter_records())) == 1

    def test_unverified_then_verified_after_ledger_update(self, make_pipeline, request_abc, deadbeef_ledger, records_dir):
        unverified = make_pipeline(hasher=deadbeef).run(request_abc)
        verified = make_pipeline(ledger=deadbeef_ledger, hasher=deadbeef).run(request_abc)

        assert unverified.status == VerificationStatus.UNVERIFIED
        assert verified.status == VerificationStatus.VERIFIED
        assert _persisted(records_dir) == ["deadbeef.json", "unverified/deadbeef.json"]

    def test_record_file_matches_returned_record(self, make_pipeline, request_abc, deadbeef_ledger, records_dir):
        record = make_pipeline(ledger=deadbeef_ledger, hasher=deadbeef).run(request_abc)
        on_disk = json.loads((records_dir / "deadbeef.json").read_text(encoding="utf-8"))
        assert VerificationRecord(**on_disk) == record
        assert on_disk["build_parameters"] == {"opt-level": "z"}

    def test_build_log_kept_when_configured(self, make_pipeline, request_abc, tmp_path):
        logs = tmp_path / "logs"
        make_pipeline(build_logs_dir=logs).run(request_abc)
        name = request_abc.request_id.replace(":", "_") + ".log"
        assert (logs / name).read_text(encoding="utf-8") == "built unoptimized\n"


class TestVariants:

    def test_unoptimized_tried_first(self, make_pipeline, request_abc):
        builder = FakeBuilder(variants=("unoptimized", "optimized"))
        record = make_pipeline(builder=builder).run(request_abc)
        assert record.status == VerificationStatus.UNVERIFIED
        assert record.variant == "unoptimized"

    def test_optimized_variant_matches_ledger(self, make_pipeline, request_abc, records_dir):
        hashes = {b"unoptimized": "aa", b"optimized": "bb"}

        def by_variant(binary):
            return next(h for key, h in hashes.items() if key in binary)

        ledger = LedgerSnapshot([LedgerEntry(contract_hash="bb", network="testnet")])
        pipeline = make_pipeline(
            ledger=ledger,
            builder=FakeBuilder(variants=("unoptimized", "optimized")),
            hasher=by_variant,
        )
        record = pipeline.run(request_abc)

        assert record.status == VerificationStatus.VERIFIED
        assert record.wasm_hash == "bb"
        assert record.variant == "optimized"
        assert record.network == "testnet"

    def test_expected_hash_match_is_reported(self, make_pipeline, deadbeef_ledger):
        request = VerificationRequest(
            repository_url="example/contract",
            commit_hash="abc123",
            expected_hash="0xDEADBEEF",
        )
        record = make_pipeline(ledger=deadbeef_ledger, hasher=deadbeef).run(request)
        assert record.expected_hash == "deadbeef"
        assert record.expected_hash_matched is True

    def test_expected_hash_mismatch_is_reported(self, make_pipeline):
        request = VerificationRequest(repository_url="example/contract", commit_hash="abc123", expected_hash="cafebabe")
        record = make_pipeline(hasher=deadbeef).run(request)
        assert record.expected_hash_matched is False


class TestConcurrency:

    def test_verify_many_keeps_input_order(self, make_pipeline, deadbeef_ledger):
        requests = [
            VerificationRequest(repository_url="example/contract", commit_hash="abc123"),
            VerificationRequest(repository_url="example/contract", commit_hash="zzz999"),
            VerificationRequest(repository_url="example/other", commit_hash="abc123"),
        ]
        outcomes = make_pipeline(ledger=deadbeef_ledger, hasher=deadbeef).verify_many(requests, max_workers=3)

        assert isinstance(outcomes[0], VerificationRecord)
        assert isinstance(outcomes[1], Failure)
        assert outcomes[1].code == "FETCH_ERROR"
        assert isinstance(outcomes[2], VerificationRecord)
        assert outcomes[0] == outcomes[2]

    def test_concurrent_requests_for_same_hash_record_once(self, make_pipeline, deadbeef_ledger, store):
        barrier = threading.Barrier(4)

        class SyncedBuilder(FakeBuilder):
            def build(self, request, sandbox):
                barrier.wait(timeout=10)
                return super().build(request, sandbox)

        pipeline = make_pipeline(
            ledger=deadbeef_ledger,
            hasher=deadbeef,
            builder=SyncedBuilder(),
            determinism_runs=1,
        )
        requests = [
            VerificationRequest(repository_url="example/contract", commit_hash="abc123", requested_by=f"user{i}")
            for i in range(4)
        ]
        outcomes = pipeline.verify_many(requests, max_workers=4)

        assert all(isinstance(o, VerificationRecord) for o in outcomes)
        assert len({o.requested_by for o in outcomes}) == 1
        assert len(list(store.iter_records())) == 1

    def test_independent_requests_share_ledger(self, make_pipeline, deadbeef_ledger, work_dir):
        fetcher = FakeFetcher(commits=("abc123", "def456"))
        requests = [
            VerificationRequest(repository_url="example/contract", commit_hash=sha)
            for sha in ("abc123", "def456")
        ]
        outcomes = make_pipeline(fetcher=fetcher).verify_many(requests)
        assert outcomes[0].wasm_hash != outcomes[1].wasm_hash
        assert list(work_dir.iterdir()) == []


def test_build_pipeline_wires_settings(tmp_path, deadbeef_ledger):
    from wasmverify.config import Settings
    from wasmverify._internal.build.builder import StellarCliBuilder
    from wasmverify._internal.io.source import GitHubArchiveFetcher

    settings = Settings(records_dir=tmp_path / "records", determinism_runs=3, build_timeout=60)
    pipeline = build_pipeline(settings, ledger=deadbeef_ledger)

    assert isinstance(pipeline, Pipeline)
    assert isinstance(pipeline.fetcher, GitHubArchiveFetcher)
    assert isinstance(pipeline.builder, StellarCliBuilder)
    assert pipeline.builder.timeout == 60
    assert pipeline.determinism_runs == 3
    assert pipeline.store.root == tmp_path / "records"
    assert pipeline.ledger is deadbeef_ledger
