"""Pytest configuration and shared fakes.

No sys.path hacks - tests import from the installed wasmverify package.
Network and toolchain access are replaced by in-process fakes.
"""

import io
import json
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest
import requests

from wasmverify.errors import BuildError, FetchError, LedgerUnavailable
from wasmverify.kernel.record import BuildArtifact, LedgerEntry
from wasmverify.kernel.request import VerificationRequest
from wasmverify.pipeline import Pipeline
from wasmverify._internal.build.builder import Builder
from wasmverify._internal.io.ledger import LedgerSnapshot
from wasmverify._internal.io.source import SourceFetcher
from wasmverify._internal.store import RecordStore


class FakeFetcher(SourceFetcher):
    """Serves a tiny contract tree for known commits; FetchError otherwise."""

    def __init__(self, commits: Iterable[str] = ("abc123",)):
        self.commits = set(commits)
        self.calls: List[str] = []

    def fetch(self, request: VerificationRequest, dest: Path) -> Path:
        self.calls.append(request.commit_hash)
        if request.commit_hash not in self.commits:
            raise FetchError(f"Commit '{request.commit_hash}' not found in {request.repository_url}")
        (dest / "src").mkdir(parents=True)
        (dest / "Cargo.toml").write_text('[package]\nname = "contract"\n', encoding="utf-8")
        (dest / "src" / "lib.rs").write_text(f"// built from {request.commit_hash}\n", encoding="utf-8")
        return dest


class FakeBuilder(Builder):
    """Deterministic: the artifact is a function of the source tree and params."""

    def __init__(self, variants: Iterable[str] = ("unoptimized",)):
        self.variants = tuple(variants)
        self.calls = 0
        self.sandboxes: List[Path] = []
        self._lock = threading.Lock()

    def _source_bytes(self, request: VerificationRequest, code_dir: Path) -> bytes:
        parts = []
        for path in sorted(p for p in code_dir.rglob("*") if p.is_file()):
            parts.append(path.relative_to(code_dir).as_posix().encode() + b"=" + path.read_bytes())
        parts.append(json.dumps(request.build_parameters, sort_keys=True).encode())
        return b"\n".join(parts)

    def build(self, request, sandbox):
        with self._lock:
            self.calls += 1
            self.sandboxes.append(sandbox.root)
        base = self._source_bytes(request, sandbox.code_dir)
        artifacts = []
        for variant in self.variants:
            data = b"\0asm" + variant.encode() + base
            (sandbox.out_dir / f"contract.{variant}.wasm").write_bytes(data)
            artifacts.append(BuildArtifact.from_bytes(data, build_log=f"built {variant}\n", variant=variant))
        return artifacts


class FlakyBuilder(FakeBuilder):
    """Embeds a counter in the output, so no two builds agree."""

    def build(self, request, sandbox):
        artifacts = super().build(request, sandbox)
        return [
            BuildArtifact.from_bytes(a.binary + str(self.calls).encode(), variant=a.variant)
            for a in artifacts
        ]


class FailingBuilder(Builder):
    def build(self, request, sandbox):
        raise BuildError("error[E0425]: cannot find value `x` in this scope", build_log="cargo failed")


class DownLedger:
    def lookup(self, contract_hash: str) -> Optional[LedgerEntry]:
        raise LedgerUnavailable("ledger RPC timed out")


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", json_data=None):
        self.status_code = status_code
        self.content = content
        self._json = json_data
        self.closed = False

    def iter_content(self, chunk_size: int = 1024):
        stream = io.BytesIO(self.content)
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            yield chunk

    def json(self):
        if self._json is None:
            return json.loads(self.content.decode("utf-8"))
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")

    def close(self):
        self.closed = True


class FakeSession:
    """Maps URLs to canned responses; unknown URLs are 404."""

    def __init__(self, routes: Optional[Dict[str, FakeResponse]] = None):
        self.routes = routes or {}
        self.requested: List[str] = []
        self.headers: Dict[str, str] = {}

    def get(self, url, **kwargs):
        self.requested.append(url)
        return self.routes.get(url, FakeResponse(status_code=404))


def fixed_clock() -> str:
    return "2026-10-17T12:00:00Z"


@pytest.fixture(autouse=True)
def _isolate_process_state():
    """configure_logging, reload_settings and init_ledger mutate module globals."""
    from wasmverify import config
    from wasmverify._internal.io.ledger import reset_ledger

    package_logger = logging.getLogger("wasmverify")
    handlers = list(package_logger.handlers)
    level, propagate = package_logger.level, package_logger.propagate
    yield
    package_logger.handlers[:] = handlers
    package_logger.setLevel(level)
    package_logger.propagate = propagate
    config._settings = None
    reset_ledger()


@pytest.fixture
def records_dir(tmp_path) -> Path:
    return tmp_path / "verified"


@pytest.fixture
def store(records_dir) -> RecordStore:
    return RecordStore(records_dir)


@pytest.fixture
def work_dir(tmp_path) -> Path:
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
def request_abc() -> VerificationRequest:
    return VerificationRequest(
        repository_url="github.com/example/contract",
        commit_hash="abc123",
        build_parameters={"opt-level": "z"},
        requested_by="alice",
    )


@pytest.fixture
def make_pipeline(store, work_dir):
    """Factory for pipelines wired with fakes; keyword overrides replace any part."""

    def _make(ledger=None, **overrides) -> Pipeline:
        kwargs = dict(
            fetcher=FakeFetcher(),
            builder=FakeBuilder(),
            ledger=ledger if ledger is not None else LedgerSnapshot([]),
            store=store,
            work_dir=work_dir,
            clock=fixed_clock,
        )
        kwargs.update(overrides)
        return Pipeline(**kwargs)

    return _make


@pytest.fixture
def deadbeef_ledger() -> LedgerSnapshot:
    return LedgerSnapshot([LedgerEntry(contract_hash="0xdeadbeef", network="mainnet")])
