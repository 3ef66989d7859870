"""Hermetic contract builds.

The Stellar builder reproduces ``stellar contract build`` followed by
``stellar contract optimize`` with a pinned Rust toolchain, returning both
the unoptimized and the optimized Wasm as candidate artifacts (unoptimized
first).
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from wasmverify.errors import BuildError
from wasmverify.kernel.record import BuildArtifact
from wasmverify.kernel.request import VerificationRequest
from wasmverify.kernel.toolchain import ToolchainError, select_target, wasm_file_stem
from wasmverify._internal.build.sandbox import BuildSandbox
from wasmverify._internal.io.ledger import WasmMetadataClient

logger = logging.getLogger(__name__)

# Only these variables are inherited from the caller's environment.
PASSTHROUGH_ENV = ("PATH", "HOME", "CARGO_HOME", "RUSTUP_HOME")

PARAM_PACKAGE = "package"
PARAM_DIR = "dir"
PARAM_TOOLCHAIN = "toolchain"

Runner = Callable[..., subprocess.CompletedProcess]


class Builder:
    """Interface: build a request inside a prepared sandbox."""

    def build(self, request: VerificationRequest, sandbox: BuildSandbox) -> List[BuildArtifact]:
        raise NotImplementedError


def hermetic_env(
    extra: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Minimal, fixed environment for build subprocesses."""
    base = os.environ if base is None else base
    env = {k: base[k] for k in PASSTHROUGH_ENV if k in base}
    env.update({
        "SOURCE_DATE_EPOCH": "0",
        "CARGO_INCREMENTAL": "0",
        "TZ": "UTC",
        "LC_ALL": "C",
    })
    if extra:
        env.update(extra)
    return env


class BuildLog:
    """Accumulates command output for the artifact's build log."""

    def __init__(self):
        self._parts: List[str] = []

    def add(self, cmd: Sequence[str], proc: subprocess.CompletedProcess) -> None:
        self._parts.append(f"$ {' '.join(cmd)}\n")
        for stream in (proc.stdout, proc.stderr):
            if stream:
                text = stream.decode("utf-8", errors="replace") if isinstance(stream, bytes) else stream
                self._parts.append(text if text.endswith("\n") else text + "\n")
        self._parts.append(f"[exit {proc.returncode}]\n")

    def text(self) -> str:
        return "".join(self._parts)


class StellarCliBuilder(Builder):
    """Build a Soroban contract with the Stellar CLI."""

    def __init__(
        self,
        metadata_client: Optional[WasmMetadataClient] = None,
        runner: Runner = subprocess.run,
        timeout: float = 1800.0,
        install_toolchain: bool = True,
        stellar: str = "stellar",
        rustup: str = "rustup",
    ):
        self.metadata_client = metadata_client
        self.runner = runner
        self.timeout = timeout
        self.install_toolchain = install_toolchain
        self.stellar = stellar
        self.rustup = rustup

    def resolve_toolchain(self, request: VerificationRequest) -> str:
        toolchain = request.param(PARAM_TOOLCHAIN)
        if toolchain:
            return toolchain
        if request.expected_hash and self.metadata_client is not None:
            toolchain = self.metadata_client.rust_version(request.expected_hash)
            if toolchain:
                return toolchain
        raise BuildError(
            "Could not find Rust toolchain version: pass a 'toolchain' build parameter "
            "or an expected hash with published metadata (rsver)"
        )

    def _run(self, cmd: List[str], log: BuildLog, cwd: Optional[Path] = None,
             env: Optional[Dict[str, str]] = None) -> subprocess.CompletedProcess:
        try:
            proc = self.runner(
                cmd,
                cwd=str(cwd) if cwd else None,
                env=env if env is not None else hermetic_env(),
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise BuildError(f"Command timed out after {self.timeout}s: {' '.join(cmd)}", build_log=log.text())
        except OSError as e:
            raise BuildError(f"Cannot run {cmd[0]}: {e}", build_log=log.text())
        log.add(cmd, proc)
        logger.info("%s completed with exit code %d", " ".join(cmd[:3]), proc.returncode)
        if proc.returncode != 0:
            raise BuildError(
                f"Command failed with exit code {proc.returncode}: {' '.join(cmd)}",
                build_log=log.text(),
            )
        return proc

    def prepare_toolchain(self, toolchain: str, log: BuildLog) -> str:
        try:
            target = select_target(toolchain)
        except ToolchainError as e:
            raise BuildError(str(e))
        if self.install_toolchain:
            logger.info("Installing Rust toolchain %s", toolchain)
            self._run([self.rustup, "install", toolchain], log)
            logger.info("Adding target %s to toolchain %s", target, toolchain)
            self._run([self.rustup, "target", "add", target, "--toolchain", toolchain], log)
        return target

    def build(self, request: VerificationRequest, sandbox: BuildSandbox) -> List[BuildArtifact]:
        package = request.param(PARAM_PACKAGE)
        if not package:
            raise BuildError("Missing required build parameter 'package'")
        subdir = request.param(PARAM_DIR, ".")
        build_dir = (sandbox.code_dir / subdir).resolve()
        if sandbox.code_dir.resolve() not in (build_dir, *build_dir.parents):
            raise BuildError(f"Build directory escapes the source tree: {subdir}")
        if not build_dir.is_dir():
            raise BuildError(f"Build directory not found in source tree: {subdir}")

        log = BuildLog()
        if sandbox.toolchain is None:
            toolchain = self.resolve_toolchain(request)
            self.prepare_toolchain(toolchain, log)
            sandbox.toolchain = toolchain
        else:
            logger.info("Reusing Rust toolchain %s", sandbox.toolchain)
        env = hermetic_env({"RUSTUP_TOOLCHAIN": sandbox.toolchain})

        out_dir = sandbox.out_dir.resolve()
        logger.info("Building Stellar contract '%s' in directory %s", package, build_dir)
        self._run(
            [self.stellar, "contract", "build", "--package", package, "--out-dir", str(out_dir)],
            log, cwd=build_dir, env=env,
        )

        stem = wasm_file_stem(package)
        wasm_file = out_dir / f"{stem}.wasm"
        optimized_file = out_dir / f"{stem}.optimized.wasm"
        logger.info("Optimizing Wasm file %s", wasm_file)
        self._run(
            [self.stellar, "contract", "optimize", "--wasm", str(wasm_file),
             "--wasm-out", str(optimized_file)],
            log, cwd=build_dir, env=env,
        )

        artifacts = []
        for path, variant in ((wasm_file, "unoptimized"), (optimized_file, "optimized")):
            if path.is_file():
                data = path.read_bytes()
                logger.info("Read %s Wasm file (%d bytes)", variant, len(data))
                artifacts.append(BuildArtifact.from_bytes(data, build_log=log.text(), variant=variant))
            else:
                logger.info("%s Wasm file not found: %s", variant, path)
        if not artifacts:
            raise BuildError(
                f"Failed to read Wasm file - tried both {wasm_file.name} and {optimized_file.name}",
                build_log=log.text(),
            )
        return artifacts
