"""Scoped build sandboxes.

A sandbox is a private temporary directory holding the fetched source tree
and build outputs for one request. It is removed on every exit path,
including exceptions raised by cancellation.
"""

import logging
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

logger = logging.getLogger(__name__)


class BuildSandbox:
    """Directory layout of one sandbox."""

    def __init__(self, root: Path):
        self.root = root
        self.source_dir = root / "source"
        self.code_dir = root / "code"
        self.out_dir = root / "wasm"
        # Toolchain resolved and installed by the first build attempt.
        self.toolchain: Optional[str] = None

    def reset_workspace(self) -> None:
        """Replace code_dir with a pristine copy of the fetched source.

        Repeated builds run at the same absolute path, from a clean tree and
        an empty output directory, so nothing carries over between attempts.
        """
        for d in (self.code_dir, self.out_dir):
            if d.exists():
                shutil.rmtree(d)
        shutil.copytree(self.source_dir, self.code_dir, symlinks=True)
        self.out_dir.mkdir()


@contextmanager
def build_sandbox(
    base_dir: Optional[Union[str, Path]] = None,
    prefix: str = "wasmverify-",
) -> Iterator[BuildSandbox]:
    """Create a sandbox directory and guarantee its removal."""
    if base_dir is not None:
        Path(base_dir).mkdir(parents=True, exist_ok=True)
    root = Path(tempfile.mkdtemp(prefix=prefix, dir=str(base_dir) if base_dir else None))
    logger.debug("Created build sandbox %s", root)
    try:
        yield BuildSandbox(root)
    finally:
        shutil.rmtree(root, ignore_errors=True)
        logger.debug("Removed build sandbox %s", root)
