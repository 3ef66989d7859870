"""Source fetchers: materialize a repository at a commit into a directory."""

import io
import logging
import shutil
import subprocess
import tarfile
from pathlib import Path, PurePosixPath
from typing import IO, Optional

import requests

from wasmverify.errors import FetchError
from wasmverify.kernel.request import VerificationRequest, is_commit_hash, parse_github_slug

logger = logging.getLogger(__name__)

GITHUB_ARCHIVE_URL = "https://github.com/{owner}/{repo}/archive/{sha}.tar.gz"
USER_AGENT = "wasmverify/1.0"
CHUNK_SIZE = 128 * 1024


class SourceFetcher:
    """Interface: populate ``dest`` with the source tree of a request."""

    def fetch(self, request: VerificationRequest, dest: Path) -> Path:
        raise NotImplementedError


def require_commit_hash(request: VerificationRequest) -> str:
    """Reject branch and tag names: a record must point at immutable source."""
    if not is_commit_hash(request.commit_hash):
        raise FetchError(
            f"Commit '{request.commit_hash}' is not a commit hash (expected 4-64 hex characters)"
        )
    return request.commit_hash


def _is_within(member_name: str) -> bool:
    p = PurePosixPath(member_name)
    return not p.is_absolute() and ".." not in p.parts


def extract_archive(fileobj: IO[bytes], dest: Path, mode: str = "r:*", flatten: bool = True) -> None:
    """Extract a tar stream into ``dest``, optionally flattening a single top-level directory.

    Members escaping ``dest`` (absolute paths, ``..``, links pointing outside,
    device files) are rejected.
    """
    dest.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=fileobj, mode=mode) as tar:
            members = tar.getmembers()
            for m in members:
                if not _is_within(m.name):
                    raise FetchError(f"Archive member escapes extraction directory: {m.name}")
                if m.issym() or m.islnk():
                    target = str(PurePosixPath(m.name).parent / m.linkname) if m.issym() else m.linkname
                    if not _is_within(target):
                        raise FetchError(f"Archive link escapes extraction directory: {m.name} -> {m.linkname}")
                if m.isdev():
                    raise FetchError(f"Archive contains a device file: {m.name}")
            if hasattr(tarfile, "data_filter"):
                tar.extractall(dest, members=members, filter="data")
            else:
                tar.extractall(dest, members=members)
    except tarfile.TarError as e:
        raise FetchError(f"Failed to extract source archive: {e}")

    if not flatten:
        return
    entries = list(dest.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        # rename first: the wrapper may contain an entry with its own name
        extracted_dir = entries[0].rename(dest / ".wasmverify-extract")
        for entry in extracted_dir.iterdir():
            shutil.move(str(entry), str(dest / entry.name))
        extracted_dir.rmdir()


class GitHubArchiveFetcher(SourceFetcher):
    """Download ``owner/repo`` at a commit as a GitHub tarball."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
        max_bytes: int = 512 * 1024 * 1024,
        url_template: str = GITHUB_ARCHIVE_URL,
    ):
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": USER_AGENT})
        self.session = session
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.url_template = url_template

    def archive_url(self, request: VerificationRequest) -> str:
        try:
            owner, repo = parse_github_slug(request.repository_url)
        except ValueError as e:
            raise FetchError(str(e))
        return self.url_template.format(owner=owner, repo=repo, sha=request.commit_hash)

    def fetch(self, request: VerificationRequest, dest: Path) -> Path:
        require_commit_hash(request)
        url = self.archive_url(request)
        logger.info("Downloading archive from %s", url)
        try:
            response = self.session.get(url, timeout=self.timeout, stream=True, allow_redirects=True)
        except requests.RequestException as e:
            raise FetchError(f"Source unreachable at {url}: {e}")

        try:
            if response.status_code == 404:
                raise FetchError(
                    f"Commit '{request.commit_hash}' not found in {request.repository_url}"
                )
            if response.status_code != 200:
                raise FetchError(f"Unexpected HTTP {response.status_code} downloading {url}")

            buf = io.BytesIO()
            try:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    buf.write(chunk)
                    if buf.tell() > self.max_bytes:
                        raise FetchError(f"Source archive exceeds {self.max_bytes} bytes: {url}")
            except requests.RequestException as e:
                raise FetchError(f"Download interrupted for {url}: {e}")
        finally:
            response.close()

        logger.info("Successfully downloaded %d bytes", buf.tell())
        buf.seek(0)
        extract_archive(buf, dest, mode="r:gz")
        logger.info("Extracted source code archive into %s", dest)
        return dest


class GitArchiveFetcher(SourceFetcher):
    """Export a commit from a local git repository with ``git archive``."""

    def __init__(self, git: str = "git", timeout: float = 300.0):
        self.git = git
        self.timeout = timeout

    def fetch(self, request: VerificationRequest, dest: Path) -> Path:
        require_commit_hash(request)
        repo = Path(request.repository_url).expanduser()
        if not repo.is_dir():
            raise FetchError(f"Repository not found: {request.repository_url}")
        cmd = [self.git, "-C", str(repo), "archive", "--format=tar", request.commit_hash]
        logger.info("Exporting %s at %s", repo, request.commit_hash)
        try:
            proc = subprocess.run(cmd, capture_output=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise FetchError(f"git archive failed for {repo}: {e}")
        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            raise FetchError(
                f"Commit '{request.commit_hash}' not available in {repo}: {stderr}"
            )
        extract_archive(io.BytesIO(proc.stdout), dest, mode="r:", flatten=False)
        return dest


def fetcher_for(
    repository_url: str,
    session: Optional[requests.Session] = None,
    timeout: float = 60.0,
) -> SourceFetcher:
    """Pick a fetcher: local git checkout if the path exists, GitHub otherwise."""
    if Path(repository_url).expanduser().is_dir():
        return GitArchiveFetcher()
    return GitHubArchiveFetcher(session=session, timeout=timeout)
