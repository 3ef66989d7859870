"""Verification request model."""

import hashlib
import re
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .hash_utils import canonicalize_json, normalize_hash

# Commit refs are passed verbatim into archive URLs; keep them to a safe alphabet.
# Whether it is a commit id and whether it exists is decided by the fetcher.
_COMMIT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
# Abbreviated or full commit id of a SHA-1 or SHA-256 repository.
_COMMIT_ID_RE = re.compile(r"^[0-9a-fA-F]{4,64}$")
_SLUG_PART_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_GITHUB_HOSTS = ("github.com",)


class VerificationRequest(BaseModel):
    """A request to reproduce a contract build and check it against the ledger.

    Immutable once accepted. ``request_id`` is derived from the canonical
    request content when not given, so identical submissions share an id.
    """
    repository_url: str
    commit_hash: str
    build_parameters: Dict[str, str] = Field(default_factory=dict)
    requested_by: Optional[str] = None
    expected_hash: Optional[str] = None
    request_id: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("repository_url")
    @classmethod
    def validate_repository_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("repository_url must be non-empty")
        return v

    @field_validator("commit_hash")
    @classmethod
    def validate_commit_hash(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("commit_hash must be non-empty")
        if not _COMMIT_RE.match(v):
            raise ValueError(f"commit_hash contains invalid characters: '{v}'")
        return v

    @field_validator("build_parameters")
    @classmethod
    def validate_build_parameters(cls, v: Dict[str, str]) -> Dict[str, str]:
        return {k: v[k] for k in sorted(v)}

    @field_validator("expected_hash")
    @classmethod
    def validate_expected_hash(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return normalize_hash(v)

    @model_validator(mode="before")
    @classmethod
    def fill_request_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("request_id"):
            data = dict(data)
            data["request_id"] = compute_request_id(
                str(data.get("repository_url", "")),
                str(data.get("commit_hash", "")),
                data.get("build_parameters") or {},
            )
        return data

    def param(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.build_parameters.get(key, default)


def is_commit_hash(ref: str) -> bool:
    """True if ``ref`` is a content-addressed commit id rather than a branch or tag."""
    return bool(_COMMIT_ID_RE.match(ref))


def compute_request_id(
    repository_url: str,
    commit_hash: str,
    build_parameters: Mapping[str, str],
) -> str:
    """Short stable id over repository, commit and build parameters."""
    canonical = canonicalize_json({
        "repository_url": repository_url.strip(),
        "commit_hash": commit_hash.strip(),
        "build_parameters": dict(build_parameters),
    })
    return "req:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def parse_github_slug(repository_url: str) -> Tuple[str, str]:
    """Split a GitHub repository reference into (owner, repo).

    Accepts ``owner/repo``, ``github.com/owner/repo`` and
    ``https://github.com/owner/repo`` (optionally ending in ``.git`` or ``/``).

    Raises:
        ValueError: If the reference is not a GitHub owner/repo pair
    """
    ref = repository_url.strip()
    for scheme in ("https://", "http://"):
        if ref.startswith(scheme):
            ref = ref[len(scheme):]
            break
    ref = ref.rstrip("/")
    if ref.endswith(".git"):
        ref = ref[:-4]

    parts = ref.split("/")
    if len(parts) == 3 and parts[0].lower() in _GITHUB_HOSTS:
        parts = parts[1:]
    if len(parts) != 2 or not all(_SLUG_PART_RE.match(p) for p in parts):
        raise ValueError(
            f"Invalid repository format '{repository_url}' (expected 'owner/repo' format)"
        )
    return parts[0], parts[1]
