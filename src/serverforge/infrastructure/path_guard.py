"""Path guardrails for the data root and sandbox scratch directories."""

from __future__ import annotations

import os
import re
from pathlib import Path, PurePosixPath


_BUNDLE_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


class InvalidPathError(ValueError):
    """Raised when a path escapes its configured root."""


def normalize_path(path: str | Path) -> Path:
    raw = str(path or "").strip()
    if not raw:
        raise InvalidPathError("path is required")
    expanded = os.path.expandvars(os.path.expanduser(raw))
    return Path(expanded).resolve(strict=False)


def ensure_within_root(root: str | Path, path: str | Path) -> Path:
    """Ensure `path` is under `root` (inclusive)."""
    root_path = normalize_path(root)
    candidate = normalize_path(path)

    try:
        common = os.path.commonpath([str(root_path), str(candidate)])
    except ValueError as exc:
        raise InvalidPathError(str(exc)) from exc

    if common != str(root_path):
        raise InvalidPathError(f"path escapes root: {candidate}")
    return candidate


def safe_join(root: str | Path, *parts: str) -> Path:
    base = normalize_path(root)
    candidate = (base.joinpath(*parts)).resolve(strict=False)
    return ensure_within_root(base, candidate)


def validate_bundle_path(path: str) -> str:
    """Validate a relative file path proposed for a generated server bundle.

    Generated file maps are keyed by POSIX-style relative paths such as
    ``api/index.js``. Absolute paths, drive letters, backslashes and ``..``
    segments are rejected.
    """
    raw = str(path or "").strip()
    if not raw:
        raise InvalidPathError("bundle path is required")
    if "\\" in raw or raw.startswith("/") or ":" in raw:
        raise InvalidPathError(f"bundle path must be relative: {path!r}")

    parts = PurePosixPath(raw).parts
    for part in parts:
        if part in (".", "..") or not _BUNDLE_SEGMENT_PATTERN.fullmatch(part):
            raise InvalidPathError(f"invalid bundle path segment {part!r} in {path!r}")
    return "/".join(parts)
