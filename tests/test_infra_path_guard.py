"""Tests for path guardrails."""

from pathlib import Path

import pytest

from serverforge.infrastructure.path_guard import (
    InvalidPathError,
    ensure_within_root,
    normalize_path,
    safe_join,
    validate_bundle_path,
)


def test_ensure_within_root_accepts_child(tmp_path):
    root = tmp_path / ".serverforge"
    child = root / "state" / "serverforge.db"
    resolved = ensure_within_root(root, child)
    assert str(resolved).startswith(str(root.resolve()))


def test_ensure_within_root_rejects_sibling(tmp_path):
    with pytest.raises(InvalidPathError):
        ensure_within_root(tmp_path / "data", tmp_path / "data-other" / "x.db")


def test_safe_join_blocks_escape(tmp_path):
    root = tmp_path / ".serverforge"
    with pytest.raises(InvalidPathError):
        safe_join(root, "..", "outside")


def test_normalize_path_requires_value():
    with pytest.raises(InvalidPathError):
        normalize_path("  ")
    assert normalize_path("~").is_absolute()


@pytest.mark.parametrize("path", ["api/index.js", "package.json", "lib/noise-2d.js"])
def test_validate_bundle_path_accepts_relative_paths(path):
    assert validate_bundle_path(path) == path


@pytest.mark.parametrize(
    "path",
    ["", "/etc/passwd", "../secret.js", "api/../../x.js", "C:/x.js", "api\\index.js", "api/my file.js"],
)
def test_validate_bundle_path_rejects_unsafe_paths(path):
    with pytest.raises(InvalidPathError):
        validate_bundle_path(path)
