"""Tests for Cargo manifest loading and formatting helpers."""
from __future__ import annotations

import os
from pathlib import Path

import pytest

from oxyctl.project import (
    ManifestError,
    artifact_path,
    artifact_size,
    format_bytes,
    format_duration,
    is_cargo_project,
    load_manifest,
    project_files,
    target_dir,
)

MANIFEST = """\
[package]
name = "demo"
version = "0.3.1"
edition = "2021"
rust-version = "1.74"
authors = ["Dev <dev@example.com>"]

[dependencies]
serde = "1"
anyhow = "1"

[dev-dependencies]
proptest = "1"
"""


def test_load_manifest_reads_package_table(tmp_path: Path) -> None:
    """Package fields and dependency counts are extracted."""
    (tmp_path / "Cargo.toml").write_text(MANIFEST)

    manifest = load_manifest(tmp_path)

    assert manifest is not None
    assert (manifest.name, manifest.version, manifest.edition) == ("demo", "0.3.1", "2021")
    assert manifest.rust_version == "1.74"
    assert manifest.authors == ("Dev <dev@example.com>",)
    assert (manifest.dependencies, manifest.dev_dependencies) == (2, 1)
    assert manifest.to_dict()["dependencies_count"] == 2
    assert is_cargo_project(tmp_path)


def test_load_manifest_absent_and_workspace(tmp_path: Path) -> None:
    """No manifest gives None; a virtual workspace has no package name."""
    assert load_manifest(tmp_path) is None

    (tmp_path / "Cargo.toml").write_text('[workspace]\nmembers = ["a"]\n')
    manifest = load_manifest(tmp_path)

    assert manifest is not None
    assert manifest.is_workspace is True
    assert manifest.name is None


def test_workspace_inherited_fields_are_ignored(tmp_path: Path) -> None:
    """``version.workspace = true`` is not a version string."""
    (tmp_path / "Cargo.toml").write_text(
        '[package]\nname = "member"\nversion.workspace = true\n'
    )

    manifest = load_manifest(tmp_path)

    assert manifest is not None
    assert manifest.version is None


def test_invalid_manifest_raises(tmp_path: Path) -> None:
    """Broken TOML surfaces as ManifestError."""
    (tmp_path / "Cargo.toml").write_text("[package\n")

    with pytest.raises(ManifestError):
        load_manifest(tmp_path)


def test_artifact_path_uses_profile_and_target_dir(tmp_path: Path) -> None:
    """The binary lives under target/<profile>/<name>."""
    (tmp_path / "Cargo.toml").write_text(MANIFEST)
    manifest = load_manifest(tmp_path)
    assert manifest is not None
    suffix = ".exe" if os.name == "nt" else ""

    release = artifact_path(tmp_path, manifest, env={})
    debug = artifact_path(tmp_path, manifest, release=False, env={})
    custom = artifact_path(tmp_path, manifest, env={"CARGO_TARGET_DIR": "out"})

    assert release == tmp_path / "target" / "release" / f"demo{suffix}"
    assert debug == tmp_path / "target" / "debug" / f"demo{suffix}"
    assert custom == tmp_path / "out" / "release" / f"demo{suffix}"
    assert target_dir(tmp_path, {"CARGO_TARGET_DIR": str(tmp_path / "abs")}) == tmp_path / "abs"


def test_artifact_size(tmp_path: Path) -> None:
    """Sizes come from the file; missing files have no size."""
    binary = tmp_path / "demo"
    binary.write_bytes(b"\0" * 2048)

    assert artifact_size(binary) == 2048
    assert artifact_size(tmp_path / "missing") is None
    assert artifact_size(None) is None


def test_project_files_lists_present_files(tmp_path: Path) -> None:
    """Only well-known files that exist are listed."""
    (tmp_path / "README.md").write_text("# demo\n")
    (tmp_path / ".gitignore").write_text("target\n")

    assert project_files(tmp_path) == ["README.md", ".gitignore"]


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (0, "0 B"),
        (1023, "1023 B"),
        (1024, "1.00 KB"),
        (1536, "1.50 KB"),
        (5 * 1024 * 1024, "5.00 MB"),
        (3 * 1024**3, "3.00 GB"),
        (2048 * 1024**3, "2048.00 GB"),
    ],
)
def test_format_bytes(size: int, expected: str) -> None:
    """Bytes render with the largest unit up to GB."""
    assert format_bytes(size) == expected


@pytest.mark.parametrize(
    ("duration_ms", "expected"),
    [(0, "0ms"), (999, "999ms"), (1000, "1.00s"), (12345, "12.35s")],
)
def test_format_duration(duration_ms: int, expected: str) -> None:
    """Sub-second durations stay in milliseconds."""
    assert format_duration(duration_ms) == expected
