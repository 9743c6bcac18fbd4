"""Cargo project helpers: manifest metadata, build artifacts and formatting."""
from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

MANIFEST_NAME = "Cargo.toml"
COMMON_FILES = (
    "README.md",
    "LICENSE",
    "CHANGELOG.md",
    ".gitignore",
    "rust-toolchain.toml",
)


class ManifestError(RuntimeError):
    """Raised when ``Cargo.toml`` exists but cannot be read."""


@dataclass(slots=True, frozen=True)
class CargoManifest:
    """Subset of ``Cargo.toml`` used by oxyctl."""

    path: Path
    name: str | None = None
    version: str | None = None
    edition: str | None = None
    description: str | None = None
    rust_version: str | None = None
    authors: tuple[str, ...] = ()
    dependencies: int = 0
    dev_dependencies: int = 0
    build_dependencies: int = 0
    is_workspace: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "path": str(self.path),
            "name": self.name,
            "version": self.version,
            "edition": self.edition,
            "description": self.description,
            "rust_version": self.rust_version,
            "authors": list(self.authors),
            "dependencies_count": self.dependencies,
            "dev_dependencies_count": self.dev_dependencies,
            "build_dependencies_count": self.build_dependencies,
            "is_workspace": self.is_workspace,
        }


def manifest_path(project_dir: Path) -> Path:
    """Return the location of ``Cargo.toml`` for *project_dir*."""
    return Path(project_dir) / MANIFEST_NAME


def is_cargo_project(project_dir: Path) -> bool:
    """Return ``True`` when *project_dir* contains ``Cargo.toml``."""
    return manifest_path(project_dir).is_file()


def load_manifest(project_dir: Path) -> CargoManifest | None:
    """Read ``Cargo.toml`` from *project_dir*; ``None`` when absent."""
    path = manifest_path(project_dir)
    if not path.is_file():
        return None
    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ManifestError(f"Failed to parse {path}: {exc}") from exc
    except OSError as exc:
        raise ManifestError(f"Unable to read {path}: {exc}") from exc

    package = data.get("package")
    package = package if isinstance(package, Mapping) else {}
    authors = package.get("authors")
    return CargoManifest(
        path=path,
        name=_string(package.get("name")),
        version=_string(package.get("version")),
        edition=_string(package.get("edition")),
        description=_string(package.get("description")),
        rust_version=_string(package.get("rust-version")),
        authors=tuple(str(item) for item in authors) if isinstance(authors, list) else (),
        dependencies=_table_size(data.get("dependencies")),
        dev_dependencies=_table_size(data.get("dev-dependencies")),
        build_dependencies=_table_size(data.get("build-dependencies")),
        is_workspace=isinstance(data.get("workspace"), Mapping),
    )


def _string(value: object) -> str | None:
    # Workspace-inherited fields look like ``{ workspace = true }``.
    return value if isinstance(value, str) else None


def _table_size(value: object) -> int:
    return len(value) if isinstance(value, Mapping) else 0


def target_dir(project_dir: Path, env: Mapping[str, str] | None = None) -> Path:
    """Return cargo's target directory, honouring ``CARGO_TARGET_DIR``."""
    environ = os.environ if env is None else env
    override = environ.get("CARGO_TARGET_DIR")
    if override:
        candidate = Path(override).expanduser()
        return candidate if candidate.is_absolute() else Path(project_dir) / candidate
    return Path(project_dir) / "target"


def artifact_path(
    project_dir: Path,
    manifest: CargoManifest,
    *,
    release: bool = True,
    env: Mapping[str, str] | None = None,
) -> Path | None:
    """Return the expected binary path for *manifest*'s package."""
    if not manifest.name:
        return None
    profile = "release" if release else "debug"
    suffix = ".exe" if os.name == "nt" else ""
    return target_dir(project_dir, env) / profile / f"{manifest.name}{suffix}"


def artifact_size(path: Path | None) -> int | None:
    """Return the size of *path* in bytes, or ``None`` when missing."""
    if path is None:
        return None
    try:
        return path.stat().st_size
    except OSError:
        return None


def project_files(project_dir: Path) -> list[str]:
    """Return the well-known project files present in *project_dir*."""
    return [name for name in COMMON_FILES if (Path(project_dir) / name).exists()]


def format_bytes(size: int) -> str:
    """Render *size* using B/KB/MB/GB with two decimals above bytes."""
    units = ("B", "KB", "MB", "GB")
    value = float(size)
    index = 0
    while value >= 1024.0 and index < len(units) - 1:
        value /= 1024.0
        index += 1
    if index == 0:
        return f"{size} B"
    return f"{value:.2f} {units[index]}"


def format_duration(duration_ms: int) -> str:
    """Render milliseconds as ``NNNms`` below a second, else ``N.NNs``."""
    if duration_ms < 1000:
        return f"{duration_ms}ms"
    return f"{duration_ms / 1000:.2f}s"


__all__ = [
    "COMMON_FILES",
    "CargoManifest",
    "ManifestError",
    "artifact_path",
    "artifact_size",
    "format_bytes",
    "format_duration",
    "is_cargo_project",
    "load_manifest",
    "manifest_path",
    "project_files",
    "target_dir",
]
