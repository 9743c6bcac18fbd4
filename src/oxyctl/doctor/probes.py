"""Probe registration entry point for the doctor command."""

from __future__ import annotations

import os
import platform
import shutil
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .. import __version__
from ..project import ManifestError, load_manifest
from ..providers.toolchain import ToolVersion
from .models import (
    UNRESPONSIVE_REMEDIATION,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
)

RUSTUP_REMEDIATION = "Install the Rust toolchain via rustup: https://rustup.rs"


def collect_probes(context: ProbeContext | None = None) -> Sequence[ProbeDefinition]:
    """Return the set of probes that should run for the current context."""
    probes: list[ProbeDefinition] = []
    probes.extend(_toolchain_probes())
    probes.extend(_tools_probes())
    probes.extend(_path_probes())
    probes.extend(_env_probes())
    probes.extend(_project_probes())
    return tuple(probes)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_probe(
    probe_id: str,
    category: ProbeCategory,
    handler: Callable[[ProbeContext], ProbeResult],
    *,
    severity: ProbeStatus = ProbeStatus.RED,
    remediation: str | None = None,
) -> ProbeDefinition:
    return ProbeDefinition(
        id=probe_id,
        category=category,
        run=handler,
        severity=severity,
        remediation=remediation,
    )


def _command_exists(command: str, env: dict[str, str] | None = None) -> bool:
    path = Path(command)
    if path.is_absolute() or (path.parent and str(path.parent) not in {"", "."}):
        return path.exists() and os.access(path, os.X_OK)
    search_path = env.get("PATH") if env else None
    resolved = shutil.which(command, path=search_path)
    return resolved is not None and os.access(resolved, os.X_OK)


def _version_result(
    probe_id: str,
    category: ProbeCategory,
    tool: ToolVersion,
    *,
    missing_message: str,
) -> ProbeResult:
    if tool.found:
        return ProbeResult(
            id=probe_id,
            category=category,
            status=ProbeStatus.GREEN,
            message=tool.version or f"{tool.name} available.",
            data={"command": list(tool.command), "version": tool.version},
        )
    if tool.status == "unresponsive":
        return ProbeResult(
            id=probe_id,
            category=category,
            status=ProbeStatus.RED,
            message=f"'{' '.join(tool.command)}' did not answer in time.",
            remediation=UNRESPONSIVE_REMEDIATION,
            warnings=("timeout",),
        )
    if tool.status == "not_found":
        return ProbeResult(
            id=probe_id,
            category=category,
            status=ProbeStatus.RED,
            message=missing_message,
            warnings=(f"missing:{tool.name}",),
        )
    return ProbeResult(
        id=probe_id,
        category=category,
        status=ProbeStatus.RED,
        message=f"'{' '.join(tool.command)}' failed: {tool.detail}",
        data={"command": list(tool.command)},
    )


def _cargo_home(env: dict[str, str]) -> Path:
    configured = env.get("CARGO_HOME")
    return Path(configured).expanduser() if configured else Path.home() / ".cargo"


# ---------------------------------------------------------------------------
# Toolchain probes
# ---------------------------------------------------------------------------


def _toolchain_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe(
            "toolchain-rustc",
            "toolchain",
            _probe_version("rustc", ("rustc", "--version")),
            remediation=RUSTUP_REMEDIATION,
        ),
        _make_probe(
            "toolchain-cargo",
            "toolchain",
            _probe_version("cargo", ("cargo", "--version")),
            remediation=RUSTUP_REMEDIATION,
        ),
        _make_probe(
            "toolchain-rustup",
            "toolchain",
            _probe_version("rustup", ("rustup", "--version")),
            severity=ProbeStatus.YELLOW,
            remediation=f"Toolchain management is unavailable. {RUSTUP_REMEDIATION}",
        ),
    )


def _probe_version(
    name: str,
    argv: tuple[str, ...],
    *,
    category: ProbeCategory = "toolchain",
) -> Callable[[ProbeContext], ProbeResult]:
    probe_id = f"{category}-{name}"

    def _run(context: ProbeContext) -> ProbeResult:
        tool = context.toolchain.version(name, argv)
        return _version_result(
            probe_id,
            category,
            tool,
            missing_message=f"'{tool.command[0]}' not found on PATH.",
        )

    return _run


# ---------------------------------------------------------------------------
# Tool availability probes
# ---------------------------------------------------------------------------


def _tools_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe(
            "tools-clippy",
            "tools",
            _probe_version("clippy", ("cargo", "clippy", "--version"), category="tools"),
            severity=ProbeStatus.YELLOW,
            remediation="rustup component add clippy",
        ),
        _make_probe(
            "tools-rustfmt",
            "tools",
            _probe_version("rustfmt", ("cargo", "fmt", "--version"), category="tools"),
            severity=ProbeStatus.YELLOW,
            remediation="rustup component add rustfmt",
        ),
        _make_probe(
            "tools-linker",
            "tools",
            _probe_tools_linker,
            remediation=(
                "Install a C toolchain providing the linker "
                "(build-essential, Xcode command line tools, or MSVC build tools)."
            ),
        ),
    )


def _probe_tools_linker(context: ProbeContext) -> ProbeResult:
    linker = context.config.toolchain.linker
    if _command_exists(linker, dict(context.env)):
        return ProbeResult(
            id="tools-linker",
            category="tools",
            status=ProbeStatus.GREEN,
            message=f"Linker '{linker}' available.",
        )
    return ProbeResult(
        id="tools-linker",
        category="tools",
        status=ProbeStatus.RED,
        message=f"Linker '{linker}' not found on PATH.",
        warnings=(f"missing:{linker}",),
    )


# ---------------------------------------------------------------------------
# PATH probes
# ---------------------------------------------------------------------------


def _path_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe(
            "path-cargo-bin",
            "path",
            _probe_path_cargo_bin,
            remediation="Add the cargo bin directory (usually ~/.cargo/bin) to PATH.",
        ),
    )


def _probe_path_cargo_bin(context: ProbeContext) -> ProbeResult:
    env = dict(context.env)
    bin_dir = _cargo_home(env) / "bin"
    entries = [entry for entry in env.get("PATH", "").split(os.pathsep) if entry]
    normalized = {os.path.normcase(os.path.normpath(entry)) for entry in entries}
    in_path = os.path.normcase(os.path.normpath(str(bin_dir))) in normalized
    data = {"cargo_bin_dir": str(bin_dir), "path_entries": len(entries)}
    if in_path:
        return ProbeResult(
            id="path-cargo-bin",
            category="path",
            status=ProbeStatus.GREEN,
            message=f"{bin_dir} is on PATH.",
            data=data,
        )
    cargo = context.config.toolchain.cargo_bin
    if _command_exists(cargo, env):
        return ProbeResult(
            id="path-cargo-bin",
            category="path",
            status=ProbeStatus.YELLOW,
            message=f"{bin_dir} is not on PATH; '{cargo}' resolves elsewhere.",
            data=data,
            warnings=("cargo-bin-not-on-path",),
        )
    return ProbeResult(
        id="path-cargo-bin",
        category="path",
        status=ProbeStatus.RED,
        message=f"{bin_dir} is not on PATH and '{cargo}' cannot be resolved.",
        data=data,
    )


# ---------------------------------------------------------------------------
# Environment probes
# ---------------------------------------------------------------------------


def _env_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe(
            "env-cargo-home",
            "env",
            _probe_home_variable("CARGO_HOME", ".cargo", "env-cargo-home"),
            severity=ProbeStatus.YELLOW,
            remediation="Point CARGO_HOME at an existing directory or unset it.",
        ),
        _make_probe(
            "env-rustup-home",
            "env",
            _probe_home_variable("RUSTUP_HOME", ".rustup", "env-rustup-home"),
            severity=ProbeStatus.YELLOW,
            remediation="Point RUSTUP_HOME at an existing directory or unset it.",
        ),
        _make_probe("env-platform", "env", _probe_env_platform),
    )


def _probe_home_variable(
    variable: str,
    default_name: str,
    probe_id: str,
) -> Callable[[ProbeContext], ProbeResult]:
    def _run(context: ProbeContext) -> ProbeResult:
        configured = context.env.get(variable)
        if configured:
            path = Path(configured).expanduser()
            if path.is_dir():
                return ProbeResult(
                    id=probe_id,
                    category="env",
                    status=ProbeStatus.GREEN,
                    message=f"{variable}={path}",
                    data={"path": str(path), "source": "env"},
                )
            return ProbeResult(
                id=probe_id,
                category="env",
                status=ProbeStatus.RED,
                message=f"{variable} points to missing directory {path}.",
                data={"path": str(path), "source": "env"},
            )
        default = Path.home() / default_name
        if default.is_dir():
            return ProbeResult(
                id=probe_id,
                category="env",
                status=ProbeStatus.GREEN,
                message=f"{variable} not set; using default {default}.",
                data={"path": str(default), "source": "default"},
            )
        return ProbeResult(
            id=probe_id,
            category="env",
            status=ProbeStatus.RED,
            message=f"{variable} not set and {default} does not exist.",
            data={"path": str(default), "source": "default"},
        )

    return _run


def _probe_env_platform(_context: ProbeContext) -> ProbeResult:
    return ProbeResult(
        id="env-platform",
        category="env",
        status=ProbeStatus.GREEN,
        message=f"Platform: {platform.platform()}",
        data={
            "python": platform.python_version(),
            "executable": sys.executable,
            "oxyctl": __version__,
        },
    )


# ---------------------------------------------------------------------------
# Project probes
# ---------------------------------------------------------------------------


def _project_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe(
            "version-mismatch",
            "toolchain",
            _probe_version_mismatch,
            remediation="Run `rustup update` so rustc and cargo come from the same release.",
        ),
        _make_probe(
            "project-manifest",
            "project",
            _probe_project_manifest,
            remediation="Run oxyctl inside a Cargo project or pass --project-dir.",
        ),
    )


def _minimum_rust_version(context: ProbeContext) -> Version | None:
    try:
        manifest = load_manifest(context.project_dir)
    except ManifestError:
        return None
    if manifest is None or not manifest.rust_version:
        return None
    try:
        return Version(manifest.rust_version)
    except InvalidVersion:
        return None


def _probe_version_mismatch(context: ProbeContext) -> ProbeResult:
    rustc = context.toolchain.version("rustc", ("rustc", "--version"))
    cargo = context.toolchain.version("cargo", ("cargo", "--version"))
    if rustc.status == "unresponsive" or cargo.status == "unresponsive":
        return ProbeResult(
            id="version-mismatch",
            category="toolchain",
            status=ProbeStatus.RED,
            message="Toolchain did not answer version queries in time.",
            remediation=UNRESPONSIVE_REMEDIATION,
            warnings=("timeout",),
        )
    rustc_release = rustc.release
    cargo_release = cargo.release
    if rustc_release is None or cargo_release is None:
        return ProbeResult(
            id="version-mismatch",
            category="toolchain",
            status=ProbeStatus.YELLOW,
            message="Version comparison skipped; rustc or cargo version unavailable.",
            warnings=("version-unknown",),
        )

    data: dict[str, object] = {"rustc": str(rustc_release), "cargo": str(cargo_release)}
    required = _minimum_rust_version(context)
    if required is not None:
        data["rust_version"] = str(required)
        if rustc_release < required:
            return ProbeResult(
                id="version-mismatch",
                category="toolchain",
                status=ProbeStatus.RED,
                message=(
                    f"rustc {rustc_release} is older than the project's "
                    f"rust-version {required}."
                ),
                remediation=f"Run `rustup update` or install Rust {required} or newer.",
                data=data,
            )

    if rustc_release.release[:2] != cargo_release.release[:2]:
        return ProbeResult(
            id="version-mismatch",
            category="toolchain",
            status=ProbeStatus.YELLOW,
            message=(
                f"rustc {rustc_release} and cargo {cargo_release} "
                "come from different releases."
            ),
            data=data,
            warnings=("rustc-cargo-mismatch",),
        )
    return ProbeResult(
        id="version-mismatch",
        category="toolchain",
        status=ProbeStatus.GREEN,
        message=f"rustc {rustc_release} and cargo {cargo_release} match.",
        data=data,
    )


def _probe_project_manifest(context: ProbeContext) -> ProbeResult:
    try:
        manifest = load_manifest(context.project_dir)
    except ManifestError as exc:
        return ProbeResult(
            id="project-manifest",
            category="project",
            status=ProbeStatus.RED,
            message=str(exc),
            remediation="Fix the syntax error in Cargo.toml.",
        )
    if manifest is None:
        return ProbeResult(
            id="project-manifest",
            category="project",
            status=ProbeStatus.YELLOW,
            message=f"No Cargo.toml found in {context.project_dir}.",
            warnings=("not-a-cargo-project",),
        )
    label = manifest.name or ("workspace" if manifest.is_workspace else "package")
    return ProbeResult(
        id="project-manifest",
        category="project",
        status=ProbeStatus.GREEN,
        message=f"Cargo.toml found for {label}.",
        data=manifest.to_dict(),
    )


__all__ = ["collect_probes"]
