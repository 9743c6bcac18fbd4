"""Toolchain inspection: tool versions, inventory and environment summary."""
from __future__ import annotations

import concurrent.futures
import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from ..config import ToolchainConfig
from ..runner import CommandSpec, ExecutionResult, FailureKind, ProcessRunner

_RELEASE_PATTERN = re.compile(r"(\d+\.\d+\.\d+)")

ENV_VARIABLES = ("CARGO_HOME", "RUSTUP_HOME", "RUST_BACKTRACE", "RUSTFLAGS", "CARGO_TARGET_DIR")

# (display name, argv); "cargo", "rustc" and "rustup" are swapped for the configured binaries.
RUST_TOOLS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("rustc", ("rustc", "--version")),
    ("cargo", ("cargo", "--version")),
    ("rustfmt", ("cargo", "fmt", "--version")),
    ("clippy", ("cargo", "clippy", "--version")),
    ("rustup", ("rustup", "--version")),
    ("cargo-watch", ("cargo", "watch", "--version")),
    ("cargo-edit", ("cargo", "add", "--version")),
    ("cargo-audit", ("cargo", "audit", "--version")),
    ("cargo-outdated", ("cargo", "outdated", "--version")),
    ("cargo-expand", ("cargo", "expand", "--version")),
    ("rust-analyzer", ("rust-analyzer", "--version")),
    ("gdb", ("gdb", "--version")),
    ("lldb", ("lldb", "--version")),
    ("valgrind", ("valgrind", "--version")),
)


def parse_release(text: str | None) -> Version | None:
    """Extract the first ``X.Y.Z`` release from *text*."""
    if not text:
        return None
    match = _RELEASE_PATTERN.search(text)
    if match is None:
        return None
    try:
        return Version(match.group(1))
    except InvalidVersion:  # pragma: no cover - the pattern only admits valid releases
        return None


def _first_line(text: str) -> str | None:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return None


@dataclass(slots=True, frozen=True)
class ToolVersion:
    """Outcome of asking one tool for its version."""

    name: str
    command: tuple[str, ...]
    status: str
    version: str | None = None
    detail: str | None = None

    @property
    def found(self) -> bool:
        """Return ``True`` when the tool answered successfully."""
        return self.status == "available"

    @property
    def release(self) -> Version | None:
        """Return the parsed ``X.Y.Z`` release, if any."""
        return parse_release(self.version)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "status": self.status}
        if self.version:
            payload["version"] = self.version
        if self.detail:
            payload["detail"] = self.detail
        return payload


class ToolchainProvider:
    """Query the Rust toolchain through :class:`ProcessRunner`."""

    def __init__(
        self,
        runner: ProcessRunner,
        toolchain: ToolchainConfig | None = None,
        *,
        timeout: float = 5.0,
        cwd: Path | None = None,
    ) -> None:
        """Store the runner, configured binaries and per-call timeout."""
        self._runner = runner
        self._toolchain = toolchain or ToolchainConfig()
        self._timeout = timeout
        self._cwd = cwd

    def resolve(self, argv: Sequence[str]) -> tuple[str, ...]:
        """Replace well-known executables with the configured binaries."""
        mapping = {
            "cargo": self._toolchain.cargo_bin,
            "rustc": self._toolchain.rustc_bin,
            "rustup": self._toolchain.rustup_bin,
            "git": self._toolchain.git_bin,
        }
        head, *rest = argv
        return (mapping.get(head, head), *rest)

    def execute(self, argv: Sequence[str]) -> ExecutionResult:
        """Run *argv* (after :meth:`resolve`) with the short probe timeout."""
        resolved = self.resolve(argv)
        spec = CommandSpec(
            tool=resolved[0],
            executable=resolved[0],
            args=tuple(resolved[1:]),
            cwd=self._cwd,
            timeout=self._timeout,
        )
        return self._runner.run(spec)

    def version(self, name: str, argv: Sequence[str]) -> ToolVersion:
        """Run a version command and classify the answer."""
        resolved = self.resolve(argv)
        result = self.execute(argv)
        if result.failure is FailureKind.TOOL_NOT_FOUND:
            return ToolVersion(name=name, command=resolved, status="not_found")
        if result.failure is FailureKind.TIMEOUT:
            return ToolVersion(
                name=name, command=resolved, status="unresponsive", detail=result.reason
            )
        if result.failure is not None or result.exit_code != 0:
            detail = _first_line(result.stderr) or result.reason
            return ToolVersion(name=name, command=resolved, status="error", detail=detail)
        version = _first_line(result.stdout) or _first_line(result.stderr) or "unknown version"
        return ToolVersion(name=name, command=resolved, status="available", version=version)

    def inventory(
        self,
        tools: Sequence[tuple[str, Sequence[str]]] = RUST_TOOLS,
        *,
        max_concurrency: int = 8,
    ) -> list[ToolVersion]:
        """Probe every tool concurrently; results keep the declared order."""
        results: list[ToolVersion | None] = [None] * len(tools)
        workers = max(1, min(max_concurrency, len(tools) or 1))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_index = {
                executor.submit(self.version, name, argv): index
                for index, (name, argv) in enumerate(tools)
            }
            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()
        return [result for result in results if result is not None]

    def host_triple(self) -> str | None:
        """Return the host triple reported by ``rustc -vV``."""
        result = self.execute(("rustc", "-vV"))
        if not result.succeeded:
            return None
        for line in result.stdout.splitlines():
            if line.startswith("host:"):
                return line.split(":", 1)[1].strip()
        return None

    def active_toolchain(self) -> str | None:
        """Return ``rustup show active-toolchain`` output."""
        result = self.execute(("rustup", "show", "active-toolchain"))
        return _first_line(result.stdout) if result.succeeded else None

    def installed_toolchains(self) -> list[str]:
        """Return the toolchains listed by ``rustup toolchain list``."""
        result = self.execute(("rustup", "toolchain", "list"))
        if not result.succeeded:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def toolchains(self) -> list[dict[str, object]]:
        """Split ``rustup toolchain list`` lines into names and markers.

        rustup tags entries as ``(default)``, ``(override)`` or, since 1.28,
        ``(active, default)``.
        """
        entries: list[dict[str, object]] = []
        for line in self.installed_toolchains():
            name, _, rest = line.partition(" ")
            markers = {marker.strip() for marker in rest.strip().strip("()").split(",")}
            entries.append(
                {
                    "name": name,
                    "is_default": "default" in markers,
                    "is_active": bool(markers & {"active", "override"}),
                    "status": "installed",
                }
            )
        return entries

    def environment(self, env: Mapping[str, str] | None = None) -> dict[str, object]:
        """Summarise the toolchain environment."""
        environ = os.environ if env is None else env
        rustc = self.version("rustc", ("rustc", "--version"))
        cargo = self.version("cargo", ("cargo", "--version"))
        return {
            "rustc": rustc.version,
            "cargo": cargo.version,
            "active_toolchain": self.active_toolchain(),
            "installed_toolchains": self.installed_toolchains(),
            "host": self.host_triple(),
            "variables": {name: environ.get(name) for name in ENV_VARIABLES},
        }


__all__ = [
    "ENV_VARIABLES",
    "RUST_TOOLS",
    "ToolVersion",
    "ToolchainProvider",
    "parse_release",
]
