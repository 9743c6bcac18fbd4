"""Tests for the built-in doctor probes using a stubbed toolchain."""
from __future__ import annotations

import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

from oxyctl.config import AppConfig, load_config
from oxyctl.doctor import (
    PROBE_CATEGORY_VALUES,
    UNRESPONSIVE_REMEDIATION,
    DoctorEngine,
    ProbeContext,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    collect_probes,
)
from oxyctl.providers.toolchain import ToolVersion
from oxyctl.runner import ProcessRunner


class StubToolchain:
    """Answers version queries from a name -> ToolVersion table."""

    def __init__(self, answers: Mapping[str, ToolVersion]) -> None:
        self.answers = dict(answers)

    def version(self, name: str, argv: Sequence[str]) -> ToolVersion:
        return self.answers.get(
            name, ToolVersion(name=name, command=tuple(argv), status="not_found")
        )


def _available(name: str, version: str) -> ToolVersion:
    return ToolVersion(name=name, command=(name, "--version"), status="available", version=version)


HEALTHY = {
    "rustc": _available("rustc", "rustc 1.79.0 (129f3b996 2024-06-10)"),
    "cargo": _available("cargo", "cargo 1.79.0 (ffa9cf99a 2024-06-03)"),
    "rustup": _available("rustup", "rustup 1.27.1 (54dd3d00f 2024-04-24)"),
    "clippy": _available("clippy", "clippy 0.1.79"),
    "rustfmt": _available("rustfmt", "rustfmt 1.7.0-stable"),
}


def _config(tmp_path: Path, **overrides: object) -> AppConfig:
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={"project_dir": str(tmp_path), **overrides},
    )


def _context(
    config: AppConfig,
    answers: Mapping[str, ToolVersion] = HEALTHY,
    env: Mapping[str, str] | None = None,
) -> ProbeContext:
    return ProbeContext(
        config=config,
        runner=ProcessRunner(),
        toolchain=StubToolchain(answers),  # type: ignore[arg-type]
        options=ProbeExecutorOptions(max_concurrency=4, exec_timeout=2.0),
        env=dict(env or {}),
    )


def _run(context: ProbeContext) -> dict[str, ProbeResult]:
    report = DoctorEngine(context).run(collect_probes(context))
    return {result.id: result for result in report.results}


def test_probe_ids_are_unique_and_categorised() -> None:
    """Every probe has a distinct id and a known category."""
    probes = collect_probes()
    ids = [probe.id for probe in probes]

    assert len(ids) == len(set(ids))
    assert {probe.category for probe in probes} <= set(PROBE_CATEGORY_VALUES)
    assert {"toolchain-rustc", "toolchain-cargo", "tools-linker", "project-manifest"} <= set(ids)


def test_healthy_toolchain_probes_are_green(tmp_path: Path) -> None:
    """Answering tools yield green version probes carrying the version line."""
    results = _run(_context(_config(tmp_path)))

    assert results["toolchain-rustc"].status is ProbeStatus.GREEN
    assert results["toolchain-rustc"].message.startswith("rustc 1.79.0")
    assert results["tools-clippy"].status is ProbeStatus.GREEN
    assert results["version-mismatch"].status is ProbeStatus.GREEN


def test_missing_rustc_is_red_with_rustup_hint(tmp_path: Path) -> None:
    """A missing compiler fails doctor and points at rustup."""
    answers = {name: tool for name, tool in HEALTHY.items() if name != "rustc"}

    results = _run(_context(_config(tmp_path), answers))

    rustc = results["toolchain-rustc"]
    assert rustc.status is ProbeStatus.RED
    assert "not found" in rustc.message
    assert rustc.remediation is not None and "rustup" in rustc.remediation
    assert results["version-mismatch"].status is ProbeStatus.YELLOW


def test_missing_optional_components_are_warnings(tmp_path: Path) -> None:
    """clippy, rustfmt and rustup are optional: missing means yellow."""
    answers = {name: HEALTHY[name] for name in ("rustc", "cargo")}

    results = _run(_context(_config(tmp_path), answers))

    assert results["tools-clippy"].status is ProbeStatus.YELLOW
    assert results["tools-clippy"].remediation == "rustup component add clippy"
    assert results["tools-rustfmt"].status is ProbeStatus.YELLOW
    assert results["toolchain-rustup"].status is ProbeStatus.YELLOW


def test_unresponsive_tool_is_reported(tmp_path: Path) -> None:
    """A version query that timed out is red with the unresponsive hint."""
    answers = dict(HEALTHY)
    answers["cargo"] = ToolVersion(
        name="cargo", command=("cargo", "--version"), status="unresponsive"
    )

    results = _run(_context(_config(tmp_path), answers))

    assert results["toolchain-cargo"].status is ProbeStatus.RED
    assert results["toolchain-cargo"].remediation == UNRESPONSIVE_REMEDIATION
    assert results["version-mismatch"].remediation == UNRESPONSIVE_REMEDIATION


def test_unresponsive_optional_tools_fail_doctor(tmp_path: Path) -> None:
    """Timeouts on rustup and clippy are failures, not optional warnings."""
    answers = dict(HEALTHY)
    answers["rustup"] = ToolVersion(
        name="rustup", command=("rustup", "--version"), status="unresponsive"
    )
    answers["clippy"] = ToolVersion(
        name="clippy", command=("cargo", "clippy", "--version"), status="unresponsive"
    )
    context = _context(_config(tmp_path), answers)

    report = DoctorEngine(context).run(collect_probes(context))
    results = {result.id: result for result in report.results}

    for probe_id in ("toolchain-rustup", "tools-clippy"):
        assert results[probe_id].status is ProbeStatus.RED
        assert results[probe_id].remediation == UNRESPONSIVE_REMEDIATION
    assert report.summary.exit_code == 1


def test_rustc_cargo_release_mismatch_warns(tmp_path: Path) -> None:
    """Different minor releases of rustc and cargo are a warning."""
    answers = dict(HEALTHY)
    answers["cargo"] = _available("cargo", "cargo 1.74.1 (ecb9851af 2023-10-18)")

    results = _run(_context(_config(tmp_path), answers))

    mismatch = results["version-mismatch"]
    assert mismatch.status is ProbeStatus.YELLOW
    assert "rustc-cargo-mismatch" in mismatch.warnings


def test_rustc_older_than_rust_version_fails(tmp_path: Path) -> None:
    """Cargo.toml rust-version newer than rustc is a failure."""
    (tmp_path / "Cargo.toml").write_text(
        '[package]\nname = "demo"\nversion = "0.1.0"\nrust-version = "1.80"\n'
    )

    results = _run(_context(_config(tmp_path)))

    mismatch = results["version-mismatch"]
    assert mismatch.status is ProbeStatus.RED
    assert "1.80" in mismatch.message


def test_project_manifest_states(tmp_path: Path) -> None:
    """No manifest warns, a valid one passes, a broken one fails."""
    context = _context(_config(tmp_path))
    assert _run(context)["project-manifest"].status is ProbeStatus.YELLOW

    manifest = tmp_path / "Cargo.toml"
    manifest.write_text('[package]\nname = "demo"\nversion = "0.1.0"\n')
    result = _run(context)["project-manifest"]
    assert result.status is ProbeStatus.GREEN
    assert "demo" in result.message

    manifest.write_text("[package\nname = ")
    assert _run(context)["project-manifest"].status is ProbeStatus.RED


def test_linker_probe_uses_configured_linker(tmp_path: Path) -> None:
    """An executable linker path is green; an unknown name is red."""
    present = _run(_context(_config(tmp_path, toolchain={"linker": sys.executable})))
    missing = _run(
        _context(_config(tmp_path, toolchain={"linker": "oxyctl-missing-linker"}), env={"PATH": ""})
    )

    assert present["tools-linker"].status is ProbeStatus.GREEN
    assert missing["tools-linker"].status is ProbeStatus.RED


def test_cargo_bin_on_path_is_green(tmp_path: Path) -> None:
    """CARGO_HOME/bin listed on PATH passes the PATH probe."""
    cargo_home = tmp_path / "cargo-home"
    (cargo_home / "bin").mkdir(parents=True)
    env = {"CARGO_HOME": str(cargo_home), "PATH": str(cargo_home / "bin")}

    results = _run(_context(_config(tmp_path), env=env))

    assert results["path-cargo-bin"].status is ProbeStatus.GREEN
    assert results["env-cargo-home"].status is ProbeStatus.GREEN


def test_cargo_bin_missing_from_path_is_red(tmp_path: Path) -> None:
    """Neither the bin directory nor cargo on PATH fails the PATH probe."""
    env = {
        "CARGO_HOME": str(tmp_path / "cargo-home"),
        "PATH": str(tmp_path / "empty"),
    }
    config = _config(tmp_path, toolchain={"cargo_bin": "oxyctl-missing-cargo"})

    results = _run(_context(config, env=env))

    assert results["path-cargo-bin"].status is ProbeStatus.RED


def test_cargo_home_pointing_nowhere_is_a_warning(tmp_path: Path) -> None:
    """A CARGO_HOME that does not exist is downgraded to yellow."""
    env = {"CARGO_HOME": str(tmp_path / "missing")}

    results = _run(_context(_config(tmp_path), env=env))

    cargo_home = results["env-cargo-home"]
    assert cargo_home.status is ProbeStatus.YELLOW
    assert "missing directory" in cargo_home.message
    assert cargo_home.remediation is not None
