"""Tests for the built-in pipeline declarations."""
from __future__ import annotations

from pathlib import Path

import pytest

from oxyctl.config import load_config
from oxyctl.parsers import ParserKind
from oxyctl.pipelines import RunMode
from oxyctl.pipelines.registry import PipelineNotFoundError, PipelineRegistry


def _registry(tmp_path: Path, **overrides: object) -> PipelineRegistry:
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={"project_dir": str(tmp_path), **overrides},
    )
    return PipelineRegistry.from_config(config)


def test_standard_pipelines_are_registered(tmp_path: Path) -> None:
    """The cargo pipelines and the dependency reports are available by name."""
    registry = _registry(tmp_path)

    assert registry.names() == [
        "check",
        "build",
        "test",
        "ci",
        "deps-tree",
        "deps-outdated",
        "deps-audit",
    ]
    assert "ci" in registry
    assert [pipeline.name for pipeline in registry] == registry.names()


def test_check_pipeline_is_sequential(tmp_path: Path) -> None:
    """Format, lint and compile checks run one after another."""
    pipeline = _registry(tmp_path).get("check")

    assert [[spec.tool for spec in stage] for stage in pipeline.stages] == [
        ["rustfmt"],
        ["clippy"],
        ["cargo-check"],
    ]
    assert pipeline.mode is RunMode.FAIL_FAST
    assert pipeline.warn_exit_code == 2
    rustfmt, clippy, _ = pipeline.steps
    assert rustfmt.args == ("fmt", "--all", "--", "--check")
    assert rustfmt.parser is ParserKind.RUSTFMT
    assert clippy.category == "lint"
    assert all(spec.cwd == tmp_path for spec in pipeline.steps)


def test_ci_pipeline_runs_lint_and_tests_together(tmp_path: Path) -> None:
    """ci formats first, then runs clippy and cargo test in one stage."""
    pipeline = _registry(tmp_path).get("ci")

    first, second = pipeline.stages
    assert [spec.tool for spec in first] == ["rustfmt"]
    assert [spec.tool for spec in second] == ["clippy", "cargo-test"]
    assert pipeline.mode is RunMode.COLLECT_ALL
    assert second[1].parser is ParserKind.CARGO_TEST


def test_lint_and_build_flags_follow_config(tmp_path: Path) -> None:
    """deny_warnings and release_build shape the cargo arguments."""
    registry = _registry(
        tmp_path, lint={"deny_warnings": True}, build={"release": True}
    )

    clippy = registry.get("check").steps[1]
    build = registry.get("build").steps[0]

    assert clippy.args[-3:] == ("--", "-D", "warnings")
    assert build.args == ("build", "--release")
    assert _registry(tmp_path, build={"release": False}).get("build").steps[0].args == ("build",)


def test_pipeline_timeout_is_copied_to_steps(tmp_path: Path) -> None:
    """A per-pipeline timeout applies to each of its steps."""
    registry = _registry(tmp_path, pipelines={"test": {"timeout": 12}})

    (spec,) = registry.get("test").steps

    assert spec.timeout == 12


def test_dependency_pipelines_request_json_reports(tmp_path: Path) -> None:
    """outdated and audit ask cargo for JSON; only audit warnings change the exit code."""
    registry = _registry(tmp_path)

    (tree,) = registry.get("deps-tree").steps
    (outdated,) = registry.get("deps-outdated").steps
    (audit,) = registry.get("deps-audit").steps

    assert tree.args == ("tree",)
    assert tree.parser is ParserKind.RAW
    assert outdated.args == ("outdated", "--format", "json")
    assert outdated.parser is ParserKind.CARGO_OUTDATED
    assert audit.args == ("audit", "--json")
    assert audit.category == "security"
    assert registry.get("deps-outdated").warn_exit_code == 0
    assert registry.get("deps-audit").warn_exit_code == 2


def test_unknown_pipeline_raises_with_known_names(tmp_path: Path) -> None:
    """Lookup failures list the registered pipelines."""
    with pytest.raises(PipelineNotFoundError) as excinfo:
        _registry(tmp_path).get("deploy")

    assert "deploy" in str(excinfo.value)
    assert "check" in str(excinfo.value)
    assert isinstance(excinfo.value, KeyError)
