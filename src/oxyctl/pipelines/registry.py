"""Declarations of the built-in pipelines."""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING

from ..parsers import ParserKind
from ..runner import CommandSpec
from .models import Pipeline, RunMode

if TYPE_CHECKING:
    from ..config import AppConfig


class PipelineNotFoundError(KeyError):
    """Raised when a pipeline name is not registered."""

    def __init__(self, name: str, known: Iterable[str] = ()) -> None:
        """Record the missing *name* and the names that do exist."""
        super().__init__(name)
        self.name = name
        self.known = tuple(sorted(known))

    def __str__(self) -> str:
        """Return a readable message instead of ``KeyError``'s repr."""
        if self.known:
            return f"Unknown pipeline '{self.name}'. Known: {', '.join(self.known)}."
        return f"Unknown pipeline '{self.name}'."


class PipelineRegistry:
    """Lookup table from pipeline name to :class:`Pipeline`."""

    def __init__(self, pipelines: Iterable[Pipeline] = ()) -> None:
        """Register each of *pipelines*."""
        self._pipelines: dict[str, Pipeline] = {}
        for pipeline in pipelines:
            self.register(pipeline)

    def register(self, pipeline: Pipeline) -> None:
        """Add or replace *pipeline*."""
        self._pipelines[pipeline.name] = pipeline

    def get(self, name: str) -> Pipeline:
        """Return the pipeline called *name*."""
        try:
            return self._pipelines[name]
        except KeyError:
            raise PipelineNotFoundError(name, self._pipelines) from None

    def names(self) -> list[str]:
        """Return registered names in registration order."""
        return list(self._pipelines)

    def __contains__(self, name: object) -> bool:
        return name in self._pipelines

    def __iter__(self) -> Iterator[Pipeline]:
        return iter(self._pipelines.values())

    @classmethod
    def from_config(cls, config: AppConfig) -> PipelineRegistry:
        """Build the standard cargo pipelines for the configured project."""
        return cls(
            (
                check_pipeline(config),
                build_pipeline(config),
                cargo_test_pipeline(config),
                ci_pipeline(config),
                deps_tree_pipeline(config),
                deps_outdated_pipeline(config),
                deps_audit_pipeline(config),
            )
        )


def _cargo(
    config: AppConfig,
    pipeline: str,
    tool: str,
    args: Iterable[str],
    *,
    parser: ParserKind,
    category: str,
    required: bool = True,
) -> CommandSpec:
    return CommandSpec(
        tool=tool,
        executable=config.toolchain.cargo_bin,
        args=tuple(args),
        cwd=config.project_dir,
        timeout=config.pipeline(pipeline).timeout,
        parser=parser,
        required=required,
        category=category,
    )


def format_check_spec(config: AppConfig, pipeline: str = "check") -> CommandSpec:
    """Return the ``cargo fmt --check`` step."""
    return _cargo(
        config,
        pipeline,
        "rustfmt",
        ("fmt", "--all", "--", "--check"),
        parser=ParserKind.RUSTFMT,
        category="format",
    )


def lint_spec(config: AppConfig, pipeline: str = "check") -> CommandSpec:
    """Return the ``cargo clippy`` step."""
    args = ["clippy", "--all-targets"]
    if config.deny_warnings:
        args.extend(["--", "-D", "warnings"])
    return _cargo(config, pipeline, "clippy", args, parser=ParserKind.CARGO, category="lint")


def compile_check_spec(config: AppConfig, pipeline: str = "check") -> CommandSpec:
    """Return the ``cargo check`` step."""
    return _cargo(
        config,
        pipeline,
        "cargo-check",
        ("check", "--all-targets"),
        parser=ParserKind.CARGO,
        category="compile",
    )


def build_spec(config: AppConfig, pipeline: str = "build") -> CommandSpec:
    """Return the ``cargo build`` step."""
    args = ["build"]
    if config.release_build:
        args.append("--release")
    return _cargo(
        config, pipeline, "cargo-build", args, parser=ParserKind.CARGO, category="compile"
    )


def cargo_test_spec(config: AppConfig, pipeline: str = "test") -> CommandSpec:
    """Return the ``cargo test`` step."""
    return _cargo(
        config, pipeline, "cargo-test", ("test",), parser=ParserKind.CARGO_TEST, category="test"
    )


def _policy(config: AppConfig, name: str) -> tuple[RunMode, int]:
    policy = config.pipeline(name)
    return RunMode(policy.mode), policy.warn_exit_code


def check_pipeline(config: AppConfig) -> Pipeline:
    """Format check, then lint, then compile check."""
    mode, warn_exit_code = _policy(config, "check")
    return Pipeline.sequential(
        "check",
        (format_check_spec(config), lint_spec(config), compile_check_spec(config)),
        mode=mode,
        warn_exit_code=warn_exit_code,
        description="Format check, lint and compile check.",
    )


def build_pipeline(config: AppConfig) -> Pipeline:
    """Single compile step."""
    mode, warn_exit_code = _policy(config, "build")
    return Pipeline.sequential(
        "build",
        (build_spec(config),),
        mode=mode,
        warn_exit_code=warn_exit_code,
        description="Compile the project.",
    )


def cargo_test_pipeline(config: AppConfig) -> Pipeline:
    """Single test step."""
    mode, warn_exit_code = _policy(config, "test")
    return Pipeline.sequential(
        "test",
        (cargo_test_spec(config),),
        mode=mode,
        warn_exit_code=warn_exit_code,
        description="Run the test suite.",
    )


def ci_pipeline(config: AppConfig) -> Pipeline:
    """Format check first, then lint and tests side by side."""
    mode, warn_exit_code = _policy(config, "ci")
    return Pipeline(
        name="ci",
        stages=(
            (format_check_spec(config, "ci"),),
            (lint_spec(config, "ci"), cargo_test_spec(config, "ci")),
        ),
        mode=mode,
        warn_exit_code=warn_exit_code,
        description="Format check, then lint and tests concurrently.",
    )


def _single(config: AppConfig, name: str, spec: CommandSpec, description: str) -> Pipeline:
    mode, warn_exit_code = _policy(config, name)
    return Pipeline.sequential(
        name, (spec,), mode=mode, warn_exit_code=warn_exit_code, description=description
    )


def deps_tree_pipeline(config: AppConfig) -> Pipeline:
    """Print the resolved dependency graph."""
    spec = _cargo(
        config,
        "deps-tree",
        "cargo-tree",
        ("tree",),
        parser=ParserKind.RAW,
        category="dependencies",
    )
    return _single(config, "deps-tree", spec, "Show the dependency tree.")


def deps_outdated_pipeline(config: AppConfig) -> Pipeline:
    """Report dependencies with newer releases (needs cargo-outdated)."""
    spec = _cargo(
        config,
        "deps-outdated",
        "cargo-outdated",
        ("outdated", "--format", "json"),
        parser=ParserKind.CARGO_OUTDATED,
        category="dependencies",
    )
    return _single(config, "deps-outdated", spec, "List outdated dependencies.")


def deps_audit_pipeline(config: AppConfig) -> Pipeline:
    """Check Cargo.lock against the RustSec advisory database (needs cargo-audit)."""
    spec = _cargo(
        config,
        "deps-audit",
        "cargo-audit",
        ("audit", "--json"),
        parser=ParserKind.CARGO_AUDIT,
        category="security",
    )
    return _single(config, "deps-audit", spec, "Audit dependencies for security advisories.")


__all__ = [
    "PipelineNotFoundError",
    "PipelineRegistry",
    "build_pipeline",
    "check_pipeline",
    "ci_pipeline",
    "cargo_test_pipeline",
    "deps_audit_pipeline",
    "deps_outdated_pipeline",
    "deps_tree_pipeline",
]
