"""Data models for pipeline runs."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ..parsers import Diagnostic, Severity

if TYPE_CHECKING:
    from ..runner import CommandSpec, ExecutionResult


class RunMode(str, Enum):
    """How the aggregator reacts to a failing step."""

    FAIL_FAST = "fail-fast"
    COLLECT_ALL = "collect-all"


class StepStatus(str, Enum):
    """Outcome of one pipeline step."""

    PASSED = "passed"
    WARNED = "warned"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class ReportStatus(str, Enum):
    """Overall outcome of a pipeline run."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass(slots=True, frozen=True)
class Pipeline:
    """Named set of steps, grouped into stages.

    Steps inside one stage have no ordering dependency and run concurrently;
    stages run one after another in declaration order.
    """

    name: str
    stages: tuple[tuple[CommandSpec, ...], ...]
    mode: RunMode = RunMode.FAIL_FAST
    warn_exit_code: int = 0
    description: str = ""

    @classmethod
    def sequential(
        cls,
        name: str,
        specs: Iterable[CommandSpec],
        *,
        mode: RunMode = RunMode.FAIL_FAST,
        warn_exit_code: int = 0,
        description: str = "",
    ) -> Pipeline:
        """Build a pipeline where every step is its own stage."""
        return cls(
            name=name,
            stages=tuple((spec,) for spec in specs),
            mode=mode,
            warn_exit_code=warn_exit_code,
            description=description,
        )

    @property
    def steps(self) -> tuple[CommandSpec, ...]:
        """Return all steps flattened in declaration order."""
        return tuple(spec for stage in self.stages for spec in stage)


@dataclass(slots=True, frozen=True)
class StepReport:
    """Result slot for one declared step."""

    spec: CommandSpec
    status: StepStatus
    result: ExecutionResult | None = None
    diagnostics: tuple[Diagnostic, ...] = ()

    @property
    def has_errors(self) -> bool:
        """Return ``True`` when any diagnostic is an error."""
        return any(item.severity is Severity.ERROR for item in self.diagnostics)

    @property
    def has_warnings(self) -> bool:
        """Return ``True`` when any diagnostic is a warning."""
        return any(item.severity is Severity.WARNING for item in self.diagnostics)

    @property
    def process_failed(self) -> bool:
        """Return ``True`` for nonzero exit, timeout, or a spawn failure."""
        if self.result is None:
            return False
        return (
            self.result.exit_code != 0
            or self.result.timed_out
            or self.result.failure is not None
        )

    @property
    def halts_pipeline(self) -> bool:
        """Return ``True`` when fail-fast mode must stop after this step."""
        return self.process_failed or (self.spec.required and self.has_errors)

    @property
    def fails_report(self) -> bool:
        """Return ``True`` when this step alone makes the report fail."""
        return self.spec.required and (self.process_failed or self.has_errors)


@dataclass(slots=True, frozen=True)
class Report:
    """Completed pipeline run."""

    pipeline: str
    mode: RunMode
    steps: tuple[StepReport, ...]
    status: ReportStatus
    duration_ms: int
    cancelled: bool = False
    metadata: Mapping[str, object] = field(default_factory=dict)

    def diagnostics(self) -> Iterator[Diagnostic]:
        """Yield every diagnostic in step order."""
        for step in self.steps:
            yield from step.diagnostics

    @property
    def totals(self) -> dict[Severity, int]:
        """Return diagnostic counts per severity."""
        counts = {severity: 0 for severity in Severity}
        for diagnostic in self.diagnostics():
            counts[diagnostic.severity] += 1
        return counts

    def step(self, tool: str) -> StepReport | None:
        """Return the first step whose spec uses *tool*."""
        for item in self.steps:
            if item.spec.tool == tool:
                return item
        return None

    def exit_code(self, warn_exit_code: int = 0) -> int:
        """Translate the overall status into a process exit code."""
        if self.status is ReportStatus.FAIL:
            return 1
        if self.status is ReportStatus.WARN:
            return warn_exit_code
        return 0


def classify_step(
    spec: CommandSpec,
    result: ExecutionResult,
    diagnostics: Sequence[Diagnostic],
) -> StepStatus:
    """Return the status of a step that ran."""
    if result.cancelled:
        return StepStatus.CANCELLED
    draft = StepReport(
        spec=spec,
        status=StepStatus.PASSED,
        result=result,
        diagnostics=tuple(diagnostics),
    )
    if draft.process_failed or draft.has_errors:
        return StepStatus.FAILED
    if draft.has_warnings:
        return StepStatus.WARNED
    return StepStatus.PASSED


def compute_status(steps: Iterable[StepReport]) -> ReportStatus:
    """Apply the report status rule.

    ``FAIL`` when a required step has an error diagnostic or a failed process;
    otherwise ``WARN`` when any warning diagnostic exists; otherwise ``PASS``.
    """
    saw_warning = False
    for step in steps:
        if step.fails_report:
            return ReportStatus.FAIL
        if step.has_warnings:
            saw_warning = True
    return ReportStatus.WARN if saw_warning else ReportStatus.PASS


__all__ = [
    "Diagnostic",
    "Pipeline",
    "Report",
    "ReportStatus",
    "RunMode",
    "Severity",
    "StepReport",
    "StepStatus",
    "classify_step",
    "compute_status",
]
