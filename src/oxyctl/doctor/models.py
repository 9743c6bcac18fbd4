"""Data models and helpers for doctor probes."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..providers.toolchain import ToolchainProvider
    from ..runner import ProcessRunner


class ProbeStatus(str, Enum):
    """High-level outcome for a doctor probe."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is ProbeStatus.RED

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the status represents a warning."""
        return self is ProbeStatus.YELLOW


ProbeCategory = Literal["toolchain", "tools", "path", "env", "project"]

# Ordered tuple of all recognised probe categories. Keep this in sync with ``ProbeCategory``.
PROBE_CATEGORY_VALUES: tuple[ProbeCategory, ...] = (
    "toolchain",
    "tools",
    "path",
    "env",
    "project",
)

UNRESPONSIVE_REMEDIATION = "tool unresponsive"


@dataclass(slots=True, frozen=True)
class ProbeExecutorOptions:
    """Runtime tunables for executing doctor probes."""

    max_concurrency: int = 8
    exec_timeout: float = 5.0
    grace: float = 1.0


@dataclass(slots=True, frozen=True)
class ProbeContext:
    """Execution context provided to doctor probes."""

    config: AppConfig
    runner: ProcessRunner
    toolchain: ToolchainProvider
    options: ProbeExecutorOptions
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def project_dir(self) -> Path:
        """Return the project directory under inspection."""
        return self.config.project_dir


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of running a probe."""

    id: str
    category: ProbeCategory
    status: ProbeStatus
    message: str
    remediation: str | None = None
    duration_ms: int | None = None
    data: Mapping[str, Any] | None = None
    warnings: Sequence[str] = field(default_factory=tuple)

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the probe result represents a failure."""
        return self.status.is_failure

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the probe result represents a warning."""
        return self.status.is_warning


@dataclass(slots=True, frozen=True)
class ProbeDefinition:
    """Metadata + callable for a probe.

    ``severity`` is the status recorded when the probe reports a failure, so
    optional tooling can be declared as a warning. ``remediation`` is attached
    to any non-green result that does not carry its own.
    """

    id: str
    category: ProbeCategory
    run: Callable[[ProbeContext], ProbeResult]
    severity: ProbeStatus = ProbeStatus.RED
    remediation: str | None = None


@dataclass(slots=True, frozen=True)
class DoctorSummary:
    """Aggregated summary derived from probe results."""

    status: ProbeStatus
    exit_code: int
    totals: Mapping[ProbeStatus, int]


@dataclass(slots=True, frozen=True)
class DoctorReport:
    """Complete report for a doctor run."""

    results: Sequence[ProbeResult]
    summary: DoctorSummary
    metadata: Mapping[str, Any] | None = None


STATUS_ORDER: Mapping[ProbeStatus, int] = {
    ProbeStatus.GREEN: 0,
    ProbeStatus.YELLOW: 1,
    ProbeStatus.RED: 2,
}


def aggregate_results(results: Iterable[ProbeResult]) -> DoctorSummary:
    """Compute the worst status and the exit code (1 only for red)."""
    totals: dict[ProbeStatus, int] = {
        ProbeStatus.GREEN: 0,
        ProbeStatus.YELLOW: 0,
        ProbeStatus.RED: 0,
    }
    worst_status = ProbeStatus.GREEN
    for result in results:
        totals[result.status] += 1
        if STATUS_ORDER[result.status] > STATUS_ORDER[worst_status]:
            worst_status = result.status

    exit_code = 1 if worst_status.is_failure else 0
    return DoctorSummary(status=worst_status, exit_code=exit_code, totals=totals)


def order_results(results: Sequence[ProbeResult]) -> list[ProbeResult]:
    """Sort by descending severity; ties keep declaration order."""
    return sorted(results, key=lambda result: -STATUS_ORDER[result.status])


def build_report(
    results: Sequence[ProbeResult],
    metadata: Mapping[str, Any] | None = None,
) -> DoctorReport:
    """Create a full DoctorReport from probe results."""
    summary = aggregate_results(results)
    return DoctorReport(results=tuple(order_results(results)), summary=summary, metadata=metadata)
