"""Doctor command infrastructure."""

from __future__ import annotations

from .engine import DoctorEngine, create_probe_context, run_probes
from .models import (
    PROBE_CATEGORY_VALUES,
    UNRESPONSIVE_REMEDIATION,
    DoctorReport,
    DoctorSummary,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    build_report,
)
from .probes import collect_probes
from .utils import serialize_report

__all__ = [
    "DoctorEngine",
    "DoctorReport",
    "DoctorSummary",
    "ProbeCategory",
    "PROBE_CATEGORY_VALUES",
    "ProbeContext",
    "ProbeDefinition",
    "ProbeExecutorOptions",
    "ProbeResult",
    "ProbeStatus",
    "UNRESPONSIVE_REMEDIATION",
    "aggregate_results",
    "build_report",
    "collect_probes",
    "create_probe_context",
    "run_probes",
    "serialize_report",
]
