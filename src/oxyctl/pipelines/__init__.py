"""Pipeline declaration, execution and reporting."""

from __future__ import annotations

from .aggregator import Aggregator
from .models import (
    Diagnostic,
    Pipeline,
    Report,
    ReportStatus,
    RunMode,
    Severity,
    StepReport,
    StepStatus,
    compute_status,
)
from .registry import PipelineNotFoundError, PipelineRegistry
from .utils import serialize_report

__all__ = [
    "Aggregator",
    "Diagnostic",
    "Pipeline",
    "PipelineNotFoundError",
    "PipelineRegistry",
    "Report",
    "ReportStatus",
    "RunMode",
    "Severity",
    "StepReport",
    "StepStatus",
    "compute_status",
    "serialize_report",
]
