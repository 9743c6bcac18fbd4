"""Utility helpers for serialising pipeline reports."""
from __future__ import annotations

from ..parsers import Diagnostic, Severity
from .models import Report, StepReport


def serialize_diagnostic(diagnostic: Diagnostic) -> dict[str, object]:
    """Convert a diagnostic into a JSON-serialisable mapping."""
    payload: dict[str, object] = {
        "severity": diagnostic.severity.value,
        "category": diagnostic.category,
        "message": diagnostic.message,
    }
    if diagnostic.file is not None:
        payload["location"] = {
            "file": diagnostic.file,
            "line": diagnostic.line,
            "column": diagnostic.column,
        }
    if diagnostic.code:
        payload["code"] = diagnostic.code
    if diagnostic.degraded:
        payload["degraded"] = True
    return payload


def _serialize_step(step: StepReport) -> dict[str, object]:
    payload: dict[str, object] = {
        "tool": step.spec.tool,
        "command": step.spec.argv,
        "category": step.spec.category,
        "required": step.spec.required,
        "status": step.status.value,
    }
    result = step.result
    if result is not None:
        payload["exit_code"] = result.exit_code
        payload["duration_ms"] = result.duration_ms
        if result.timed_out:
            payload["timed_out"] = True
        if result.failure is not None:
            payload["failure"] = result.failure.value
    payload["diagnostics"] = [serialize_diagnostic(item) for item in step.diagnostics]
    return payload


def serialize_report(report: Report) -> dict[str, object]:
    """Convert a pipeline report into a JSON-serialisable mapping."""
    totals = report.totals
    return {
        "pipeline": report.pipeline,
        "mode": report.mode.value,
        "status": report.status.value,
        "duration_ms": report.duration_ms,
        "cancelled": report.cancelled,
        "totals": {severity.value: int(totals.get(severity, 0)) for severity in Severity},
        "steps": [_serialize_step(step) for step in report.steps],
    }


__all__ = ["serialize_diagnostic", "serialize_report"]
