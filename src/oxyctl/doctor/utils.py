"""JSON rendering of doctor health reports."""
from __future__ import annotations

from collections import Counter

from ..logging import sanitize
from .models import DoctorReport, ProbeResult, ProbeStatus


def _result_payload(result: ProbeResult) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": result.id,
        "category": result.category,
        "status": result.status.value,
        "message": result.message,
        "remediation": result.remediation,
    }
    if result.duration_ms is not None:
        payload["duration_ms"] = result.duration_ms
    if result.data:
        payload["data"] = sanitize(result.data)
    if result.warnings:
        payload["warnings"] = list(result.warnings)
    return payload


def serialize_report(report: DoctorReport) -> dict[str, object]:
    """Convert a doctor report into a JSON-serialisable mapping.

    ``results`` keep the report's priority order (red first). ``failing``
    lists the ids of red probes so scripts can act on them directly.
    """
    summary = report.summary
    by_category = Counter(
        result.category for result in report.results if result.status is not ProbeStatus.GREEN
    )
    return {
        "rollup": summary.status.value,
        "exit_code": summary.exit_code,
        "totals": {status.value: int(summary.totals.get(status, 0)) for status in ProbeStatus},
        "issues_by_category": dict(sorted(by_category.items())),
        "failing": [result.id for result in report.results if result.is_failure],
        "results": [_result_payload(result) for result in report.results],
        "metadata": sanitize(report.metadata) if report.metadata else {},
    }


__all__ = ["serialize_report"]
