"""Tests for the doctor probe harness and report aggregation."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest

from oxyctl.config import load_config
from oxyctl.doctor import (
    UNRESPONSIVE_REMEDIATION,
    DoctorEngine,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    create_probe_context,
    run_probes,
    serialize_report,
)
from oxyctl.runner import ProcessRunner


@pytest.fixture()
def probe_context(tmp_path: Path) -> ProbeContext:
    """ProbeContext with short timeouts rooted in a temp project."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={"project_dir": str(tmp_path)},
    )
    options = ProbeExecutorOptions(max_concurrency=4, exec_timeout=0.2, grace=0.2)
    return create_probe_context(config, ProcessRunner(), options, env={})


def _probe(
    probe_id: str,
    status: ProbeStatus,
    *,
    severity: ProbeStatus = ProbeStatus.RED,
    remediation: str | None = None,
) -> ProbeDefinition:
    def _run(context: ProbeContext) -> ProbeResult:
        return ProbeResult(
            id=probe_id,
            category="tools",
            status=status,
            message=f"{probe_id} is {status.value}",
        )

    return ProbeDefinition(
        id=probe_id,
        category="tools",
        run=_run,
        severity=severity,
        remediation=remediation,
    )


def test_run_probes_keeps_declaration_order(probe_context: ProbeContext) -> None:
    """run_probes returns results in the order probes were declared."""
    probes = [
        _probe("a", ProbeStatus.GREEN),
        _probe("b", ProbeStatus.RED),
        _probe("c", ProbeStatus.YELLOW),
    ]

    results = run_probes(probe_context, probes)

    assert [result.id for result in results] == ["a", "b", "c"]
    assert all(result.duration_ms is not None for result in results)


def test_report_orders_red_first_and_sets_exit_code(probe_context: ProbeContext) -> None:
    """The report lists red, then yellow, then green; red means exit 1."""
    probes = [
        _probe("green", ProbeStatus.GREEN),
        _probe("yellow", ProbeStatus.YELLOW),
        _probe("red", ProbeStatus.RED),
        _probe("green-2", ProbeStatus.GREEN),
    ]

    report = DoctorEngine(probe_context).run(probes, metadata={"source": "test"})

    assert [result.id for result in report.results] == ["red", "yellow", "green", "green-2"]
    assert report.summary.status is ProbeStatus.RED
    assert report.summary.exit_code == 1
    assert report.summary.totals[ProbeStatus.GREEN] == 2
    assert report.metadata is not None
    assert report.metadata["requested_probes"] == 4
    assert report.metadata["source"] == "test"


def test_yellow_only_report_exits_zero() -> None:
    """Warnings alone never make doctor fail."""
    results = [
        ProbeResult(id="x", category="env", status=ProbeStatus.YELLOW, message="meh"),
        ProbeResult(id="y", category="env", status=ProbeStatus.GREEN, message="ok"),
    ]

    summary = aggregate_results(results)

    assert summary.status is ProbeStatus.YELLOW
    assert summary.exit_code == 0


def test_optional_probe_failure_is_downgraded(probe_context: ProbeContext) -> None:
    """A red result from a yellow-severity probe becomes a warning with remediation."""
    probe = _probe(
        "tools-clippy",
        ProbeStatus.RED,
        severity=ProbeStatus.YELLOW,
        remediation="rustup component add clippy",
    )

    (result,) = run_probes(probe_context, [probe])

    assert result.status is ProbeStatus.YELLOW
    assert result.remediation == "rustup component add clippy"


def test_remediation_not_attached_to_green_results(probe_context: ProbeContext) -> None:
    """Remediation hints only accompany problems."""
    (result,) = run_probes(
        probe_context, [_probe("ok", ProbeStatus.GREEN, remediation="do something")]
    )

    assert result.remediation is None


def test_probe_exception_becomes_red_result(probe_context: ProbeContext) -> None:
    """A probe raising is reported as a failure instead of crashing doctor."""

    def _boom(context: ProbeContext) -> ProbeResult:
        raise ValueError("broken probe")

    probe = ProbeDefinition(id="boom", category="env", run=_boom, remediation="fix it")

    (result,) = run_probes(probe_context, [probe])

    assert result.status is ProbeStatus.RED
    assert "broken probe" in result.message
    assert result.remediation == "fix it"
    assert "unhandled-exception" in result.warnings


@pytest.mark.mutation_timeout
def test_hung_probe_is_reported_unresponsive(probe_context: ProbeContext) -> None:
    """A probe exceeding exec_timeout plus grace is abandoned as unresponsive."""
    release = threading.Event()

    def _hang(context: ProbeContext) -> ProbeResult:
        release.wait(10)
        return ProbeResult(id="hang", category="tools", status=ProbeStatus.GREEN, message="late")

    probes = [
        ProbeDefinition(id="hang", category="tools", run=_hang),
        _probe("quick", ProbeStatus.GREEN),
    ]

    try:
        results = run_probes(probe_context, probes)
    finally:
        release.set()

    hang, quick = results
    assert hang.status is ProbeStatus.RED
    assert hang.remediation == UNRESPONSIVE_REMEDIATION
    assert "timeout" in hang.warnings
    assert quick.status is ProbeStatus.GREEN


def test_empty_probe_list_gives_green_report(probe_context: ProbeContext) -> None:
    """Running no probes is a healthy, empty report."""
    report = DoctorEngine(probe_context).run([])

    assert report.results == ()
    assert report.summary.status is ProbeStatus.GREEN
    assert report.summary.exit_code == 0


def test_serialize_report_lists_failing_ids(probe_context: ProbeContext) -> None:
    """JSON payload carries rollup, totals and the failing probe ids."""
    report = DoctorEngine(probe_context).run(
        [_probe("ok", ProbeStatus.GREEN), _probe("bad", ProbeStatus.RED, remediation="fix")]
    )

    payload = serialize_report(report)

    assert payload["rollup"] == "red"
    assert payload["exit_code"] == 1
    assert payload["failing"] == ["bad"]
    assert payload["totals"] == {"green": 1, "yellow": 0, "red": 1}
    assert payload["issues_by_category"] == {"tools": 1}
    first = payload["results"][0]  # type: ignore[index]
    assert first["id"] == "bad"
    assert first["remediation"] == "fix"


def test_timed_out_optional_probe_stays_red(probe_context: ProbeContext) -> None:
    """A yellow-severity probe whose tool timed out still fails doctor."""

    def _timed_out(context: ProbeContext) -> ProbeResult:
        return ProbeResult(
            id="tools-clippy",
            category="tools",
            status=ProbeStatus.RED,
            message="'cargo clippy --version' did not answer in time.",
            remediation=UNRESPONSIVE_REMEDIATION,
            warnings=("timeout",),
        )

    probe = ProbeDefinition(
        id="tools-clippy",
        category="tools",
        run=_timed_out,
        severity=ProbeStatus.YELLOW,
        remediation="rustup component add clippy",
    )

    report = DoctorEngine(probe_context).run([probe])

    (result,) = report.results
    assert result.status is ProbeStatus.RED
    assert result.remediation == UNRESPONSIVE_REMEDIATION
    assert report.summary.exit_code == 1


def test_probe_outcomes_do_not_depend_on_declaration_order(
    probe_context: ProbeContext,
) -> None:
    """Reversing the probe list changes only the order, never the outcomes."""
    probes = [
        _probe("a", ProbeStatus.GREEN),
        _probe("b", ProbeStatus.RED, severity=ProbeStatus.YELLOW, remediation="fix b"),
        _probe("c", ProbeStatus.RED, remediation="fix c"),
        _probe("d", ProbeStatus.YELLOW),
        _probe("e", ProbeStatus.GREEN, remediation="unused"),
    ]

    def _outcomes(ordered: list[ProbeDefinition]) -> dict[str, tuple[object, ...]]:
        return {
            result.id: (result.status, result.message, result.remediation, result.warnings)
            for result in run_probes(probe_context, ordered)
        }

    forward = _outcomes(probes)
    backward = _outcomes(list(reversed(probes)))

    assert forward == backward
    assert [result.id for result in run_probes(probe_context, probes[::-1])] == [
        "e",
        "d",
        "c",
        "b",
        "a",
    ]
