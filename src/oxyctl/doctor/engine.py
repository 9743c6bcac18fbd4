"""Probe execution harness for the doctor command."""

from __future__ import annotations

import concurrent.futures
import os
import time
import traceback
from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING

from ..providers.toolchain import ToolchainProvider
from .models import (
    UNRESPONSIVE_REMEDIATION,
    DoctorReport,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    build_report,
)

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..runner import ProcessRunner

_WAIT_QUANTUM = 0.05


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _coerce_result(
    probe: ProbeDefinition,
    result: ProbeResult,
    duration_ms: int,
) -> ProbeResult:
    coerced = result
    if result.id != probe.id:
        coerced = replace(coerced, id=probe.id)
    if result.category != probe.category:
        coerced = replace(coerced, category=probe.category)
    if (
        result.status is ProbeStatus.RED
        and probe.severity is not ProbeStatus.RED
        and "timeout" not in result.warnings
    ):
        # An unresponsive tool fails the run whatever the probe's declared severity.
        coerced = replace(coerced, status=probe.severity)
    if coerced.status is not ProbeStatus.GREEN and not coerced.remediation and probe.remediation:
        coerced = replace(coerced, remediation=probe.remediation)
    if result.duration_ms is None:
        coerced = replace(coerced, duration_ms=duration_ms)
    return coerced


def _unexpected_failure(
    probe: ProbeDefinition,
    exc: Exception,
    duration_ms: int,
) -> ProbeResult:
    message = f"Probe '{probe.id}' raised an unexpected error: {exc}"
    data = {
        "exception": repr(exc),
        "traceback": traceback.format_exc(),
    }
    return ProbeResult(
        id=probe.id,
        category=probe.category,
        status=ProbeStatus.RED,
        message=message,
        remediation=probe.remediation,
        duration_ms=duration_ms,
        data=data,
        warnings=("unhandled-exception",),
    )


def _unresponsive(probe: ProbeDefinition, duration_ms: int) -> ProbeResult:
    return ProbeResult(
        id=probe.id,
        category=probe.category,
        status=ProbeStatus.RED,
        message=f"Probe '{probe.id}' did not finish within {duration_ms} ms.",
        remediation=UNRESPONSIVE_REMEDIATION,
        duration_ms=duration_ms,
        warnings=("timeout",),
    )


def _run_single_probe(
    probe: ProbeDefinition,
    context: ProbeContext,
) -> ProbeResult:
    start = time.perf_counter()
    try:
        result = probe.run(context)
    except Exception as exc:  # probes must never take the doctor run down
        return _unexpected_failure(probe, exc, _duration_ms(start))
    duration_ms = _duration_ms(start)
    return _coerce_result(probe, result, duration_ms)


def run_probes(
    context: ProbeContext,
    probes: Sequence[ProbeDefinition],
) -> list[ProbeResult]:
    """Execute probes with bounded concurrency.

    Results are returned in declaration order. A probe still running once
    ``exec_timeout + grace`` has elapsed since it started is recorded as an
    unresponsive failure and abandoned.
    """
    if not probes:
        return []

    max_workers = max(1, context.options.max_concurrency)
    limit = context.options.exec_timeout + context.options.grace
    started: dict[int, float] = {}
    results: list[ProbeResult | None] = [None] * len(probes)

    def _timed(index: int, probe: ProbeDefinition) -> ProbeResult:
        started[index] = time.perf_counter()
        return _run_single_probe(probe, context)

    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=max_workers,
        thread_name_prefix="oxyctl-doctor",
    )
    try:
        future_to_index: dict[concurrent.futures.Future[ProbeResult], int] = {}
        for index, probe in enumerate(probes):
            future = executor.submit(_timed, index, probe)
            future_to_index[future] = index

        pending = set(future_to_index)
        while pending:
            done, pending = concurrent.futures.wait(
                pending,
                timeout=_WAIT_QUANTUM,
                return_when=concurrent.futures.FIRST_COMPLETED,
            )
            for future in done:
                results[future_to_index[future]] = future.result()
            now = time.perf_counter()
            for future in list(pending):
                index = future_to_index[future]
                start = started.get(index)
                if start is not None and now - start > limit:
                    results[index] = _unresponsive(probes[index], int((now - start) * 1000))
                    pending.discard(future)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return [result for result in results if result is not None]


def create_probe_context(
    config: AppConfig,
    runner: ProcessRunner,
    options: ProbeExecutorOptions | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> ProbeContext:
    """Build a ProbeContext from the resolved configuration."""
    effective_options = options or ProbeExecutorOptions(
        max_concurrency=config.doctor.max_concurrency,
        exec_timeout=config.doctor.exec_timeout,
    )
    toolchain = ToolchainProvider(
        runner,
        config.toolchain,
        timeout=effective_options.exec_timeout,
        cwd=config.project_dir if config.project_dir.is_dir() else None,
    )
    return ProbeContext(
        config=config,
        runner=runner,
        toolchain=toolchain,
        options=effective_options,
        env=dict(os.environ if env is None else env),
    )


class DoctorEngine:
    """Coordinator that executes probes and aggregates the overall report."""

    def __init__(self, context: ProbeContext) -> None:
        """Store the probe execution context."""
        self._context = context

    @property
    def options(self) -> ProbeExecutorOptions:
        """Return the execution options associated with this engine."""
        return self._context.options

    def run(
        self,
        probes: Sequence[ProbeDefinition],
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> DoctorReport:
        """Run the supplied probes and build a doctor report."""
        start = time.perf_counter()
        results = run_probes(self._context, probes)
        total_ms = _duration_ms(start)
        run_metadata: dict[str, object] = {
            "duration_ms": total_ms,
            "probe_count": len(results),
            "requested_probes": len(probes),
            "concurrency": self.options.max_concurrency,
        }
        if metadata:
            run_metadata.update(metadata)
        return build_report(results, metadata=run_metadata)
