"""Run a pipeline's steps and merge their diagnostics into one report."""

from __future__ import annotations

import concurrent.futures
import time
from collections.abc import Callable, Sequence

from ..parsers import Diagnostic, Severity, parse_output
from ..runner import (
    CancellationToken,
    CommandSpec,
    ExecutionContext,
    ExecutionResult,
    FailureKind,
    ProcessRunner,
    ResourceExhaustedError,
)
from .models import (
    Pipeline,
    Report,
    RunMode,
    StepReport,
    StepStatus,
    classify_step,
    compute_status,
)

StepCallback = Callable[[StepReport], None]

_SPAWN_FAILURES = frozenset({FailureKind.TOOL_NOT_FOUND, FailureKind.SPAWN_ERROR})


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _skipped(spec: CommandSpec) -> StepReport:
    return StepReport(spec=spec, status=StepStatus.SKIPPED)


def _failure_diagnostics(
    result: ExecutionResult,
    parsed: Sequence[Diagnostic],
) -> list[Diagnostic]:
    category = result.spec.category
    reason = result.reason
    if result.failure is FailureKind.CANCELLED:
        return [Diagnostic(severity=Severity.INFO, message=reason or "cancelled", category=category)]
    if result.failure is not None:
        return [Diagnostic(severity=Severity.ERROR, message=reason or "failed", category=category)]
    if result.exit_code != 0 and not any(item.severity is Severity.ERROR for item in parsed):
        return [Diagnostic(severity=Severity.ERROR, message=reason or "failed", category=category)]
    return []


class Aggregator:
    """Drive :class:`ProcessRunner` over a :class:`Pipeline`.

    Every declared step gets a result slot before anything runs. Steps of a
    concurrent stage fill their own slot from worker threads; the report
    itself is only assembled on the calling thread, once all stages are done.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        context: ExecutionContext | None = None,
    ) -> None:
        """Store the runner and execution defaults."""
        self._runner = runner
        self._context = context or runner.context

    def run_step(self, spec: CommandSpec, token: CancellationToken | None = None) -> StepReport:
        """Run a single step and parse its output."""
        result = self._runner.run(spec, token)
        parsed: list[Diagnostic] = []
        # Spawn failures carry a synthetic stderr that the failure diagnostic already covers.
        if result.failure not in _SPAWN_FAILURES:
            parsed = parse_output(
                spec.parser, result.stdout, result.stderr, category=spec.category
            )
        diagnostics = (*_failure_diagnostics(result, parsed), *parsed)
        return StepReport(
            spec=spec,
            status=classify_step(spec, result, diagnostics),
            result=result,
            diagnostics=diagnostics,
        )

    def run(
        self,
        pipeline: Pipeline,
        *,
        mode: RunMode | str | None = None,
        token: CancellationToken | None = None,
        on_step: StepCallback | None = None,
    ) -> Report:
        """Run *pipeline* and return the completed report.

        Failures are reported through the report status. Only
        :class:`ResourceExhaustedError` propagates, after any running steps
        have been cancelled.
        """
        effective_mode = RunMode(mode) if mode is not None else pipeline.mode
        run_token = CancellationToken.linked(token)
        specs = pipeline.steps
        slots: list[StepReport | None] = [None] * len(specs)
        start = time.perf_counter()
        logger = self._context.logger
        logger.debug("Running pipeline %s (%s)", pipeline.name, effective_mode.value)

        offset = 0
        halted = False
        for stage in pipeline.stages:
            indexes = range(offset, offset + len(stage))
            offset += len(stage)
            if halted or run_token.cancelled:
                for index in indexes:
                    slots[index] = _skipped(specs[index])
            else:
                self._run_stage(stage, indexes, slots, run_token)
                if effective_mode is RunMode.FAIL_FAST and any(
                    _slot(slots, index).halts_pipeline for index in indexes
                ):
                    logger.debug("Pipeline %s halted after stage %s", pipeline.name, list(indexes))
                    halted = True
            if on_step is not None:
                for index in indexes:
                    on_step(_slot(slots, index))

        steps = tuple(_slot(slots, index) for index in range(len(specs)))
        report = Report(
            pipeline=pipeline.name,
            mode=effective_mode,
            steps=steps,
            status=compute_status(steps),
            duration_ms=_duration_ms(start),
            cancelled=run_token.cancelled,
        )
        logger.debug(
            "Pipeline %s finished: status=%s cancelled=%s",
            pipeline.name,
            report.status.value,
            report.cancelled,
        )
        return report

    def _run_stage(
        self,
        stage: Sequence[CommandSpec],
        indexes: range,
        slots: list[StepReport | None],
        token: CancellationToken,
    ) -> None:
        if len(stage) == 1:
            slots[indexes[0]] = self.run_step(stage[0], token)
            return

        with concurrent.futures.ThreadPoolExecutor(max_workers=len(stage)) as executor:
            future_to_index: dict[concurrent.futures.Future[StepReport], int] = {}
            for index, spec in zip(indexes, stage, strict=True):
                future = executor.submit(self.run_step, spec, token)
                future_to_index[future] = index

            try:
                for future in concurrent.futures.as_completed(future_to_index):
                    slots[future_to_index[future]] = future.result()
            except ResourceExhaustedError:
                token.cancel()
                raise


def _slot(slots: Sequence[StepReport | None], index: int) -> StepReport:
    step = slots[index]
    assert step is not None
    return step


__all__ = ["Aggregator", "StepCallback"]
