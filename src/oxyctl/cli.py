"""Typer-powered command line interface for ``oxyctl``.

Commands are thin: each one resolves the runtime (configuration, structured
logger, process runner), hands a pipeline or probe set to the core, renders
the resulting report with Rich and records the outcome in the operations log.
"""
from __future__ import annotations

import json
import textwrap
import threading
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .doctor import (
    PROBE_CATEGORY_VALUES,
    DoctorEngine,
    DoctorReport,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    collect_probes,
    create_probe_context,
    serialize_report as serialize_doctor_report,
)
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .parsers import Diagnostic, Severity
from .pipelines import (
    Aggregator,
    PipelineRegistry,
    Report,
    ReportStatus,
    StepReport,
    StepStatus,
    serialize_report,
)
from .project import (
    ManifestError,
    artifact_path,
    artifact_size,
    format_bytes,
    format_duration,
    load_manifest,
    project_files,
    target_dir,
)
from .providers import GitError, GitProvider, ToolchainProvider
from .runner import CancellationToken, ExecutionContext, ProcessRunner, ResourceExhaustedError
from .snapshots import BuildMetrics, Snapshot, SnapshotError, SnapshotManager
from .watch import PollingChangeSource, WatchError, WatchScheduler, WatchState

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to oxyctl's YAML config file.",
)
PROJECT_DIR_OPTION = typer.Option(
    None,
    "--project-dir",
    "-C",
    file_okay=False,
    help="Run against this project directory instead of the current one.",
)
VERBOSE_OPTION = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Show debug logging and informational diagnostics.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)
WATCH_OPTION = typer.Option(
    False,
    "--watch",
    "-w",
    help="Re-run the tests whenever project sources change (Ctrl+C to stop).",
)

_PROBE_CATEGORY_NAMES = ", ".join(PROBE_CATEGORY_VALUES)

DOCTOR_ONLY_OPTION = typer.Option(
    None,
    "--only",
    metavar="CATEGORY[,CATEGORY...]",
    help=f"Comma-separated probe categories to include ({_PROBE_CATEGORY_NAMES}).",
)
DOCTOR_EXCLUDE_OPTION = typer.Option(
    None,
    "--exclude",
    metavar="CATEGORY[,CATEGORY...]",
    help=f"Comma-separated probe categories to exclude ({_PROBE_CATEGORY_NAMES}).",
)
DOCTOR_TIMEOUT_MS_OPTION = typer.Option(
    None,
    "--timeout-ms",
    min=0,
    help="Override the per-probe command timeout in milliseconds.",
)
DOCTOR_MAX_CONCURRENCY_OPTION = typer.Option(
    None,
    "--max-concurrency",
    min=1,
    help="Maximum number of probes to run at once.",
)

_PROBE_CATEGORY_SET = frozenset(PROBE_CATEGORY_VALUES)
_PROBE_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]PASS[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]FAIL[/red]",
}
_SUMMARY_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]GREEN[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]RED[/red]",
}
_REPORT_STATUS_STYLE = {
    ReportStatus.PASS: "[green]PASS[/green]",
    ReportStatus.WARN: "[yellow]WARN[/yellow]",
    ReportStatus.FAIL: "[red]FAIL[/red]",
}
_STEP_STATUS_STYLE = {
    StepStatus.PASSED: "[green]passed[/green]",
    StepStatus.WARNED: "[yellow]warned[/yellow]",
    StepStatus.FAILED: "[red]failed[/red]",
    StepStatus.SKIPPED: "[dim]skipped[/dim]",
    StepStatus.CANCELLED: "[magenta]cancelled[/magenta]",
}
_SEVERITY_STYLE = {
    Severity.ERROR: "[red]error[/red]",
    Severity.WARNING: "[yellow]warning[/yellow]",
    Severity.INFO: "[cyan]info[/cyan]",
}
_TOOL_STATUS_STYLE = {
    "available": "[green]found[/green]",
    "not_found": "[red]missing[/red]",
    "unresponsive": "[yellow]unresponsive[/yellow]",
    "error": "[yellow]error[/yellow]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Rust developer workflow orchestrator.

        Runs cargo format, lint, check, build and test steps as pipelines,
        collects their diagnostics into one report, checks the toolchain
        environment and records build snapshots.
        """
    ).strip(),
)
snapshot_app = typer.Typer(help="Record and inspect project snapshots.")
config_app = typer.Typer(help="Inspect the effective configuration.")
toolchain_app = typer.Typer(help="Inspect installed Rust toolchains.")
deps_app = typer.Typer(help="Inspect project dependencies.")

app.add_typer(snapshot_app, name="snapshot")
app.add_typer(config_app, name="config")
app.add_typer(toolchain_app, name="toolchain")
app.add_typer(deps_app, name="deps")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    runner: ProcessRunner
    verbose: bool = False

    def registry(self) -> PipelineRegistry:
        """Return the pipelines available for the configured project."""
        return PipelineRegistry.from_config(self.config)

    def git(self) -> GitProvider:
        """Return a git provider bound to the project directory."""
        return GitProvider(
            self.runner,
            self.config.project_dir,
            git_bin=self.config.toolchain.git_bin,
        )

    def toolchain(self) -> ToolchainProvider:
        """Return a toolchain provider using the doctor timeouts."""
        project_dir = self.config.project_dir
        return ToolchainProvider(
            self.runner,
            self.config.toolchain,
            timeout=self.config.doctor.exec_timeout,
            cwd=project_dir if project_dir.is_dir() else None,
        )

    def snapshots(self) -> SnapshotManager:
        """Return the snapshot manager for the project state directory."""
        return SnapshotManager(
            self.config.snapshots_file,
            vcs=self.git().summary,
            metrics_path=self.config.metrics_file,
        )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    project_dir: Path | None,
    verbose: bool,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if project_dir is not None:
        overrides["project_dir"] = str(project_dir)

    config = load_config(config_file=config_file, overrides=overrides)
    logger = StructuredLogger(config.logs_dir)
    context = ExecutionContext.from_config(config, verbosity=1 if verbose else 0)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        runner=ProcessRunner(context),
        verbose=verbose,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None, False)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the oxyctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    project_dir: Path | None = PROJECT_DIR_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_console_logging(verbose)
    try:
        runtime = _ensure_runtime(ctx, config_file, project_dir, verbose)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"oxyctl {__version__}")
            op.success("Reported CLI version.")
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


# ---------------------------------------------------------------------------
# Pipeline rendering
# ---------------------------------------------------------------------------


def _format_diagnostic(diagnostic: Diagnostic) -> str:
    label = _SEVERITY_STYLE[diagnostic.severity]
    location = diagnostic.location
    prefix = f"{escape(location)}: " if location else ""
    code = escape(f"[{diagnostic.code}] ") if diagnostic.code else ""
    return f"  {label} {code}{prefix}{escape(diagnostic.message)}"


def _render_report(report: Report, *, verbose: bool = False) -> None:
    """Render a pipeline report as a step table followed by diagnostics."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Step", style="bold")
    table.add_column("Command")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Warnings", justify="right")

    for step in report.steps:
        duration = format_duration(step.result.duration_ms) if step.result else "-"
        errors = sum(1 for item in step.diagnostics if item.severity is Severity.ERROR)
        warnings = sum(1 for item in step.diagnostics if item.severity is Severity.WARNING)
        table.add_row(
            step.spec.tool,
            escape(step.spec.display),
            _STEP_STATUS_STYLE[step.status],
            duration,
            str(errors),
            str(warnings),
        )
    console.print(table)

    for step in report.steps:
        shown = [
            item
            for item in step.diagnostics
            if verbose or item.severity is not Severity.INFO
        ]
        if not shown:
            continue
        console.print(f"[bold]{escape(step.spec.tool)}[/bold]")
        for diagnostic in shown:
            console.print(_format_diagnostic(diagnostic))

    console.print(
        f"{report.pipeline}: {_REPORT_STATUS_STYLE[report.status]} "
        f"in {format_duration(report.duration_ms)}"
    )


def _step_identifiers(steps: Sequence[StepReport], status: StepStatus) -> list[str]:
    return [step.spec.tool for step in steps if step.status is status]


def _finish_pipeline(
    op: OperationScope,
    report: Report,
    warn_exit_code: int,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Record the pipeline outcome and exit with the configured code."""
    exit_code = report.exit_code(warn_exit_code)
    log_context = {"report": serialize_report(report), **(context or {})}
    failed = _step_identifiers(report.steps, StepStatus.FAILED)
    warned = _step_identifiers(report.steps, StepStatus.WARNED)

    if report.status is ReportStatus.PASS:
        op.success(f"Pipeline '{report.pipeline}' passed.", context=log_context)
    elif report.status is ReportStatus.WARN:
        op.warning(
            f"Pipeline '{report.pipeline}' completed with warnings.",
            warnings=warned or None,
            rc=exit_code,
            context=log_context,
        )
    else:
        op.error(
            f"Pipeline '{report.pipeline}' failed.",
            rc=exit_code,
            errors=failed or None,
            warnings=warned or None,
            context=log_context,
        )
    if exit_code != ExitCode.OK:
        raise typer.Exit(code=exit_code)


def _run_pipeline(
    runtime: RuntimeContext,
    op: OperationScope,
    name: str,
    *,
    token: CancellationToken | None = None,
    record_steps: bool = True,
) -> Report:
    pipeline = runtime.registry().get(name)
    aggregator = Aggregator(runtime.runner)

    def _record(step: StepReport) -> None:
        op.add_step(f"step.{step.spec.tool}", status=step.status.value, detail=step.spec.display)

    try:
        return aggregator.run(pipeline, token=token, on_step=_record if record_steps else None)
    except ResourceExhaustedError as exc:
        _command_error(op, f"Unable to run pipeline '{name}': {exc}")


def _pipeline_command(ctx: typer.Context, name: str, json_output: bool) -> None:
    runtime = _get_runtime(ctx)
    pipeline = runtime.registry().get(name)
    with runtime.logger.operation(
        name,
        args={"json": json_output},
        target={"kind": "pipeline", "name": name, "project": runtime.config.project_dir},
    ) as op:
        report = _run_pipeline(runtime, op, name)
        if json_output:
            console.print_json(data=serialize_report(report))
        else:
            _render_report(report, verbose=runtime.verbose)
        _finish_pipeline(op, report, pipeline.warn_exit_code)


# ---------------------------------------------------------------------------
# Pipeline commands
# ---------------------------------------------------------------------------


@app.command()
def check(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Run format-check, lint and compile-check."""
    _pipeline_command(ctx, "check", json_output)


@app.command()
def ci(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Run the full CI pipeline, collecting every diagnostic."""
    _pipeline_command(ctx, "ci", json_output)


@app.command()
def build(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Build the project and record timing and binary size."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    pipeline = runtime.registry().get("build")
    with runtime.logger.operation(
        "build",
        args={"json": json_output, "release": config.release_build},
        target={"kind": "pipeline", "name": "build", "project": config.project_dir},
    ) as op:
        report = _run_pipeline(runtime, op, "build")

        binary: Path | None = None
        try:
            manifest = load_manifest(config.project_dir)
        except ManifestError as exc:
            op.add_step("manifest", status="warning", detail=str(exc))
            manifest = None
        if manifest is not None and report.status is not ReportStatus.FAIL:
            binary = artifact_path(config.project_dir, manifest, release=config.release_build)
        size = artifact_size(binary)

        metrics = BuildMetrics(
            duration_ms=report.duration_ms,
            binary_path=str(binary) if size is not None else None,
            binary_size=size,
            pipeline_status=report.status.value,
        )
        try:
            metrics = runtime.snapshots().record_build_metrics(metrics)
        except SnapshotError as exc:
            op.add_step("metrics", status="warning", detail=str(exc))
        else:
            op.add_step("metrics", detail=str(config.metrics_file))

        if json_output:
            payload = serialize_report(report)
            payload["metrics"] = metrics.to_dict()
            console.print_json(data=payload)
        else:
            _render_report(report, verbose=runtime.verbose)
            console.print(f"Build time: {format_duration(metrics.duration_ms)}")
            if metrics.binary_size is not None:
                console.print(
                    f"Binary: {escape(str(metrics.binary_path))} "
                    f"({format_bytes(metrics.binary_size)})"
                )
        _finish_pipeline(op, report, pipeline.warn_exit_code, context={"metrics": metrics.to_dict()})


@app.command("test")
def run_tests(
    ctx: typer.Context,
    watch: bool = WATCH_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run the test suite, optionally re-running on every change."""
    if not watch:
        _pipeline_command(ctx, "test", json_output)
        return

    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "test --watch",
        args={"json": json_output, "watch": True},
        target={"kind": "pipeline", "name": "test", "project": config.project_dir},
    ) as op:
        # Watch sessions log one summary record, not per-run steps.
        outcomes: Counter[str] = Counter()
        last: dict[str, object] = {}

        def _run(token: CancellationToken) -> Report:
            return _run_pipeline(runtime, op, "test", token=token, record_steps=False)

        def _show(report: Report) -> None:
            outcomes[report.status.value] += 1
            last.update(status=report.status.value, duration_ms=report.duration_ms)
            if json_output:
                console.print_json(data=serialize_report(report), indent=None)
            else:
                _render_report(report, verbose=runtime.verbose)
                console.print("[dim]Watching for changes (Ctrl+C to stop)...[/dim]")

        def _state(state: WatchState) -> None:
            if state is WatchState.PENDING_RERUN and not json_output:
                console.print("[yellow]Change detected; restarting tests.[/yellow]")

        source = PollingChangeSource(
            config.project_dir,
            config.watch.patterns,
            config.watch.ignore,
            poll_interval=config.watch.poll_interval,
        )
        scheduler = WatchScheduler(
            _run,
            source,
            debounce=config.watch.debounce_ms / 1000.0,
            on_report=_show,
            on_state=_state,
            poll_interval=config.runner.poll_interval,
        )
        stop = CancellationToken()
        failures: list[BaseException] = []

        def _drive() -> None:
            try:
                scheduler.run_forever(stop)
            except BaseException as exc:  # re-raised on the main thread
                failures.append(exc)
            finally:
                stop.cancel()

        worker = threading.Thread(target=_drive, name="oxyctl-watch-scheduler", daemon=True)
        worker.start()
        try:
            while not stop.wait(0.2):
                pass
        except KeyboardInterrupt:
            if not json_output:
                console.print("[yellow]Stopping watch mode.[/yellow]")
        finally:
            stop.cancel()
            worker.join()

        for failure in failures:
            if isinstance(failure, typer.Exit):
                raise failure
            if isinstance(failure, (WatchError, ResourceExhaustedError)):
                _command_error(op, f"Watch mode stopped: {failure}")
            raise failure

        op.success(
            "Watch mode stopped.",
            context={
                "runs": scheduler.runs_started,
                "reports": sum(outcomes.values()),
                "outcomes": dict(outcomes),
                "last_report": last or None,
            },
        )


# ---------------------------------------------------------------------------
# Doctor
# ---------------------------------------------------------------------------


def _parse_probe_categories(raw: str | None) -> set[str]:
    """Parse comma-separated probe categories into a normalised set."""
    if raw is None:
        return set()
    return {part.strip().lower() for part in raw.split(",") if part.strip()}


def _collect_status_identifiers(
    results: Sequence[ProbeResult],
    status: ProbeStatus,
) -> list[str]:
    """Return identifiers for results matching a particular status."""
    return [f"{result.category}:{result.id}" for result in results if result.status is status]


def _render_doctor_report(report: DoctorReport) -> None:
    """Render a doctor report in a human-friendly format."""
    summary = report.summary
    totals = summary.totals
    console.print(
        f"Doctor summary: {_SUMMARY_STATUS_STYLE[summary.status]} (exit={summary.exit_code})"
    )
    console.print(
        f"Totals: green={totals.get(ProbeStatus.GREEN, 0)} "
        f"warn={totals.get(ProbeStatus.YELLOW, 0)} "
        f"red={totals.get(ProbeStatus.RED, 0)}"
    )
    if not report.results:
        console.print("No probes were executed.")
        return

    console.print()
    for result in report.results:
        console.print(
            f"{_PROBE_STATUS_STYLE[result.status]} {escape(f'[{result.category}]')} "
            f"{result.id}: {escape(result.message)}"
        )
        if result.remediation:
            console.print(f"  remediation: {escape(result.remediation)}")
        if result.warnings:
            console.print(f"  notes: {', '.join(result.warnings)}")
        if result.duration_ms is not None:
            console.print(f"  duration: {result.duration_ms} ms")


@app.command()
def doctor(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    only: str | None = DOCTOR_ONLY_OPTION,
    exclude: str | None = DOCTOR_EXCLUDE_OPTION,
    timeout_ms: int | None = DOCTOR_TIMEOUT_MS_OPTION,
    max_concurrency: int | None = DOCTOR_MAX_CONCURRENCY_OPTION,
) -> None:
    """Check the Rust toolchain and project environment."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "doctor",
        args={
            "json": json_output,
            "only": only,
            "exclude": exclude,
            "timeout_ms": timeout_ms,
            "max_concurrency": max_concurrency,
        },
        target={"kind": "system", "scope": "health"},
    ) as op:
        include_categories = _parse_probe_categories(only)
        exclude_categories = _parse_probe_categories(exclude)

        invalid_categories = (include_categories | exclude_categories) - _PROBE_CATEGORY_SET
        if invalid_categories:
            _command_error(
                op,
                f"Unknown probe categories: {', '.join(sorted(invalid_categories))}",
                rc=2,
            )
        if only is not None and exclude is not None:
            _command_error(op, "Cannot combine --only and --exclude.", rc=2)

        doctor_config = runtime.config.doctor
        options = ProbeExecutorOptions(
            max_concurrency=(
                max_concurrency if max_concurrency is not None else doctor_config.max_concurrency
            ),
            exec_timeout=(
                max(timeout_ms / 1000.0, 0.001)
                if timeout_ms is not None
                else doctor_config.exec_timeout
            ),
        )

        context = create_probe_context(runtime.config, runtime.runner, options)
        discovered_probes = list(collect_probes(context))
        matched_probes = discovered_probes
        if include_categories:
            matched_probes = [
                probe for probe in matched_probes if probe.category in include_categories
            ]
        if exclude_categories:
            matched_probes = [
                probe for probe in matched_probes if probe.category not in exclude_categories
            ]

        metadata = {
            "filters": {
                "only": sorted(include_categories) if only is not None else None,
                "exclude": sorted(exclude_categories) if exclude is not None else None,
            },
            "discovered_probes": len(discovered_probes),
            "matched_probes": len(matched_probes),
            "options": asdict(options),
        }

        report = DoctorEngine(context).run(matched_probes, metadata=metadata)
        report_payload = serialize_doctor_report(report)

        if json_output:
            console.print_json(data=report_payload)
        else:
            _render_doctor_report(report)
            if not matched_probes and discovered_probes and (only or exclude):
                console.print("[yellow]No probes matched the provided filters.[/yellow]")

        warning_ids = _collect_status_identifiers(report.results, ProbeStatus.YELLOW)
        error_ids = _collect_status_identifiers(report.results, ProbeStatus.RED)
        log_context = {"report": report_payload}
        summary = report.summary

        if summary.exit_code == ExitCode.OK:
            if summary.status is ProbeStatus.YELLOW:
                if not json_output:
                    console.print("[yellow]Doctor completed with warnings.[/yellow]")
                op.warning(
                    "Doctor completed with warnings.",
                    warnings=warning_ids or None,
                    context=log_context,
                )
            else:
                op.success("Doctor run completed successfully.", context=log_context)
            return

        if not json_output:
            console.print("[red]Doctor detected toolchain problems.[/red]")
        op.error(
            "Doctor detected toolchain problems.",
            rc=summary.exit_code,
            errors=error_ids or None,
            warnings=warning_ids or None,
            context=log_context,
        )
        raise typer.Exit(code=summary.exit_code)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def _render_snapshot(snapshot: Snapshot) -> None:
    vcs = snapshot.vcs
    console.print(f"[green]Snapshot {snapshot.id} recorded[/green] at {snapshot.created_at}")
    if vcs.reference:
        console.print(
            f"  git: {vcs.reference[:12]} on {vcs.branch or '(detached)'}, "
            f"{vcs.files_changed} files changed (+{vcs.insertions}/-{vcs.deletions})"
        )
    else:
        console.print("  git: (no repository)")
    if snapshot.metrics is not None:
        metrics = snapshot.metrics
        size = format_bytes(metrics.binary_size) if metrics.binary_size is not None else "-"
        console.print(f"  build: {format_duration(metrics.duration_ms)}, binary {size}")


@snapshot_app.callback(invoke_without_command=True)
def snapshot(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Record a snapshot of VCS state and the latest build metrics."""
    if ctx.invoked_subcommand is not None:
        return
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshot",
        args={"json": json_output},
        target={"kind": "snapshot", "path": runtime.config.snapshots_file},
    ) as op:
        try:
            created = runtime.snapshots().create_snapshot()
        except (SnapshotError, GitError, ResourceExhaustedError) as exc:
            _command_error(op, f"Snapshot failed: {exc}")

        if json_output:
            console.print_json(data=created.to_dict())
        else:
            _render_snapshot(created)
        op.success(
            f"Recorded snapshot {created.id}.",
            changed=1,
            context={"snapshot": created.to_dict()},
        )


@snapshot_app.command("list")
def snapshot_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List recorded snapshots."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshot list",
        args={"json": json_output},
        target={"kind": "snapshot", "path": runtime.config.snapshots_file},
    ) as op:
        try:
            entries = runtime.snapshots().list_snapshots()
        except SnapshotError as exc:
            _command_error(op, str(exc))

        if json_output:
            console.print_json(data={"snapshots": [entry.to_dict() for entry in entries]})
            op.success("Reported snapshots as JSON.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold", justify="right")
        table.add_column("Created")
        table.add_column("Commit")
        table.add_column("Branch")
        table.add_column("Changes")
        table.add_column("Build")
        table.add_column("Binary")

        if not entries:
            table.add_row("(none)", "", "", "", "", "", "")
        for entry in entries:
            vcs = entry.vcs
            metrics = entry.metrics
            table.add_row(
                str(entry.id),
                entry.created_at,
                (vcs.reference or "-")[:12],
                vcs.branch or "-",
                f"{vcs.files_changed} (+{vcs.insertions}/-{vcs.deletions})",
                format_duration(metrics.duration_ms) if metrics else "-",
                (
                    format_bytes(metrics.binary_size)
                    if metrics and metrics.binary_size is not None
                    else "-"
                ),
            )
        console.print(table)
        op.success("Reported snapshots.")


# ---------------------------------------------------------------------------
# Toolchain and project inspection
# ---------------------------------------------------------------------------


@app.command()
def tools(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List installed Rust development tools and their versions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tools",
        args={"json": json_output},
        target={"kind": "toolchain"},
    ) as op:
        try:
            inventory = runtime.toolchain().inventory(
                max_concurrency=runtime.config.doctor.max_concurrency
            )
        except ResourceExhaustedError as exc:
            _command_error(op, f"Unable to probe tools: {exc}")

        missing = [item.name for item in inventory if not item.found]
        if json_output:
            console.print_json(data={"tools": [item.to_dict() for item in inventory]})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Tool", style="bold")
            table.add_column("Status")
            table.add_column("Version")
            for item in inventory:
                table.add_row(
                    item.name,
                    _TOOL_STATUS_STYLE.get(item.status, item.status),
                    escape(item.version or item.detail or "-"),
                )
            console.print(table)
        op.success(
            f"Found {len(inventory) - len(missing)} of {len(inventory)} tools.",
            context={"missing": missing},
        )


@app.command()
def env(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the Rust toolchain environment."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env",
        args={"json": json_output},
        target={"kind": "toolchain"},
    ) as op:
        try:
            data = runtime.toolchain().environment()
        except ResourceExhaustedError as exc:
            _command_error(op, f"Unable to inspect toolchain: {exc}")

        if json_output:
            console.print_json(data=data)
            op.success("Reported environment as JSON.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key in ("rustc", "cargo", "active_toolchain", "host"):
            table.add_row(key, escape(str(data.get(key) or "(unavailable)")))
        installed = data.get("installed_toolchains") or []
        table.add_row("installed_toolchains", escape("\n".join(installed)) or "(none)")
        variables = data.get("variables") or {}
        for name, value in variables.items():
            table.add_row(name, escape(value) if value else "[dim](not set)[/dim]")
        console.print(table)
        op.success("Reported environment.")


@app.command()
def info(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show project metadata and repository state."""
    runtime = _get_runtime(ctx)
    project_dir = runtime.config.project_dir
    with runtime.logger.operation(
        "info",
        args={"json": json_output},
        target={"kind": "project", "path": project_dir},
    ) as op:
        try:
            manifest = load_manifest(project_dir)
        except ManifestError as exc:
            _command_error(op, str(exc))
        if manifest is None:
            _command_error(op, f"No Cargo.toml found in {project_dir}; not a Rust project.")

        try:
            git = runtime.git().info()
        except GitError as exc:
            op.add_step("git", status="warning", detail=str(exc))
            git = {"is_git_repo": False}

        payload: dict[str, object] = {
            "project": manifest.to_dict(),
            "git": git,
            "files": project_files(project_dir),
            "target_dir_exists": target_dir(project_dir).is_dir(),
        }

        if json_output:
            console.print_json(data=payload)
            op.success("Reported project info as JSON.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_row("name", escape(manifest.name or "-"))
        table.add_row("version", escape(manifest.version or "-"))
        table.add_row("edition", escape(manifest.edition or "-"))
        table.add_row("description", escape(manifest.description or "-"))
        table.add_row(
            "dependencies",
            f"{manifest.dependencies} (dev {manifest.dev_dependencies}, "
            f"build {manifest.build_dependencies})",
        )
        if git.get("is_git_repo"):
            state = "clean" if git.get("is_clean") else f"{git.get('dirty_files')} dirty files"
            table.add_row("branch", escape(str(git.get("current_branch") or "(detached)")))
            table.add_row("working tree", state)
            commit = git.get("last_commit")
            if isinstance(commit, Mapping):
                table.add_row(
                    "last commit",
                    escape(f"{str(commit.get('hash', ''))[:12]} {commit.get('message', '')}"),
                )
        else:
            table.add_row("git", "(not a repository)")
        table.add_row("files", ", ".join(payload["files"]) or "-")
        table.add_row("target/", "present" if payload["target_dir_exists"] else "absent")
        console.print(table)
        op.success("Reported project info.")


@toolchain_app.command("list")
def toolchain_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the toolchains installed through rustup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "toolchain list",
        args={"json": json_output},
        target={"kind": "toolchain"},
    ) as op:
        toolchains = runtime.toolchain().toolchains()
        if not toolchains:
            _command_error(op, "rustup reported no toolchains; is rustup installed?")
        default = next((item["name"] for item in toolchains if item["is_default"]), None)

        if json_output:
            console.print_json(data={"toolchains": toolchains, "default": default})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Toolchain", style="bold")
            table.add_column("Default")
            table.add_column("Active")
            for item in toolchains:
                table.add_row(
                    escape(str(item["name"])),
                    "[green]yes[/green]" if item["is_default"] else "",
                    "[green]yes[/green]" if item["is_active"] else "",
                )
            console.print(table)
        op.success(f"Listed {len(toolchains)} toolchains.", context={"default": default})


@toolchain_app.command("show")
def toolchain_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the toolchain rustup selects for the project."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "toolchain show",
        args={"json": json_output},
        target={"kind": "toolchain", "path": runtime.config.project_dir},
    ) as op:
        provider = runtime.toolchain()
        active = provider.active_toolchain()
        if active is None:
            _command_error(op, "Unable to determine the active toolchain; is rustup installed?")
        name, _, reason = active.partition(" ")
        payload = {
            "active_toolchain": name,
            "reason": reason.strip().strip("()") or None,
            "host": provider.host_triple(),
        }

        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"Active toolchain: [bold]{escape(name)}[/bold]")
            if payload["reason"]:
                console.print(f"Selected by: {escape(str(payload['reason']))}")
            if payload["host"]:
                console.print(f"Host: {escape(str(payload['host']))}")
        op.success(f"Active toolchain is {name}.")


_DEPS_HINTS = {
    "cargo-outdated": "cargo install cargo-outdated",
    "cargo-audit": "cargo install cargo-audit",
}


def _deps_command(
    ctx: typer.Context,
    command: str,
    name: str,
    json_output: bool,
    *,
    show_output: bool = False,
) -> None:
    runtime = _get_runtime(ctx)
    project_dir = runtime.config.project_dir
    pipeline = runtime.registry().get(name)
    with runtime.logger.operation(
        command,
        args={"json": json_output},
        target={"kind": "pipeline", "name": name, "project": project_dir},
    ) as op:
        try:
            manifest = load_manifest(project_dir)
        except ManifestError as exc:
            _command_error(op, str(exc))
        if manifest is None:
            _command_error(op, f"No Cargo.toml found in {project_dir}; not a Rust project.")

        report = _run_pipeline(runtime, op, name)
        if json_output:
            console.print_json(data=serialize_report(report))
        else:
            if show_output:
                for step in report.steps:
                    if step.result is not None and step.result.stdout.strip():
                        console.print(escape(step.result.stdout.rstrip()), highlight=False)
            _render_report(report, verbose=runtime.verbose)
            for step in report.steps:
                hint = _DEPS_HINTS.get(step.spec.tool)
                missing = any("no such command" in item.message for item in step.diagnostics)
                if hint and missing:
                    console.print(f"Install {step.spec.tool} with: [bold]{hint}[/bold]")
        _finish_pipeline(op, report, pipeline.warn_exit_code)


@deps_app.command("tree")
def deps_tree(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the resolved dependency tree."""
    _deps_command(ctx, "deps tree", "deps-tree", json_output, show_output=True)


@deps_app.command("outdated")
def deps_outdated(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List dependencies with newer releases (requires cargo-outdated)."""
    _deps_command(ctx, "deps outdated", "deps-outdated", json_output)


@deps_app.command("audit")
def deps_audit(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Check dependencies against the RustSec advisory database (requires cargo-audit)."""
    _deps_command(ctx, "deps audit", "deps-audit", json_output)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, escape(rendered))

        console.print(table)
        op.success("Rendered configuration table.")


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
