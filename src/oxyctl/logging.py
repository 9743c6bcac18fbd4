"""Structured operation logging for oxyctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. When the
command finishes a single JSON record is appended to ``operations.jsonl`` in
the configured logs directory. The record captures the command name, the
arguments it was invoked with, any intermediate steps, and the final result.

Log writes are best-effort: if the directory cannot be created or a write
fails the logger disables itself and the command carries on.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOGGER = logging.getLogger(__name__)

ROOT_LOGGER_NAME = "oxyctl"
OPERATIONS_LOG = "operations.jsonl"


def configure_console_logging(
    verbose: bool = False,
    *,
    console: Console | None = None,
) -> logging.Logger:
    """Attach a Rich handler to the ``oxyctl`` logger hierarchy."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        show_time=verbose,
        markup=False,
    )
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False
    return logger


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def sanitize(value: object) -> object:
    """Convert *value* into JSON-friendly primitives."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final outcome for one CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope with the invoking command metadata."""
        stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%S")
        self.operation_id = f"op-{stamp}-{secrets.token_hex(3)}"
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _now_iso()
        self._start = time.perf_counter()
        self._steps: list[dict[str, object]] = []
        self._result: dict[str, object] | None = None

    @property
    def result(self) -> Mapping[str, object] | None:
        """Return the recorded result block, if any."""
        return self._result

    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: str | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an intermediate step of the operation."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        if context:
            step["context"] = sanitize(context)
        self._steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, rc=0, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        rc: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            rc=rc,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        rc: int = 1,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            errors=list(errors) if errors else [message],
            warnings=warnings,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
        }
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if context:
            result["context"] = sanitize(context)
        self._result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this operation."""
        return {
            "op_id": self.operation_id,
            "command": self.command,
            "args": sanitize(self.args),
            "target": sanitize(self.target),
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "steps": list(self._steps),
            "result": self._result or {"status": "unknown", "rc": None},
        }


class StructuredLogger:
    """Append-only JSON-lines log of CLI operations."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling logging if it is unusable."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Operation log disabled; cannot create %s: %s", self._logs_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                exit_code = getattr(exc, "exit_code", None)
                if exit_code == 0:
                    scope.success("Operation exited early.")
                else:
                    scope.error(str(exc) or type(exc).__name__, rc=exit_code or 1)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            LOGGER.debug("Operation log disabled after write failure: %s", exc)
            self._enabled = False


__all__ = [
    "OperationScope",
    "StructuredLogger",
    "configure_console_logging",
    "sanitize",
]
