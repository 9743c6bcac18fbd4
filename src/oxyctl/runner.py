"""Process runner used by every pipeline step and doctor probe.

The runner spawns one external tool invocation per :class:`CommandSpec`,
drains stdout and stderr on separate threads so neither pipe can fill up and
stall the child, and enforces the configured timeout. Each process is started
in its own session so that a timeout or cancellation can signal the whole
process group rather than just the direct child.

Every invocation produces an :class:`ExecutionResult`, including failures to
spawn. The only condition escalated as an exception is
:class:`ResourceExhaustedError`, raised when the operating system refuses to
create any new process at all.
"""
from __future__ import annotations

import errno
import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, TYPE_CHECKING

from .parsers import ParserKind

if TYPE_CHECKING:
    from .config import AppConfig

LOGGER = logging.getLogger(__name__)

_RESOURCE_ERRNOS = frozenset({errno.EAGAIN, errno.EMFILE, errno.ENFILE, errno.ENOMEM})

OutputCallback = Callable[[str, str], None]


class ResourceExhaustedError(RuntimeError):
    """Raised when the operating system cannot create any new process."""


class FailureKind(str, Enum):
    """Why an invocation did not run to completion."""

    TOOL_NOT_FOUND = "tool-not-found"
    SPAWN_ERROR = "spawn-error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Defaults shared by the runner, aggregator and doctor engine."""

    default_timeout: float = 900.0
    kill_grace: float = 2.0
    poll_interval: float = 0.05
    verbosity: int = 0
    env: Mapping[str, str] = field(default_factory=dict)
    logger: logging.Logger = LOGGER

    @classmethod
    def from_config(cls, config: AppConfig, *, verbosity: int = 0) -> ExecutionContext:
        """Build a context from the resolved application configuration."""
        return cls(
            default_timeout=config.runner.default_timeout,
            kill_grace=config.runner.kill_grace,
            poll_interval=config.runner.poll_interval,
            verbosity=verbosity,
        )


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """Declarative description of a single tool invocation."""

    tool: str
    executable: str
    args: tuple[str, ...] = ()
    cwd: Path | None = None
    timeout: float | None = None
    parser: ParserKind = ParserKind.RAW
    required: bool = True
    category: str = "general"
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> list[str]:
        """Return the full argument vector."""
        return [self.executable, *self.args]

    @property
    def display(self) -> str:
        """Return a shell-like rendering of the command for messages."""
        return " ".join(self.argv)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one invocation."""

    spec: CommandSpec
    exit_code: int
    duration_ms: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False
    failure: FailureKind | None = None

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the process ran and exited with status 0."""
        return self.failure is None and self.exit_code == 0

    @property
    def reason(self) -> str | None:
        """Return a human readable explanation for a failed invocation."""
        if self.failure is FailureKind.TOOL_NOT_FOUND:
            return f"{self.spec.executable}: executable not found"
        if self.failure is FailureKind.SPAWN_ERROR:
            return f"{self.spec.executable}: failed to start ({self.stderr.strip()})"
        if self.failure is FailureKind.TIMEOUT:
            return f"{self.spec.display} timed out after {self.duration_ms / 1000:.1f}s"
        if self.failure is FailureKind.CANCELLED:
            return f"{self.spec.display} was cancelled"
        if self.exit_code != 0:
            return f"{self.spec.display} exited with status {self.exit_code}"
        return None


class CancellationToken:
    """Thread-safe, one-shot cancellation flag.

    Tokens can be chained with :meth:`linked`: cancelling a parent cancels
    every child created from it, while cancelling a child leaves the parent
    untouched.
    """

    def __init__(self) -> None:
        """Create an uncancelled token."""
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: list[CancellationToken] = []

    @classmethod
    def linked(cls, parent: CancellationToken | None) -> CancellationToken:
        """Return a new token that is cancelled whenever *parent* is."""
        child = cls()
        if parent is not None:
            parent._attach(child)
        return child

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Cancel this token and all tokens linked to it."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            children = list(self._children)
            self._children.clear()
        for child in children:
            child.cancel()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses; return the flag."""
        return self._event.wait(timeout)

    def _attach(self, child: CancellationToken) -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.append(child)
                return
        child.cancel()


class ExecutionHandle:
    """Handle to a running (or already finished) invocation."""

    def __init__(
        self,
        spec: CommandSpec,
        *,
        context: ExecutionContext,
        token: CancellationToken,
        process: subprocess.Popen[bytes] | None = None,
        result: ExecutionResult | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        """Attach reader threads to *process*, or wrap a precomputed *result*."""
        self.spec = spec
        self._context = context
        self._token = token
        self._process = process
        self._result = result
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self._stdout: list[bytes] = []
        self._stderr: list[bytes] = []
        self._readers: list[threading.Thread] = []
        if process is not None:
            self._readers = [
                self._spawn_reader("stdout", process.stdout, self._stdout, on_output),
                self._spawn_reader("stderr", process.stderr, self._stderr, on_output),
            ]

    @property
    def pid(self) -> int | None:
        """Return the process id, or ``None`` when spawning failed."""
        return self._process.pid if self._process is not None else None

    @property
    def done(self) -> bool:
        """Return ``True`` once a result is available."""
        return self._result is not None

    def cancel(self) -> ExecutionResult:
        """Terminate the process group and return once it has been reaped."""
        self._token.cancel()
        return self.wait()

    def wait(self) -> ExecutionResult:
        """Block until the invocation finishes, times out, or is cancelled."""
        with self._lock:
            if self._result is not None:
                return self._result
            assert self._process is not None
            self._result = self._supervise(self._process)
            return self._result

    def _supervise(self, process: subprocess.Popen[bytes]) -> ExecutionResult:
        timeout = self.spec.timeout or self._context.default_timeout
        deadline = self._started + timeout if timeout else None
        poll = self._context.poll_interval
        timed_out = False
        cancelled = False
        while True:
            try:
                process.wait(timeout=poll)
                break
            except subprocess.TimeoutExpired:
                pass
            if self._token.cancelled:
                cancelled = True
            elif deadline is not None and time.monotonic() >= deadline:
                timed_out = True
            else:
                continue
            if process.poll() is not None:
                timed_out = cancelled = False
                break
            self._terminate(process)
            break

        if not (timed_out or cancelled):
            # Background descendants can hold the pipes open after the leader exits.
            timed_out, cancelled = self._await_readers(deadline, poll)
            if timed_out or cancelled:
                self._terminate(process)

        interrupted = timed_out or cancelled
        for reader in self._readers:
            reader.join(timeout=self._context.kill_grace if interrupted else None)

        exit_code = process.returncode
        if interrupted and exit_code == 0:
            exit_code = -1
        failure: FailureKind | None = None
        if timed_out:
            failure = FailureKind.TIMEOUT
        elif cancelled:
            failure = FailureKind.CANCELLED
        result = ExecutionResult(
            spec=self.spec,
            exit_code=exit_code,
            duration_ms=int((time.monotonic() - self._started) * 1000),
            stdout=_decode(self._stdout),
            stderr=_decode(self._stderr),
            timed_out=timed_out,
            cancelled=cancelled,
            failure=failure,
        )
        self._context.logger.debug(
            "%s finished: exit=%s duration_ms=%s failure=%s",
            self.spec.display,
            result.exit_code,
            result.duration_ms,
            failure.value if failure else None,
        )
        return result

    def _await_readers(self, deadline: float | None, poll: float) -> tuple[bool, bool]:
        """Wait for both pipes to close; return ``(timed_out, cancelled)``."""
        while True:
            pending = [reader for reader in self._readers if reader.is_alive()]
            if not pending:
                return False, False
            if self._token.cancelled:
                return False, True
            if deadline is not None and time.monotonic() >= deadline:
                return True, False
            pending[0].join(timeout=poll)

    def _terminate(self, process: subprocess.Popen[bytes]) -> None:
        grace = self._context.kill_grace
        if os.name == "posix":
            pgid = process.pid
            _signal_group(pgid, signal.SIGTERM)
            try:
                process.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                _signal_group(pgid, signal.SIGKILL)
                process.wait()
            # Stragglers that ignored SIGTERM keep the group alive after the leader exits.
            _signal_group(pgid, signal.SIGKILL)
            return
        process.terminate()
        try:
            process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def _spawn_reader(
        self,
        name: str,
        stream: IO[bytes] | None,
        sink: list[bytes],
        on_output: OutputCallback | None,
    ) -> threading.Thread:
        def _drain() -> None:
            if stream is None:
                return
            try:
                for line in iter(stream.readline, b""):
                    sink.append(line)
                    if on_output is not None:
                        on_output(name, line.decode("utf-8", errors="replace"))
            finally:
                stream.close()

        thread = threading.Thread(
            target=_drain,
            name=f"oxyctl-{self.spec.tool}-{name}",
            daemon=True,
        )
        thread.start()
        return thread


class ProcessRunner:
    """Spawn tool invocations under a shared :class:`ExecutionContext`."""

    def __init__(self, context: ExecutionContext | None = None) -> None:
        """Store the execution defaults."""
        self.context = context or ExecutionContext()

    def start(
        self,
        spec: CommandSpec,
        token: CancellationToken | None = None,
        *,
        on_output: OutputCallback | None = None,
    ) -> ExecutionHandle:
        """Spawn *spec* and return a handle without waiting for it."""
        handle_token = CancellationToken.linked(token)
        started = time.monotonic()
        if spec.cwd is not None and not Path(spec.cwd).is_dir():
            return self._failed(
                spec,
                handle_token,
                FailureKind.SPAWN_ERROR,
                f"working directory does not exist: {spec.cwd}",
                started,
            )
        self.context.logger.debug("Spawning %s (cwd=%s)", spec.display, spec.cwd)
        try:
            process = subprocess.Popen(  # noqa: S603 - argv is built from CommandSpec
                spec.argv,
                cwd=str(spec.cwd) if spec.cwd is not None else None,
                env=self._environment(spec),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **_session_kwargs(),
            )
        except FileNotFoundError:
            return self._failed(
                spec,
                handle_token,
                FailureKind.TOOL_NOT_FOUND,
                f"{spec.executable}: command not found",
                started,
            )
        except OSError as exc:
            if exc.errno in _RESOURCE_ERRNOS:
                raise ResourceExhaustedError(
                    f"Unable to spawn {spec.executable}: {exc.strerror or exc}"
                ) from exc
            return self._failed(
                spec,
                handle_token,
                FailureKind.SPAWN_ERROR,
                f"{spec.executable}: {exc.strerror or exc}",
                started,
            )
        return ExecutionHandle(
            spec,
            context=self.context,
            token=handle_token,
            process=process,
            on_output=on_output,
        )

    def run(
        self,
        spec: CommandSpec,
        token: CancellationToken | None = None,
        *,
        on_output: OutputCallback | None = None,
    ) -> ExecutionResult:
        """Run *spec* to completion and return its result."""
        return self.start(spec, token, on_output=on_output).wait()

    def _environment(self, spec: CommandSpec) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.context.env)
        env.update(spec.env)
        return env

    def _failed(
        self,
        spec: CommandSpec,
        token: CancellationToken,
        failure: FailureKind,
        message: str,
        started: float,
    ) -> ExecutionHandle:
        self.context.logger.debug("Could not start %s: %s", spec.display, message)
        result = ExecutionResult(
            spec=spec,
            exit_code=-1,
            duration_ms=int((time.monotonic() - started) * 1000),
            stderr=message,
            failure=failure,
        )
        return ExecutionHandle(spec, context=self.context, token=token, result=result)


def _session_kwargs() -> dict[str, object]:
    if os.name == "posix":
        return {"start_new_session": True}
    return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}


def _signal_group(pgid: int, signum: int) -> None:
    try:
        os.killpg(pgid, signum)
    except (ProcessLookupError, PermissionError):
        pass


def _decode(chunks: Sequence[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


__all__ = [
    "CancellationToken",
    "CommandSpec",
    "ExecutionContext",
    "ExecutionHandle",
    "ExecutionResult",
    "FailureKind",
    "ProcessRunner",
    "ResourceExhaustedError",
]
