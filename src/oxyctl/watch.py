"""Watch mode: re-run a pipeline whenever project files change.

:class:`WatchScheduler` is a small state machine driven from one
coordinating thread:

* ``IDLE``: nothing running. A change (after the debounce window) starts a run.
* ``RUNNING``: a run is in flight. A change cancels it and moves to
  ``PENDING_RERUN``.
* ``PENDING_RERUN``: the cancelled run is winding down. Further changes only
  push the debounce deadline out; once the old run has returned and the
  window is quiet, exactly one fresh run starts.

Reports from cancelled runs are dropped, so the display layer only ever sees
reports that reflect the latest file state.
"""
from __future__ import annotations

import logging
import os
import re
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from enum import Enum
from pathlib import Path

from .pipelines.models import Report
from .runner import CancellationToken

LOGGER = logging.getLogger(__name__)

RunFunction = Callable[[CancellationToken], Report]
ReportCallback = Callable[[Report], None]
StateCallback = Callable[["WatchState"], None]
ChangeCallback = Callable[[Sequence[str]], None]


class WatchError(RuntimeError):
    """Raised when the project tree cannot be watched."""


class WatchState(str, Enum):
    """States of :class:`WatchScheduler`."""

    IDLE = "idle"
    RUNNING = "running"
    PENDING_RERUN = "pending-rerun"


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    index = 0
    while index < len(pattern):
        if pattern.startswith("**/", index):
            parts.append("(?:.*/)?")
            index += 3
        elif pattern.startswith("**", index):
            parts.append(".*")
            index += 2
        elif pattern[index] == "*":
            parts.append("[^/]*")
            index += 1
        elif pattern[index] == "?":
            parts.append("[^/]")
            index += 1
        else:
            parts.append(re.escape(pattern[index]))
            index += 1
    return re.compile("".join(parts) + r"\Z")


class PollingChangeSource:
    """Detect file changes by polling modification times."""

    def __init__(
        self,
        root: Path,
        patterns: Iterable[str],
        ignore: Iterable[str] = (),
        *,
        poll_interval: float = 0.5,
    ) -> None:
        """Watch files under *root* matching any of *patterns*."""
        self.root = Path(root)
        self.poll_interval = poll_interval
        self._patterns = [_compile_pattern(pattern) for pattern in patterns]
        self._ignore = set(ignore)
        self._mtimes: dict[str, float] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def matches(self, relative: str) -> bool:
        """Return ``True`` when *relative* (posix style) is watched."""
        return any(pattern.match(relative) for pattern in self._patterns)

    def scan(self) -> dict[str, float]:
        """Return modification times for every watched file."""
        found: dict[str, float] = {}
        for directory, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [name for name in dirnames if name not in self._ignore]
            base = Path(directory)
            for filename in filenames:
                path = base / filename
                relative = path.relative_to(self.root).as_posix()
                if not self.matches(relative):
                    continue
                try:
                    found[relative] = path.stat().st_mtime
                except OSError:
                    continue
        return found

    def detect_changes(self) -> list[str]:
        """Return files added, modified or removed since the last scan."""
        current = self.scan()
        changed = {
            relative
            for relative, mtime in current.items()
            if self._mtimes.get(relative) != mtime
        }
        changed.update(set(self._mtimes) - set(current))
        self._mtimes = current
        return sorted(changed)

    def start(self, callback: ChangeCallback) -> None:
        """Begin polling on a background thread."""
        if not self.root.is_dir():
            raise WatchError(f"Cannot watch {self.root}: directory does not exist.")
        try:
            self._mtimes = self.scan()
        except OSError as exc:
            raise WatchError(f"Cannot watch {self.root}: {exc}") from exc
        LOGGER.debug("Watching %s files under %s", len(self._mtimes), self.root)
        self._stop.clear()

        def _loop() -> None:
            while not self._stop.wait(self.poll_interval):
                changes = self.detect_changes()
                if changes:
                    LOGGER.debug("Detected changes: %s", ", ".join(changes))
                    callback(changes)

        self._thread = threading.Thread(target=_loop, name="oxyctl-watch", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop polling and wait for the thread to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None


class WatchScheduler:
    """Debounced, cancel-and-restart scheduler for pipeline runs."""

    def __init__(
        self,
        run: RunFunction,
        source: PollingChangeSource | None = None,
        *,
        debounce: float = 0.3,
        on_report: ReportCallback | None = None,
        on_state: StateCallback | None = None,
        poll_interval: float = 0.05,
    ) -> None:
        """Create a scheduler around *run*, fed by *source* (or :meth:`notify_change`)."""
        self._run = run
        self._source = source
        self._debounce = debounce
        self._on_report = on_report
        self._on_state = on_state
        self._poll_interval = poll_interval
        self._cond = threading.Condition()
        self._state = WatchState.IDLE
        self._dirty = False
        self._last_event = 0.0
        self._changed: set[str] = set()
        self._current: CancellationToken | None = None
        self._runs_started = 0

    @property
    def state(self) -> WatchState:
        """Return the current state."""
        with self._cond:
            return self._state

    @property
    def runs_started(self) -> int:
        """Return how many runs have been started so far."""
        with self._cond:
            return self._runs_started

    def notify_change(self, paths: Iterable[str] = ()) -> None:
        """Record a file-change event; safe to call from any thread."""
        with self._cond:
            self._changed.update(paths)
            self._dirty = True
            self._last_event = time.monotonic()
            entered: WatchState | None = None
            if self._state is WatchState.RUNNING and self._current is not None:
                self._current.cancel()
                entered = self._set_state(WatchState.PENDING_RERUN)
            self._cond.notify_all()
        self._emit(entered)

    def run_forever(self, stop: CancellationToken, *, initial_run: bool = True) -> None:
        """Schedule runs until *stop* is cancelled.

        Any in-flight run is cancelled on the way out and the change source
        is stopped before returning.
        """
        if self._source is not None:
            self._source.start(self.notify_change)
        if initial_run:
            with self._cond:
                self._dirty = True
                self._last_event = time.monotonic() - self._debounce
        try:
            while not stop.cancelled:
                changed = self._wait_for_trigger(stop)
                if changed is None:
                    continue
                self._execute(stop, changed)
        finally:
            if self._source is not None:
                self._source.stop()
            with self._cond:
                if self._current is not None:
                    self._current.cancel()
                entered = self._set_state(WatchState.IDLE)
            self._emit(entered)

    def _wait_for_trigger(self, stop: CancellationToken) -> list[str] | None:
        with self._cond:
            while not stop.cancelled:
                if self._dirty:
                    remaining = self._last_event + self._debounce - time.monotonic()
                    if remaining <= 0:
                        changed = sorted(self._changed)
                        self._changed.clear()
                        self._dirty = False
                        return changed
                    self._cond.wait(min(remaining, self._poll_interval))
                else:
                    self._cond.wait(self._poll_interval)
        return None

    def _execute(self, stop: CancellationToken, changed: list[str]) -> None:
        token = CancellationToken.linked(stop)
        with self._cond:
            self._current = token
            self._runs_started += 1
            run_number = self._runs_started
            entered = self._set_state(WatchState.RUNNING)
        self._emit(entered)
        LOGGER.debug("Starting watch run %s (changes: %s)", run_number, ", ".join(changed) or "-")

        report: Report | None = None
        try:
            report = self._run(token)
        finally:
            with self._cond:
                superseded = token.cancelled or (report is not None and report.cancelled)
                self._current = None
                entered = None
                if self._state is WatchState.RUNNING or (
                    self._state is WatchState.PENDING_RERUN and not self._dirty
                ):
                    entered = self._set_state(WatchState.IDLE)
            self._emit(entered)

        if superseded:
            LOGGER.debug("Discarding report of superseded run %s", run_number)
            return
        if report is not None and self._on_report is not None:
            self._on_report(report)

    def _set_state(self, state: WatchState) -> WatchState | None:
        """Switch state under ``_cond``; return *state* if it changed."""
        if state is self._state:
            return None
        self._state = state
        return state

    def _emit(self, state: WatchState | None) -> None:
        # Called without holding ``_cond``.
        if state is not None and self._on_state is not None:
            self._on_state(state)


__all__ = [
    "PollingChangeSource",
    "WatchError",
    "WatchScheduler",
    "WatchState",
]
