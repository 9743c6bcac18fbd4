"""Append-only snapshot log of build metrics and VCS state.

Snapshots live in ``<state_dir>/snapshots.json``. The whole log is rewritten on
every append through a temporary file and :func:`os.replace`, so readers see
either the previous log or the new one, never a partial write. The latest
``oxyctl build`` metrics are kept next to it in ``build-metrics.json`` using
the same write path.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = 1


class SnapshotError(RuntimeError):
    """Raised when the snapshot log cannot be read or written."""


@dataclass(slots=True, frozen=True)
class VcsSummary:
    """Working-tree state at snapshot time."""

    reference: str | None = None
    branch: str | None = None
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    dirty_files: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "reference": self.reference,
            "branch": self.branch,
            "files_changed": self.files_changed,
            "insertions": self.insertions,
            "deletions": self.deletions,
            "dirty_files": self.dirty_files,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> VcsSummary:
        """Rebuild a summary from :meth:`to_dict` output."""
        return cls(
            reference=_optional_str(data.get("reference")),
            branch=_optional_str(data.get("branch")),
            files_changed=_int(data.get("files_changed")),
            insertions=_int(data.get("insertions")),
            deletions=_int(data.get("deletions")),
            dirty_files=_int(data.get("dirty_files")),
        )


@dataclass(slots=True, frozen=True)
class BuildMetrics:
    """Timing and size of the most recent build."""

    duration_ms: int
    binary_path: str | None = None
    binary_size: int | None = None
    pipeline_status: str | None = None
    recorded_at: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "duration_ms": self.duration_ms,
            "binary_path": self.binary_path,
            "binary_size": self.binary_size,
            "pipeline_status": self.pipeline_status,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BuildMetrics:
        """Rebuild metrics from :meth:`to_dict` output."""
        size = data.get("binary_size")
        return cls(
            duration_ms=_int(data.get("duration_ms")),
            binary_path=_optional_str(data.get("binary_path")),
            binary_size=_int(size) if size is not None else None,
            pipeline_status=_optional_str(data.get("pipeline_status")),
            recorded_at=_optional_str(data.get("recorded_at")),
        )


@dataclass(slots=True, frozen=True)
class Snapshot:
    """Immutable point-in-time record."""

    id: int
    created_at: str
    vcs: VcsSummary = field(default_factory=VcsSummary)
    metrics: BuildMetrics | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "id": self.id,
            "created_at": self.created_at,
            "vcs": self.vcs.to_dict(),
            "metrics": self.metrics.to_dict() if self.metrics is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Snapshot:
        """Rebuild a snapshot from :meth:`to_dict` output."""
        vcs = data.get("vcs")
        metrics = data.get("metrics")
        created_at = data.get("created_at")
        if not isinstance(created_at, str):
            raise SnapshotError(f"Snapshot record is missing created_at: {data!r}")
        return cls(
            id=_int(data.get("id")),
            created_at=created_at,
            vcs=VcsSummary.from_dict(vcs) if isinstance(vcs, Mapping) else VcsSummary(),
            metrics=BuildMetrics.from_dict(metrics) if isinstance(metrics, Mapping) else None,
        )


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _int(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise SnapshotError(f"Expected an integer in snapshot record, got {value!r}.")
    return value


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _atomic_write_json(path: Path, payload: Mapping[str, object]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    except OSError as exc:
        raise SnapshotError(f"Unable to prepare {path}: {exc}") from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=False)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        os.chmod(path, 0o640)
    except OSError as exc:
        raise SnapshotError(f"Unable to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def _read_json(path: Path) -> object | None:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SnapshotError(f"Failed to parse {path}: {exc}") from exc
    except OSError as exc:
        raise SnapshotError(f"Unable to read {path}: {exc}") from exc


class SnapshotManager:
    """Create and list snapshots; never mutates or deletes existing ones."""

    def __init__(
        self,
        path: Path,
        *,
        vcs: Callable[[], VcsSummary] | None = None,
        metrics_path: Path | None = None,
    ) -> None:
        """Bind the manager to a snapshot log and a VCS summary source."""
        self.path = Path(path).expanduser()
        self.metrics_path = (
            Path(metrics_path).expanduser()
            if metrics_path is not None
            else self.path.with_name("build-metrics.json")
        )
        self._vcs = vcs or VcsSummary
        self._last_id = 0
        self._lock = threading.Lock()

    def list_snapshots(self) -> list[Snapshot]:
        """Return every persisted snapshot in creation order."""
        raw = _read_json(self.path)
        if raw is None:
            return []
        if not isinstance(raw, Mapping):
            raise SnapshotError(f"Snapshot log {self.path} must contain a JSON object.")
        entries = raw.get("snapshots", [])
        if not isinstance(entries, list):
            raise SnapshotError(f"Snapshot log {self.path} has a malformed 'snapshots' list.")
        snapshots: list[Snapshot] = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                raise SnapshotError(
                    f"Snapshot log {self.path} contains a non-object entry: {entry!r}"
                )
            snapshots.append(Snapshot.from_dict(entry))
        return sorted(snapshots, key=lambda snapshot: snapshot.id)

    def get(self, snapshot_id: int) -> Snapshot | None:
        """Return the snapshot with *snapshot_id*, if present."""
        for snapshot in self.list_snapshots():
            if snapshot.id == snapshot_id:
                return snapshot
        return None

    def create_snapshot(self, metrics: BuildMetrics | None = None) -> Snapshot:
        """Append a snapshot of the current VCS state and *metrics*.

        When *metrics* is omitted the most recently recorded build metrics are
        used. Ids continue from the highest persisted id and never repeat
        within this manager's lifetime.
        """
        with self._lock:
            existing = self.list_snapshots()
            vcs = self._vcs()
            if metrics is None:
                metrics = self.latest_build_metrics()
            next_id = max([self._last_id, *(snapshot.id for snapshot in existing)]) + 1
            snapshot = Snapshot(id=next_id, created_at=_now_iso(), vcs=vcs, metrics=metrics)
            payload = {
                "version": SNAPSHOT_FORMAT_VERSION,
                "snapshots": [item.to_dict() for item in (*existing, snapshot)],
            }
            _atomic_write_json(self.path, payload)
            self._last_id = next_id
        LOGGER.debug("Recorded snapshot %s in %s", snapshot.id, self.path)
        return snapshot

    def record_build_metrics(self, metrics: BuildMetrics) -> BuildMetrics:
        """Persist *metrics* as the latest build measurement."""
        stamped = metrics
        if metrics.recorded_at is None:
            stamped = replace(metrics, recorded_at=_now_iso())
        _atomic_write_json(self.metrics_path, stamped.to_dict())
        return stamped

    def latest_build_metrics(self) -> BuildMetrics | None:
        """Return the last metrics written by :meth:`record_build_metrics`."""
        raw = _read_json(self.metrics_path)
        if raw is None:
            return None
        if not isinstance(raw, Mapping):
            raise SnapshotError(f"Build metrics file {self.metrics_path} is malformed.")
        return BuildMetrics.from_dict(raw)


__all__ = [
    "BuildMetrics",
    "Snapshot",
    "SnapshotError",
    "SnapshotManager",
    "VcsSummary",
]
