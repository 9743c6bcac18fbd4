"""Git provider used for snapshots and project info."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from ..runner import CommandSpec, ExecutionResult, FailureKind, ProcessRunner
from ..snapshots import VcsSummary

_SHORTSTAT = re.compile(
    r"(?P<files>\d+) files? changed"
    r"(?:, (?P<insertions>\d+) insertions?\(\+\))?"
    r"(?:, (?P<deletions>\d+) deletions?\(-\))?"
)


class GitError(RuntimeError):
    """Raised when git fails unexpectedly."""


@dataclass(slots=True)
class GitProvider:
    """Read-only queries against the repository containing ``repo_dir``."""

    runner: ProcessRunner
    repo_dir: Path
    git_bin: str = "git"
    timeout: float = 10.0

    def _git(self, *args: str) -> ExecutionResult:
        spec = CommandSpec(
            tool="git",
            executable=self.git_bin,
            args=args,
            cwd=self.repo_dir,
            timeout=self.timeout,
        )
        return self.runner.run(spec)

    def _checked(self, *args: str) -> str:
        result = self._git(*args)
        if not result.succeeded:
            detail = result.stderr.strip() or result.reason
            raise GitError(f"git {' '.join(args)} failed: {detail}")
        return result.stdout

    @property
    def available(self) -> bool:
        """Return ``True`` when the git executable can be spawned."""
        return self._git("--version").failure is not FailureKind.TOOL_NOT_FOUND

    def is_repository(self) -> bool:
        """Return ``True`` when ``repo_dir`` is inside a work tree."""
        result = self._git("rev-parse", "--is-inside-work-tree")
        return result.succeeded and result.stdout.strip() == "true"

    def head(self) -> str | None:
        """Return the current commit id, or ``None`` before the first commit."""
        result = self._git("rev-parse", "--verify", "--quiet", "HEAD")
        if not result.succeeded:
            return None
        return result.stdout.strip() or None

    def branch(self) -> str | None:
        """Return the current branch name (``None`` when detached)."""
        return self._checked("branch", "--show-current").strip() or None

    def status_porcelain(self) -> list[str]:
        """Return ``git status --porcelain`` entries."""
        return [line for line in self._checked("status", "--porcelain").splitlines() if line]

    def diff_stat(self, *, has_head: bool = True) -> tuple[int, int, int]:
        """Return (files changed, insertions, deletions) for the working tree."""
        args = ("diff", "--shortstat", "HEAD") if has_head else ("diff", "--shortstat")
        output = self._checked(*args)
        match = _SHORTSTAT.search(output)
        if match is None:
            return (0, 0, 0)
        return (
            int(match.group("files")),
            int(match.group("insertions") or 0),
            int(match.group("deletions") or 0),
        )

    def last_commit(self) -> dict[str, str] | None:
        """Return hash, subject, author and date of ``HEAD``."""
        result = self._git("log", "-1", "--pretty=format:%H|%s|%an|%ad", "--date=short")
        if not result.succeeded or not result.stdout.strip():
            return None
        parts = result.stdout.strip().split("|")
        if len(parts) < 4:
            return None
        # Subjects may themselves contain "|".
        return {
            "hash": parts[0],
            "message": "|".join(parts[1:-2]),
            "author": parts[-2],
            "date": parts[-1],
        }

    def summary(self) -> VcsSummary:
        """Capture the current VCS state for a snapshot.

        Outside a repository, or without git installed, an empty summary is
        returned rather than an error.
        """
        if not self.is_repository():
            return VcsSummary()
        head = self.head()
        files, insertions, deletions = self.diff_stat(has_head=head is not None)
        return VcsSummary(
            reference=head,
            branch=self.branch(),
            files_changed=files,
            insertions=insertions,
            deletions=deletions,
            dirty_files=len(self.status_porcelain()),
        )

    def info(self) -> dict[str, object]:
        """Return repository details for ``oxyctl info``."""
        if not self.is_repository():
            return {"is_git_repo": False}
        dirty = self.status_porcelain()
        payload: dict[str, object] = {
            "is_git_repo": True,
            "current_branch": self.branch(),
            "dirty_files": len(dirty),
            "is_clean": not dirty,
        }
        commit = self.last_commit()
        if commit is not None:
            payload["last_commit"] = commit
        return payload


__all__ = ["GitError", "GitProvider"]
