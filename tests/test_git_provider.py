"""Tests for the git provider."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Mapping
from pathlib import Path

import pytest

from oxyctl.providers.git import GitError, GitProvider
from oxyctl.runner import (
    CancellationToken,
    CommandSpec,
    ExecutionContext,
    ExecutionResult,
    ProcessRunner,
)
from oxyctl.snapshots import VcsSummary


class GitStub:
    """Answers git invocations keyed by their argument tuple."""

    def __init__(self, answers: Mapping[tuple[str, ...], tuple[int, str]]) -> None:
        self.context = ExecutionContext()
        self.answers = dict(answers)
        self.calls: list[tuple[str, ...]] = []

    def run(self, spec: CommandSpec, token: CancellationToken | None = None) -> ExecutionResult:
        self.calls.append(spec.args)
        exit_code, stdout = self.answers.get(spec.args, (128, ""))
        return ExecutionResult(
            spec=spec,
            exit_code=exit_code,
            duration_ms=1,
            stdout=stdout if exit_code == 0 else "",
            stderr="" if exit_code == 0 else stdout or "fatal: not a git repository",
        )


REPO_ANSWERS: dict[tuple[str, ...], tuple[int, str]] = {
    ("rev-parse", "--is-inside-work-tree"): (0, "true\n"),
    ("rev-parse", "--verify", "--quiet", "HEAD"): (0, "0123abcd\n"),
    ("branch", "--show-current"): (0, "main\n"),
    ("status", "--porcelain"): (0, " M src/main.rs\n?? notes.txt\n"),
    ("diff", "--shortstat", "HEAD"): (
        0,
        " 2 files changed, 10 insertions(+), 3 deletions(-)\n",
    ),
    ("log", "-1", "--pretty=format:%H|%s|%an|%ad", "--date=short"): (
        0,
        "0123abcd|fix: a|b|Dev Person|2024-05-01",
    ),
}


def _provider(answers: Mapping[tuple[str, ...], tuple[int, str]], tmp_path: Path) -> GitProvider:
    return GitProvider(runner=GitStub(answers), repo_dir=tmp_path)  # type: ignore[arg-type]


def test_summary_reads_head_branch_and_diff(tmp_path: Path) -> None:
    """summary() combines rev-parse, branch, diff and status."""
    summary = _provider(REPO_ANSWERS, tmp_path).summary()

    assert summary == VcsSummary(
        reference="0123abcd",
        branch="main",
        files_changed=2,
        insertions=10,
        deletions=3,
        dirty_files=2,
    )


def test_summary_outside_repository_is_empty(tmp_path: Path) -> None:
    """Not being in a work tree gives an empty summary."""
    assert _provider({}, tmp_path).summary() == VcsSummary()


def test_summary_before_first_commit_diffs_index(tmp_path: Path) -> None:
    """Without HEAD the diff is taken against the index."""
    answers = dict(REPO_ANSWERS)
    del answers[("rev-parse", "--verify", "--quiet", "HEAD")]
    answers[("diff", "--shortstat")] = (0, " 1 file changed, 1 insertion(+)\n")
    provider = _provider(answers, tmp_path)

    summary = provider.summary()

    assert summary.reference is None
    assert (summary.files_changed, summary.insertions, summary.deletions) == (1, 1, 0)


def test_checked_commands_raise_git_error(tmp_path: Path) -> None:
    """Unexpected git failures surface as GitError."""
    answers = dict(REPO_ANSWERS)
    answers[("status", "--porcelain")] = (1, "fatal: index file corrupt")

    with pytest.raises(GitError, match="index file corrupt"):
        _provider(answers, tmp_path).status_porcelain()


def test_info_reports_last_commit_with_pipes_in_subject(tmp_path: Path) -> None:
    """The commit subject may itself contain the field separator."""
    info = _provider(REPO_ANSWERS, tmp_path).info()

    assert info["is_git_repo"] is True
    assert info["is_clean"] is False
    assert info["last_commit"] == {
        "hash": "0123abcd",
        "message": "fix: a|b",
        "author": "Dev Person",
        "date": "2024-05-01",
    }


def test_missing_git_binary_is_unavailable(tmp_path: Path) -> None:
    """An absent git executable is reported through ``available``."""
    provider = GitProvider(
        runner=ProcessRunner(), repo_dir=tmp_path, git_bin="oxyctl-missing-git"
    )

    assert provider.available is False
    assert provider.summary() == VcsSummary()
    assert provider.info() == {"is_git_repo": False}


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_real_repository_summary(tmp_path: Path) -> None:
    """Against a real repository the summary tracks commits and edits."""

    def _git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=tmp_path, check=True, capture_output=True)

    _git("init", "-q", "-b", "main")
    _git("config", "user.email", "dev@example.com")
    _git("config", "user.name", "Dev")
    (tmp_path / "a.txt").write_text("one\n")
    _git("add", "a.txt")
    _git("commit", "-q", "-m", "initial")
    (tmp_path / "a.txt").write_text("one\ntwo\n")

    provider = GitProvider(runner=ProcessRunner(), repo_dir=tmp_path)
    summary = provider.summary()

    assert provider.available is True
    assert summary.branch == "main"
    assert summary.reference is not None and len(summary.reference) == 40
    assert (summary.files_changed, summary.insertions) == (1, 1)
    assert summary.dirty_files == 1
