"""Turn raw tool output into structured diagnostics.

Each :class:`ParserKind` owns one rule set; :func:`parse_output` dispatches
through a table so adding a tool means adding one enum member and one
function. Parsers are pure and never raise: text that matches none of the
known shapes is kept in a trailing ``Info`` diagnostic flagged ``degraded``.

Continuation rule shared by the location-based parsers: once a diagnostic is
open, any following line that does not start a new diagnostic is appended to
its message. A blank line closes the open diagnostic.
"""
from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

LOGGER = logging.getLogger(__name__)


class Severity(str, Enum):
    """Severity of a single diagnostic."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def rank(self) -> int:
        """Return a sortable rank (higher is worse)."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.ERROR: 2}


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """One finding extracted from tool output."""

    severity: Severity
    message: str
    category: str = "general"
    file: str | None = None
    line: int | None = None
    column: int | None = None
    code: str | None = None
    degraded: bool = False

    @property
    def location(self) -> str | None:
        """Return ``file:line:column`` (as much as is known)."""
        if self.file is None:
            return None
        parts = [self.file]
        if self.line is not None:
            parts.append(str(self.line))
            if self.column is not None:
                parts.append(str(self.column))
        return ":".join(parts)


class ParserKind(str, Enum):
    """Closed set of output shapes understood by :func:`parse_output`."""

    CARGO = "cargo"
    RUSTFMT = "rustfmt"
    CARGO_TEST = "cargo-test"
    CARGO_OUTDATED = "cargo-outdated"
    CARGO_AUDIT = "cargo-audit"
    GENERIC = "generic"
    RAW = "raw"


DEFAULT_CATEGORIES: dict[ParserKind, str] = {
    ParserKind.CARGO: "compile",
    ParserKind.RUSTFMT: "format",
    ParserKind.CARGO_TEST: "test",
    ParserKind.CARGO_OUTDATED: "dependencies",
    ParserKind.CARGO_AUDIT: "security",
    ParserKind.GENERIC: "general",
    ParserKind.RAW: "general",
}


@dataclass
class _Draft:
    severity: Severity
    message: str
    file: str | None = None
    line: int | None = None
    column: int | None = None
    code: str | None = None
    extra: list[str] = field(default_factory=list)

    def build(self, category: str) -> Diagnostic:
        text = self.message
        if self.extra:
            text = "\n".join([self.message, *self.extra]).rstrip()
        return Diagnostic(
            severity=self.severity,
            message=text,
            category=category,
            file=self.file,
            line=self.line,
            column=self.column,
            code=self.code,
        )


class _Collector:
    """Accumulates drafts plus any text no rule recognised."""

    def __init__(self, category: str) -> None:
        self.category = category
        self.drafts: list[_Draft] = []
        self.current: _Draft | None = None
        self.unmatched: list[str] = []

    def open(self, draft: _Draft) -> _Draft:
        self.drafts.append(draft)
        self.current = draft
        return draft

    def close(self) -> None:
        self.current = None

    def continue_or_unmatched(self, line: str) -> None:
        if self.current is not None:
            self.current.extra.append(line.rstrip())
        elif line.strip():
            self.unmatched.append(line.rstrip())

    def finish(self) -> list[Diagnostic]:
        diagnostics = [draft.build(self.category) for draft in self.drafts]
        leftover = "\n".join(self.unmatched).strip()
        if leftover:
            diagnostics.append(
                Diagnostic(
                    severity=Severity.INFO,
                    message=leftover,
                    category=self.category,
                    degraded=True,
                )
            )
        return diagnostics


# ---------------------------------------------------------------------------
# cargo / rustc / clippy
# ---------------------------------------------------------------------------

_CARGO_HEADER = re.compile(
    r"^(?P<level>error|warning|note|help)(?:\[(?P<code>[A-Za-z0-9_:-]+)\])?: (?P<message>.*)$"
)
_CARGO_LOCATION = re.compile(r"^\s*--> (?P<file>.+?):(?P<line>\d+):(?P<column>\d+)\s*$")
_CARGO_PROGRESS = re.compile(
    r"^\s*(?:Compiling|Checking|Finished|Running|Fresh|Downloading|Downloaded|Updating|"
    r"Locking|Adding|Blocking|Documenting|Doc-tests|Packaging|Verifying|Archiving|"
    r"Installing|Installed|Replacing|Replaced|Removing|Removed|Executable|Fixed|"
    r"Dirty|Waiting|Building|Unpacking)\b"
)
_CARGO_SUMMARY = re.compile(
    r"^(?:warning|error): (?:.* generated \d+ warnings?\b.*|could not compile .*|"
    r"aborting due to .*|build failed.*|\d+ warnings? emitted|test failed.*|"
    r"\d+ targets? failed.*)$"
)
_CARGO_EXPLAIN = re.compile(r"^(?:For more information about|Some errors have detailed explanations)")

_LEVELS = {
    "error": Severity.ERROR,
    "warning": Severity.WARNING,
    "note": Severity.INFO,
    "help": Severity.INFO,
}


def _is_cargo_noise(line: str) -> bool:
    return bool(
        _CARGO_PROGRESS.match(line)
        or _CARGO_SUMMARY.match(line)
        or _CARGO_EXPLAIN.match(line)
    )


def _feed_cargo(collector: _Collector, lines: Iterable[str]) -> None:
    for line in lines:
        if not line.strip():
            collector.close()
            continue
        if _is_cargo_noise(line):
            collector.close()
            continue
        header = _CARGO_HEADER.match(line)
        if header:
            collector.open(
                _Draft(
                    severity=_LEVELS[header.group("level")],
                    message=header.group("message").strip(),
                    code=header.group("code"),
                )
            )
            continue
        location = _CARGO_LOCATION.match(line)
        current = collector.current
        if location and current is not None and current.file is None:
            current.file = location.group("file")
            current.line = int(location.group("line"))
            current.column = int(location.group("column"))
            continue
        collector.continue_or_unmatched(line)


def _parse_cargo(stdout: str, stderr: str, category: str) -> list[Diagnostic]:
    collector = _Collector(category)
    _feed_cargo(collector, stdout.splitlines())
    collector.close()
    _feed_cargo(collector, stderr.splitlines())
    return collector.finish()


# ---------------------------------------------------------------------------
# rustfmt --check
# ---------------------------------------------------------------------------

_RUSTFMT_DIFF = re.compile(
    r"^Diff in (?P<file>.+?)(?: at line (?P<line_a>\d+)|:(?P<line_b>\d+)):?\s*$"
)


def _parse_rustfmt(stdout: str, stderr: str, category: str) -> list[Diagnostic]:
    collector = _Collector(category)
    by_file: dict[str, _Draft] = {}
    for line in stdout.splitlines():
        match = _RUSTFMT_DIFF.match(line)
        if match:
            file = match.group("file")
            draft = by_file.get(file)
            if draft is None or collector.current is not draft:
                line_no = int(match.group("line_a") or match.group("line_b"))
                draft = collector.open(
                    _Draft(
                        severity=Severity.ERROR,
                        message="needs formatting",
                        file=file,
                        line=line_no,
                    )
                )
                by_file[file] = draft
            else:
                draft.extra.append(line.rstrip())
            continue
        if collector.current is not None:
            collector.current.extra.append(line.rstrip())
        elif line.strip():
            collector.unmatched.append(line.rstrip())
    collector.close()
    # rustfmt reports syntax errors in rustc's format on stderr.
    _feed_cargo(collector, stderr.splitlines())
    return collector.finish()


# ---------------------------------------------------------------------------
# cargo test
# ---------------------------------------------------------------------------

_TEST_LINE = re.compile(r"^test (?P<name>\S+)(?: - .*?)? \.\.\. (?P<outcome>ok|FAILED|ignored.*|bench:.*)$")
_TEST_SECTION = re.compile(r"^---- (?P<name>\S+)(?: - .*?)? std(?:out|err) ----$")
_TEST_PANIC_NEW = re.compile(
    r"^thread '(?P<name>[^']+)' panicked at (?P<file>.+?):(?P<line>\d+):(?P<column>\d+):\s*$"
)
_TEST_PANIC_OLD = re.compile(
    r"^thread '(?P<name>[^']+)' panicked at '(?P<message>.*)', "
    r"(?P<file>.+?):(?P<line>\d+):(?P<column>\d+)\s*$"
)
_TEST_RESULT = re.compile(
    r"^test result: (?P<outcome>ok|FAILED)\. (?P<passed>\d+) passed; (?P<failed>\d+) failed; "
    r"(?P<ignored>\d+) ignored(?:; (?P<measured>\d+) measured)?"
    r"(?:; (?P<filtered>\d+) filtered out)?(?:; finished in (?P<elapsed>\S+))?"
)
_TEST_SECTION_NOISE = re.compile(r"^(?:note: run with `RUST_BACKTRACE=1`.*|stack backtrace:)$")
# Indented single tokens are the test names listed under the second "failures:" header.
_TEST_NOISE = re.compile(r"^(?:running \d+ tests?|\s+\S+|error: test failed.*)$")


def _parse_cargo_test(stdout: str, stderr: str, category: str) -> list[Diagnostic]:
    collector = _Collector(category)
    failed: dict[str, _Draft] = {}
    summaries: list[Diagnostic] = []
    section: _Draft | None = None
    pending_panic: _Draft | None = None

    for line in stdout.splitlines():
        if pending_panic is not None:
            if line.strip():
                pending_panic.extra.insert(0, line.strip())
            pending_panic = None
            continue
        test = _TEST_LINE.match(line)
        if test:
            section = None
            if test.group("outcome") == "FAILED":
                name = test.group("name")
                failed[name] = collector.open(
                    _Draft(severity=Severity.ERROR, message=f"test {name} failed", code=name)
                )
                collector.close()
            continue
        header = _TEST_SECTION.match(line)
        if header:
            name = header.group("name")
            section = failed.get(name)
            if section is None:
                section = failed[name] = collector.open(
                    _Draft(severity=Severity.ERROR, message=f"test {name} failed", code=name)
                )
                collector.close()
            continue
        result = _TEST_RESULT.match(line)
        if result:
            section = None
            summaries.append(_test_summary(result, category))
            continue
        panic_new = _TEST_PANIC_NEW.match(line)
        panic_old = _TEST_PANIC_OLD.match(line)
        panic = panic_new or panic_old
        if panic:
            name = panic.group("name")
            target = failed.get(name) or section
            if target is None:
                target = failed[name] = collector.open(
                    _Draft(severity=Severity.ERROR, message=f"test {name} failed", code=name)
                )
                collector.close()
            target.file = panic.group("file")
            target.line = int(panic.group("line"))
            target.column = int(panic.group("column"))
            if panic_old:
                target.extra.insert(0, panic_old.group("message"))
            else:
                pending_panic = target
            continue
        if line == "failures:" or line == "successes:":
            section = None
            continue
        if section is not None:
            if line.strip() and not _TEST_SECTION_NOISE.match(line):
                section.extra.append(line.rstrip())
            continue
        if not line.strip() or _TEST_NOISE.match(line) or _TEST_SECTION_NOISE.match(line):
            continue
        collector.unmatched.append(line.rstrip())

    collector.close()
    _feed_cargo(collector, stderr.splitlines())
    diagnostics = collector.finish()
    degraded = [diagnostic for diagnostic in diagnostics if diagnostic.degraded]
    found = [diagnostic for diagnostic in diagnostics if not diagnostic.degraded]
    return [*found, *summaries, *degraded]


def _test_summary(match: re.Match[str], category: str) -> Diagnostic:
    passed = int(match.group("passed"))
    failed = int(match.group("failed"))
    ignored = int(match.group("ignored"))
    message = f"{passed} passed; {failed} failed; {ignored} ignored"
    elapsed = match.group("elapsed")
    if elapsed:
        message = f"{message} ({elapsed})"
    return Diagnostic(severity=Severity.INFO, message=message, category=category, code="summary")


# ---------------------------------------------------------------------------
# Generic file:line:col tools
# ---------------------------------------------------------------------------

_GENERIC = re.compile(
    r"^(?P<file>(?:[A-Za-z]:)?[^:\s][^:]*):(?P<line>\d+)(?::(?P<column>\d+))?:\s*"
    r"(?:(?P<level>fatal error|error|warning|note|info)\s*:\s*)?(?P<message>.*)$",
    re.IGNORECASE,
)
_GENERIC_LEVELS = {
    "fatal error": Severity.ERROR,
    "error": Severity.ERROR,
    "warning": Severity.WARNING,
    "note": Severity.INFO,
    "info": Severity.INFO,
}


def _parse_generic(stdout: str, stderr: str, category: str) -> list[Diagnostic]:
    collector = _Collector(category)
    for text in (stdout, stderr):
        for line in text.splitlines():
            if not line.strip():
                collector.close()
                continue
            match = _GENERIC.match(line)
            if match and not line[:1].isspace():
                level = (match.group("level") or "").lower()
                collector.open(
                    _Draft(
                        severity=_GENERIC_LEVELS.get(level, Severity.WARNING),
                        message=match.group("message").strip(),
                        file=match.group("file"),
                        line=int(match.group("line")),
                        column=int(match.group("column")) if match.group("column") else None,
                    )
                )
                continue
            collector.continue_or_unmatched(line)
        collector.close()
    return collector.finish()


# ---------------------------------------------------------------------------
# cargo outdated / cargo audit (JSON reports)
# ---------------------------------------------------------------------------


def _json_documents(text: str) -> list[Mapping[str, Any]]:
    """Decode one JSON object per line; workspaces print one per member."""
    documents: list[Mapping[str, Any]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            document = json.loads(line)
        except ValueError:
            continue
        if isinstance(document, Mapping):
            documents.append(document)
    return documents


def _unreadable_report(stdout: str, stderr: str, category: str) -> list[Diagnostic]:
    # cargo reports a missing subcommand as "error: no such command" on stderr.
    diagnostics = [item for item in _parse_cargo("", stderr, category) if not item.degraded]
    raw = _parse_raw(stdout, "" if diagnostics else stderr, category)
    return diagnostics + [replace(item, degraded=True) for item in raw]


def _parse_cargo_outdated(stdout: str, stderr: str, category: str) -> list[Diagnostic]:
    documents = _json_documents(stdout)
    if not documents:
        return _unreadable_report(stdout, stderr, category)
    diagnostics: list[Diagnostic] = []
    for document in documents:
        crate = document.get("crate_name")
        for entry in document.get("dependencies") or ():
            if not isinstance(entry, Mapping):
                continue
            name = entry.get("name", "?")
            current = entry.get("project", "?")
            latest = entry.get("latest", "?")
            message = f"{name} {current} -> {latest}"
            compat = entry.get("compat")
            if compat and compat not in ("---", latest):
                message += f" (compatible: {compat})"
            if crate and len(documents) > 1:
                message = f"{crate}: {message}"
            diagnostics.append(
                Diagnostic(
                    severity=Severity.WARNING,
                    message=message,
                    category=category,
                    code=str(entry.get("kind") or "outdated").lower(),
                )
            )
    return diagnostics


def _advisory_subject(entry: Mapping[str, Any]) -> str:
    package = entry.get("package")
    if not isinstance(package, Mapping):
        return "?"
    return f"{package.get('name', '?')} {package.get('version', '?')}".strip()


def _parse_cargo_audit(stdout: str, stderr: str, category: str) -> list[Diagnostic]:
    documents = _json_documents(stdout)
    if not documents:
        return _unreadable_report(stdout, stderr, category)
    report = documents[0]
    diagnostics: list[Diagnostic] = []

    vulnerabilities = report.get("vulnerabilities") or ()
    if isinstance(vulnerabilities, Mapping):
        vulnerabilities = vulnerabilities.get("list") or ()
    for entry in vulnerabilities:
        if not isinstance(entry, Mapping):
            continue
        advisory = entry.get("advisory") or {}
        message = f"{_advisory_subject(entry)}: {advisory.get('title', 'vulnerability')}"
        patched = (entry.get("versions") or {}).get("patched") or ()
        if patched:
            message += f" (patched: {', '.join(patched)})"
        diagnostics.append(
            Diagnostic(
                severity=Severity.ERROR,
                message=message,
                category=category,
                code=advisory.get("id"),
            )
        )

    warnings = report.get("warnings") or {}
    if isinstance(warnings, Mapping):
        for kind, entries in warnings.items():
            for entry in entries or ():
                if not isinstance(entry, Mapping):
                    continue
                advisory = entry.get("advisory") or {}
                message = f"{_advisory_subject(entry)}: {entry.get('kind', kind)}"
                if advisory.get("title"):
                    message += f" ({advisory['title']})"
                diagnostics.append(
                    Diagnostic(
                        severity=Severity.WARNING,
                        message=message,
                        category=category,
                        code=advisory.get("id") or str(kind),
                    )
                )
    return diagnostics


def _parse_raw(stdout: str, stderr: str, category: str) -> list[Diagnostic]:
    text = "\n".join(part.strip() for part in (stdout, stderr) if part.strip())
    if not text:
        return []
    return [Diagnostic(severity=Severity.INFO, message=text, category=category)]


_PARSERS: dict[ParserKind, Callable[[str, str, str], list[Diagnostic]]] = {
    ParserKind.CARGO: _parse_cargo,
    ParserKind.RUSTFMT: _parse_rustfmt,
    ParserKind.CARGO_TEST: _parse_cargo_test,
    ParserKind.CARGO_OUTDATED: _parse_cargo_outdated,
    ParserKind.CARGO_AUDIT: _parse_cargo_audit,
    ParserKind.GENERIC: _parse_generic,
    ParserKind.RAW: _parse_raw,
}


def parse_output(
    kind: ParserKind | str,
    stdout: str,
    stderr: str,
    *,
    category: str | None = None,
) -> list[Diagnostic]:
    """Return the diagnostics found in a tool's *stdout* and *stderr*."""
    try:
        parser_kind = ParserKind(kind)
    except ValueError:
        parser_kind = ParserKind.RAW
    effective_category = category or DEFAULT_CATEGORIES[parser_kind]
    try:
        return _PARSERS[parser_kind](stdout or "", stderr or "", effective_category)
    except Exception:  # pragma: no cover - rule sets are not expected to raise
        LOGGER.debug("Parser %s failed; keeping raw output", parser_kind.value, exc_info=True)
        return [
            replace(diagnostic, degraded=True)
            for diagnostic in _parse_raw(stdout or "", stderr or "", effective_category)
        ]


__all__ = [
    "DEFAULT_CATEGORIES",
    "Diagnostic",
    "ParserKind",
    "Severity",
    "parse_output",
]
