"""Tests for the per-tool output parsers."""
from __future__ import annotations

import json
import textwrap

from oxyctl.parsers import Diagnostic, ParserKind, Severity, parse_output

CLIPPY_STDERR = textwrap.dedent(
    """\
        Checking demo v0.1.0 (/tmp/demo)
    warning: unused variable: `x`
     --> src/main.rs:2:9
      |
    2 |     let x = 5;
      |         ^ help: if this is intentional, prefix it with an underscore: `_x`
      |
      = note: `#[warn(unused_variables)]` on by default

    error[E0308]: mismatched types
      --> src/lib.rs:10:5
       |
    10 |     "a"
       |     ^^^ expected `u32`, found `&str`

    warning: `demo` (bin "demo") generated 1 warning
    error: could not compile `demo` (lib) due to 1 previous error
    """
)

RUSTFMT_STDOUT = textwrap.dedent(
    """\
    Diff in /tmp/demo/src/main.rs:1:
    -fn main(){
    +fn main() {
    Diff in /tmp/demo/src/main.rs:5:
    -let y=1;
    +let y = 1;
    Diff in /tmp/demo/src/lib.rs at line 3:
    -pub fn f(){}
    +pub fn f() {}
    """
)

CARGO_TEST_STDOUT = textwrap.dedent(
    """\

    running 2 tests
    test tests::adds ... ok
    test tests::fails ... FAILED

    failures:

    ---- tests::fails stdout ----
    thread 'tests::fails' panicked at src/lib.rs:12:9:
    assertion `left == right` failed
      left: 1
     right: 2
    note: run with `RUST_BACKTRACE=1` environment variable to display a backtrace


    failures:
        tests::fails

    test result: FAILED. 1 passed; 1 failed; 0 ignored; 0 measured; 0 filtered out; finished in 0.00s

    """
)

CARGO_TEST_STDERR = textwrap.dedent(
    """\
        Finished `test` profile [unoptimized + debuginfo] target(s) in 0.31s
         Running unittests src/lib.rs (target/debug/deps/demo-1234abcd)
    error: test failed, to rerun pass `--lib`
    """
)


def _by_severity(diagnostics: list[Diagnostic], severity: Severity) -> list[Diagnostic]:
    return [item for item in diagnostics if item.severity is severity]


def test_cargo_parser_extracts_warning_and_error_with_locations() -> None:
    """Headers open diagnostics; the --> line supplies the location."""
    diagnostics = parse_output(ParserKind.CARGO, "", CLIPPY_STDERR, category="lint")

    assert len(diagnostics) == 2
    warning, error = diagnostics
    assert warning.severity is Severity.WARNING
    assert warning.message.startswith("unused variable: `x`")
    assert "#[warn(unused_variables)]" in warning.message
    assert (warning.file, warning.line, warning.column) == ("src/main.rs", 2, 9)
    assert warning.category == "lint"
    assert error.severity is Severity.ERROR
    assert error.code == "E0308"
    assert error.location == "src/lib.rs:10:5"


def test_cargo_parser_skips_progress_and_summary_lines() -> None:
    """Build progress and 'could not compile' trailers produce nothing."""
    stderr = (
        "   Compiling demo v0.1.0\n"
        "    Finished `dev` profile [unoptimized] target(s) in 1.0s\n"
        "error: could not compile `demo` (bin \"demo\") due to 2 previous errors\n"
    )

    assert parse_output(ParserKind.CARGO, "", stderr) == []


def test_cargo_parser_keeps_unknown_text_as_degraded_info() -> None:
    """Unrecognised text survives as one trailing degraded Info diagnostic."""
    diagnostics = parse_output(ParserKind.CARGO, "surprise banner\nsecond line\n", "")

    (diagnostic,) = diagnostics
    assert diagnostic.severity is Severity.INFO
    assert diagnostic.degraded is True
    assert diagnostic.message == "surprise banner\nsecond line"
    assert diagnostic.category == "compile"


def test_rustfmt_parser_reports_one_error_per_file() -> None:
    """Several hunks for one file collapse into a single diagnostic."""
    diagnostics = parse_output(ParserKind.RUSTFMT, RUSTFMT_STDOUT, "")

    assert [item.file for item in diagnostics] == ["/tmp/demo/src/main.rs", "/tmp/demo/src/lib.rs"]
    assert all(item.severity is Severity.ERROR for item in diagnostics)
    assert diagnostics[0].line == 1
    assert "+let y = 1;" in diagnostics[0].message
    assert diagnostics[1].line == 3
    assert diagnostics[1].category == "format"


def test_rustfmt_parser_reads_syntax_errors_from_stderr() -> None:
    """rustfmt syntax errors on stderr use the cargo rules."""
    stderr = "error: expected one of `;` or `}`, found `let`\n --> src/main.rs:3:5\n"

    (diagnostic,) = parse_output(ParserKind.RUSTFMT, "", stderr)

    assert diagnostic.severity is Severity.ERROR
    assert diagnostic.location == "src/main.rs:3:5"


def test_cargo_test_parser_reports_failures_then_summary() -> None:
    """A failing test becomes an Error with its panic location and output."""
    diagnostics = parse_output(ParserKind.CARGO_TEST, CARGO_TEST_STDOUT, CARGO_TEST_STDERR)

    assert len(diagnostics) == 2
    failure, summary = diagnostics
    assert failure.severity is Severity.ERROR
    assert failure.code == "tests::fails"
    assert failure.location == "src/lib.rs:12:9"
    assert failure.message.splitlines()[:2] == [
        "test tests::fails failed",
        "assertion `left == right` failed",
    ]
    assert "right: 2" in failure.message
    assert "RUST_BACKTRACE" not in failure.message
    assert summary.severity is Severity.INFO
    assert summary.code == "summary"
    assert summary.message == "1 passed; 1 failed; 0 ignored (0.00s)"


def test_cargo_test_parser_handles_old_style_panics() -> None:
    """Older toolchains put the panic message on the 'panicked at' line."""
    stdout = textwrap.dedent(
        """\
        test it_works ... FAILED

        failures:

        ---- it_works stdout ----
        thread 'it_works' panicked at 'boom', src/main.rs:4:5

        test result: FAILED. 0 passed; 1 failed; 0 ignored; 0 measured; 0 filtered out
        """
    )

    diagnostics = parse_output(ParserKind.CARGO_TEST, stdout, "")

    failure = diagnostics[0]
    assert failure.location == "src/main.rs:4:5"
    assert failure.message.splitlines()[1] == "boom"
    assert diagnostics[1].message == "0 passed; 1 failed; 0 ignored"


def test_cargo_test_parser_passing_run_yields_summary_only() -> None:
    """A green test run produces only Info summaries."""
    stdout = "running 1 test\ntest a ... ok\n\ntest result: ok. 1 passed; 0 failed; 0 ignored\n"

    diagnostics = parse_output(ParserKind.CARGO_TEST, stdout, CARGO_TEST_STDERR)

    assert [item.severity for item in diagnostics] == [Severity.INFO]


def test_generic_parser_defaults_to_warning() -> None:
    """file:line lines without a severity word are warnings."""
    stdout = "src/app.c:3:5: error: boom\nlib/util.py:10: looks odd\n  detail line\n"

    error, warning = parse_output(ParserKind.GENERIC, stdout, "")

    assert error.severity is Severity.ERROR
    assert (error.file, error.line, error.column) == ("src/app.c", 3, 5)
    assert warning.severity is Severity.WARNING
    assert warning.column is None
    assert warning.message == "looks odd\n  detail line"


def test_raw_parser_wraps_all_output_in_info() -> None:
    """RAW output is kept verbatim as a single Info diagnostic."""
    (diagnostic,) = parse_output(ParserKind.RAW, "hello\n", "world\n")

    assert diagnostic.severity is Severity.INFO
    assert diagnostic.message == "hello\nworld"
    assert diagnostic.degraded is False


def test_cargo_outdated_parser_reports_each_dependency() -> None:
    """Every outdated dependency is a warning naming current and latest versions."""
    stdout = json.dumps(
        {
            "crate_name": "demo",
            "dependencies": [
                {
                    "name": "serde",
                    "project": "1.0.100",
                    "compat": "1.0.210",
                    "latest": "1.0.210",
                    "kind": "Normal",
                    "platform": None,
                },
                {
                    "name": "rand",
                    "project": "0.7.3",
                    "compat": "0.7.4",
                    "latest": "0.8.5",
                    "kind": "Development",
                    "platform": None,
                },
            ],
        }
    )

    serde, rand = parse_output(ParserKind.CARGO_OUTDATED, stdout, "")

    assert serde.severity is Severity.WARNING
    assert serde.message == "serde 1.0.100 -> 1.0.210"
    assert serde.code == "normal"
    assert rand.message == "rand 0.7.3 -> 0.8.5 (compatible: 0.7.4)"
    assert rand.category == "dependencies"
    assert parse_output(ParserKind.CARGO_OUTDATED, '{"dependencies": []}', "") == []


def test_cargo_audit_parser_splits_vulnerabilities_and_warnings() -> None:
    """Vulnerabilities are errors keyed by advisory id; other findings warn."""
    stdout = json.dumps(
        {
            "vulnerabilities": {
                "found": True,
                "count": 1,
                "list": [
                    {
                        "advisory": {
                            "id": "RUSTSEC-2019-0009",
                            "title": "Double-free and use-after-free in SmallVec::grow()",
                        },
                        "versions": {"patched": [">=0.6.10"], "unaffected": []},
                        "package": {"name": "smallvec", "version": "0.6.9"},
                    }
                ],
            },
            "warnings": {
                "unmaintained": [
                    {
                        "kind": "unmaintained",
                        "package": {"name": "term", "version": "0.7.0"},
                        "advisory": {"id": "RUSTSEC-2018-0015", "title": "term is unmaintained"},
                    }
                ],
                "yanked": [
                    {
                        "kind": "yanked",
                        "package": {"name": "futures-util", "version": "0.3.0"},
                        "advisory": None,
                    }
                ],
            },
        }
    )

    vulnerability, unmaintained, yanked = parse_output(ParserKind.CARGO_AUDIT, stdout, "")

    assert vulnerability.severity is Severity.ERROR
    assert vulnerability.code == "RUSTSEC-2019-0009"
    assert vulnerability.message.startswith("smallvec 0.6.9: Double-free")
    assert vulnerability.message.endswith("(patched: >=0.6.10)")
    assert vulnerability.category == "security"
    assert unmaintained.severity is Severity.WARNING
    assert unmaintained.message == "term 0.7.0: unmaintained (term is unmaintained)"
    assert yanked.code == "yanked"
    assert yanked.message == "futures-util 0.3.0: yanked"


def test_dependency_report_parsers_fall_back_without_json() -> None:
    """A missing cargo subcommand becomes an error; other text is kept degraded."""
    stderr = "error: no such command: `outdated`\n\n\tView all installed commands with `cargo --list`\n"

    (missing,) = parse_output(ParserKind.CARGO_OUTDATED, "", stderr)
    (unreadable,) = parse_output(ParserKind.CARGO_AUDIT, "not json\n", "")

    assert missing.severity is Severity.ERROR
    assert missing.message == "no such command: `outdated`"
    assert unreadable.severity is Severity.INFO
    assert unreadable.degraded is True
    assert unreadable.message == "not json"


def test_unknown_kind_and_empty_output() -> None:
    """Unknown kinds fall back to RAW; empty output yields nothing."""
    assert parse_output("nonsense", "", "") == []
    (diagnostic,) = parse_output("nonsense", "text", "")
    assert diagnostic.category == "general"


def test_severity_rank_orders_by_badness() -> None:
    """Error outranks Warning, which outranks Info."""
    assert Severity.ERROR.rank > Severity.WARNING.rank > Severity.INFO.rank
