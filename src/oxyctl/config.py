"""Configuration loader for oxyctl.

This module centralises the logic for reading configuration values from
multiple sources, in increasing order of precedence:

1. Built-in defaults.
2. ``<user config dir>/oxyctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``OXYCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export OXYCTL_RUNNER__DEFAULT_TIMEOUT=300
    export OXYCTL_PIPELINES__CHECK__MODE=collect-all

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import platformdirs

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load oxyctl configuration. Install with "
        "`pip install oxyctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "OXYCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

RUN_MODES = ("fail-fast", "collect-all")
PIPELINE_NAMES = ("check", "build", "test", "ci", "deps-tree", "deps-outdated", "deps-audit")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


def default_config_file() -> Path:
    """Return the per-user configuration file location."""
    return Path(platformdirs.user_config_dir("oxyctl")) / "config.yml"


@dataclass(frozen=True)
class ToolchainConfig:
    """Executables used to drive the toolchain."""

    cargo_bin: str = "cargo"
    rustc_bin: str = "rustc"
    rustup_bin: str = "rustup"
    git_bin: str = "git"
    linker: str = "cc"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cargo_bin": self.cargo_bin,
            "rustc_bin": self.rustc_bin,
            "rustup_bin": self.rustup_bin,
            "git_bin": self.git_bin,
            "linker": self.linker,
        }


@dataclass(frozen=True)
class RunnerConfig:
    """Process runner defaults."""

    default_timeout: float = 900.0
    kill_grace: float = 2.0
    poll_interval: float = 0.05

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "default_timeout": self.default_timeout,
            "kill_grace": self.kill_grace,
            "poll_interval": self.poll_interval,
        }


@dataclass(frozen=True)
class DoctorConfig:
    """Doctor probe execution defaults."""

    max_concurrency: int = 8
    exec_timeout: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_concurrency": self.max_concurrency, "exec_timeout": self.exec_timeout}


@dataclass(frozen=True)
class WatchConfig:
    """Watch-mode polling and debounce settings."""

    debounce_ms: int = 300
    poll_interval: float = 0.5
    patterns: tuple[str, ...] = (
        "src/**/*.rs",
        "tests/**/*.rs",
        "benches/**/*.rs",
        "examples/**/*.rs",
        "build.rs",
        "Cargo.toml",
        "Cargo.lock",
    )
    ignore: tuple[str, ...] = ("target", ".git", ".oxyctl")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "debounce_ms": self.debounce_ms,
            "poll_interval": self.poll_interval,
            "patterns": list(self.patterns),
            "ignore": list(self.ignore),
        }


@dataclass(frozen=True)
class PipelineConfig:
    """Per-pipeline execution policy."""

    mode: str = "fail-fast"
    timeout: float | None = None
    warn_exit_code: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mode": self.mode,
            "timeout": self.timeout,
            "warn_exit_code": self.warn_exit_code,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for oxyctl."""

    config_file: Path
    project_dir: Path
    state_dir: Path
    logs_dir: Path
    snapshots_file: Path
    metrics_file: Path
    toolchain: ToolchainConfig = ToolchainConfig()
    runner: RunnerConfig = RunnerConfig()
    doctor: DoctorConfig = DoctorConfig()
    watch: WatchConfig = WatchConfig()
    pipelines: Mapping[str, PipelineConfig] = field(default_factory=dict)
    deny_warnings: bool = False
    release_build: bool = True

    def pipeline(self, name: str) -> PipelineConfig:
        """Return the policy for pipeline *name* (defaults when unset)."""
        return self.pipelines.get(name) or PipelineConfig()

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "project_dir": str(self.project_dir),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "snapshots_file": str(self.snapshots_file),
            "metrics_file": str(self.metrics_file),
            "toolchain": self.toolchain.to_dict(),
            "runner": self.runner.to_dict(),
            "doctor": self.doctor.to_dict(),
            "watch": self.watch.to_dict(),
            "pipelines": {
                name: policy.to_dict() for name, policy in sorted(self.pipelines.items())
            },
            "lint": {"deny_warnings": self.deny_warnings},
            "build": {"release": self.release_build},
        }


DEFAULTS: dict[str, object] = {
    "config_file": None,  # resolved through platformdirs when absent
    "project_dir": ".",
    "state_dir": None,  # derived from project_dir when absent
    "logs_dir": None,  # derived from state_dir when absent
    "snapshots_file": None,
    "metrics_file": None,
    "toolchain": {
        "cargo_bin": "cargo",
        "rustc_bin": "rustc",
        "rustup_bin": "rustup",
        "git_bin": "git",
        "linker": "cc",
    },
    "runner": {
        "default_timeout": 900.0,
        "kill_grace": 2.0,
        "poll_interval": 0.05,
    },
    "doctor": {
        "max_concurrency": 8,
        "exec_timeout": 5.0,
    },
    "watch": {
        "debounce_ms": 300,
        "poll_interval": 0.5,
        "patterns": list(WatchConfig.patterns),
        "ignore": list(WatchConfig.ignore),
    },
    "pipelines": {
        "check": {"mode": "fail-fast", "timeout": None, "warn_exit_code": 2},
        "build": {"mode": "fail-fast", "timeout": None, "warn_exit_code": 0},
        "test": {"mode": "fail-fast", "timeout": None, "warn_exit_code": 0},
        "ci": {"mode": "collect-all", "timeout": None, "warn_exit_code": 2},
        "deps-tree": {"mode": "fail-fast", "timeout": None, "warn_exit_code": 0},
        "deps-outdated": {"mode": "fail-fast", "timeout": None, "warn_exit_code": 0},
        "deps-audit": {"mode": "fail-fast", "timeout": None, "warn_exit_code": 2},
    },
    "lint": {"deny_warnings": False},
    "build": {"release": True},
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "toolchain": {"cargo_bin", "rustc_bin", "rustup_bin", "git_bin", "linker"},
    "runner": {"default_timeout", "kill_grace", "poll_interval"},
    "doctor": {"max_concurrency", "exec_timeout"},
    "watch": {"debounce_ms", "poll_interval", "patterns", "ignore"},
    "lint": {"deny_warnings"},
    "build": {"release"},
}
_PIPELINE_KEYS = {"mode", "timeout", "warn_exit_code"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return default_config_file()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    pipelines = _as_dict(raw.get("pipelines"), "pipelines")
    unknown_pipelines = set(pipelines.keys()) - set(PIPELINE_NAMES)
    if unknown_pipelines:
        joined = ", ".join(sorted(unknown_pipelines))
        raise ConfigError(f"Unknown pipelines: {joined}.")
    for name, value in pipelines.items():
        policy = _as_dict(value, f"pipelines.{name}")
        unknown = set(policy.keys()) - _PIPELINE_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown pipelines.{name} keys: {joined}.")
        mode = policy.get("mode")
        if mode is not None and str(mode) not in RUN_MODES:
            allowed = ", ".join(RUN_MODES)
            raise ConfigError(
                f"Unsupported mode '{mode}' for pipeline '{name}'. Allowed: {allowed}."
            )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    project_dir = _to_path(raw.get("project_dir"))

    state_value = raw.get("state_dir")
    state_dir = _to_path(state_value) if state_value else project_dir / ".oxyctl"
    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else state_dir / "logs"
    snapshots_value = raw.get("snapshots_file")
    snapshots_file = (
        _to_path(snapshots_value) if snapshots_value else state_dir / "snapshots.json"
    )
    metrics_value = raw.get("metrics_file")
    metrics_file = (
        _to_path(metrics_value) if metrics_value else state_dir / "build-metrics.json"
    )

    toolchain_mapping = _as_dict(raw.get("toolchain"), "toolchain")
    toolchain = ToolchainConfig(
        cargo_bin=str(toolchain_mapping.get("cargo_bin", "cargo")),
        rustc_bin=str(toolchain_mapping.get("rustc_bin", "rustc")),
        rustup_bin=str(toolchain_mapping.get("rustup_bin", "rustup")),
        git_bin=str(toolchain_mapping.get("git_bin", "git")),
        linker=str(toolchain_mapping.get("linker", "cc")),
    )

    runner_mapping = _as_dict(raw.get("runner"), "runner")
    runner = RunnerConfig(
        default_timeout=_expect_positive_float(
            runner_mapping.get("default_timeout"), "runner.default_timeout", default=900.0
        ),
        kill_grace=_expect_positive_float(
            runner_mapping.get("kill_grace"), "runner.kill_grace", default=2.0
        ),
        poll_interval=_expect_positive_float(
            runner_mapping.get("poll_interval"), "runner.poll_interval", default=0.05
        ),
    )

    doctor_mapping = _as_dict(raw.get("doctor"), "doctor")
    max_concurrency = _expect_int(
        doctor_mapping.get("max_concurrency"), "doctor.max_concurrency", default=8
    )
    if max_concurrency < 1:
        raise ConfigError("doctor.max_concurrency must be at least 1.")
    doctor = DoctorConfig(
        max_concurrency=max_concurrency,
        exec_timeout=_expect_positive_float(
            doctor_mapping.get("exec_timeout"), "doctor.exec_timeout", default=5.0
        ),
    )

    watch_mapping = _as_dict(raw.get("watch"), "watch")
    debounce_ms = _expect_int(watch_mapping.get("debounce_ms"), "watch.debounce_ms", default=300)
    if debounce_ms < 0:
        raise ConfigError("watch.debounce_ms must be non-negative.")
    watch = WatchConfig(
        debounce_ms=debounce_ms,
        poll_interval=_expect_positive_float(
            watch_mapping.get("poll_interval"), "watch.poll_interval", default=0.5
        ),
        patterns=_as_str_tuple(watch_mapping.get("patterns"), "watch.patterns")
        or WatchConfig.patterns,
        ignore=_as_str_tuple(watch_mapping.get("ignore"), "watch.ignore"),
    )

    pipelines_mapping = _as_dict(raw.get("pipelines"), "pipelines")
    pipelines: dict[str, PipelineConfig] = {}
    for name, value in pipelines_mapping.items():
        policy = _as_dict(value, f"pipelines.{name}")
        timeout_value = policy.get("timeout")
        timeout = (
            _expect_positive_float(timeout_value, f"pipelines.{name}.timeout", default=1.0)
            if timeout_value is not None
            else None
        )
        pipelines[name] = PipelineConfig(
            mode=str(policy.get("mode", "fail-fast")),
            timeout=timeout,
            warn_exit_code=_expect_int(
                policy.get("warn_exit_code"), f"pipelines.{name}.warn_exit_code", default=0
            ),
        )

    lint_mapping = _as_dict(raw.get("lint"), "lint")
    build_mapping = _as_dict(raw.get("build"), "build")

    return AppConfig(
        config_file=config_file,
        project_dir=project_dir,
        state_dir=state_dir,
        logs_dir=logs_dir,
        snapshots_file=snapshots_file,
        metrics_file=metrics_file,
        toolchain=toolchain,
        runner=runner,
        doctor=doctor,
        watch=watch,
        pipelines=pipelines,
        deny_warnings=_expect_bool(lint_mapping.get("deny_warnings"), "lint.deny_warnings"),
        release_build=_expect_bool(build_mapping.get("release"), "build.release", default=True),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if len(path_segments) > 1 and path_segments[0] == "pipelines":
            # Environment variable names cannot carry the hyphen in pipeline names.
            path_segments[1] = path_segments[1].replace("_", "-")
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _as_str_tuple(value: object | None, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    return tuple(str(item) for item in _as_sequence(value, label))


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DoctorConfig",
    "PipelineConfig",
    "RunnerConfig",
    "ToolchainConfig",
    "WatchConfig",
    "default_config_file",
    "load_config",
]
