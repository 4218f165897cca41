from __future__ import annotations

import json
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Literal

from conductor.errors import ConfigError

ConflictPolicyName = Literal["manual", "agent"]
OutputFormat = Literal["text", "stream-json"]

DEFAULT_MAX_LOG_SIZE = 50 * 1024 * 1024
CONFLICT_POLICIES = ("manual", "agent")
OUTPUT_FORMATS = ("text", "stream-json")

_SIZE_PATTERN = re.compile(r"^(\d+)\s*(B|KB|MB|GB|TB)$", re.IGNORECASE)
_SIZE_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_size(value: str) -> int:
    """Parse a human readable size such as ``50MB`` into bytes."""
    match = _SIZE_PATTERN.match(value.strip())
    if match is None:
        raise ConfigError(f"Invalid size {value!r}: expected a number followed by B, KB, MB, GB or TB")
    return int(match.group(1)) * _SIZE_UNITS[match.group(2).upper()]


def parse_duration(value: str | int | float | None) -> float | None:
    """Parse ``90s``, ``1h30m``, ``45`` (seconds) or an empty value (no limit)."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration {value!r}")
    if isinstance(value, int | float):
        return float(value) if value > 0 else None
    text = value.strip().lower()
    if not text or text == "0":
        return None
    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds > 0 else None

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text) or position == 0:
        raise ConfigError(f"Invalid duration {value!r}: expected e.g. 90s, 5m, 1h30m")
    return total if total > 0 else None


@dataclass(slots=True)
class ExecutionConfig:
    max_parallel: int = 4
    timeout: str = ""
    base_branch: str = ""
    on_conflict: ConflictPolicyName = "manual"
    max_retries: int = 0
    max_log_size: str = "50MB"
    log_dir: str = ".conductor/logs"
    state_dir: str = ".conductor/state"
    phases: list[str] = field(default_factory=lambda: ["specify", "plan", "tasks", "implement"])
    task_phases: list[str] = field(default_factory=lambda: ["implement"])
    stop_grace_seconds: float = 10.0

    def timeout_seconds(self) -> float | None:
        return parse_duration(self.timeout)

    def max_log_size_bytes(self) -> int:
        if not self.max_log_size:
            return DEFAULT_MAX_LOG_SIZE
        try:
            return parse_size(self.max_log_size)
        except ConfigError:
            return DEFAULT_MAX_LOG_SIZE


@dataclass(slots=True)
class WorktreeConfig:
    base_dir: str = ""
    branch_prefix: str = "conductor/"
    setup_script: str = ""
    setup_timeout_seconds: float = 300.0


@dataclass(slots=True)
class RunnerConfig:
    phase_command: str = ""
    task_command: str = ""
    list_tasks_command: str = ""
    output_format: OutputFormat = "text"
    timeout_seconds: float = 0.0


@dataclass(slots=True)
class ConductorConfig:
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            execution=_section(ExecutionConfig, data.get("execution", {}), "execution"),
            worktree=_section(WorktreeConfig, data.get("worktree", {}), "worktree"),
            runner=_section(RunnerConfig, data.get("runner", {}), "runner"),
        )

    def to_dict(self) -> dict:
        return {
            "execution": {
                "max_parallel": self.execution.max_parallel,
                "timeout": self.execution.timeout,
                "base_branch": self.execution.base_branch,
                "on_conflict": self.execution.on_conflict,
                "max_retries": self.execution.max_retries,
                "max_log_size": self.execution.max_log_size,
                "log_dir": self.execution.log_dir,
                "state_dir": self.execution.state_dir,
                "phases": list(self.execution.phases),
                "task_phases": list(self.execution.task_phases),
                "stop_grace_seconds": self.execution.stop_grace_seconds,
            },
            "worktree": {
                "base_dir": self.worktree.base_dir,
                "branch_prefix": self.worktree.branch_prefix,
                "setup_script": self.worktree.setup_script,
                "setup_timeout_seconds": self.worktree.setup_timeout_seconds,
            },
            "runner": {
                "phase_command": self.runner.phase_command,
                "task_command": self.runner.task_command,
                "list_tasks_command": self.runner.list_tasks_command,
                "output_format": self.runner.output_format,
                "timeout_seconds": self.runner.timeout_seconds,
            },
        }

    def with_execution(self, **changes: Any) -> ConductorConfig:
        """Return a copy with execution fields replaced; ``None`` values are ignored."""
        values = {key: value for key, value in changes.items() if value is not None}
        if not values:
            return self
        return replace(self, execution=replace(self.execution, **values))

    def with_worktree(self, **changes: Any) -> ConductorConfig:
        values = {key: value for key, value in changes.items() if value is not None}
        if not values:
            return self
        return replace(self, worktree=replace(self.worktree, **values))

    def validate(self) -> list[str]:
        problems: list[str] = []
        execution = self.execution
        if execution.max_parallel < 1:
            problems.append("execution.max_parallel must be at least 1")
        if execution.on_conflict not in CONFLICT_POLICIES:
            problems.append(
                f"execution.on_conflict must be one of {', '.join(CONFLICT_POLICIES)}"
                f" (got {execution.on_conflict!r})"
            )
        if execution.max_retries < 0:
            problems.append("execution.max_retries must not be negative")
        if not execution.phases:
            problems.append("execution.phases must name at least one phase")
        if execution.max_log_size:
            try:
                parse_size(execution.max_log_size)
            except ConfigError as exc:
                problems.append(f"execution.max_log_size: {exc}")
        try:
            parse_duration(execution.timeout)
        except ConfigError as exc:
            problems.append(f"execution.timeout: {exc}")
        if self.runner.output_format not in OUTPUT_FORMATS:
            problems.append(
                f"runner.output_format must be one of {', '.join(OUTPUT_FORMATS)}"
                f" (got {self.runner.output_format!r})"
            )
        return problems


def _coerce(where: str, type_name: str, value: Any) -> Any:
    """Convert a TOML value to the field's declared type or raise ConfigError."""
    if type_name in ("int", "float"):
        convert = int if type_name == "int" else float
        if isinstance(value, bool) or not isinstance(value, int | float | str):
            raise ConfigError(f"{where} must be a number (got {value!r})")
        if type_name == "int" and isinstance(value, float) and not value.is_integer():
            raise ConfigError(f"{where} must be an integer (got {value!r})")
        try:
            return convert(value)
        except ValueError as exc:
            raise ConfigError(f"{where} must be a number (got {value!r})") from exc
    if type_name == "list[str]":
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ConfigError(f"{where} must be a list of strings (got {value!r})")
        return list(value)
    if isinstance(value, bool) or not isinstance(value, str | int | float):
        raise ConfigError(f"{where} must be a string (got {value!r})")
    return str(value)


def _section(cls: type, values: Any, name: str) -> Any:
    if not isinstance(values, Mapping):
        raise ConfigError(f"[{name}] must be a table (got {values!r})")
    types = {item.name: str(item.type) for item in fields(cls)}
    unknown = sorted(set(values) - set(types))
    if unknown:
        raise ConfigError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")
    return cls(
        **{
            key: _coerce(f"{name}.{key}", types[key], value)
            for key, value in values.items()
        }
    )


def _env_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer (got {raw!r})") from exc


def apply_env_overrides(
    config: ConductorConfig, environ: Mapping[str, str] | None = None
) -> ConductorConfig:
    env = os.environ if environ is None else environ

    def _get(name: str) -> str | None:
        value = env.get(name)
        return value if value not in (None, "") else None

    max_parallel = _get("CONDUCTOR_DAG_MAX_PARALLEL")
    max_retries = _get("CONDUCTOR_DAG_MAX_RETRIES")
    config = config.with_execution(
        max_parallel=(
            _env_int("CONDUCTOR_DAG_MAX_PARALLEL", max_parallel) if max_parallel else None
        ),
        timeout=_get("CONDUCTOR_DAG_TIMEOUT"),
        base_branch=_get("CONDUCTOR_DAG_BASE_BRANCH"),
        on_conflict=_get("CONDUCTOR_DAG_ON_CONFLICT"),
        max_retries=_env_int("CONDUCTOR_DAG_MAX_RETRIES", max_retries) if max_retries else None,
        max_log_size=_get("CONDUCTOR_DAG_MAX_LOG_SIZE"),
        log_dir=_get("CONDUCTOR_DAG_LOG_DIR"),
    )
    return config.with_worktree(
        base_dir=_get("CONDUCTOR_WORKTREE_BASE_DIR"),
        setup_script=_get("CONDUCTOR_WORKTREE_SETUP_SCRIPT"),
    )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("execution", "worktree", "runner"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc
    return ConductorConfig.from_dict(data)


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
