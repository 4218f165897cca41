from __future__ import annotations

from typing import Any


class ConductorError(RuntimeError):
    """Base class for every error raised by conductor."""

    exit_code = 1


class ConfigError(ConductorError):
    """Raised when configuration values cannot be parsed or are inconsistent."""

    exit_code = 2


class GraphError(ConductorError):
    """Raised when a dependency graph cannot be loaded or is invalid."""

    exit_code = 3


class GraphParseError(GraphError):
    def __init__(self, message: str, *, line: int | None = None, column: int | None = None) -> None:
        location = ""
        if line is not None:
            location = f" (line {line}" + (f", column {column}" if column is not None else "") + ")"
        super().__init__(f"{message}{location}")
        self.line = line
        self.column = column


class GraphValidationError(GraphError):
    def __init__(self, issues: list[Any]) -> None:
        errors = [issue for issue in issues if getattr(issue, "severity", "error") == "error"]
        summary = "; ".join(str(issue) for issue in errors) or "graph is invalid"
        super().__init__(f"Graph validation failed: {summary}")
        self.issues = list(issues)


class StateStoreError(ConductorError):
    """Raised when an execution state record cannot be read or written."""


class WorktreeError(ConductorError):
    """Raised when worktree creation, setup, or teardown fails."""


class PhaseError(ConductorError):
    """Raised when a single phase or task attempt fails."""

    def __init__(
        self,
        message: str,
        *,
        feature_id: str | None = None,
        phase: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.feature_id = feature_id
        self.phase = phase
        self.process_exit_code = exit_code
        self.retriable = retriable


class RetryExhaustedError(ConductorError):
    exit_code = 2

    def __init__(self, feature_id: str, phase: str, count: int, max_retries: int) -> None:
        super().__init__(
            f"Retry limit exhausted for {feature_id}:{phase} ({count}/{max_retries} retries used)"
        )
        self.feature_id = feature_id
        self.phase = phase
        self.count = count
        self.max_retries = max_retries


class FeatureCancelledError(ConductorError):
    """Raised for a feature stopped by the run deadline or its own timeout."""

    def __init__(self, feature_id: str, reason: str, *, kind: str = "cancelled") -> None:
        super().__init__(f"Feature {feature_id} {kind}: {reason}")
        self.feature_id = feature_id
        self.reason = reason
        self.kind = kind


class ConflictError(ConductorError):
    def __init__(self, feature_id: str, paths: list[str]) -> None:
        super().__init__(
            f"Unresolved merge conflicts for {feature_id}: {', '.join(paths) or '(unknown paths)'}"
        )
        self.feature_id = feature_id
        self.paths = list(paths)


class RunTimeoutError(ConductorError):
    exit_code = 4


class IntegrationError(ConductorError):
    """Raised when merging a feature branch fails for a reason other than conflicts."""


class RunLockedError(ConductorError):
    """Raised when another live run of the same graph holds its run lock."""

    def __init__(self, graph_name: str, run_id: str, pid: int | None) -> None:
        owner = f"run {run_id or '(unknown)'}" + (f" (PID {pid})" if pid else "")
        super().__init__(f"Graph {graph_name} is already being executed by {owner}")
        self.graph_name = graph_name
        self.run_id = run_id
        self.pid = pid
