from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from conductor.errors import RetryExhaustedError


def utcnow() -> datetime:
    return datetime.now(UTC)


def _dump_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _load_time(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(str(value))


@dataclass(slots=True)
class RetryState:
    """Attempt counter for one phase of one feature.

    ``max_retries`` counts retries after the first attempt, so a value of 0
    means the phase runs once and any failure is terminal.
    """

    feature_id: str
    phase: str
    count: int = 0
    max_retries: int = 0
    last_attempt: datetime | None = None

    def can_retry(self) -> bool:
        return self.count < self.max_retries

    def increment(self) -> None:
        if not self.can_retry():
            raise RetryExhaustedError(self.feature_id, self.phase, self.count, self.max_retries)
        self.count += 1
        self.last_attempt = utcnow()

    def reset(self) -> None:
        self.count = 0
        self.last_attempt = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "phase": self.phase,
            "count": self.count,
            "max_retries": self.max_retries,
            "last_attempt": _dump_time(self.last_attempt),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RetryState:
        return cls(
            feature_id=str(payload["feature_id"]),
            phase=str(payload["phase"]),
            count=int(payload.get("count", 0)),
            max_retries=int(payload.get("max_retries", 0)),
            last_attempt=_load_time(payload.get("last_attempt")),
        )


@dataclass(slots=True)
class PhaseExecutionState:
    feature_id: str
    current_phase: int = 0
    total_phases: int = 0
    completed_phases: list[int] = field(default_factory=list)
    last_phase_attempt: datetime | None = None

    def is_phase_completed(self, index: int) -> bool:
        return index in self.completed_phases

    def mark_phase_completed(self, index: int) -> None:
        if index not in self.completed_phases:
            self.completed_phases.append(index)
            self.completed_phases.sort()

    def all_completed(self) -> bool:
        return self.total_phases > 0 and all(
            self.is_phase_completed(index) for index in range(1, self.total_phases + 1)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "current_phase": self.current_phase,
            "total_phases": self.total_phases,
            "completed_phases": list(self.completed_phases),
            "last_phase_attempt": _dump_time(self.last_phase_attempt),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PhaseExecutionState:
        return cls(
            feature_id=str(payload["feature_id"]),
            current_phase=int(payload.get("current_phase", 0)),
            total_phases=int(payload.get("total_phases", 0)),
            completed_phases=[int(item) for item in payload.get("completed_phases", [])],
            last_phase_attempt=_load_time(payload.get("last_phase_attempt")),
        )


@dataclass(slots=True)
class TaskExecutionState:
    feature_id: str
    phase: str
    current_task_id: str = ""
    total_tasks: int = 0
    completed_task_ids: list[str] = field(default_factory=list)
    last_task_attempt: datetime | None = None

    def is_task_completed(self, task_id: str) -> bool:
        return task_id in self.completed_task_ids

    def mark_task_completed(self, task_id: str) -> None:
        if task_id not in self.completed_task_ids:
            self.completed_task_ids.append(task_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "phase": self.phase,
            "current_task_id": self.current_task_id,
            "total_tasks": self.total_tasks,
            "completed_task_ids": list(self.completed_task_ids),
            "last_task_attempt": _dump_time(self.last_task_attempt),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskExecutionState:
        return cls(
            feature_id=str(payload["feature_id"]),
            phase=str(payload["phase"]),
            current_task_id=str(payload.get("current_task_id", "")),
            total_tasks=int(payload.get("total_tasks", 0)),
            completed_task_ids=[str(item) for item in payload.get("completed_task_ids", [])],
            last_task_attempt=_load_time(payload.get("last_task_attempt")),
        )
