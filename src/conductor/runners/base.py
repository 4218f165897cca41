from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

OutputHook = Callable[[str, str], None]


@dataclass(slots=True)
class PhaseRequest:
    feature_id: str
    description: str
    phase: str
    workdir: Path
    task_id: str | None = None
    attempt: int = 1
    context: dict[str, Any] = field(default_factory=dict)

    def for_task(self, task_id: str) -> PhaseRequest:
        return replace(self, task_id=task_id)


@dataclass(slots=True)
class PhaseResult:
    ok: bool
    exit_code: int = 0
    output: str = ""


class PhaseRunner(ABC):
    """Executes one workflow phase for one feature inside its worktree.

    Implementations raise :class:`conductor.errors.PhaseError` or return a
    result with ``ok=False`` on failure. Cancellation must propagate: a
    runner that owns a process stops it before re-raising
    :class:`asyncio.CancelledError`.
    """

    output_hook: OutputHook | None = None

    def _emit_output(self, feature_id: str, line: str) -> None:
        if self.output_hook is not None:
            self.output_hook(feature_id, line)

    @abstractmethod
    async def run_phase(self, request: PhaseRequest) -> PhaseResult:
        """Run ``request.phase`` to completion."""

    async def list_tasks(self, request: PhaseRequest) -> list[str]:
        """Task IDs the phase decomposes into; empty means run the phase as one unit."""
        _ = request
        return []

    async def run_task(self, request: PhaseRequest) -> PhaseResult:
        return await self.run_phase(request)
