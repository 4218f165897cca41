from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence

from conductor.errors import PhaseError, RetryExhaustedError
from conductor.graph.model import Feature
from conductor.runners.base import PhaseRequest, PhaseRunner
from conductor.state.records import PhaseExecutionState, TaskExecutionState, utcnow
from conductor.state.store import ExecutionStateStore
from conductor.worktree import Worktree

logger = logging.getLogger(__name__)

PhaseCompleteHook = Callable[[Feature, Worktree, str], Awaitable[None]]
FeatureLog = Callable[[str, str], None]


class WorkflowEngine:
    """Drives one feature through the ordered phase list with resumable retries.

    Completed phases (and completed tasks of task-decomposed phases) are
    recorded after each success, so a later run picks up where the last one
    stopped. ``max_retries`` is the number of retries allowed after a
    phase's first attempt.
    """

    def __init__(
        self,
        store: ExecutionStateStore,
        runner: PhaseRunner,
        phases: Sequence[str],
        max_retries: int = 0,
        *,
        task_phases: Sequence[str] = (),
        on_phase_complete: PhaseCompleteHook | None = None,
        feature_log: FeatureLog | None = None,
    ) -> None:
        if not phases:
            raise ValueError("phases must not be empty")
        self.store = store
        self.runner = runner
        self.phases = list(phases)
        self.max_retries = max(0, int(max_retries))
        self.task_phases = set(task_phases)
        self.on_phase_complete = on_phase_complete
        self.feature_log = feature_log

    def _log(self, feature_id: str, message: str) -> None:
        logger.debug("%s: %s", feature_id, message)
        if self.feature_log is not None:
            self.feature_log(feature_id, message)

    def _load_state(self, feature_id: str) -> PhaseExecutionState:
        state = self.store.load_phase_state(feature_id)
        if state is None:
            state = PhaseExecutionState(feature_id=feature_id)
        state.total_phases = len(self.phases)
        return state

    async def run_feature(self, feature: Feature, worktree: Worktree) -> PhaseExecutionState:
        state = self._load_state(feature.id)
        for index, phase in enumerate(self.phases, start=1):
            if state.is_phase_completed(index):
                self._log(feature.id, f"phase {phase} already completed; skipping")
                continue
            await self._run_with_retries(feature, worktree, state, index, phase)
            state.mark_phase_completed(index)
            self.store.save_phase_state(state)
            self.store.reset_retry_count(feature.id, phase)
            self._log(feature.id, f"phase {phase} completed")
            if self.on_phase_complete is not None:
                await self.on_phase_complete(feature, worktree, phase)
        return state

    async def _run_with_retries(
        self,
        feature: Feature,
        worktree: Worktree,
        state: PhaseExecutionState,
        index: int,
        phase: str,
    ) -> None:
        retry = self.store.load_retry_state(feature.id, phase, self.max_retries)
        while True:
            state.current_phase = index
            state.last_phase_attempt = utcnow()
            self.store.save_phase_state(state)
            attempt = retry.count + 1
            self._log(feature.id, f"phase {phase} attempt {attempt} starting")
            try:
                await self._attempt(feature, worktree, phase, attempt)
                return
            except PhaseError as exc:
                self._log(feature.id, f"phase {phase} attempt {attempt} failed: {exc}")
                if not exc.retriable:
                    raise
                if not retry.can_retry():
                    raise RetryExhaustedError(
                        feature.id, phase, retry.count, retry.max_retries
                    ) from exc
                retry.increment()
                self.store.save_retry_state(retry)
                logger.info(
                    "Retrying %s phase %s (%d/%d)",
                    feature.id,
                    phase,
                    retry.count,
                    retry.max_retries,
                )

    async def _attempt(self, feature: Feature, worktree: Worktree, phase: str, attempt: int) -> None:
        request = PhaseRequest(
            feature_id=feature.id,
            description=feature.description,
            phase=phase,
            workdir=worktree.path,
            attempt=attempt,
            context={"branch": worktree.branch, "base_branch": worktree.base_branch},
        )
        if phase in self.task_phases:
            task_ids = await self.runner.list_tasks(request)
            if task_ids:
                await self._run_tasks(feature, request, task_ids)
                return
        result = await self.runner.run_phase(request)
        if not result.ok:
            raise PhaseError(
                f"Phase {phase} exited with code {result.exit_code}",
                feature_id=feature.id,
                phase=phase,
                exit_code=result.exit_code,
            )

    async def _run_tasks(self, feature: Feature, request: PhaseRequest, task_ids: list[str]) -> None:
        task_state = self.store.load_task_state(feature.id, request.phase) or TaskExecutionState(
            feature_id=feature.id, phase=request.phase
        )
        task_state.total_tasks = len(task_ids)
        for task_id in task_ids:
            if task_state.is_task_completed(task_id):
                continue
            task_state.current_task_id = task_id
            task_state.last_task_attempt = utcnow()
            self.store.save_task_state(task_state)
            self._log(feature.id, f"task {task_id} starting")
            result = await self.runner.run_task(request.for_task(task_id))
            if not result.ok:
                raise PhaseError(
                    f"Task {task_id} of phase {request.phase} exited with code {result.exit_code}",
                    feature_id=feature.id,
                    phase=request.phase,
                    exit_code=result.exit_code,
                )
            task_state.mark_task_completed(task_id)
            self.store.save_task_state(task_state)
        task_state.current_task_id = ""
        self.store.save_task_state(task_state)
