from __future__ import annotations

import asyncio
import enum
import logging
import os
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from conductor.config import ConductorConfig, apply_env_overrides, parse_duration
from conductor.engine import WorkflowEngine
from conductor.errors import (
    ConductorError,
    ConfigError,
    ConflictError,
    FeatureCancelledError,
    RetryExhaustedError,
    RunTimeoutError,
    WorktreeError,
)
from conductor.graph.model import Feature, Graph
from conductor.graph.validator import ensure_valid
from conductor.graph.visualize import execution_waves
from conductor.integration import Integrator, build_conflict_policy
from conductor.logs import LogManager
from conductor.runners.base import PhaseRunner
from conductor.state.store import ExecutionStateStore
from conductor.worktree import Worktree, WorktreeManager

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


class FeatureStatus(enum.StrEnum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    AWAITING_RESOLUTION = "awaiting_resolution"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_run_id() -> str:
    return f"{datetime.now(UTC).strftime('%Y%m%dT%H%M%SZ')}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class SchedulerState:
    """Per-run bookkeeping for every feature; owned by a single dispatch loop."""

    order: list[str]
    depends_on: dict[str, list[str]]
    dependents: dict[str, list[str]]
    statuses: dict[str, FeatureStatus]
    errors: dict[str, str] = field(default_factory=dict)
    error_kinds: dict[str, str] = field(default_factory=dict)
    blocked_by: dict[str, str] = field(default_factory=dict)
    conflicts: dict[str, list[str]] = field(default_factory=dict)
    running: set[str] = field(default_factory=set)
    max_running: int = 0

    @classmethod
    def from_graph(cls, graph: Graph) -> SchedulerState:
        order = graph.feature_ids()
        return cls(
            order=order,
            depends_on={feature.id: list(feature.depends_on) for feature in graph.features()},
            dependents=graph.dependents(),
            statuses={feature_id: FeatureStatus.PENDING for feature_id in order},
        )

    def ready(self) -> list[str]:
        """Features whose dependencies all completed, in declaration order."""
        ready: list[str] = []
        for feature_id in self.order:
            if self.statuses[feature_id] not in (FeatureStatus.PENDING, FeatureStatus.READY):
                continue
            if all(
                self.statuses.get(dep) == FeatureStatus.COMPLETED
                for dep in self.depends_on[feature_id]
            ):
                self.statuses[feature_id] = FeatureStatus.READY
                ready.append(feature_id)
        return ready

    def mark_running(self, feature_id: str) -> None:
        self.statuses[feature_id] = FeatureStatus.RUNNING
        self.running.add(feature_id)
        self.max_running = max(self.max_running, len(self.running))

    def mark_completed(self, feature_id: str) -> None:
        self.running.discard(feature_id)
        self.statuses[feature_id] = FeatureStatus.COMPLETED

    def mark_failed(self, feature_id: str, error: str, kind: str = "error") -> list[str]:
        self.running.discard(feature_id)
        self.statuses[feature_id] = FeatureStatus.FAILED
        self.errors[feature_id] = error
        self.error_kinds[feature_id] = kind
        return self._block_dependents(feature_id)

    def mark_awaiting_resolution(
        self, feature_id: str, paths: list[str], error: str = ""
    ) -> list[str]:
        self.running.discard(feature_id)
        self.statuses[feature_id] = FeatureStatus.AWAITING_RESOLUTION
        if error:
            self.errors[feature_id] = error
        self.conflicts[feature_id] = list(paths)
        return self._block_dependents(feature_id)

    def _block_dependents(self, feature_id: str) -> list[str]:
        blocked: list[str] = []
        queue = deque(self.dependents.get(feature_id, []))
        while queue:
            current = queue.popleft()
            if self.statuses.get(current) not in (FeatureStatus.PENDING, FeatureStatus.READY):
                continue
            self.statuses[current] = FeatureStatus.BLOCKED
            self.blocked_by[current] = feature_id
            blocked.append(current)
            queue.extend(self.dependents.get(current, []))
        return blocked

    def settle(self) -> None:
        """Return features that were ready but never dispatched to pending."""
        for feature_id, status in self.statuses.items():
            if status == FeatureStatus.READY:
                self.statuses[feature_id] = FeatureStatus.PENDING


@dataclass(slots=True)
class FeatureOutcome:
    status: FeatureStatus
    error: str = ""
    kind: str = ""
    conflicts: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ExecutionReport:
    run_id: str
    graph_name: str
    statuses: dict[str, str]
    errors: dict[str, str] = field(default_factory=dict)
    error_kinds: dict[str, str] = field(default_factory=dict)
    blocked_by: dict[str, str] = field(default_factory=dict)
    conflicts: dict[str, list[str]] = field(default_factory=dict)
    timed_out: bool = False
    started_at: str = ""
    ended_at: str = ""
    max_running: int = 0
    base_branch: str = ""

    def _with_status(self, status: FeatureStatus) -> list[str]:
        return [feature_id for feature_id, value in self.statuses.items() if value == status]

    @property
    def completed(self) -> list[str]:
        return self._with_status(FeatureStatus.COMPLETED)

    @property
    def failed(self) -> list[str]:
        return self._with_status(FeatureStatus.FAILED)

    @property
    def blocked(self) -> list[str]:
        return self._with_status(FeatureStatus.BLOCKED)

    @property
    def awaiting_resolution(self) -> list[str]:
        return self._with_status(FeatureStatus.AWAITING_RESOLUTION)

    @property
    def pending(self) -> list[str]:
        return self._with_status(FeatureStatus.PENDING)

    @property
    def success(self) -> bool:
        return not self.timed_out and len(self.completed) == len(self.statuses)

    @property
    def exit_code(self) -> int:
        if self.success:
            return 0
        if self.timed_out:
            return RunTimeoutError.exit_code
        return 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "graph_name": self.graph_name,
            "base_branch": self.base_branch,
            "statuses": dict(self.statuses),
            "errors": dict(self.errors),
            "error_kinds": dict(self.error_kinds),
            "blocked_by": dict(self.blocked_by),
            "conflicts": {key: list(value) for key, value in self.conflicts.items()},
            "timed_out": self.timed_out,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "max_running": self.max_running,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ExecutionReport:
        return cls(
            run_id=str(payload.get("run_id", "")),
            graph_name=str(payload.get("graph_name", "")),
            base_branch=str(payload.get("base_branch", "")),
            statuses=dict(payload.get("statuses", {})),
            errors=dict(payload.get("errors", {})),
            error_kinds=dict(payload.get("error_kinds", {})),
            blocked_by=dict(payload.get("blocked_by", {})),
            conflicts={key: list(value) for key, value in payload.get("conflicts", {}).items()},
            timed_out=bool(payload.get("timed_out", False)),
            started_at=str(payload.get("started_at", "")),
            ended_at=str(payload.get("ended_at", "")),
            max_running=int(payload.get("max_running", 0)),
        )


def effective_config(
    config: ConductorConfig, graph: Graph, environ: Mapping[str, str] | None = None
) -> ConductorConfig:
    """Layer the graph's ``execution`` block and then the environment over ``config``."""
    return apply_env_overrides(config.with_execution(**graph.execution.overrides()), environ)


def plan(graph: Graph) -> list[list[str]]:
    ensure_valid(graph)
    return execution_waves(graph)


def resolve_dir(repo_root: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else repo_root / path


class Scheduler:
    """Dispatches ready features in parallel, each in its own worktree.

    A feature becomes ready once every dependency has completed (been merged
    into the base branch). At most ``execution.max_parallel`` features run at
    once. Failure or an unresolved conflict blocks every transitive dependent
    immediately; independent branches of the graph keep running.
    """

    def __init__(
        self,
        graph: Graph,
        config: ConductorConfig,
        runner: PhaseRunner,
        repo_root: Path,
        *,
        store: ExecutionStateStore | None = None,
        logs: LogManager | None = None,
        worktrees: WorktreeManager | None = None,
        integrator: Integrator | None = None,
        event_hook: EventHook | None = None,
        run_id: str | None = None,
    ) -> None:
        problems = config.validate()
        if problems:
            raise ConfigError("; ".join(problems))
        self.graph = graph
        self.config = config
        self.runner = runner
        self.repo_root = repo_root.resolve()
        self.run_id = run_id or new_run_id()
        execution = config.execution
        self.store = store or ExecutionStateStore(resolve_dir(self.repo_root, execution.state_dir))
        self.logs = logs or LogManager(
            resolve_dir(self.repo_root, execution.log_dir),
            execution.max_log_size_bytes(),
            self.run_id,
        )
        self.worktrees = worktrees or WorktreeManager(
            self.repo_root, config.worktree, namespace=graph.name
        )
        self.integrator = integrator or Integrator(
            self.repo_root,
            build_conflict_policy(execution.on_conflict, runner, self.store, execution.max_retries),
            feature_log=self.logs.write_line,
        )
        self.event_hook = event_hook
        if self.runner.output_hook is None:
            self.runner.output_hook = self.logs.write_line
        self.engine = WorkflowEngine(
            self.store,
            runner,
            execution.phases,
            execution.max_retries,
            task_phases=execution.task_phases,
            on_phase_complete=self._checkpoint,
            feature_log=self.logs.write_line,
        )
        self.state = SchedulerState.from_graph(graph)

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook({"run_id": self.run_id, **payload})

    async def _checkpoint(self, feature: Feature, worktree: Worktree, phase: str) -> None:
        committed = await asyncio.to_thread(
            self.worktrees.commit_all, worktree, f"conductor: {feature.id} {phase}"
        )
        if committed:
            self.logs.write_line(feature.id, f"checkpoint committed after {phase}")

    def _resolve_base_branch(self) -> str:
        base_branch = self.config.execution.base_branch or self.worktrees.current_branch()
        if base_branch == "HEAD":
            raise ConfigError(
                "Repository HEAD is detached; set execution.base_branch to the branch to merge into"
            )
        if not self.worktrees.branch_exists(base_branch):
            raise ConfigError(f"Base branch {base_branch!r} does not exist")
        return base_branch

    def _prepare_directories(self) -> None:
        for path in (self.store.state_dir, self.logs.log_dir, self.worktrees.base_dir):
            path.mkdir(parents=True, exist_ok=True)
            self.worktrees.ensure_excluded(path)

    async def _teardown(self, worktree: Worktree, *, keep: bool, keep_branch: bool) -> None:
        try:
            await asyncio.to_thread(
                self.worktrees.teardown, worktree, keep=keep, keep_branch=keep_branch
            )
        except WorktreeError as exc:
            logger.warning("Teardown of %s failed: %s", worktree.path, exc)
            self.logs.write_line(worktree.feature_id, f"teardown failed: {exc}")

    async def _run_feature(self, feature: Feature, base_branch: str) -> FeatureOutcome:
        worktree: Worktree | None = None
        log = self.logs.write_line
        log(feature.id, f"starting feature {feature.id} from {base_branch}")
        limit = parse_duration(feature.timeout)
        try:
            worktree = await asyncio.to_thread(self.worktrees.create, feature.id, base_branch)
            await asyncio.to_thread(self.worktrees.setup, worktree)
            feature_timeout = asyncio.timeout(limit)
            try:
                async with feature_timeout:
                    await self.engine.run_feature(feature, worktree)
            except TimeoutError:
                if not feature_timeout.expired():
                    raise
                expired = FeatureCancelledError(
                    feature.id, f"timeout of {feature.timeout} expired", kind="timeout"
                )
                log(feature.id, f"{expired}; worktree kept for inspection")
                return FeatureOutcome(FeatureStatus.FAILED, error=str(expired), kind=expired.kind)
            result = await self.integrator.integrate(worktree, base_branch, feature)
        except asyncio.CancelledError:
            log(feature.id, "cancelled; worktree kept for inspection")
            raise
        except RetryExhaustedError as exc:
            log(feature.id, f"failed: {exc}")
            if worktree is not None:
                await self._teardown(worktree, keep=False, keep_branch=True)
            return FeatureOutcome(FeatureStatus.FAILED, error=str(exc), kind="retry_exhausted")
        except ConductorError as exc:
            log(feature.id, f"failed: {exc}")
            if worktree is not None:
                await self._teardown(worktree, keep=False, keep_branch=True)
            return FeatureOutcome(FeatureStatus.FAILED, error=str(exc), kind="error")
        except Exception as exc:
            logger.exception("Unexpected failure while running %s", feature.id)
            log(feature.id, f"failed: {exc!r}")
            if worktree is not None:
                await self._teardown(worktree, keep=True, keep_branch=True)
            return FeatureOutcome(FeatureStatus.FAILED, error=repr(exc), kind="error")

        if not result.merged:
            conflict = ConflictError(feature.id, result.conflicts)
            log(feature.id, f"{conflict}; resolve them in {worktree.path}")
            return FeatureOutcome(
                FeatureStatus.AWAITING_RESOLUTION, error=str(conflict), conflicts=result.conflicts
            )
        await self._teardown(worktree, keep=False, keep_branch=False)
        log(feature.id, "completed")
        return FeatureOutcome(FeatureStatus.COMPLETED)

    def _apply(self, feature_id: str, task: asyncio.Task[FeatureOutcome]) -> None:
        if task.cancelled():
            cancelled = FeatureCancelledError(feature_id, "stopped before it finished")
            outcome = FeatureOutcome(FeatureStatus.FAILED, error=str(cancelled), kind=cancelled.kind)
        elif task.exception() is not None:
            exc = task.exception()
            outcome = FeatureOutcome(FeatureStatus.FAILED, error=repr(exc), kind="error")
        else:
            outcome = task.result()

        if outcome.status == FeatureStatus.COMPLETED:
            self.state.mark_completed(feature_id)
            logger.info("Feature %s completed", feature_id)
            self._emit({"event": "feature_completed", "feature": feature_id})
            return
        if outcome.status == FeatureStatus.AWAITING_RESOLUTION:
            blocked = self.state.mark_awaiting_resolution(
                feature_id, outcome.conflicts, outcome.error
            )
            logger.warning("Feature %s awaits conflict resolution", feature_id)
            self._emit(
                {
                    "event": "feature_awaiting_resolution",
                    "feature": feature_id,
                    "conflicts": list(outcome.conflicts),
                }
            )
        else:
            blocked = self.state.mark_failed(feature_id, outcome.error, outcome.kind)
            logger.error("Feature %s failed (%s): %s", feature_id, outcome.kind, outcome.error)
            self._emit(
                {
                    "event": "feature_failed",
                    "feature": feature_id,
                    "kind": outcome.kind,
                    "error": outcome.error,
                }
            )
        for blocked_id in blocked:
            self._emit({"event": "feature_blocked", "feature": blocked_id, "blocked_by": feature_id})

    async def _cancel_running(self, tasks: dict[asyncio.Task[FeatureOutcome], str]) -> None:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for task, feature_id in list(tasks.items()):
            self._apply(feature_id, task)
        tasks.clear()

    def _report(self, started_at: str, base_branch: str, timed_out: bool) -> ExecutionReport:
        self.state.settle()
        return ExecutionReport(
            run_id=self.run_id,
            graph_name=self.graph.name,
            base_branch=base_branch,
            statuses={key: str(value) for key, value in self.state.statuses.items()},
            errors=dict(self.state.errors),
            error_kinds=dict(self.state.error_kinds),
            blocked_by=dict(self.state.blocked_by),
            conflicts={key: list(value) for key, value in self.state.conflicts.items()},
            timed_out=timed_out,
            started_at=started_at,
            ended_at=_utcnow_iso(),
            max_running=self.state.max_running,
        )

    async def run(self) -> ExecutionReport:
        """Execute the graph; refuses to start while another live run holds the graph."""
        ensure_valid(self.graph)
        with self.store.run_lock(self.graph.name, self.run_id):
            return await self._execute()

    async def _execute(self) -> ExecutionReport:
        base_branch = await asyncio.to_thread(self._resolve_base_branch)
        await asyncio.to_thread(self._prepare_directories)

        loop = asyncio.get_running_loop()
        limit = self.config.execution.timeout_seconds()
        deadline = loop.time() + limit if limit is not None else None
        max_parallel = self.config.execution.max_parallel
        features = {feature.id: feature for feature in self.graph.features()}
        tasks: dict[asyncio.Task[FeatureOutcome], str] = {}
        started_at = _utcnow_iso()
        timed_out = False

        logger.info(
            "Run %s: %d features, max_parallel=%d, base=%s",
            self.run_id,
            len(features),
            max_parallel,
            base_branch,
        )
        self._emit(
            {"event": "run_started", "graph": self.graph.name, "base_branch": base_branch}
        )
        try:
            while True:
                if deadline is not None and loop.time() >= deadline:
                    timed_out = True
                    logger.warning(
                        "%s; stopping running features",
                        RunTimeoutError(
                            f"Run {self.run_id} reached its timeout of {self.config.execution.timeout}"
                        ),
                    )
                    self._emit({"event": "run_timeout", "running": sorted(tasks.values())})
                    await self._cancel_running(tasks)
                    break

                free = max_parallel - len(tasks)
                for feature_id in self.state.ready()[: max(free, 0)]:
                    self.state.mark_running(feature_id)
                    self._emit({"event": "feature_started", "feature": feature_id})
                    task = asyncio.create_task(
                        self._run_feature(features[feature_id], base_branch),
                        name=f"conductor:{feature_id}",
                    )
                    tasks[task] = feature_id

                if not tasks:
                    break

                remaining = None if deadline is None else max(deadline - loop.time(), 0.0)
                done, _ = await asyncio.wait(
                    tasks, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    self._apply(tasks.pop(task), task)
        except asyncio.CancelledError:
            await asyncio.shield(self._cancel_running(tasks))
            raise
        finally:
            report = self._report(started_at, base_branch, timed_out)
            self.store.save_run(self.run_id, report.to_dict())

        self._emit(
            {
                "event": "run_finished",
                "completed": len(report.completed),
                "failed": len(report.failed),
                "blocked": len(report.blocked),
                "timed_out": timed_out,
            }
        )
        return report


def run_graph(
    graph: Graph,
    config: ConductorConfig,
    runner: PhaseRunner,
    repo_root: Path | str | os.PathLike[str],
    **kwargs: Any,
) -> ExecutionReport:
    return asyncio.run(Scheduler(graph, config, runner, Path(repo_root), **kwargs).run())
