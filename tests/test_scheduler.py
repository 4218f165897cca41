import asyncio
import subprocess
from pathlib import Path

import pytest

from conductor.config import ConductorConfig
from conductor.errors import ConfigError, GraphValidationError, RunLockedError
from conductor.graph import Feature, Graph, Layer, parse_graph
from conductor.runners import PhaseRequest, PhaseResult, PhaseRunner
from conductor.scheduler import (
    ExecutionReport,
    FeatureStatus,
    Scheduler,
    SchedulerState,
    effective_config,
    plan,
    run_graph,
)


def _git(repo_path: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=repo_path, check=True, text=True, capture_output=True
    )
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    _git(repo_path, "init", "-b", "main")
    _git(repo_path, "config", "user.email", "test@example.com")
    _git(repo_path, "config", "user.name", "Test User")
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _git(repo_path, "add", "seed.txt")
    _git(repo_path, "commit", "-m", "seed")


def _graph(*features: Feature, name: str = "demo") -> Graph:
    return Graph(name=name, schema_version="1.0", layers=[Layer(id="L0", features=list(features))])


def _config(**execution) -> ConductorConfig:
    values = {"phases": ["plan", "implement"], "task_phases": [], "max_parallel": 2}
    values.update(execution)
    return ConductorConfig.default().with_execution(**values)


class FakeRunner(PhaseRunner):
    """Writes one file per feature and phase; behaviour is configurable per feature."""

    def __init__(
        self,
        *,
        fail: set[str] | None = None,
        delays: dict[str, float] | None = None,
        upstream: dict[str, tuple[Path, str]] | None = None,
    ) -> None:
        self.fail = set(fail or ())
        self.delays = dict(delays or {})
        self.upstream = dict(upstream or {})
        self.active = 0
        self.peak = 0
        self.calls: list[tuple[str, str]] = []

    async def run_phase(self, request: PhaseRequest) -> PhaseResult:
        self.calls.append((request.feature_id, request.phase))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delays.get(request.feature_id, 0.05))
        finally:
            self.active -= 1
        if request.feature_id in self.fail or f"{request.feature_id}:{request.phase}" in self.fail:
            return PhaseResult(ok=False, exit_code=1)
        if request.feature_id in self.upstream:
            repo, content = self.upstream.pop(request.feature_id)
            (repo / "seed.txt").write_text(content, encoding="utf-8")
            _git(repo, "commit", "-am", "upstream change")
            (request.workdir / "seed.txt").write_text(f"{request.feature_id}\n", encoding="utf-8")
        (request.workdir / f"{request.feature_id}.{request.phase}.txt").write_text(
            f"{request.phase}\n", encoding="utf-8"
        )
        return PhaseResult(ok=True)


def _repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    return repo


def test_ready_follows_declaration_order_and_dependencies() -> None:
    graph = _graph(
        Feature("c", "C", ["a"]),
        Feature("a", "A"),
        Feature("b", "B"),
    )
    state = SchedulerState.from_graph(graph)

    assert state.ready() == ["a", "b"]
    state.mark_running("a")
    state.mark_running("b")
    state.mark_completed("a")
    assert state.ready() == ["c"]
    assert state.max_running == 2


def test_failure_blocks_transitive_dependents_only() -> None:
    graph = _graph(
        Feature("a", "A"),
        Feature("b", "B", ["a"]),
        Feature("c", "C", ["b"]),
        Feature("d", "D"),
    )
    state = SchedulerState.from_graph(graph)
    state.ready()
    state.mark_running("a")

    blocked = state.mark_failed("a", "boom", "retry_exhausted")

    assert blocked == ["b", "c"]
    assert state.blocked_by == {"b": "a", "c": "a"}
    assert state.statuses["d"] == FeatureStatus.READY
    state.settle()
    assert state.statuses["d"] == FeatureStatus.PENDING


def test_effective_config_layers_graph_then_environment() -> None:
    graph = parse_graph(
        "schema_version: '1.0'\ndag: {name: x}\nexecution: {max_parallel: 3, max_retries: 2}\n"
        "layers:\n  - id: L0\n    features:\n      - {id: a, description: A}\n"
    )

    config = effective_config(
        ConductorConfig.default(), graph, {"CONDUCTOR_DAG_MAX_PARALLEL": "5"}
    )

    assert config.execution.max_parallel == 5
    assert config.execution.max_retries == 2
    assert plan(graph) == [["a"]]


def test_report_exit_codes() -> None:
    done = ExecutionReport(run_id="r", graph_name="g", statuses={"a": "completed"})
    failed = ExecutionReport(run_id="r", graph_name="g", statuses={"a": "failed"})
    timed_out = ExecutionReport(run_id="r", graph_name="g", statuses={"a": "pending"}, timed_out=True)

    assert (done.exit_code, failed.exit_code, timed_out.exit_code) == (0, 1, 4)
    assert ExecutionReport.from_dict(failed.to_dict()) == failed


def test_independent_features_run_in_parallel_and_merge(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    graph = _graph(Feature("a", "A"), Feature("b", "B"), Feature("c", "C"), Feature("d", "D", ["a", "b"]))
    runner = FakeRunner(delays={"a": 0.2, "b": 0.2, "c": 0.2})
    events: list[dict] = []

    report = run_graph(graph, _config(), runner, repo, event_hook=events.append)

    assert report.success is True
    assert report.exit_code == 0
    assert report.max_running == 2
    assert runner.peak <= 2
    assert report.completed == ["a", "b", "c", "d"]
    for feature_id in ("a", "b", "c", "d"):
        assert (repo / f"{feature_id}.implement.txt").exists()
    started = [event["feature"] for event in events if event["event"] == "feature_started"]
    assert started.index("d") == 3
    assert events[0]["event"] == "run_started"
    assert events[-1]["event"] == "run_finished"
    assert _git(repo, "branch", "--list", "conductor/*") == ""
    assert _git(repo, "status", "--porcelain") == ""


def test_failed_feature_blocks_dependents_while_others_complete(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    graph = _graph(
        Feature("a", "A"),
        Feature("b", "B", ["a"]),
        Feature("c", "C", ["b"]),
        Feature("x", "X"),
    )
    runner = FakeRunner(fail={"a"})
    events: list[dict] = []

    report = run_graph(graph, _config(max_retries=1), runner, repo, event_hook=events.append)

    assert report.statuses == {"a": "failed", "b": "blocked", "c": "blocked", "x": "completed"}
    assert report.error_kinds == {"a": "retry_exhausted"}
    assert report.blocked_by == {"b": "a", "c": "a"}
    assert report.exit_code == 1
    assert runner.calls.count(("a", "plan")) == 2
    assert not any(feature in ("b", "c") for feature, _ in runner.calls)
    assert _git(repo, "branch", "--list", "conductor/demo/a") != ""
    blocked_events = [event for event in events if event["event"] == "feature_blocked"]
    assert [event["feature"] for event in blocked_events] == ["b", "c"]


def test_run_timeout_cancels_running_features(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    graph = _graph(Feature("a", "A"), Feature("b", "B", ["a"]), Feature("c", "C"))
    runner = FakeRunner(delays={"a": 30.0})

    report = run_graph(graph, _config(max_parallel=1, timeout="500ms"), runner, repo)

    assert report.timed_out is True
    assert report.exit_code == 4
    assert report.statuses == {"a": "failed", "b": "blocked", "c": "pending"}
    assert report.error_kinds["a"] == "cancelled"
    assert runner.active == 0


def test_feature_timeout_fails_only_that_feature(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    graph = _graph(Feature("slow", "Slow", timeout="200ms"), Feature("fast", "Fast"))
    runner = FakeRunner(delays={"slow": 30.0})

    scheduler = Scheduler(graph, _config(), runner, repo)
    report = asyncio.run(scheduler.run())

    assert report.statuses == {"slow": "failed", "fast": "completed"}
    assert report.error_kinds["slow"] == "timeout"
    assert report.timed_out is False
    assert scheduler.worktrees.worktree_path("slow").exists()


def test_unresolved_conflict_awaits_resolution_and_blocks_dependents(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    graph = _graph(Feature("a", "A"), Feature("b", "B", ["a"]))
    runner = FakeRunner(upstream={"a": (repo, "upstream\n")})
    events: list[dict] = []

    scheduler = Scheduler(graph, _config(), runner, repo, event_hook=events.append)
    report = asyncio.run(scheduler.run())

    assert report.statuses == {"a": "awaiting_resolution", "b": "blocked"}
    assert report.conflicts == {"a": ["seed.txt"]}
    assert report.exit_code == 1
    assert scheduler.worktrees.worktree_path("a").exists()
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "upstream\n"
    assert any(event["event"] == "feature_awaiting_resolution" for event in events)


def test_rerun_resumes_completed_phases(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    graph = _graph(Feature("a", "A"))
    first = run_graph(graph, _config(), FakeRunner(fail={"a:implement"}), repo)
    assert first.statuses == {"a": "failed"}

    second = FakeRunner()
    report = run_graph(graph, _config(), second, repo)

    assert report.success is True
    assert second.calls == [("a", "implement")]
    assert (repo / "a.plan.txt").exists()
    assert (repo / "a.implement.txt").exists()


def test_run_record_and_logs_are_saved(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    graph = _graph(Feature("a", "A"))

    scheduler = Scheduler(graph, _config(), FakeRunner(), repo, run_id="run-1")
    report = asyncio.run(scheduler.run())

    assert scheduler.store.load_run("run-1") == report.to_dict()
    log = scheduler.logs.read("a")
    assert "phase plan completed" in log
    assert log.rstrip().endswith("completed")
    assert (repo / ".conductor" / "logs" / "run-1" / "a.log").exists()


def test_invalid_graph_is_refused(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    graph = _graph(Feature("a", "A", ["a"]))
    runner = FakeRunner()

    with pytest.raises(GraphValidationError):
        run_graph(graph, _config(), runner, repo)
    assert runner.calls == []


def test_missing_base_branch_is_a_config_error(tmp_path: Path) -> None:
    repo = _repo(tmp_path)

    with pytest.raises(ConfigError, match="does not exist"):
        run_graph(_graph(Feature("a", "A")), _config(base_branch="release"), FakeRunner(), repo)


def test_dependent_layer_starts_only_after_its_dependency_completes(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    graph = Graph(
        name="demo",
        schema_version="1.0",
        layers=[
            Layer(id="L0", features=[Feature("A", "First")]),
            Layer(id="L1", depends_on=["L0"], features=[Feature("B", "Second", ["A"])]),
        ],
    )
    events: list[dict] = []

    report = run_graph(graph, _config(max_parallel=2), FakeRunner(), repo, event_hook=events.append)

    assert report.completed == ["A", "B"]
    assert report.max_running == 1
    order = [(event["event"], event.get("feature")) for event in events]
    assert order.index(("feature_completed", "A")) < order.index(("feature_started", "B"))


def test_unknown_conflict_policy_is_a_config_error(tmp_path: Path) -> None:
    repo = _repo(tmp_path)

    with pytest.raises(ConfigError, match="on_conflict") as excinfo:
        Scheduler(_graph(Feature("a", "A")), _config(on_conflict="auto"), FakeRunner(), repo)
    assert excinfo.value.exit_code == 2


def test_second_run_of_the_same_graph_is_refused_while_the_first_is_live(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    graph = _graph(Feature("a", "A"))
    second_runner = FakeRunner()

    async def _both() -> ExecutionReport:
        first = asyncio.create_task(
            Scheduler(graph, _config(), FakeRunner(delays={"a": 0.5}), repo, run_id="run-1").run()
        )
        await asyncio.sleep(0.1)
        with pytest.raises(RunLockedError, match="run-1"):
            await Scheduler(graph, _config(), second_runner, repo, run_id="run-2").run()
        return await first

    report = asyncio.run(_both())

    assert report.statuses == {"a": "completed"}
    assert second_runner.calls == []
    assert not (repo / ".conductor" / "state" / "runs" / "run-2.json").exists()
    assert run_graph(graph, _config(), FakeRunner(), repo).success is True
