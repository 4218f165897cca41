import asyncio
import subprocess
from pathlib import Path

import pytest

from conductor.config import WorktreeConfig
from conductor.errors import ConfigError
from conductor.graph import Feature
from conductor.integration import (
    RESOLVE_PHASE,
    AgentConflictPolicy,
    ConflictContext,
    Integrator,
    ManualConflictPolicy,
    build_agent_prompt,
    build_conflict_policy,
    extract_conflict_markers,
    has_conflict_markers,
)
from conductor.runners import PhaseRequest, PhaseResult, PhaseRunner
from conductor.state import ExecutionStateStore
from conductor.worktree import WorktreeManager

CONFLICTED = """\
header
<<<<<<< HEAD
feature side
=======
base side
>>>>>>> main
footer
"""


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


def _commit_on_main(repo: Path, name: str, content: str) -> None:
    (repo / name).write_text(content, encoding="utf-8")
    _git(repo, "add", name)
    _git(repo, "commit", "-m", f"main edits {name}")


class ResolvingRunner(PhaseRunner):
    """Rewrites conflicted files, optionally leaving markers on early attempts."""

    def __init__(self, sloppy_attempts: int = 0) -> None:
        self.sloppy_attempts = sloppy_attempts
        self.requests: list[PhaseRequest] = []

    async def run_phase(self, request: PhaseRequest) -> PhaseResult:
        self.requests.append(request)
        if len(self.requests) <= self.sloppy_attempts:
            return PhaseResult(ok=True)
        for conflict in request.context["conflicts"]:
            (request.workdir / conflict["path"]).write_text("merged\n", encoding="utf-8")
        return PhaseResult(ok=True)


def _setup(tmp_path: Path) -> tuple[Path, WorktreeManager]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    manager = WorktreeManager(repo, WorktreeConfig(base_dir=str(tmp_path / "trees")))
    return repo, manager


def test_conflict_marker_detection_is_line_based() -> None:
    assert has_conflict_markers(CONFLICTED) is True
    assert has_conflict_markers("Title\n=====\n\ntext with <<<<<<< inline\n") is False
    assert has_conflict_markers("a\n=======\nb\n") is True


def test_extract_conflict_markers_numbers_each_block() -> None:
    text = CONFLICTED + "middle\n" + CONFLICTED

    extracted = extract_conflict_markers(text)

    blocks = extracted.split("\n---\n\n")
    assert len(blocks) == 2
    assert blocks[0].startswith("Line 2:\n<<<<<<< HEAD")
    assert blocks[0].rstrip().endswith(">>>>>>> main")
    assert blocks[1].startswith("Line 10:")
    assert extract_conflict_markers("clean\n") == ""


def test_clean_merge_advances_checked_out_base(tmp_path: Path) -> None:
    repo, manager = _setup(tmp_path)
    worktree = manager.create("001-auth", "main")
    (worktree.path / "auth.txt").write_text("auth\n", encoding="utf-8")
    _commit_on_main(repo, "other.txt", "other\n")
    integrator = Integrator(repo, ManualConflictPolicy())

    result = asyncio.run(integrator.integrate(worktree, "main", Feature("001-auth", "Auth")))

    assert result.merged is True
    assert result.conflicts == []
    assert _git(repo, "rev-parse", "main") == result.commit
    assert (repo / "auth.txt").read_text(encoding="utf-8") == "auth\n"
    assert (repo / "other.txt").exists()
    assert _git(repo, "status", "--porcelain", "--untracked-files=no") == ""


def test_base_not_checked_out_is_moved_by_ref_update(tmp_path: Path) -> None:
    repo, manager = _setup(tmp_path)
    _git(repo, "branch", "integration")
    worktree = manager.create("001", "integration")
    (worktree.path / "one.txt").write_text("1\n", encoding="utf-8")
    integrator = Integrator(repo, ManualConflictPolicy())

    result = asyncio.run(integrator.integrate(worktree, "integration", Feature("001", "One")))

    assert result.merged is True
    assert _git(repo, "rev-parse", "integration") == result.commit
    assert _git(repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"
    assert not (repo / "one.txt").exists()


def test_conflict_with_manual_policy_leaves_merge_for_a_human(tmp_path: Path) -> None:
    repo, manager = _setup(tmp_path)
    worktree = manager.create("001", "main")
    (worktree.path / "seed.txt").write_text("feature side\n", encoding="utf-8")
    _commit_on_main(repo, "seed.txt", "base side\n")
    main_before = _git(repo, "rev-parse", "main")
    integrator = Integrator(repo, ManualConflictPolicy())

    result = asyncio.run(integrator.integrate(worktree, "main", Feature("001", "Seed")))

    assert result.merged is False
    assert result.conflicts == ["seed.txt"]
    assert _git(repo, "rev-parse", "main") == main_before
    assert has_conflict_markers((worktree.path / "seed.txt").read_text(encoding="utf-8"))

    (worktree.path / "seed.txt").write_text("both sides\n", encoding="utf-8")
    _git(worktree.path, "add", "seed.txt")
    resumed = asyncio.run(integrator.integrate(worktree, "main", Feature("001", "Seed")))

    assert resumed.merged is True
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "both sides\n"


def test_agent_policy_resolves_and_finishes_the_merge(tmp_path: Path) -> None:
    repo, manager = _setup(tmp_path)
    store = ExecutionStateStore(tmp_path / "state")
    worktree = manager.create("001", "main")
    (worktree.path / "seed.txt").write_text("feature side\n", encoding="utf-8")
    _commit_on_main(repo, "seed.txt", "base side\n")
    runner = ResolvingRunner(sloppy_attempts=1)
    integrator = Integrator(repo, AgentConflictPolicy(runner, store, max_retries=1))

    result = asyncio.run(integrator.integrate(worktree, "main", Feature("001", "Seed work")))

    assert result.merged is True
    assert len(runner.requests) == 2
    first = runner.requests[0]
    assert first.phase == RESOLVE_PHASE
    assert "## File: seed.txt" in first.description
    assert "- Description: Seed work" in first.description
    assert runner.requests[1].attempt == 2
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "merged\n"
    assert store.load_retry_state("001", RESOLVE_PHASE, 1).count == 0


def test_agent_policy_falls_back_to_manual_when_exhausted(tmp_path: Path) -> None:
    repo, manager = _setup(tmp_path)
    store = ExecutionStateStore(tmp_path / "state")
    worktree = manager.create("001", "main")
    (worktree.path / "seed.txt").write_text("feature side\n", encoding="utf-8")
    _commit_on_main(repo, "seed.txt", "base side\n")
    runner = ResolvingRunner(sloppy_attempts=10)
    integrator = Integrator(repo, AgentConflictPolicy(runner, store, max_retries=1))

    result = asyncio.run(integrator.integrate(worktree, "main", Feature("001", "Seed")))

    assert result.merged is False
    assert len(runner.requests) == 2


def test_build_conflict_policy(tmp_path: Path) -> None:
    store = ExecutionStateStore(tmp_path)
    runner = ResolvingRunner()

    assert isinstance(build_conflict_policy("manual", runner, store), ManualConflictPolicy)
    assert build_conflict_policy("agent", runner, store, 2).max_retries == 2
    with pytest.raises(ConfigError, match="auto"):
        build_conflict_policy("auto", runner, store)


def test_agent_prompt_names_both_branches() -> None:
    prompt = build_agent_prompt(
        [ConflictContext("a.py", CONFLICTED, "001", "", "conductor/001", "main")]
    )

    assert "Source branch: main (being merged)" in prompt
    assert "Target branch: conductor/001 (feature branch)" in prompt
    assert "Description" not in prompt
