from __future__ import annotations

import asyncio
import logging
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from conductor.errors import ConfigError, IntegrationError, PhaseError
from conductor.graph.model import Feature
from conductor.runners.base import PhaseRequest, PhaseRunner
from conductor.state.store import ExecutionStateStore
from conductor.worktree import Worktree

logger = logging.getLogger(__name__)

RESOLVE_PHASE = "resolve-conflicts"
_MARKER_PREFIXES = ("<<<<<<< ", ">>>>>>> ")


def has_conflict_markers(text: str) -> bool:
    for line in text.splitlines():
        if line.startswith(_MARKER_PREFIXES) or line.rstrip() == "=======":
            return True
    return False


def extract_conflict_markers(text: str) -> str:
    """Return every conflict block of ``text``, each headed by ``Line N:``."""
    blocks: list[str] = []
    current: list[str] | None = None
    for number, line in enumerate(text.splitlines(), start=1):
        if line.startswith("<<<<<<<"):
            current = [f"Line {number}:"]
        if current is not None:
            current.append(line)
        if line.startswith(">>>>>>>") and current is not None:
            blocks.append("\n".join(current) + "\n")
            current = None
    if current is not None:
        blocks.append("\n".join(current) + "\n")
    return "\n---\n\n".join(blocks)


@dataclass(slots=True)
class ConflictContext:
    path: str
    markers: str
    feature_id: str
    description: str = ""
    source_branch: str = ""
    target_branch: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "path": self.path,
            "markers": self.markers,
            "feature_id": self.feature_id,
            "description": self.description,
            "source_branch": self.source_branch,
            "target_branch": self.target_branch,
        }


@dataclass(slots=True)
class IntegrationResult:
    merged: bool
    conflicts: list[str] = field(default_factory=list)
    commit: str = ""


def build_agent_prompt(contexts: list[ConflictContext]) -> str:
    parts = [
        "Resolve the following git merge conflicts. Edit each file to remove ALL conflict "
        "markers (<<<<<<< ======= >>>>>>>) and produce correct code.",
    ]
    for context in contexts:
        parts.append(
            "\n".join(
                [
                    f"## File: {context.path}",
                    f"- Feature: {context.feature_id}",
                    *([f"- Description: {context.description}"] if context.description else []),
                    f"- Source branch: {context.target_branch} (being merged)",
                    f"- Target branch: {context.source_branch} (feature branch)",
                    "",
                    "```",
                    context.markers.rstrip("\n"),
                    "```",
                ]
            )
        )
    parts.append("Do not commit; the merge is completed after the markers are gone.")
    return "\n\n".join(parts)


def render_manual_context(contexts: list[ConflictContext], worktree_path: Path) -> str:
    rule = "=" * 80
    lines = [rule, "MERGE CONFLICT - Manual Resolution Required", rule]
    for index, context in enumerate(contexts):
        if index:
            lines.append("-" * 80)
        lines.extend(
            [
                f"## File: {context.path}",
                f"- Feature: {context.feature_id}",
                *([f"- Description: {context.description}"] if context.description else []),
                f"- Feature branch: {context.source_branch}",
                f"- Base branch: {context.target_branch} (being merged)",
                "```",
                context.markers.rstrip("\n"),
                "```",
            ]
        )
    lines.extend(
        [
            rule,
            f"Resolve the files in {worktree_path}, stage them with git add, and run",
            "git commit --no-edit there; the next run integrates the feature branch.",
            rule,
        ]
    )
    return "\n".join(lines)


class ConflictPolicy(ABC):
    name = "base"

    @abstractmethod
    async def resolve(
        self, contexts: list[ConflictContext], worktree: Worktree, feature: Feature
    ) -> bool:
        """Return True once every conflicted file is free of markers."""


class ManualConflictPolicy(ConflictPolicy):
    name = "manual"

    async def resolve(
        self, contexts: list[ConflictContext], worktree: Worktree, feature: Feature
    ) -> bool:
        logger.warning(
            "Merge conflicts for %s need manual resolution:\n%s",
            feature.id,
            render_manual_context(contexts, worktree.path),
        )
        return False


class AgentConflictPolicy(ConflictPolicy):
    """Asks the phase runner to resolve conflicts, bounded by the feature retry budget."""

    name = "agent"

    def __init__(self, runner: PhaseRunner, store: ExecutionStateStore, max_retries: int = 0) -> None:
        self.runner = runner
        self.store = store
        self.max_retries = max(0, int(max_retries))

    @staticmethod
    def _still_conflicted(contexts: list[ConflictContext], worktree: Worktree) -> list[str]:
        remaining: list[str] = []
        for context in contexts:
            path = worktree.path / context.path
            if path.exists() and has_conflict_markers(
                path.read_text(encoding="utf-8", errors="replace")
            ):
                remaining.append(context.path)
        return remaining

    async def resolve(
        self, contexts: list[ConflictContext], worktree: Worktree, feature: Feature
    ) -> bool:
        retry = self.store.load_retry_state(feature.id, RESOLVE_PHASE, self.max_retries)
        while True:
            request = PhaseRequest(
                feature_id=feature.id,
                description=build_agent_prompt(contexts),
                phase=RESOLVE_PHASE,
                workdir=worktree.path,
                attempt=retry.count + 1,
                context={"conflicts": [context.to_dict() for context in contexts]},
            )
            try:
                result = await self.runner.run_phase(request)
                ok = result.ok
                retriable = True
            except PhaseError as exc:
                logger.warning("Conflict resolution for %s failed: %s", feature.id, exc)
                ok = False
                retriable = exc.retriable
            if ok:
                remaining = self._still_conflicted(contexts, worktree)
                if not remaining:
                    self.store.reset_retry_count(feature.id, RESOLVE_PHASE)
                    return True
                logger.warning(
                    "Conflict markers remain for %s in %s", feature.id, ", ".join(remaining)
                )
            if not retriable or not retry.can_retry():
                logger.warning(
                    "Agent conflict resolution exhausted for %s; falling back to manual:\n%s",
                    feature.id,
                    render_manual_context(contexts, worktree.path),
                )
                return False
            retry.increment()
            self.store.save_retry_state(retry)


def build_conflict_policy(
    name: str,
    runner: PhaseRunner,
    store: ExecutionStateStore,
    max_retries: int = 0,
) -> ConflictPolicy:
    if name == "manual":
        return ManualConflictPolicy()
    if name == "agent":
        return AgentConflictPolicy(runner, store, max_retries)
    raise ConfigError(f"Unknown conflict policy: {name!r} (expected manual or agent)")


class Integrator:
    """Merges finished feature branches back into the base branch, one at a time."""

    def __init__(
        self,
        repo_root: Path,
        policy: ConflictPolicy,
        feature_log: Callable[[str, str], None] | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.policy = policy
        self.feature_log = feature_log
        self._lock = asyncio.Lock()

    def _log(self, feature_id: str, message: str) -> None:
        logger.info("%s: %s", feature_id, message)
        if self.feature_log is not None:
            self.feature_log(feature_id, message)

    def _run_git(
        self, args: list[str], cwd: Path | None = None, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise IntegrationError(
                f"git {' '.join(args)} failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    def _rev_parse(self, ref: str, cwd: Path | None = None) -> str:
        return self._run_git(["rev-parse", "--verify", ref], cwd=cwd).stdout.strip()

    def _commit_outstanding(self, worktree: Worktree) -> None:
        if self._merge_in_progress(worktree):
            return
        status = self._run_git(["status", "--porcelain"], cwd=worktree.path).stdout
        if not status.strip():
            return
        self._run_git(["add", "-A"], cwd=worktree.path)
        self._run_git(
            ["commit", "--no-verify", "-m", f"conductor: finalize {worktree.feature_id}"],
            cwd=worktree.path,
        )

    def _merge_in_progress(self, worktree: Worktree) -> bool:
        proc = self._run_git(
            ["rev-parse", "-q", "--verify", "MERGE_HEAD"], cwd=worktree.path, check=False
        )
        return proc.returncode == 0

    def _unmerged_paths(self, worktree: Worktree) -> list[str]:
        proc = self._run_git(["diff", "--name-only", "--diff-filter=U"], cwd=worktree.path)
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def _merge_base_into_feature(self, worktree: Worktree, base_branch: str) -> list[str]:
        """Merge the base into the feature branch; return conflicted paths (empty when clean)."""
        if self._merge_in_progress(worktree):
            unmerged = self._unmerged_paths(worktree)
            if unmerged:
                return unmerged
            self._run_git(["commit", "--no-edit", "--no-verify"], cwd=worktree.path)
            return []
        proc = self._run_git(
            ["merge", "--no-ff", "--no-edit", base_branch], cwd=worktree.path, check=False
        )
        if proc.returncode == 0:
            return []
        unmerged = self._unmerged_paths(worktree)
        if not unmerged:
            self._run_git(["merge", "--abort"], cwd=worktree.path, check=False)
            raise IntegrationError(
                f"Merging {base_branch} into {worktree.branch} failed: "
                f"{proc.stderr.strip() or proc.stdout.strip()}"
            )
        return unmerged

    def _contexts(
        self, worktree: Worktree, feature: Feature, base_branch: str, paths: list[str]
    ) -> list[ConflictContext]:
        contexts: list[ConflictContext] = []
        for relative in paths:
            path = worktree.path / relative
            text = path.read_text(encoding="utf-8", errors="replace") if path.exists() else ""
            contexts.append(
                ConflictContext(
                    path=relative,
                    markers=extract_conflict_markers(text),
                    feature_id=feature.id,
                    description=feature.description,
                    source_branch=worktree.branch,
                    target_branch=base_branch,
                )
            )
        return contexts

    def _finish_merge(self, worktree: Worktree) -> None:
        self._run_git(["add", "-A"], cwd=worktree.path)
        self._run_git(["commit", "--no-edit", "--no-verify"], cwd=worktree.path)

    def _advance_base(self, worktree: Worktree, base_branch: str) -> str:
        feature_head = self._rev_parse(f"refs/heads/{worktree.branch}")
        base_head = self._rev_parse(f"refs/heads/{base_branch}")
        ancestor = self._run_git(
            ["merge-base", "--is-ancestor", base_head, feature_head], check=False
        )
        if ancestor.returncode != 0:
            raise IntegrationError(
                f"{worktree.branch} does not contain the tip of {base_branch}; refusing to move it"
            )
        current = self._run_git(["symbolic-ref", "-q", "--short", "HEAD"], check=False)
        if current.returncode == 0 and current.stdout.strip() == base_branch:
            self._run_git(["merge", "--ff-only", worktree.branch])
        else:
            self._run_git(["update-ref", f"refs/heads/{base_branch}", feature_head, base_head])
        return feature_head

    async def integrate(
        self, worktree: Worktree, base_branch: str, feature: Feature
    ) -> IntegrationResult:
        async with self._lock:
            await asyncio.to_thread(self._commit_outstanding, worktree)
            conflicts = await asyncio.to_thread(self._merge_base_into_feature, worktree, base_branch)
            if conflicts:
                self._log(feature.id, f"merge conflicts in {', '.join(conflicts)}")
                contexts = await asyncio.to_thread(
                    self._contexts, worktree, feature, base_branch, conflicts
                )
                if not await self.policy.resolve(contexts, worktree, feature):
                    return IntegrationResult(merged=False, conflicts=conflicts)
                await asyncio.to_thread(self._finish_merge, worktree)
                self._log(feature.id, f"conflicts resolved by {self.policy.name} policy")
            commit = await asyncio.to_thread(self._advance_base, worktree, base_branch)
            self._log(feature.id, f"merged {worktree.branch} into {base_branch} at {commit[:10]}")
            return IntegrationResult(merged=True, commit=commit)
