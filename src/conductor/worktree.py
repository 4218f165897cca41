from __future__ import annotations

import enum
import logging
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path

from conductor.config import WorktreeConfig
from conductor.errors import WorktreeError
from conductor.slug import feature_key

logger = logging.getLogger(__name__)


class WorktreeStatus(enum.StrEnum):
    CREATED = "created"
    ACTIVE = "active"
    CLEANED = "cleaned"


@dataclass(slots=True)
class Worktree:
    feature_id: str
    path: Path
    branch: str
    base_branch: str
    status: WorktreeStatus = WorktreeStatus.CREATED
    resumed: bool = False
    setup_completed: bool = False


class WorktreeManager:
    """Creates one git worktree and branch per feature, off the base branch."""

    def __init__(self, repo_root: Path, config: WorktreeConfig, namespace: str = "") -> None:
        self.repo_root = repo_root.resolve()
        self.config = config
        self.namespace = feature_key(namespace) if namespace else ""
        if config.base_dir:
            base_dir = Path(config.base_dir)
            if not base_dir.is_absolute():
                base_dir = self.repo_root / base_dir
        else:
            base_dir = self.repo_root / ".conductor" / "worktrees"
        self.base_dir = base_dir
        self._admin_lock = threading.Lock()

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
            raise WorktreeError(
                f"git {' '.join(args)} failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    def branch_name(self, feature_id: str) -> str:
        key = feature_key(feature_id)
        if self.namespace:
            return f"{self.config.branch_prefix}{self.namespace}/{key}"
        return f"{self.config.branch_prefix}{key}"

    def worktree_path(self, feature_id: str) -> Path:
        key = feature_key(feature_id)
        name = f"{self.namespace}-{key}" if self.namespace else key
        return self.base_dir / name

    def current_branch(self) -> str:
        proc = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"])
        return proc.stdout.strip()

    def branch_exists(self, branch: str) -> bool:
        proc = self._run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
        return proc.returncode == 0

    def _registered_worktrees(self) -> set[Path]:
        proc = self._run_git(["worktree", "list", "--porcelain"])
        paths: set[Path] = set()
        for line in proc.stdout.splitlines():
            if line.startswith("worktree "):
                paths.add(Path(line[len("worktree ") :]).resolve())
        return paths

    def ensure_excluded(self, path: Path) -> None:
        """Keep conductor's own files inside the repository out of ``git status``."""
        try:
            relative = path.resolve().relative_to(self.repo_root)
        except ValueError:
            return
        pattern = f"/{relative.parts[0]}/" if relative.parts else ""
        if not pattern:
            return
        proc = self._run_git(["rev-parse", "--git-path", "info/exclude"])
        exclude_file = Path(proc.stdout.strip())
        if not exclude_file.is_absolute():
            exclude_file = self.repo_root / exclude_file
        existing = exclude_file.read_text(encoding="utf-8") if exclude_file.exists() else ""
        if pattern in existing.splitlines():
            return
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        with exclude_file.open("a", encoding="utf-8") as handle:
            if existing and not existing.endswith("\n"):
                handle.write("\n")
            handle.write(f"{pattern}\n")

    def create(self, feature_id: str, base_branch: str) -> Worktree:
        path = self.worktree_path(feature_id)
        branch = self.branch_name(feature_id)
        with self._admin_lock:
            self._run_git(["worktree", "prune"])
            if path.resolve() in self._registered_worktrees():
                logger.info("Reusing worktree %s for %s", path, feature_id)
                return Worktree(feature_id, path, branch, base_branch, resumed=True)
            if path.exists():
                raise WorktreeError(
                    f"Worktree path {path} exists but is not a registered git worktree"
                )
            path.parent.mkdir(parents=True, exist_ok=True)
            if self.branch_exists(branch):
                logger.info("Reattaching existing branch %s for %s", branch, feature_id)
                self._run_git(["worktree", "add", str(path), branch])
                resumed = True
            else:
                self._run_git(["worktree", "add", "-b", branch, str(path), base_branch])
                resumed = False
        logger.debug("Created worktree %s on %s from %s", path, branch, base_branch)
        return Worktree(feature_id, path, branch, base_branch, resumed=resumed)

    def _resolve_script(self, script: str) -> Path | None:
        if not script:
            return None
        candidate = Path(script)
        if not candidate.is_absolute():
            candidate = self.repo_root / candidate
        if not candidate.exists():
            logger.info("Setup script %s not found; skipping setup", candidate)
            return None
        return candidate

    def setup(self, worktree: Worktree, script: str | None = None) -> None:
        script_path = self._resolve_script(script if script is not None else self.config.setup_script)
        if script_path is None:
            worktree.status = WorktreeStatus.ACTIVE
            return
        if not os.access(script_path, os.X_OK):
            raise WorktreeError(f"Setup script {script_path} is not executable")

        env = os.environ.copy()
        env.update(
            {
                "WORKTREE_PATH": str(worktree.path),
                "WORKTREE_NAME": worktree.feature_id,
                "WORKTREE_BRANCH": worktree.branch,
                "SOURCE_REPO": str(self.repo_root),
            }
        )
        timeout = self.config.setup_timeout_seconds or None
        try:
            proc = subprocess.run(
                [str(script_path), str(worktree.path), worktree.feature_id, worktree.branch],
                cwd=worktree.path,
                env=env,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise WorktreeError(
                f"Setup script {script_path} timed out after {timeout:.0f}s for {worktree.feature_id}"
            ) from exc
        if proc.returncode != 0:
            output = (proc.stderr.strip() or proc.stdout.strip())[-2000:]
            raise WorktreeError(
                f"Setup script {script_path} failed for {worktree.feature_id} "
                f"(exit {proc.returncode}): {output}"
            )
        worktree.setup_completed = True
        worktree.status = WorktreeStatus.ACTIVE

    def has_changes(self, worktree: Worktree) -> bool:
        proc = self._run_git(["status", "--porcelain"], cwd=worktree.path)
        return bool(proc.stdout.strip())

    def commit_all(self, worktree: Worktree, message: str) -> bool:
        if not self.has_changes(worktree):
            return False
        self._run_git(["add", "-A"], cwd=worktree.path)
        self._run_git(["commit", "--no-verify", "-m", message], cwd=worktree.path)
        return True

    def teardown(self, worktree: Worktree, keep: bool = False, keep_branch: bool = False) -> None:
        if keep or worktree.status == WorktreeStatus.CLEANED:
            return
        with self._admin_lock:
            if worktree.path.exists():
                proc = self._run_git(
                    ["worktree", "remove", "--force", str(worktree.path)], check=False
                )
                if proc.returncode != 0:
                    logger.warning(
                        "git worktree remove failed for %s: %s",
                        worktree.path,
                        proc.stderr.strip(),
                    )
                    shutil.rmtree(worktree.path, ignore_errors=True)
            self._run_git(["worktree", "prune"])
            if not keep_branch and self.branch_exists(worktree.branch):
                self._run_git(["branch", "-D", worktree.branch])
        worktree.status = WorktreeStatus.CLEANED
