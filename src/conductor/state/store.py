from __future__ import annotations

import json
import os
import shutil
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conductor.errors import RunLockedError, StateStoreError
from conductor.slug import feature_key
from conductor.state.records import PhaseExecutionState, RetryState, TaskExecutionState


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _lock_owner(path: Path) -> dict[str, Any] | None:
    """Parsed lock payload, ``{}`` when it cannot be read, ``None`` when the lock is gone."""
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError:
        return {}
    if raw.isdigit():
        return {"pid": int(raw)}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _is_stale(path: Path, owner: dict[str, Any], max_age_seconds: float) -> bool:
    pid = owner.get("pid")
    if isinstance(pid, int):
        return not _pid_alive(pid)
    # Owner unknown: the writer died between creating the file and filling it.
    try:
        return time.time() - path.stat().st_mtime > max_age_seconds
    except FileNotFoundError:
        return False


def _create_exclusive(path: Path, payload: str) -> None:
    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    try:
        os.write(fd, payload.encode("utf-8"))
    finally:
        os.close(fd)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class ExecutionStateStore:
    """Durable per-feature execution records kept as JSON files.

    Layout under ``state_dir``::

        phase/<feature>.json
        retry/<feature>/<phase>.json
        task/<feature>/<phase>.json
        runs/<run_id>.json
        locks/<graph>.lock

    Every file holds an envelope ``{schema_version, revision, updated_at,
    data}`` and is replaced atomically, so readers never see a partial write.

    Writers serialise on ``.lock``, which names the owning PID; a lock left by
    a process that no longer exists is reclaimed.
    """

    SCHEMA_VERSION = 1
    KINDS = {"phase", "retry", "task"}

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"
        self._lock = threading.Lock()

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        with self._lock:
            start = time.monotonic()
            while True:
                try:
                    _create_exclusive(self.lock_file, str(os.getpid()))
                    break
                except FileExistsError as exc:
                    owner = _lock_owner(self.lock_file)
                    if owner is not None and _is_stale(self.lock_file, owner, timeout_seconds):
                        _unlink_quietly(self.lock_file)
                        continue
                    if time.monotonic() - start > timeout_seconds:
                        raise StateStoreError(
                            f"Timed out waiting for state lock {self.lock_file}."
                        ) from exc
                    time.sleep(0.02)
            try:
                yield
            finally:
                _unlink_quietly(self.lock_file)

    def _record_path(self, kind: str, feature_id: str, phase: str | None = None) -> Path:
        if kind not in self.KINDS:
            raise StateStoreError(f"Unsupported state record kind: {kind}")
        if phase is None:
            return self.state_dir / kind / f"{feature_key(feature_id)}.json"
        return self.state_dir / kind / feature_key(feature_id) / f"{feature_key(phase)}.json"

    def _read_envelope(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StateStoreError(f"Corrupt state record {path}: {exc}") from exc
        if (
            isinstance(raw, dict)
            and "schema_version" in raw
            and "data" in raw
            and "revision" in raw
        ):
            return raw
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": self._utcnow_iso(),
            "data": raw,
        }

    @staticmethod
    def _atomic_write(path: Path, serialized: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def _write_envelope(self, path: Path, data: Any) -> None:
        with self._state_lock():
            current = self._read_envelope(path)
            revision = int(current.get("revision", 0)) if current else 0
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._atomic_write(path, json.dumps(envelope, ensure_ascii=False, indent=2))

    def _load_data(self, path: Path) -> Any | None:
        envelope = self._read_envelope(path)
        if envelope is None:
            return None
        return envelope.get("data")

    def get_envelope(self, kind: str, feature_id: str, phase: str | None = None) -> dict | None:
        return self._read_envelope(self._record_path(kind, feature_id, phase))

    def _delete(self, path: Path) -> bool:
        with self._state_lock():
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    # Retry state

    def load_retry_state(self, feature_id: str, phase: str, max_retries: int) -> RetryState:
        """Return the persisted retry state, or a fresh one; ``max_retries`` always wins."""
        payload = self._load_data(self._record_path("retry", feature_id, phase))
        if not isinstance(payload, dict):
            return RetryState(feature_id=feature_id, phase=phase, max_retries=max_retries)
        state = RetryState.from_dict(payload)
        state.max_retries = max_retries
        return state

    def save_retry_state(self, state: RetryState) -> None:
        self._write_envelope(
            self._record_path("retry", state.feature_id, state.phase), state.to_dict()
        )

    def increment_retry_count(self, feature_id: str, phase: str, max_retries: int) -> RetryState:
        state = self.load_retry_state(feature_id, phase, max_retries)
        state.increment()
        self.save_retry_state(state)
        return state

    def reset_retry_count(self, feature_id: str, phase: str) -> None:
        path = self._record_path("retry", feature_id, phase)
        payload = self._load_data(path)
        if not isinstance(payload, dict):
            return
        state = RetryState.from_dict(payload)
        state.reset()
        self._write_envelope(path, state.to_dict())

    # Phase state

    def load_phase_state(self, feature_id: str) -> PhaseExecutionState | None:
        payload = self._load_data(self._record_path("phase", feature_id))
        if not isinstance(payload, dict):
            return None
        return PhaseExecutionState.from_dict(payload)

    def save_phase_state(self, state: PhaseExecutionState) -> None:
        self._write_envelope(self._record_path("phase", state.feature_id), state.to_dict())

    def mark_phase_complete(
        self, feature_id: str, index: int, total_phases: int = 0
    ) -> PhaseExecutionState:
        state = self.load_phase_state(feature_id) or PhaseExecutionState(
            feature_id=feature_id, total_phases=total_phases
        )
        state.mark_phase_completed(index)
        if total_phases:
            state.total_phases = total_phases
        self.save_phase_state(state)
        return state

    def reset_phase_state(self, feature_id: str) -> bool:
        return self._delete(self._record_path("phase", feature_id))

    # Task state

    def load_task_state(self, feature_id: str, phase: str) -> TaskExecutionState | None:
        payload = self._load_data(self._record_path("task", feature_id, phase))
        if not isinstance(payload, dict):
            return None
        return TaskExecutionState.from_dict(payload)

    def save_task_state(self, state: TaskExecutionState) -> None:
        self._write_envelope(
            self._record_path("task", state.feature_id, state.phase), state.to_dict()
        )

    def mark_task_complete(self, feature_id: str, phase: str, task_id: str) -> TaskExecutionState:
        state = self.load_task_state(feature_id, phase) or TaskExecutionState(
            feature_id=feature_id, phase=phase
        )
        state.mark_task_completed(task_id)
        self.save_task_state(state)
        return state

    def reset_task_state(self, feature_id: str, phase: str) -> bool:
        return self._delete(self._record_path("task", feature_id, phase))

    def reset_feature(self, feature_id: str) -> list[str]:
        """Remove every record kind for ``feature_id``; returns the kinds that existed."""
        removed: list[str] = []
        if self.reset_phase_state(feature_id):
            removed.append("phase")
        key = feature_key(feature_id)
        for kind in ("retry", "task"):
            directory = self.state_dir / kind / key
            if directory.is_dir():
                with self._state_lock():
                    shutil.rmtree(directory)
                removed.append(kind)
        return removed

    # Run records

    def _run_path(self, run_id: str) -> Path:
        return self.state_dir / "runs" / f"{feature_key(run_id)}.json"

    def save_run(self, run_id: str, payload: dict[str, Any]) -> None:
        self._write_envelope(self._run_path(run_id), payload)

    def load_run(self, run_id: str) -> dict[str, Any] | None:
        payload = self._load_data(self._run_path(run_id))
        return payload if isinstance(payload, dict) else None

    def list_runs(self) -> list[str]:
        """Run IDs ordered oldest first (run IDs start with a UTC timestamp)."""
        runs_dir = self.state_dir / "runs"
        if not runs_dir.is_dir():
            return []
        return sorted(path.stem for path in runs_dir.glob("*.json"))

    # Run locks

    def run_lock_path(self, graph_name: str) -> Path:
        return self.state_dir / "locks" / f"{feature_key(graph_name)}.lock"

    def acquire_run_lock(self, graph_name: str, run_id: str) -> None:
        """Claim ``graph_name`` for ``run_id``, reclaiming a lock whose process is gone."""
        path = self.run_lock_path(graph_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {"run_id": run_id, "pid": os.getpid(), "started_at": self._utcnow_iso()}
        )
        while True:
            try:
                _create_exclusive(path, payload)
                return
            except FileExistsError:
                owner = _lock_owner(path)
                if owner is None:
                    continue
                if not _is_stale(path, owner, 60.0):
                    pid = owner.get("pid")
                    raise RunLockedError(
                        graph_name,
                        str(owner.get("run_id", "")),
                        pid if isinstance(pid, int) else None,
                    ) from None
                _unlink_quietly(path)

    def release_run_lock(self, graph_name: str, run_id: str) -> None:
        path = self.run_lock_path(graph_name)
        owner = _lock_owner(path)
        if owner is not None and owner.get("run_id") == run_id:
            _unlink_quietly(path)

    @contextmanager
    def run_lock(self, graph_name: str, run_id: str) -> Iterator[None]:
        self.acquire_run_lock(graph_name, run_id)
        try:
            yield
        finally:
            self.release_run_lock(graph_name, run_id)
