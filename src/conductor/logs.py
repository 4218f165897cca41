from __future__ import annotations

import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path

from conductor.slug import feature_key

TRUNCATION_FRACTION = 0.2


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


class LogManager:
    """Per-feature execution logs for one run, each capped at ``max_size`` bytes.

    When a log grows past the cap the oldest content is dropped from the
    front (at least a fifth of the file, cut at a line start) and a
    ``[TRUNCATED at HH:MM:SS]`` marker takes its place, so the most recent
    output is always kept.
    """

    def __init__(self, log_dir: Path, max_size: int, run_id: str) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.log_dir = log_dir
        self.max_size = max_size
        self.run_id = run_id
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def run_dir(self) -> Path:
        return self.log_dir / feature_key(self.run_id)

    def log_path(self, feature_id: str) -> Path:
        return self.run_dir / f"{feature_key(feature_id)}.log"

    def _lock_for(self, feature_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(feature_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[feature_id] = lock
            return lock

    def append(self, feature_id: str, data: bytes | str) -> None:
        payload = data.encode("utf-8") if isinstance(data, str) else data
        if not payload:
            return
        path = self.log_path(feature_id)
        with self._lock_for(feature_id):
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("ab") as handle:
                handle.write(payload)
                size = handle.tell()
            if size > self.max_size:
                self._truncate(path)

    def write_line(self, feature_id: str, line: str) -> None:
        self.append(feature_id, f"[{_timestamp()}] {line.rstrip(chr(10))}\n")

    def _truncate(self, path: Path) -> None:
        content = path.read_bytes()
        marker = f"[TRUNCATED at {_timestamp()}]\n".encode()
        overflow = len(content) + len(marker) - self.max_size
        cut = max(int(len(content) * TRUNCATION_FRACTION), overflow)
        newline = content.find(b"\n", max(cut - 1, 0))
        cut = len(content) if newline == -1 else newline + 1
        kept = content[cut:]
        budget = self.max_size - len(marker)
        if len(kept) > budget:
            kept = kept[len(kept) - max(budget, 0):]
        self._replace(path, marker + kept if budget >= 0 else marker[: self.max_size])

    @staticmethod
    def _replace(path: Path, content: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def read(self, feature_id: str) -> str:
        path = self.log_path(feature_id)
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8", errors="replace")

    def list_features(self) -> list[str]:
        if not self.run_dir.is_dir():
            return []
        return sorted(path.stem for path in self.run_dir.glob("*.log"))


def list_log_runs(log_dir: Path) -> list[str]:
    if not log_dir.is_dir():
        return []
    return sorted(path.name for path in log_dir.iterdir() if path.is_dir())
