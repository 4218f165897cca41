from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
from collections.abc import AsyncIterator, Mapping
from typing import Any

from conductor.errors import PhaseError
from conductor.runners.base import OutputHook, PhaseRequest, PhaseResult, PhaseRunner

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


async def _read_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield newline-separated lines of any length from ``stream``."""
    pending = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        pending.extend(chunk)
        start = 0
        end = pending.find(b"\n")
        while end != -1:
            yield bytes(pending[start:end])
            start = end + 1
            end = pending.find(b"\n", start)
        del pending[:start]
    if pending:
        yield bytes(pending)


class ProcessPhaseRunner(PhaseRunner):
    """Runs phases as external commands built from templates.

    Templates are split like a shell command line and every token is then
    formatted with ``{feature}``, ``{phase}``, ``{description}``, ``{task}``,
    ``{workdir}`` and ``{attempt}``, so substituted values never need quoting.
    """

    def __init__(
        self,
        phase_command: str,
        *,
        task_command: str = "",
        list_tasks_command: str = "",
        output_format: str = "text",
        stop_grace_seconds: float = 10.0,
        timeout_seconds: float = 0.0,
        env: Mapping[str, str] | None = None,
        output_hook: OutputHook | None = None,
    ) -> None:
        if not phase_command.strip():
            raise ValueError("phase_command must not be empty")
        self.phase_command = phase_command
        self.task_command = task_command
        self.list_tasks_command = list_tasks_command
        self.output_format = output_format
        self.stop_grace_seconds = stop_grace_seconds
        self.timeout_seconds = timeout_seconds
        self.env = dict(env or {})
        self.output_hook = output_hook

    @staticmethod
    def _placeholders(request: PhaseRequest) -> dict[str, str]:
        return {
            "feature": request.feature_id,
            "phase": request.phase,
            "description": request.description,
            "task": request.task_id or "",
            "workdir": str(request.workdir),
            "attempt": str(request.attempt),
        }

    def build_command(self, template: str, request: PhaseRequest) -> list[str]:
        values = self._placeholders(request)
        try:
            return [token.format(**values) for token in shlex.split(template)]
        except (KeyError, IndexError, ValueError) as exc:
            raise PhaseError(
                f"Invalid command template {template!r}: {exc}",
                feature_id=request.feature_id,
                phase=request.phase,
                retriable=False,
            ) from exc

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        message = event.get("message")
        if isinstance(message, dict):
            return ProcessPhaseRunner._extract_content(message)
        if isinstance(message, str):
            return message
        result = event.get("result")
        if isinstance(result, str):
            return result
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def _process_env(self, request: PhaseRequest) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        env["CONDUCTOR_FEATURE_ID"] = request.feature_id
        env["CONDUCTOR_PHASE"] = request.phase
        env["CONDUCTOR_ATTEMPT"] = str(request.attempt)
        if request.task_id:
            env["CONDUCTOR_TASK_ID"] = request.task_id
        return env

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.stop_grace_seconds)
        except TimeoutError:
            logger.warning("Process %s ignored SIGTERM; killing it", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _stream(self, process: asyncio.subprocess.Process, request: PhaseRequest) -> str:
        assert process.stdout is not None
        collected: list[str] = []
        parse_buffer = ""
        async for raw_line in _read_lines(process.stdout):
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            if self.output_format != "stream-json":
                collected.append(line)
                self._emit_output(request.feature_id, line)
                continue
            if not line.strip():
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                collected.append(line)
                self._emit_output(request.feature_id, line)
                continue
            content = self._extract_content(event) if isinstance(event, dict) else ""
            if content:
                collected.append(content)
                self._emit_output(request.feature_id, content)
        if parse_buffer:
            collected.append(parse_buffer)
            self._emit_output(request.feature_id, parse_buffer)
        return "\n".join(collected)

    async def _execute(self, command: list[str], request: PhaseRequest) -> PhaseResult:
        logger.debug("Running %s for %s in %s", command[0], request.feature_id, request.workdir)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(request.workdir),
                env=self._process_env(request),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            raise PhaseError(
                f"Phase command not found: {command[0]}",
                feature_id=request.feature_id,
                phase=request.phase,
                retriable=False,
            ) from exc

        try:
            if self.timeout_seconds > 0:
                output = await asyncio.wait_for(
                    self._stream(process, request), timeout=self.timeout_seconds
                )
            else:
                output = await self._stream(process, request)
            return_code = await process.wait()
        except TimeoutError as exc:
            await self._stop(process)
            raise PhaseError(
                f"Phase {request.phase} timed out after {self.timeout_seconds:.1f}s",
                feature_id=request.feature_id,
                phase=request.phase,
            ) from exc
        except asyncio.CancelledError:
            await asyncio.shield(self._stop(process))
            raise
        except (OSError, ValueError) as exc:
            await self._stop(process)
            raise PhaseError(
                f"Reading output of phase {request.phase} failed: {exc}",
                feature_id=request.feature_id,
                phase=request.phase,
            ) from exc
        finally:
            if process.returncode is None:
                await asyncio.shield(self._stop(process))

        return PhaseResult(ok=return_code == 0, exit_code=return_code, output=output)

    async def run_phase(self, request: PhaseRequest) -> PhaseResult:
        return await self._execute(self.build_command(self.phase_command, request), request)

    async def run_task(self, request: PhaseRequest) -> PhaseResult:
        template = self.task_command or self.phase_command
        return await self._execute(self.build_command(template, request), request)

    async def list_tasks(self, request: PhaseRequest) -> list[str]:
        if not self.list_tasks_command:
            return []
        result = await self._execute(self.build_command(self.list_tasks_command, request), request)
        if not result.ok:
            raise PhaseError(
                f"Listing tasks for {request.phase} failed with exit code {result.exit_code}",
                feature_id=request.feature_id,
                phase=request.phase,
                exit_code=result.exit_code,
            )
        return [line.strip() for line in result.output.splitlines() if line.strip()]
