import asyncio
import json
import time
from pathlib import Path

import pytest

from conductor.errors import PhaseError
from conductor.runners import PhaseRequest, ProcessPhaseRunner


def _request(tmp_path: Path, **overrides) -> PhaseRequest:
    values = {
        "feature_id": "001-auth",
        "description": "Add login; with 'quotes' and spaces",
        "phase": "plan",
        "workdir": tmp_path,
    }
    values.update(overrides)
    return PhaseRequest(**values)


def test_build_command_substitutes_per_token(tmp_path: Path) -> None:
    runner = ProcessPhaseRunner("agent run --phase {phase} {description}")

    command = runner.build_command(runner.phase_command, _request(tmp_path))

    assert command == ["agent", "run", "--phase", "plan", "Add login; with 'quotes' and spaces"]


def test_build_command_rejects_unknown_placeholder(tmp_path: Path) -> None:
    runner = ProcessPhaseRunner("agent {nope}")

    with pytest.raises(PhaseError) as excinfo:
        runner.build_command(runner.phase_command, _request(tmp_path))
    assert excinfo.value.retriable is False


def test_run_phase_streams_output_in_worktree(tmp_path: Path) -> None:
    lines: list[tuple[str, str]] = []
    runner = ProcessPhaseRunner(
        "sh -c 'echo phase=$CONDUCTOR_PHASE; pwd; echo oops >&2'",
        output_hook=lambda feature_id, line: lines.append((feature_id, line)),
    )

    result = asyncio.run(runner.run_phase(_request(tmp_path)))

    assert result.ok is True
    assert result.exit_code == 0
    assert [line for _, line in lines][0::2] == ["phase=plan", "oops"]
    assert Path(lines[1][1]).resolve() == tmp_path.resolve()
    assert {feature for feature, _ in lines} == {"001-auth"}


def test_nonzero_exit_is_a_failed_result(tmp_path: Path) -> None:
    runner = ProcessPhaseRunner("sh -c 'echo failing; exit 3'")

    result = asyncio.run(runner.run_phase(_request(tmp_path)))

    assert result.ok is False
    assert result.exit_code == 3
    assert result.output == "failing"


def test_missing_binary_is_not_retriable(tmp_path: Path) -> None:
    runner = ProcessPhaseRunner("definitely-not-a-real-binary-xyz {phase}")

    with pytest.raises(PhaseError) as excinfo:
        asyncio.run(runner.run_phase(_request(tmp_path)))
    assert excinfo.value.retriable is False


def test_stream_json_output_is_reduced_to_text(tmp_path: Path) -> None:
    script = tmp_path / "emit.sh"
    events = [
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "planning"}]}},
        {"type": "system"},
        {"type": "result", "result": "done"},
    ]
    script.write_text(
        "#!/bin/sh\n" + "".join(f"echo '{json.dumps(event)}'\n" for event in events) + "echo plain\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    runner = ProcessPhaseRunner(str(script), output_format="stream-json")

    result = asyncio.run(runner.run_phase(_request(tmp_path)))

    assert result.output.splitlines() == ["planning", "done", "plain"]


def test_list_tasks_and_run_task(tmp_path: Path) -> None:
    seen: list[str] = []
    runner = ProcessPhaseRunner(
        "sh -c 'exit 1'",
        task_command="sh -c 'echo task {task}'",
        list_tasks_command="printf 'T1\\n\\nT2\\n'",
        output_hook=lambda _feature, line: seen.append(line),
    )
    request = _request(tmp_path, phase="implement")

    async def _run() -> tuple[list[str], bool]:
        tasks = await runner.list_tasks(request)
        result = await runner.run_task(request.for_task(tasks[0]))
        return tasks, result.ok

    tasks, ok = asyncio.run(_run())

    assert tasks == ["T1", "T2"]
    assert ok is True
    assert seen[-1] == "task T1"


def test_runner_timeout_is_a_phase_error(tmp_path: Path) -> None:
    runner = ProcessPhaseRunner("sleep 5", timeout_seconds=0.2, stop_grace_seconds=1.0)

    with pytest.raises(PhaseError, match="timed out"):
        asyncio.run(runner.run_phase(_request(tmp_path)))


def test_cancellation_stops_the_process(tmp_path: Path) -> None:
    marker = tmp_path / "stopped"
    runner = ProcessPhaseRunner(
        f"sh -c 'trap \"touch {marker}; exit 143\" TERM; while true; do sleep 0.1; done'",
        stop_grace_seconds=5.0,
    )

    async def _run() -> None:
        task = asyncio.create_task(runner.run_phase(_request(tmp_path)))
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    started = time.monotonic()
    asyncio.run(_run())

    assert time.monotonic() - started < 5.0
    assert marker.exists()


def test_lines_longer_than_the_stream_buffer_are_read_whole(tmp_path: Path) -> None:
    script = tmp_path / "long.sh"
    event = {"type": "result", "result": "y" * 150_000}
    script.write_text(
        "#!/bin/sh\n"
        "head -c 200000 /dev/zero | tr '\\000' x\n"
        "echo\n"
        f"echo '{json.dumps(event)}'\n"
        "echo done\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    runner = ProcessPhaseRunner(str(script), output_format="stream-json")

    result = asyncio.run(runner.run_phase(_request(tmp_path)))

    assert result.ok is True
    assert result.output.splitlines() == ["x" * 200_000, "y" * 150_000, "done"]


def test_output_hook_failure_stops_the_process(tmp_path: Path) -> None:
    marker = tmp_path / "stopped"

    def _hook(_feature: str, _line: str) -> None:
        raise RuntimeError("log sink closed")

    runner = ProcessPhaseRunner(
        f"sh -c 'trap \"touch {marker}; exit 143\" TERM; echo ready; while true; do sleep 0.1; done'",
        stop_grace_seconds=5.0,
        output_hook=_hook,
    )

    started = time.monotonic()
    with pytest.raises(RuntimeError, match="log sink closed"):
        asyncio.run(runner.run_phase(_request(tmp_path)))

    assert time.monotonic() - started < 5.0
    assert marker.exists()
