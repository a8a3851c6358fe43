import asyncio
import time
from pathlib import Path

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from codebridge.engine.errors import ProcessSpawnError
from codebridge.engine.supervisor import ProcessRegistry, ProcessSupervisor


GRACE_SECONDS = 0.5


@pytest.fixture
def supervisor(tmp_path: Path) -> ProcessSupervisor:
    return ProcessSupervisor(
        str(tmp_path),
        grace_seconds=GRACE_SECONDS,
        drain_seconds=1.0,
        input_drain_seconds=0.2,
    )


@pytest.mark.asyncio
async def test_spawn_streams_output_and_completes(supervisor):
    chunks = []
    completions = []
    result = await supervisor.spawn(
        "echo hello; echo oops 1>&2",
        on_output=chunks.append,
        on_complete=lambda code, out: completions.append((code, out)),
    )

    assert await result.wait() == 0
    output = "".join(chunks)
    assert "hello\n" in output
    assert "oops\n" in output
    assert completions == [(0, result.output.text)]
    assert supervisor.get(result.handle) is None
    assert supervisor.running_count == 0


@pytest.mark.asyncio
async def test_nonzero_exit_code_is_reported(supervisor):
    result = await supervisor.spawn("exit 3")
    assert await result.wait() == 3


@pytest.mark.asyncio
async def test_runs_in_working_directory(supervisor, tmp_path):
    result = await supervisor.spawn("pwd")
    await result.wait()
    assert result.output.text.strip() == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_completion_arrives_after_all_output(supervisor):
    completions = []
    result = await supervisor.spawn(
        "seq 1 20000",
        on_complete=lambda code, out: completions.append(out),
    )
    await result.wait()

    assert completions[0].endswith("20000\n")
    assert completions[0] == result.output.text


@pytest.mark.asyncio
async def test_initial_input_is_written_after_start(supervisor):
    result = await supervisor.spawn("head -n 1", initial_input="ping")
    assert await result.wait() == 0
    assert result.output.text == "ping\n"


@pytest.mark.asyncio
async def test_send_input_appends_newline_in_order(supervisor):
    result = await supervisor.spawn("head -n 2")

    assert await supervisor.send_input(result.handle, "first") is True
    assert await supervisor.send_input(result.handle, "second") is True

    assert await result.wait() == 0
    assert result.output.text == "first\nsecond\n"


@pytest.mark.asyncio
async def test_send_input_to_unknown_or_exited_handle_returns_false(supervisor):
    assert await supervisor.send_input(999, "hello") is False

    result = await supervisor.spawn("true")
    await result.wait()
    assert await supervisor.send_input(result.handle, "late") is False


@pytest.mark.asyncio
async def test_send_input_returns_when_process_never_reads_stdin(supervisor):
    result = await supervisor.spawn("sleep 30")
    payload = "x" * 2_000_000
    try:
        # Far larger than a pipe buffer; the child never reads it.
        assert await asyncio.wait_for(
            supervisor.send_input(result.handle, payload), timeout=2,
        ) is True
        # The per-handle stdin lock must not stay held.
        assert await asyncio.wait_for(
            supervisor.send_input(result.handle, "next"), timeout=2,
        ) is True
    finally:
        await supervisor.kill(result.handle)
    assert supervisor.get(result.handle) is None


@pytest.mark.asyncio
async def test_handles_are_monotonic_and_never_reused(supervisor):
    first = await supervisor.spawn("true")
    await first.wait()
    second = await supervisor.spawn("true")
    await second.wait()

    assert second.handle > first.handle


@pytest.mark.asyncio
async def test_list_and_get_describe_live_processes(supervisor):
    result = await supervisor.spawn("sleep 5")
    try:
        listed = supervisor.list()
        assert [info.handle for info in listed] == [result.handle]
        info = supervisor.get(result.handle)
        assert info is not None
        assert info.command == "sleep 5"
        assert info.pid > 0
        assert info.start_time.tzinfo is not None
    finally:
        await supervisor.kill(result.handle)

    assert supervisor.list() == []
    assert supervisor.get(result.handle) is None


@pytest.mark.asyncio
async def test_kill_terminates_and_deregisters(supervisor):
    completions = []
    result = await supervisor.spawn(
        "sleep 30",
        on_complete=lambda code, out: completions.append(code),
    )

    assert await supervisor.kill(result.handle) is True

    assert supervisor.get(result.handle) is None
    assert await result.wait() != 0
    assert len(completions) == 1


@pytest.mark.asyncio
async def test_kill_escalates_when_sigterm_is_ignored(supervisor):
    result = await supervisor.spawn("trap '' TERM; sleep 30")
    # Let the shell install the trap before signalling.
    await asyncio.sleep(0.2)

    started = time.monotonic()
    assert await supervisor.kill(result.handle) is True
    elapsed = time.monotonic() - started

    assert await result.wait() == -9
    assert GRACE_SECONDS - 0.1 <= elapsed < GRACE_SECONDS + 1.0


@pytest.mark.asyncio
async def test_kill_unknown_handle_returns_false(supervisor):
    assert await supervisor.kill(12345) is False


@pytest.mark.asyncio
async def test_kill_all_signals_every_process(supervisor):
    first = await supervisor.spawn("sleep 30")
    second = await supervisor.spawn("sleep 30")

    assert supervisor.kill_all() == 2

    await asyncio.wait_for(first.wait(), timeout=5)
    await asyncio.wait_for(second.wait(), timeout=5)
    assert supervisor.running_count == 0
    assert supervisor.kill_all() == 0


@pytest.mark.asyncio
async def test_spawn_in_missing_directory_raises(tmp_path):
    supervisor = ProcessSupervisor(str(tmp_path / "missing"))
    with pytest.raises(ProcessSpawnError):
        await supervisor.spawn("echo hi")
    assert supervisor.running_count == 0


@pytest.mark.asyncio
async def test_failing_output_subscriber_does_not_stop_completion(supervisor):
    completions = []
    result = await supervisor.spawn(
        "echo one",
        on_output=MagicMock(side_effect=ValueError("bad subscriber")),
        on_complete=lambda code, out: completions.append(code),
    )
    await result.wait()
    assert completions == [0]


@pytest.mark.asyncio
async def test_exit_wait_failure_publishes_error_only(tmp_path):
    registry = ProcessRegistry()
    supervisor = ProcessSupervisor(str(tmp_path), registry=registry)
    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = None
    proc.stdin = None
    proc.stdout = None
    proc.stderr = None
    proc.wait = AsyncMock(side_effect=RuntimeError("wait exploded"))

    errors, completions = [], []
    with patch(
        "codebridge.engine.supervisor.asyncio.create_subprocess_shell",
        AsyncMock(return_value=proc),
    ):
        result = await supervisor.spawn(
            "anything",
            on_complete=lambda code, out: completions.append(code),
            on_error=errors.append,
        )

    with pytest.raises(RuntimeError, match="wait exploded"):
        await result.wait()
    assert len(errors) == 1
    assert completions == []
    assert len(registry) == 0
