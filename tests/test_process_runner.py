from __future__ import annotations

import asyncio
import sys
import time

import pytest

from pluck.exceptions import ProcessError, ProcessLaunchError, ProcessTerminatedError
from pluck.process_runner import LineBuffer, ProcessRegistry, ProcessRunner


def _python(code: str) -> list[str]:
    return ["-c", code]


def test_line_buffer_holds_back_partial_lines() -> None:
    buffer = LineBuffer()

    assert buffer.feed("dow") == []
    assert buffer.feed("nload: 1%\r\ndownload: 2") == ["download: 1%"]
    assert buffer.feed("%\n") == ["download: 2%"]
    assert buffer.feed("tail") == []
    assert buffer.flush() == ["tail"]
    assert buffer.flush() == []


def test_run_streams_lines_from_both_streams() -> None:
    seen: list[tuple[str, str]] = []

    async def on_line(line: str, stream: str) -> None:
        seen.append((stream, line))

    code = (
        "import sys\n"
        "sys.stdout.write('one\\ntw'); sys.stdout.flush()\n"
        "sys.stdout.write('o\\nthree'); sys.stdout.flush()\n"
        "sys.stderr.write('warn\\n')\n"
    )
    result = asyncio.run(ProcessRunner().run(sys.executable, _python(code), on_line=on_line, capture_output=True))

    assert result.exit_code == 0
    assert result.stdout == "one\ntwo\nthree"
    assert [line for stream, line in seen if stream == "stdout"] == ["one", "two", "three"]
    assert ("stderr", "warn") in seen


def test_run_decodes_multibyte_text_split_across_chunks() -> None:
    code = (
        "import sys, time\n"
        "data = 'caf\\u00e9 \\u266b\\n'.encode('utf-8')\n"
        "sys.stdout.buffer.write(data[:4]); sys.stdout.flush(); time.sleep(0.05)\n"
        "sys.stdout.buffer.write(data[4:]); sys.stdout.flush()\n"
    )
    result = asyncio.run(ProcessRunner().run(sys.executable, _python(code), capture_output=True))

    assert result.stdout == "café ♫"


def test_run_without_capture_returns_empty_stdout() -> None:
    result = asyncio.run(ProcessRunner().run(sys.executable, _python("print('hello')")))

    assert result.stdout == ""


def test_non_zero_exit_raises_process_error_with_stderr_tail() -> None:
    code = "import sys\nsys.stderr.write('x' * 2000 + 'END')\nsys.exit(3)\n"

    with pytest.raises(ProcessError) as excinfo:
        asyncio.run(ProcessRunner().run(sys.executable, _python(code)))

    assert excinfo.value.exit_code == 3
    assert len(excinfo.value.stderr_tail) <= 500
    assert excinfo.value.stderr_tail.rstrip().endswith("END")
    assert not isinstance(excinfo.value, ProcessTerminatedError)


def test_silent_failure_message_names_exit_code() -> None:
    with pytest.raises(ProcessError) as excinfo:
        asyncio.run(ProcessRunner().run(sys.executable, _python("import sys; sys.exit(2)")))

    assert str(excinfo.value) == "Process exited with code 2"


def test_missing_executable_raises_launch_error() -> None:
    with pytest.raises(ProcessLaunchError):
        asyncio.run(ProcessRunner().run("/nonexistent/definitely-not-a-tool", ["--version"]))


def test_terminate_all_reclassifies_exit_as_terminated() -> None:
    registry = ProcessRegistry()
    runner = ProcessRunner(registry)

    async def scenario() -> None:
        task = asyncio.create_task(runner.run(sys.executable, _python("import time; time.sleep(30)")))
        while await registry.live_count() == 0:
            await asyncio.sleep(0.01)
        assert await registry.terminate_all() == 1
        with pytest.raises(ProcessTerminatedError):
            await task
        assert await registry.live_count() == 0

    started = time.monotonic()
    asyncio.run(scenario())
    assert time.monotonic() - started < 10


def test_process_started_during_cancel_is_terminated() -> None:
    registry = ProcessRegistry()
    runner = ProcessRunner(registry)

    async def scenario() -> None:
        await registry.request_cancel()
        with pytest.raises(ProcessTerminatedError):
            await runner.run(sys.executable, _python("import time; time.sleep(30)"))
        assert await registry.live_count() == 0

    asyncio.run(scenario())


def test_cancelling_the_awaiting_task_kills_the_process() -> None:
    registry = ProcessRegistry()
    runner = ProcessRunner(registry)

    async def scenario() -> None:
        task = asyncio.create_task(runner.run(sys.executable, _python("import time; time.sleep(30)")))
        while await registry.live_count() == 0:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await registry.live_count() == 0

    asyncio.run(scenario())


def test_registry_generation_blocks_stale_dispatch() -> None:
    registry = ProcessRegistry()

    async def scenario() -> None:
        generation = await registry.current_generation()
        assert await registry.may_dispatch(generation)
        await registry.request_cancel()
        assert not await registry.may_dispatch(generation)
        await registry.reset()
        assert not await registry.may_dispatch(generation)
        assert await registry.may_dispatch(await registry.current_generation())

    asyncio.run(scenario())
