"""Runs external tools, streams their output line by line, and tracks live processes."""
import os
import sys
import codecs
import signal
import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Union

from .constants import READ_CHUNK_SIZE, STDERR_TAIL_LIMIT, SUBPROCESS_CREATION_FLAGS
from .exceptions import ProcessError, ProcessLaunchError, ProcessTerminatedError

LineCallback = Callable[[str, str], Awaitable[None]]


class ProcessResult(NamedTuple):
    exit_code: int
    stdout: str
    stderr_tail: str


class LineBuffer:
    """Splits decoded text into complete lines, holding back a trailing partial line."""

    def __init__(self):
        self._pending = ""

    def feed(self, text: str) -> List[str]:
        self._pending += text
        *lines, self._pending = self._pending.split('\n')
        return [line.rstrip('\r') for line in lines]

    def flush(self) -> List[str]:
        """Returns whatever is left once the stream has ended."""
        remainder, self._pending = self._pending.rstrip('\r'), ""
        return [remainder] if remainder else []


def terminate_process(process: asyncio.subprocess.Process, sig: int = signal.SIGTERM) -> None:
    """Best-effort termination of a process and, on POSIX, its process group."""
    if process.returncode is not None:
        return
    try:
        if sys.platform == 'win32':
            process.terminate()
        else:
            os.killpg(os.getpgid(process.pid), sig)
    except (ProcessLookupError, PermissionError, OSError):
        try:
            process.send_signal(sig)
        except (ProcessLookupError, OSError):
            pass # Already gone


class ProcessRegistry:
    """
    The set of live processes plus the scheduler-wide cancellation flag.

    Both are guarded by one lock so a cancel-all sees every process that has
    been registered and no process can slip in unnoticed afterwards.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._lock = asyncio.Lock()
        self._processes: Dict[int, asyncio.subprocess.Process] = {}
        self._terminate_requested: set[int] = set()
        self._cancel_requested = False
        self._generation = 0

    async def register(self, process: asyncio.subprocess.Process) -> None:
        async with self._lock:
            self._processes[process.pid] = process
            if self._cancel_requested:
                self.logger.info(f"Cancellation in effect; terminating new process (PID: {process.pid}).")
                self._terminate_requested.add(process.pid)
                terminate_process(process)

    async def unregister(self, process: asyncio.subprocess.Process) -> bool:
        """Removes the process and reports whether termination had been requested for it."""
        async with self._lock:
            self._processes.pop(process.pid, None)
            was_terminated = process.pid in self._terminate_requested
            self._terminate_requested.discard(process.pid)
            return was_terminated

    async def terminate_all(self) -> int:
        async with self._lock:
            procs_to_terminate = list(self._processes.values())
            for process in procs_to_terminate:
                self.logger.info(f"Terminating process (PID: {process.pid})...")
                self._terminate_requested.add(process.pid)
                terminate_process(process)
        return len(procs_to_terminate)

    async def request_cancel(self) -> int:
        """Raises the cancellation flag and terminates every live process."""
        async with self._lock:
            self._cancel_requested = True
            self._generation += 1
        return await self.terminate_all()

    async def reset(self) -> None:
        async with self._lock:
            self._cancel_requested = False

    async def is_cancel_requested(self) -> bool:
        async with self._lock:
            return self._cancel_requested

    async def current_generation(self) -> int:
        async with self._lock:
            return self._generation

    async def may_dispatch(self, generation: int) -> bool:
        """True unless a cancel-all happened since `generation` was read."""
        async with self._lock:
            return not self._cancel_requested and generation == self._generation

    async def live_count(self) -> int:
        async with self._lock:
            return len(self._processes)


class ProcessRunner:
    """Spawns one external executable at a time per call and supervises it to completion."""

    def __init__(self, registry: Optional[ProcessRegistry] = None):
        self.registry = registry or ProcessRegistry()
        self.logger = logging.getLogger(__name__)

    async def run(self,
                  executable: Union[str, Path],
                  arguments: Sequence[Any],
                  on_line: Optional[LineCallback] = None,
                  capture_output: bool = False,
                  env: Optional[Mapping[str, str]] = None) -> ProcessResult:
        """
        Runs the process, awaiting `on_line(line, stream_name)` for each output line.

        Args:
            executable: Path to the tool.
            arguments: Command-line arguments (converted to str).
            on_line: Async callback for every complete stdout/stderr line.
            capture_output: Whether to accumulate stdout into the result.
            env: Environment for the child; defaults to a copy of ours.

        Returns:
            A ProcessResult for a zero exit code.

        Raises:
            ProcessLaunchError: The executable could not be started.
            ProcessTerminatedError: The process exited after termination was requested.
            ProcessError: The process exited with a non-zero code.
        """
        command = [str(executable), *(str(arg) for arg in arguments)]
        self.logger.debug(f"Running: {' '.join(command)}")

        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['preexec_fn'] = os.setsid

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env) if env is not None else os.environ.copy(),
                **kwargs
            )
        except FileNotFoundError:
            raise ProcessLaunchError(str(executable), "executable not found")
        except PermissionError:
            raise ProcessLaunchError(str(executable), "permission denied")
        except OSError as e:
            raise ProcessLaunchError(str(executable), str(e))

        await self.registry.register(process)

        stdout_lines: List[str] = []
        stderr_tail = ""

        async def handle_stdout(line: str):
            if capture_output:
                stdout_lines.append(line)
            if on_line:
                await on_line(line, 'stdout')

        async def handle_stderr(line: str):
            nonlocal stderr_tail
            stderr_tail = (stderr_tail + line + '\n')[-STDERR_TAIL_LIMIT:]
            if on_line:
                await on_line(line, 'stderr')

        try:
            assert process.stdout is not None and process.stderr is not None
            await asyncio.gather(
                self._pump(process.stdout, handle_stdout),
                self._pump(process.stderr, handle_stderr),
            )
            return_code = await process.wait()
        except BaseException:
            terminate_process(process, signal.SIGKILL if sys.platform != 'win32' else signal.SIGTERM)
            raise
        finally:
            was_terminated = await self.registry.unregister(process)

        if return_code == 0:
            return ProcessResult(return_code, '\n'.join(stdout_lines), stderr_tail)
        if was_terminated:
            raise ProcessTerminatedError(return_code, stderr_tail)
        raise ProcessError(return_code, stderr_tail)

    async def _pump(self, stream: asyncio.StreamReader, handler: Callable[[str], Awaitable[None]]):
        """Reads a stream in chunks and hands over complete lines as they arrive."""
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        buffer = LineBuffer()
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                lines = buffer.feed(decoder.decode(b'', final=True)) + buffer.flush()
                for line in lines:
                    await handler(line)
                return
            for line in buffer.feed(decoder.decode(chunk)):
                await handler(line)
