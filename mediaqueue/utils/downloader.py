"""Async subprocess wrapper for yt-dlp.

Downloads can run for many minutes, so instead of a fixed timeout each
process is guarded by a stall watchdog: if neither stdout nor stderr
produced output for stall_timeout seconds the process receives SIGTERM, and
SIGKILL if it is still alive kill_grace seconds later.

Critical Pattern:
- Workers MUST use run_process() instead of subprocess.run() directly
- Output is read concurrently from both pipes so a chatty process never
  blocks on a full pipe
- Captured output is bounded (tail kept) to keep memory flat on long runs
- Arguments are logged through sanitize_args() (cookies/proxy redacted)
"""

import asyncio
import time
from dataclasses import dataclass

from mediaqueue.utils.logging import get_logger, sanitize_args, truncate

log = get_logger(__name__)

DEFAULT_STALL_TIMEOUT = 300.0
DEFAULT_KILL_GRACE = 2.0
READ_CHUNK_SIZE = 64 * 1024
WATCHDOG_INTERVAL = 10.0


class DownloaderError(Exception):
    """Raised when an external downloader process fails.

    Attributes:
        command: Full argv that was executed
        exit_code: Process exit code (None if it never started)
        stderr: Captured stderr (tail)
        stdout: Captured stdout (tail)
    """

    def __init__(
        self,
        command: list[str],
        exit_code: int | None,
        stderr: str = "",
        stdout: str = "",
    ) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        program = command[0] if command else "process"
        super().__init__(f"{program} exited with code {exit_code}")

    @property
    def has_output(self) -> bool:
        return bool(self.stderr.strip() or self.stdout.strip())


class DownloaderStalledError(DownloaderError):
    """Raised when the stall watchdog killed a process that went silent."""

    def __init__(
        self,
        command: list[str],
        exit_code: int | None,
        stall_seconds: float,
        stderr: str = "",
        stdout: str = "",
    ) -> None:
        super().__init__(command, exit_code, stderr, stdout)
        self.stall_seconds = stall_seconds


@dataclass(frozen=True)
class ProcessResult:
    command: list[str]
    exit_code: int
    stdout: str
    stderr: str
    stalled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.stalled


class _OutputBuffer:
    """Accumulates pipe output, keeping at most max_bytes of the tail."""

    def __init__(self, max_bytes: int | None) -> None:
        self._data = bytearray()
        self._max_bytes = max_bytes

    def append(self, chunk: bytes) -> None:
        self._data.extend(chunk)
        if self._max_bytes is not None and len(self._data) > self._max_bytes:
            del self._data[: len(self._data) - self._max_bytes]

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


async def _terminate(process: asyncio.subprocess.Process, kill_grace: float) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
        await asyncio.wait_for(process.wait(), timeout=kill_grace)
    except asyncio.TimeoutError:
        process.kill()
    except ProcessLookupError:
        pass


async def run_process(
    command: list[str],
    *,
    stall_timeout: float = DEFAULT_STALL_TIMEOUT,
    kill_grace: float = DEFAULT_KILL_GRACE,
    max_output_bytes: int | None = 256 * 1024,
    check: bool = True,
) -> ProcessResult:
    """Run a command without blocking the event loop.

    Args:
        command: argv; command[0] is the executable.
        stall_timeout: Seconds without any output before the process is killed.
        kill_grace: Seconds between SIGTERM and SIGKILL.
        max_output_bytes: Tail of each stream to keep (None keeps everything).
        check: Raise on failure instead of returning the result.

    Returns:
        ProcessResult with decoded stdout/stderr.

    Raises:
        DownloaderStalledError: If the watchdog killed the process (check=True).
        DownloaderError: If the process exits non-zero or cannot be started
            (check=True for the former; always for the latter).
    """
    log.info("process_start", program=command[0], args=sanitize_args(command[1:]))

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        log.error("process_spawn_failed", program=command[0], error=str(e))
        raise DownloaderError(command, None, stderr=str(e)) from e

    stdout_buffer = _OutputBuffer(max_output_bytes)
    stderr_buffer = _OutputBuffer(max_output_bytes)
    last_activity = time.monotonic()
    stalled = False

    async def pump(stream: asyncio.StreamReader, buffer: _OutputBuffer) -> None:
        nonlocal last_activity
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            last_activity = time.monotonic()
            buffer.append(chunk)

    async def watchdog() -> None:
        nonlocal stalled
        interval = min(WATCHDOG_INTERVAL, stall_timeout)
        while process.returncode is None:
            await asyncio.sleep(interval)
            idle = time.monotonic() - last_activity
            if idle > stall_timeout:
                stalled = True
                log.warning("process_stalled", program=command[0], idle_seconds=int(idle))
                await _terminate(process, kill_grace)
                return

    watchdog_task = asyncio.create_task(watchdog())
    try:
        await asyncio.gather(
            pump(process.stdout, stdout_buffer),
            pump(process.stderr, stderr_buffer),
        )
        exit_code = await process.wait()
    except asyncio.CancelledError:
        await _terminate(process, kill_grace)
        raise
    finally:
        watchdog_task.cancel()

    result = ProcessResult(
        command=command,
        exit_code=exit_code,
        stdout=stdout_buffer.text(),
        stderr=stderr_buffer.text(),
        stalled=stalled,
    )

    if result.succeeded:
        log.info("process_success", program=command[0])
        return result

    log.error(
        "process_failed",
        program=command[0],
        exit_code=exit_code,
        stalled=stalled,
        stderr=truncate(result.stderr.strip()),
        stdout=truncate(result.stdout.strip()) if not result.stderr.strip() else None,
    )
    if not check:
        return result
    if stalled:
        raise DownloaderStalledError(
            command, exit_code, stall_timeout, stderr=result.stderr, stdout=result.stdout
        )
    raise DownloaderError(command, exit_code, stderr=result.stderr, stdout=result.stdout)
