"""Supervision of encoder subprocesses."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable, Sequence
from contextlib import suppress
from types import TracebackType

from printstreamer.errors import SpawnError

logger = logging.getLogger(__name__)

BENIGN_STDERR_MARKERS = (
    "unable to decode APP fields",
    "Last message repeated",
)
BENIGN_LOG_INTERVAL = 10.0
"""Benign stderr lines are logged at most once per this many seconds."""
STDOUT_BUFFER_LIMIT = 1024 * 1024


class StderrFilter:
    """Rate limits recurring harmless encoder messages."""

    def __init__(
        self,
        interval: float = BENIGN_LOG_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the filter with a minimum interval between benign messages."""
        self._interval = interval
        self._clock = clock
        self._last_logged: dict[str, float] = {}
        self._suppressed: dict[str, int] = {}

    def classify(self, line: str) -> str | None:
        """Return the benign marker contained in line, if any."""
        for marker in BENIGN_STDERR_MARKERS:
            if marker in line:
                return marker
        return None

    def should_log(self, line: str) -> tuple[bool, int]:
        """
        Decide whether a line is logged.

        Returns:
            Tuple of (log it, number of identical benign lines suppressed since the last
            time one was logged).
        """
        marker = self.classify(line)
        if marker is None:
            return True, 0
        now = self._clock()
        last = self._last_logged.get(marker)
        if last is not None and now - last < self._interval:
            self._suppressed[marker] = self._suppressed.get(marker, 0) + 1
            return False, 0
        self._last_logged[marker] = now
        return True, self._suppressed.pop(marker, 0)


class ProcessHandle:
    """A running encoder subprocess."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        argv: Sequence[str],
        *,
        name: str,
        stdin_enabled: bool,
    ) -> None:
        """Wrap a started process and start reading its stderr."""
        self._process = process
        self._argv = list(argv)
        self._name = name
        self._stdin_enabled = stdin_enabled
        self._logger = logger.getChild(name)
        self._filter = StderrFilter()
        self._lock = asyncio.Lock()
        self._stopped = False
        self._stderr_task: asyncio.Task[None] | None = None
        if process.stderr is not None:
            self._stderr_task = asyncio.get_running_loop().create_task(
                self._read_stderr(process.stderr)
            )

    @property
    def pid(self) -> int:
        """Process id of the child."""
        return self._process.pid

    @property
    def name(self) -> str:
        """Name used for logging."""
        return self._name

    @property
    def returncode(self) -> int | None:
        """Exit code, or None while the process is running."""
        return self._process.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        """Reader for the child's stdout when it was captured."""
        return self._process.stdout

    @property
    def stop_requested(self) -> bool:
        """Whether stop() was called."""
        return self._stopped

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the buffer limit, already discarded by the reader
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            log_it, suppressed = self._filter.should_log(line)
            if not log_it:
                continue
            if suppressed:
                self._logger.info("%s (%d similar messages suppressed)", line, suppressed)
            elif self._filter.classify(line) is not None:
                self._logger.info("%s", line)
            else:
                self._logger.warning("%s", line)

    def _kill_tree(self) -> None:
        if self._process.returncode is not None:
            return
        self._logger.debug("Killing process group of pid %d", self._process.pid)
        try:
            os.killpg(os.getpgid(self._process.pid), signal.SIGKILL)
        except (ProcessLookupError, PermissionError, AttributeError):
            with suppress(ProcessLookupError):
                self._process.kill()

    async def stop(self, grace: float = 15.0) -> None:
        """
        Stop the process.

        When stdin is enabled the encoder is asked to quit by writing "q". If it
        has not exited after grace seconds, the whole process group is killed.
        The group is also killed when the caller is cancelled while waiting.
        Safe to call any number of times.
        """
        async with self._lock:
            if self._process.returncode is None:
                try:
                    if not self._stopped:
                        self._stopped = True
                        await self._request_quit()
                    await asyncio.wait_for(self._process.wait(), timeout=max(grace, 0.0))
                except TimeoutError:
                    self._logger.debug("No exit within %.1fs grace, killing", grace)
                    self._kill_tree()
                except BaseException:
                    self._kill_tree()
                    raise
            self._stopped = True
            await self._process.wait()
        if self._stderr_task is not None:
            with suppress(asyncio.CancelledError):
                await self._stderr_task

    async def _request_quit(self) -> None:
        stdin = self._process.stdin
        if not self._stdin_enabled or stdin is None or stdin.is_closing():
            return
        try:
            stdin.write(b"q\n")
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            self._logger.debug("stdin already closed")

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        code = await self._process.wait()
        if self._stderr_task is not None:
            with suppress(asyncio.CancelledError):
                await self._stderr_task
        return code

    async def __aenter__(self) -> ProcessHandle:
        """Return self, the process is already running."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Stop immediately when the owning block exits."""
        await self.stop(0)


async def start_process(
    argv: Sequence[str],
    *,
    name: str = "ffmpeg",
    stdin_enabled: bool = True,
    capture_stdout: bool = True,
) -> ProcessHandle:
    """
    Launch a subprocess in its own process group.

    Args:
        argv: Program followed by its arguments.
        name: Name used for the child logger.
        stdin_enabled: Open a stdin pipe so stop() can ask the process to quit.
        capture_stdout: Pipe stdout so the caller can read it, otherwise discard it.

    Raises:
        SpawnError: If the program cannot be found or executed.
    """
    if not argv:
        raise SpawnError("Empty argument vector")
    logger.debug("Starting %s: %s", name, " ".join(argv))
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin_enabled else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE if capture_stdout else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            limit=STDOUT_BUFFER_LIMIT,
        )
    except (FileNotFoundError, PermissionError) as err:
        raise SpawnError(f"Cannot start {argv[0]}: {err}") from err
    logger.info("Started %s (pid %d)", name, process.pid)
    return ProcessHandle(process, argv, name=name, stdin_enabled=stdin_enabled)
