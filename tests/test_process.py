from __future__ import annotations

import asyncio
import sys

import pytest

from printstreamer.errors import SpawnError
from printstreamer.server.process import StderrFilter, start_process

QUIT_ON_Q = (
    "import sys\n"
    "for line in sys.stdin:\n"
    "    if line.strip() == 'q':\n"
    "        sys.exit(0)\n"
)
IGNORE_STDIN = "import time\ntime.sleep(30)\n"


@pytest.mark.asyncio
async def test_stop_sends_q_and_is_idempotent() -> None:
    handle = await start_process([sys.executable, "-c", QUIT_ON_Q], name="child")
    assert handle.returncode is None

    await handle.stop(5)
    assert handle.returncode == 0
    assert handle.stop_requested

    await handle.stop(5)
    assert handle.returncode == 0


@pytest.mark.asyncio
async def test_stop_kills_after_grace() -> None:
    handle = await start_process([sys.executable, "-c", IGNORE_STDIN], name="stubborn")
    await handle.stop(0.2)
    assert handle.returncode is not None
    assert handle.returncode != 0


@pytest.mark.asyncio
async def test_cancelled_stop_kills_child() -> None:
    handle = await start_process([sys.executable, "-c", IGNORE_STDIN], name="stubborn")
    stopping = asyncio.create_task(handle.stop(5))
    await asyncio.sleep(0.2)
    stopping.cancel()
    with pytest.raises(asyncio.CancelledError):
        await stopping

    async with asyncio.timeout(2):
        assert await handle.wait() != 0
        await handle.stop(0.1)
    assert handle.returncode is not None
    assert handle.returncode != 0


@pytest.mark.asyncio
async def test_stdout_is_captured() -> None:
    handle = await start_process(
        [sys.executable, "-c", "import sys; sys.stdout.write('hello')"],
        name="echo",
        stdin_enabled=False,
    )
    assert handle.stdout is not None
    assert await handle.stdout.read() == b"hello"
    assert await handle.wait() == 0
    await handle.stop(1)


@pytest.mark.asyncio
async def test_missing_binary() -> None:
    with pytest.raises(SpawnError):
        await start_process(["/nonexistent/ffmpeg-binary", "-version"])


def test_stderr_filter_rate_limits_benign_lines() -> None:
    now = [0.0]
    log_filter = StderrFilter(interval=10, clock=lambda: now[0])
    line = "[mjpeg @ 0x1] unable to decode APP fields: Invalid data"

    assert log_filter.should_log(line) == (True, 0)
    assert log_filter.should_log(line) == (False, 0)
    assert log_filter.should_log(line) == (False, 0)
    now[0] = 11.0
    assert log_filter.should_log(line) == (True, 2)
    assert log_filter.should_log("Connection refused") == (True, 0)
    assert log_filter.should_log("Connection refused") == (True, 0)
