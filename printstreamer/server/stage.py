"""Common behaviour of pipeline stages backed by an encoder process."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping

from aiohttp import web

from printstreamer.errors import EncoderError

from .mjpeg import read_single_jpeg
from .process import ProcessHandle, start_process

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024

ChunkWriter = Callable[[bytes], Awaitable[None]]


class EncoderStage:
    """
    A pipeline stage that wraps one encoder process.

    Subclasses provide build_args(). The stage is driven through start(), stop() and
    wait_exit(); when output is captured, pipe_to() copies it to a writer.
    """

    name = "encoder"
    stop_grace: float = 15.0
    """Seconds the encoder is given to flush after "q" before it is killed."""
    capture_stdout = True

    def __init__(self, ffmpeg_path: str = "ffmpeg") -> None:
        """Initialize the stage, no process is started yet."""
        self._ffmpeg_path = ffmpeg_path
        self._handle: ProcessHandle | None = None
        self._stopped = False
        self._logger = logger.getChild(self.name)

    def build_args(self) -> list[str]:
        """Return the encoder arguments, without the program name."""
        raise NotImplementedError

    @property
    def argv(self) -> list[str]:
        """Complete argument vector including the program."""
        return [self._ffmpeg_path, *self.build_args()]

    @property
    def running(self) -> bool:
        """Whether the encoder process is alive."""
        return self._handle is not None and self._handle.returncode is None

    @property
    def stopped(self) -> bool:
        """Whether stop() was called. A stopped stage cannot be started."""
        return self._stopped

    @property
    def handle(self) -> ProcessHandle | None:
        """The underlying process handle, once started."""
        return self._handle

    async def start(self) -> None:
        """
        Start the encoder process.

        Raises:
            SpawnError: If the encoder binary cannot be started.
            EncoderError: If the stage was stopped before the encoder came up.
        """
        if self._handle is not None:
            raise RuntimeError(f"{self.name} stage already started")
        if self._stopped:
            raise EncoderError(f"{self.name} stage was stopped")
        self._handle = await start_process(
            self.argv, name=self.name, stdin_enabled=True, capture_stdout=self.capture_stdout
        )
        if self._stopped:
            await self._handle.stop(0)
            raise EncoderError(f"{self.name} stage was stopped while starting")

    async def stop(self) -> None:
        """Stop the encoder. Safe to call repeatedly; before start() it prevents the start."""
        self._stopped = True
        if self._handle is not None:
            await self._handle.stop(self.stop_grace)

    async def wait_exit(self) -> int:
        """Wait for the encoder to exit and return its exit code."""
        if self._handle is None:
            raise RuntimeError(f"{self.name} stage not started")
        return await self._handle.wait()

    async def read_chunk(self) -> bytes:
        """Read the next chunk of encoder output, empty at end of stream."""
        if self._handle is None or self._handle.stdout is None:
            return b""
        return await self._handle.stdout.read(READ_CHUNK_SIZE)

    async def pipe_to(self, writer: ChunkWriter) -> None:
        """Copy encoder output to writer until the encoder closes its stdout."""
        while chunk := await self.read_chunk():
            await writer(chunk)

    async def capture_jpeg(self) -> bytes | None:
        """Read the first complete JPEG from encoder output."""

        async def _chunks() -> AsyncIterator[bytes]:
            while chunk := await self.read_chunk():
                yield chunk

        return await read_single_jpeg(_chunks())


async def serve_stage(
    request: web.Request,
    stage: EncoderStage,
    content_type: str,
    headers: Mapping[str, str] | None = None,
) -> web.StreamResponse:
    """
    Stream the output of a per-request encoder stage to the client.

    The response is only prepared once the encoder produced its first bytes, so a
    failing encoder results in a 502 instead of an empty body. Once the body has
    started, failures end the response quietly. The encoder is stopped on every
    exit path.
    """
    try:
        await stage.start()
    except EncoderError as err:
        if stage.stopped:
            logger.info("%s stage stopped before it started", stage.name)
            return web.Response(status=503, text=f"{stage.name} stage was stopped")
        logger.warning("%s stage failed to start: %s", stage.name, err)
        return web.Response(status=502, text=f"Encoder failed to start: {err}")
    response = web.StreamResponse(headers={"Content-Type": content_type, **(headers or {})})
    try:
        first = await stage.read_chunk()
        if not first:
            code = await stage.wait_exit()
            logger.warning("%s encoder exited with %s before producing output", stage.name, code)
            return web.Response(status=502, text="Encoder exited before producing output")
        await response.prepare(request)
        await response.write(first)
        await stage.pipe_to(response.write)
        if code := await stage.wait_exit():
            logger.warning("%s encoder exited with %s", stage.name, code)
    except ConnectionResetError:
        logger.debug("%s client went away: %s", stage.name, request.remote)
    finally:
        await stage.stop()
    return response
