"""Source stage: shared reader of the camera MJPEG stream with a black fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress

from aiohttp import ClientError, ClientSession, ClientTimeout, web
from yarl import URL

from printstreamer.config import PrintStreamerConfig
from printstreamer.errors import EncoderError, UpstreamUnavailable

from .mjpeg import (
    MULTIPART_CONTENT_TYPE,
    NO_CACHE_HEADERS,
    JpegExtractor,
    load_fallback_jpeg,
    multipart_frame,
    read_single_jpeg,
)

logger = logging.getLogger(__name__)

FALLBACK_INTERVAL = 0.25
"""Seconds between two fallback frames."""
PROBE_INTERVAL = 5.0
"""Seconds between reconnect attempts while the camera is unreachable."""
STALE_AFTER = 5.0
"""A live frame older than this is replaced by the fallback frame."""
FRESH_CAPTURE_AGE = 2.0
CAPTURE_TIMEOUT = 10.0
SNAPSHOT_TIMEOUT = 5.0
UPSTREAM_TIMEOUT = ClientTimeout(total=None, sock_connect=10, sock_read=10)


class SourceStage:
    """
    Process wide reader of the camera stream.

    A single background task keeps one connection to the camera and publishes every
    JPEG it receives. Subscribers get the latest frames, or the black fallback frame
    while the camera is unreachable or disabled.
    """

    def __init__(
        self,
        config: PrintStreamerConfig,
        session: ClientSession,
        fallback_jpeg: bytes | None = None,
    ) -> None:
        """
        Initialize the source stage.

        Args:
            config: Application configuration, Stream:Source is read on every connect.
            session: Client session used for upstream requests.
            fallback_jpeg: Frame served while no live frames are available.
        """
        self._config = config
        self._session = session
        self._fallback = fallback_jpeg if fallback_jpeg is not None else load_fallback_jpeg()
        self._disabled = False
        self._upstream_ok = False
        self._frame: bytes | None = None
        self._frame_time = 0.0
        self._frame_id = 0
        self._new_frame = asyncio.Event()
        self._wake = asyncio.Event()
        self._reader_task: asyncio.Task[None] | None = None
        self._subscribers = 0

    @property
    def fallback_jpeg(self) -> bytes:
        """The black fallback frame."""
        return self._fallback

    @property
    def disabled(self) -> bool:
        """Whether the camera is disabled by the operator."""
        return self._disabled

    @property
    def upstream_ok(self) -> bool:
        """Whether the reader is currently connected to the camera."""
        return self._upstream_ok

    @property
    def subscriber_count(self) -> int:
        """Number of clients currently streaming from this stage."""
        return self._subscribers

    @property
    def source_url(self) -> str:
        """Configured camera URL."""
        return self._config.stream.source

    def set_disabled(self, disabled: bool) -> None:
        """Enable or disable the camera. Disabling drops the upstream connection."""
        if disabled == self._disabled:
            return
        self._disabled = disabled
        logger.info("Camera %s", "disabled" if disabled else "enabled")
        self._wake.set()

    def toggle(self) -> bool:
        """Flip the disabled flag and return the new value."""
        self.set_disabled(not self._disabled)
        return self._disabled

    async def start(self) -> None:
        """Start the background reader."""
        if self._reader_task is not None:
            return
        self._reader_task = asyncio.get_running_loop().create_task(self._reader_loop())

    async def stop(self) -> None:
        """Stop the background reader."""
        if self._reader_task is None:
            return
        self._reader_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._reader_task
        self._reader_task = None
        self._upstream_ok = False

    def _publish(self, frame: bytes) -> None:
        self._frame = frame
        self._frame_time = time.monotonic()
        self._frame_id += 1
        event, self._new_frame = self._new_frame, asyncio.Event()
        event.set()

    async def _sleep_or_wake(self, delay: float | None) -> None:
        with suppress(TimeoutError):
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        self._wake.clear()

    async def _reader_loop(self) -> None:
        while True:
            url = self.source_url
            if self._disabled or not url:
                self._upstream_ok = False
                await self._sleep_or_wake(None if self._disabled else PROBE_INTERVAL)
                continue
            try:
                await self._read_upstream(url)
            except (ClientError, TimeoutError) as err:
                if self._upstream_ok:
                    logger.warning("Camera stream lost: %s", err)
                else:
                    logger.debug("Camera stream unavailable: %s", err)
            finally:
                self._upstream_ok = False
            if not self._disabled:
                await self._sleep_or_wake(PROBE_INTERVAL)

    async def _read_upstream(self, url: str) -> None:
        async with self._session.get(url, timeout=UPSTREAM_TIMEOUT) as resp:
            resp.raise_for_status()
            if not self._upstream_ok:
                logger.info("Connected to camera stream %s", url)
            self._upstream_ok = True
            self._wake.clear()
            extractor = JpegExtractor()
            async for chunk in resp.content.iter_any():
                for frame in extractor.feed(chunk):
                    self._publish(frame)
                if self._disabled or self._wake.is_set():
                    logger.debug("Dropping camera connection")
                    return

    def _live_frame(self, max_age: float) -> bytes | None:
        if self._disabled or not self._upstream_ok or self._frame is None:
            return None
        if time.monotonic() - self._frame_time > max_age:
            return None
        return self._frame

    async def frames(self) -> AsyncIterator[bytes]:
        """Yield live frames as they arrive, or fallback frames at a fixed rate."""
        last_id = -1
        while True:
            event = self._new_frame
            frame = self._live_frame(STALE_AFTER)
            if frame is not None and self._frame_id != last_id:
                last_id = self._frame_id
                yield frame
                continue
            try:
                await asyncio.wait_for(event.wait(), timeout=FALLBACK_INTERVAL)
            except TimeoutError:
                if self._live_frame(STALE_AFTER) is None:
                    yield self._fallback

    async def capture(self) -> bytes:
        """
        Capture a single JPEG from the camera.

        Tries the camera snapshot action first, then the latest buffered frame, then
        reads one frame from the live stream.

        Raises:
            UpstreamUnavailable: If the camera is disabled or not configured.
            TimeoutError: If no frame arrived within the capture deadline.
            ClientError: If the camera answered with an error.
        """
        url = self.source_url
        if self._disabled:
            raise UpstreamUnavailable("Camera is disabled")
        if not url:
            raise UpstreamUnavailable("Stream:Source is not configured")
        async with asyncio.timeout(CAPTURE_TIMEOUT):
            if (snapshot := await self._fetch_snapshot(url)) is not None:
                return snapshot
            if (frame := self._live_frame(FRESH_CAPTURE_AGE)) is not None:
                return frame
            async with self._session.get(url, timeout=UPSTREAM_TIMEOUT) as resp:
                resp.raise_for_status()
                frame = await read_single_jpeg(resp.content.iter_any())
        if frame is None:
            raise UpstreamUnavailable("Camera stream ended before a full frame")
        return frame

    async def _fetch_snapshot(self, url: str) -> bytes | None:
        snapshot_url = URL(url).update_query(action="snapshot")
        try:
            async with self._session.get(
                snapshot_url, timeout=ClientTimeout(total=SNAPSHOT_TIMEOUT)
            ) as resp:
                if resp.status != 200:
                    return None
                content_type = resp.headers.get("Content-Type", "")
                if "image" not in content_type and "jpeg" not in content_type:
                    return None
                data = await resp.read()
        except (ClientError, TimeoutError) as err:
            logger.debug("Snapshot request failed: %s", err)
            return None
        return data if data.startswith(b"\xff\xd8") else None

    async def handle_stream(self, request: web.Request) -> web.StreamResponse:
        """Serve the camera as multipart MJPEG, falling back to black frames."""
        if request.query.get("action", "").lower() == "snapshot":
            return await self.handle_capture(request)
        response = web.StreamResponse(
            headers={"Content-Type": MULTIPART_CONTENT_TYPE, **NO_CACHE_HEADERS}
        )
        await response.prepare(request)
        self._subscribers += 1
        logger.info("Source client connected: %s", request.remote)
        try:
            async for frame in self.frames():
                await response.write(multipart_frame(frame))
        except ConnectionResetError:
            logger.debug("Source client went away: %s", request.remote)
        finally:
            self._subscribers -= 1
        return response

    async def handle_capture(self, request: web.Request) -> web.Response:
        """Serve a single camera frame."""
        return await capture_response(self.capture)

    async def handle_fallback(self, request: web.Request) -> web.Response:
        """Serve the black fallback frame."""
        return web.Response(body=self._fallback, content_type="image/jpeg", headers=NO_CACHE_HEADERS)


async def capture_response(capture: Callable[[], Awaitable[bytes]]) -> web.Response:
    """Run a capture coroutine function and map its failures to HTTP status codes."""
    try:
        frame = await capture()
    except UpstreamUnavailable as err:
        return web.Response(status=503, text=str(err))
    except TimeoutError:
        return web.Response(status=504, text="Timed out waiting for a frame")
    except (ClientError, EncoderError) as err:
        return web.Response(status=502, text=f"Upstream error: {err}")
    return web.Response(body=frame, content_type="image/jpeg", headers=NO_CACHE_HEADERS)
