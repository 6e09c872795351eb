"""Broadcast stage: publishes the mix stream to an RTMP ingest."""

from __future__ import annotations

import asyncio
import logging

from aiohttp import ClientError, ClientSession, ClientTimeout

from printstreamer.errors import UpstreamUnavailable

from .mix import HTTP_INPUT_ARGS
from .overlay import BASE_ARGS
from .stage import EncoderStage

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0
CONNECT_ATTEMPTS = 3
CONNECT_BACKOFF = 0.5


class BroadcastStage(EncoderStage):
    """Remuxes the mix stream to FLV and pushes it to the ingest URL."""

    name = "broadcast"
    stop_grace = 15.0
    capture_stdout = False

    def __init__(
        self,
        mix_url: str,
        ingest_url: str,
        session: ClientSession,
        *,
        ffmpeg_path: str = "ffmpeg",
    ) -> None:
        """
        Initialize the broadcast stage.

        Args:
            mix_url: URL of the mix stage.
            ingest_url: RTMP URL including the stream key.
            session: Client session used to probe the mix stage.
            ffmpeg_path: Encoder binary.
        """
        super().__init__(ffmpeg_path)
        self._mix_url = mix_url
        self._ingest_url = ingest_url
        self._session = session

    def build_args(self) -> list[str]:
        """Return the encoder arguments."""
        return [
            *BASE_ARGS,
            *HTTP_INPUT_ARGS,
            "-rw_timeout", str(int(CONNECT_TIMEOUT * 1_000_000)),
            "-f", "mp4",
            "-i", self._mix_url,
            "-c", "copy",
            "-flvflags", "no_duration_filesize",
            "-f", "flv",
            self._ingest_url,
        ]  # fmt: skip

    async def wait_for_upstream(self) -> None:
        """
        Check that the mix stage answers before the encoder is started.

        Raises:
            UpstreamUnavailable: If the mix stage did not answer after all attempts.
        """
        last_error: Exception | None = None
        for attempt in range(1, CONNECT_ATTEMPTS + 1):
            try:
                async with self._session.get(
                    self._mix_url, timeout=ClientTimeout(total=None, sock_connect=CONNECT_TIMEOUT)
                ) as resp:
                    async with asyncio.timeout(CONNECT_TIMEOUT):
                        resp.raise_for_status()
                        await resp.content.readany()
                return
            except (ClientError, TimeoutError) as err:
                last_error = err
                logger.warning(
                    "Mix stream not reachable (attempt %d/%d): %s", attempt, CONNECT_ATTEMPTS, err
                )
            if attempt < CONNECT_ATTEMPTS:
                await asyncio.sleep(CONNECT_BACKOFF)
        raise UpstreamUnavailable(f"Mix stream unavailable: {last_error}")

    async def start(self) -> None:
        """Probe the mix stage, then start publishing."""
        await self.wait_for_upstream()
        await super().start()
        logger.info("Publishing %s to ingest", self._mix_url)
