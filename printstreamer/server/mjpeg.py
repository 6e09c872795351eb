"""MJPEG helpers: frame extraction, multipart framing and the black fallback frame."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable
from functools import lru_cache
from io import BytesIO
from pathlib import Path

from PIL import Image

logger = logging.getLogger(__name__)

SOI = b"\xff\xd8"
EOI = b"\xff\xd9"
BOUNDARY = "frame"
MULTIPART_CONTENT_TYPE = f"multipart/x-mixed-replace; boundary={BOUNDARY}"
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
}
FALLBACK_FILENAME = "fallback_black.jpg"
FALLBACK_SIZE = (640, 480)
MAX_FRAME_BYTES = 16 * 1024 * 1024


class JpegExtractor:
    """Incrementally cut complete JPEG images out of an MJPEG byte stream."""

    def __init__(self, max_frame_bytes: int = MAX_FRAME_BYTES) -> None:
        """Initialize an empty extractor."""
        self._buf = bytearray()
        self._max = max_frame_bytes

    def feed(self, data: bytes) -> list[bytes]:
        """Add stream bytes and return every image completed by them."""
        self._buf.extend(data)
        frames: list[bytes] = []
        while True:
            start = self._buf.find(SOI)
            if start < 0:
                # Keep a trailing 0xFF, it may be the first half of a marker
                del self._buf[: max(0, len(self._buf) - 1)]
                break
            end = self._buf.find(EOI, start + 2)
            if end < 0:
                if start:
                    del self._buf[:start]
                if len(self._buf) > self._max:
                    logger.debug("Dropping oversized partial frame (%d bytes)", len(self._buf))
                    self._buf.clear()
                break
            frames.append(bytes(self._buf[start : end + 2]))
            del self._buf[: end + 2]
        return frames


async def read_single_jpeg(chunks: AsyncIterable[bytes]) -> bytes | None:
    """Return the first complete JPEG from a chunked MJPEG stream, None at end of stream."""
    extractor = JpegExtractor()
    async for chunk in chunks:
        frames = extractor.feed(chunk)
        if frames:
            return frames[0]
    return None


def multipart_frame(jpeg: bytes) -> bytes:
    """Wrap one JPEG as a part of a multipart/x-mixed-replace body."""
    header = (
        f"--{BOUNDARY}\r\nContent-Type: image/jpeg\r\nContent-Length: {len(jpeg)}\r\n\r\n"
    ).encode("ascii")
    return header + jpeg + b"\r\n"


def jpeg_size(jpeg: bytes) -> tuple[int, int] | None:
    """Return (width, height) of a JPEG image, None if it cannot be parsed."""
    try:
        with Image.open(BytesIO(jpeg)) as image:
            return image.size
    except (OSError, ValueError):
        return None


def generate_black_jpeg(size: tuple[int, int] = FALLBACK_SIZE) -> bytes:
    """Render a black JPEG image."""
    buf = BytesIO()
    Image.new("RGB", size, (0, 0, 0)).save(buf, format="JPEG", quality=85)
    return buf.getvalue()


@lru_cache(maxsize=4)
def load_fallback_jpeg(directory: str | None = None) -> bytes:
    """
    Return the black fallback frame.

    Uses fallback_black.jpg from directory (the working directory by default) when it
    exists, otherwise generates one.
    """
    path = Path(directory or ".") / FALLBACK_FILENAME
    try:
        data = path.read_bytes()
    except OSError:
        logger.debug("%s not found, generating fallback frame", path)
        return generate_black_jpeg()
    logger.info("Loaded fallback image %s (%d bytes)", path, len(data))
    return data
