"""Overlay stage: draws the telemetry banner onto the camera stream."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from printstreamer.config import OverlayConfig

from .stage import EncoderStage

logger = logging.getLogger(__name__)

DEFAULT_FRAME_HEIGHT = 480
MAX_BANNER_FRACTION = 0.6
OVERLAY_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}
MJPEG_INPUT_ARGS = [
    "-reconnect", "1",
    "-reconnect_streamed", "1",
    "-reconnect_delay_max", "2",
    "-reconnect_on_network_error", "1",
    "-fflags", "+nobuffer+genpts+discardcorrupt",
    "-analyzeduration", "5M",
    "-probesize", "10M",
    "-max_delay", "5000000",
    "-f", "mjpeg",
    "-use_wallclock_as_timestamps", "1",
]  # fmt: skip
BASE_ARGS = ["-hide_banner", "-nostats", "-loglevel", "error"]


def escape_filter_value(value: str) -> str:
    """Escape a value placed inside a quoted filter argument."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def banner_height(config: OverlayConfig, frame_height: int) -> int:
    """Height of the banner in pixels for a frame of the given height."""
    if config.box_height:
        return config.box_height
    fraction = min(MAX_BANNER_FRACTION, max(0.0, config.banner_fraction))
    return math.ceil(fraction * frame_height)


@dataclass(frozen=True)
class OverlayLayout:
    """Positions of the banner and its text."""

    banner_top: int
    banner_height: int
    text_x: int
    text_y: int

    @classmethod
    def calculate(cls, config: OverlayConfig, frame_height: int) -> OverlayLayout:
        """Anchor the banner at the top and the text inside it."""
        height = banner_height(config, frame_height)
        padding = max(0, config.box_border_w)
        top = 0
        return cls(
            banner_top=top,
            banner_height=height,
            text_x=padding // 2,
            text_y=top + padding // 2,
        )


def build_filter(config: OverlayConfig, text_file: str, layout: OverlayLayout) -> str:
    """Build the drawbox + drawtext filter chain."""
    drawbox = (
        f"drawbox=x=0:y={layout.banner_top}:w=iw:h={layout.banner_height}"
        f":color={escape_filter_value(config.box_color)}:t=fill"
    )
    drawtext = (
        f"drawtext=fontfile='{escape_filter_value(config.font_file)}'"
        f":textfile='{escape_filter_value(text_file)}'"
        ":reload=1:expansion=none"
        f":fontsize={config.font_size}"
        f":fontcolor={escape_filter_value(config.font_color)}"
        f":x={layout.text_x}:y={layout.text_y}"
    )
    return ",".join(("format=yuv420p", drawbox, drawtext))


class OverlayStage(EncoderStage):
    """Per-subscriber encoder that re-emits the source stream with the banner drawn on."""

    name = "overlay"
    stop_grace = 0.5

    def __init__(
        self,
        config: OverlayConfig,
        source_url: str,
        *,
        frame_height: int | None = None,
        ffmpeg_path: str = "ffmpeg",
    ) -> None:
        """
        Initialize the overlay stage.

        Args:
            config: Overlay settings.
            source_url: URL of the source stage.
            frame_height: Height of the source frames, used to size the banner.
            ffmpeg_path: Encoder binary.
        """
        super().__init__(ffmpeg_path)
        self._config = config
        self._source_url = source_url
        self._frame_height = frame_height or DEFAULT_FRAME_HEIGHT

    @property
    def layout(self) -> OverlayLayout:
        """Layout used for the current frame height."""
        return OverlayLayout.calculate(self._config, self._frame_height)

    def build_args(self) -> list[str]:
        """Return the encoder arguments."""
        args = [*BASE_ARGS, *MJPEG_INPUT_ARGS, "-i", self._source_url]
        if self._config.enabled:
            args += ["-vf", build_filter(self._config, self._config.text_file, self.layout)]
        args += [
            "-an",
            "-c:v", "mjpeg",
            "-huffman", "optimal",
            "-q:v", str(self._config.quality),
            "-f", "mpjpeg",
            "-boundary_tag", "frame",
            "pipe:1",
        ]  # fmt: skip
        return args
