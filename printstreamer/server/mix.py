"""Mix stage: overlay video plus audio encoded as fragmented MP4."""

from __future__ import annotations

from .overlay import BASE_ARGS, MJPEG_INPUT_ARGS
from .stage import EncoderStage

MIX_CONTENT_TYPE = "video/mp4"
HTTP_INPUT_ARGS = [
    "-reconnect", "1",
    "-reconnect_streamed", "1",
    "-reconnect_delay_max", "2",
]  # fmt: skip


class MixStage(EncoderStage):
    """Per-subscriber H.264 + AAC encoder writing fragmented MP4."""

    name = "mix"
    stop_grace = 5.0

    def __init__(
        self,
        overlay_url: str,
        audio_url: str | None,
        *,
        ffmpeg_path: str = "ffmpeg",
    ) -> None:
        """
        Initialize the mix stage.

        Args:
            overlay_url: URL of the overlay stage.
            audio_url: URL of the audio stage, None to encode without audio.
            ffmpeg_path: Encoder binary.
        """
        super().__init__(ffmpeg_path)
        self._overlay_url = overlay_url
        self._audio_url = audio_url

    @property
    def has_audio(self) -> bool:
        """Whether an audio track is encoded."""
        return self._audio_url is not None

    def build_args(self) -> list[str]:
        """Return the encoder arguments."""
        args = [*BASE_ARGS, *MJPEG_INPUT_ARGS, "-i", self._overlay_url]
        if self._audio_url is not None:
            args += [*HTTP_INPUT_ARGS, "-f", "mp3", "-i", self._audio_url]
        args += ["-map", "0:v:0"]
        if self._audio_url is not None:
            args += ["-map", "1:a:0"]
        args += [
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-tune", "zerolatency",
            "-profile:v", "high",
            "-pix_fmt", "yuv420p",
            "-b:v", "2500k",
            "-maxrate", "3000k",
            "-bufsize", "6000k",
            "-g", "60",
        ]  # fmt: skip
        if self._audio_url is not None:
            args += ["-c:a", "aac", "-b:a", "128k", "-ar", "44100"]
        else:
            args += ["-an"]
        args += ["-f", "mp4", "-movflags", "+frag_keyframe+empty_moov", "pipe:1"]
        return args


class FrameGrabStage(EncoderStage):
    """Short-lived encoder that decodes a stage output and emits a single JPEG."""

    name = "grab"
    stop_grace = 0.5

    def __init__(self, input_url: str, *, input_format: str, ffmpeg_path: str = "ffmpeg") -> None:
        """Initialize a grabber reading input_url demuxed as input_format."""
        super().__init__(ffmpeg_path)
        self._input_url = input_url
        self._input_format = input_format

    def build_args(self) -> list[str]:
        """Return the encoder arguments."""
        return [
            *BASE_ARGS,
            "-f", self._input_format,
            "-i", self._input_url,
            "-an",
            "-frames:v", "1",
            "-c:v", "mjpeg",
            "-q:v", "3",
            "-f", "image2pipe",
            "pipe:1",
        ]  # fmt: skip
