"""
Configuration for printstreamer.

Settings are addressed with colon separated keys such as ``Stream:Mix:Enabled``.
They are read from a JSON file and may be overridden from the environment using
``__`` as separator (``Stream__Mix__Enabled=false``). Key segments are matched
case-insensitively and without regard to underscores, so ``BannerFraction`` maps to
the ``banner_fraction`` attribute.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

import orjson
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .errors import ConfigError
from .models.types import Privacy

logger = logging.getLogger(__name__)

ENV_SEPARATOR = "__"
DEFAULT_FONT_FILE = "/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf"


def _norm(key: str) -> str:
    return key.replace("_", "").lower()


@dataclass
class _Section(DataClassORJSONMixin):
    """Base for config sections, accepts PascalCase keys from config files."""

    @classmethod
    def __pre_deserialize__(cls, d: dict[str, Any]) -> dict[str, Any]:
        names = {_norm(f.name): f.name for f in fields(cls)}
        return {names.get(_norm(str(k)), k): v for k, v in d.items()}


@dataclass
class MixConfig(_Section):
    """Settings for the mix stage."""

    enabled: bool = True
    """When False, /stream/mix answers 503 and no broadcast may start."""


@dataclass
class StreamConfig(_Section):
    """Settings for the camera source and the stream pipeline."""

    source: str = ""
    """URL of the raw MJPEG camera stream."""
    mix: MixConfig = field(default_factory=MixConfig)
    end_after_song: bool = False
    """End the live broadcast when the current audio track finishes."""


@dataclass
class AudioConfig(_Section):
    """Settings for the audio stage."""

    enabled: bool = True
    folder: str = "audio"
    """Directory scanned for audio tracks."""


@dataclass
class OverlayConfig(_Section):
    """Settings for the overlay stage and the telemetry formatter."""

    enabled: bool = True
    font_file: str = DEFAULT_FONT_FILE
    font_size: int = 16
    font_color: str = "white"
    box_color: str = "black@0.4"
    box_border_w: int = 8
    banner_fraction: float = 0.2
    """Banner height as a fraction of the frame height, clamped to 0..0.6."""
    box_height: int | None = None
    """Explicit banner height in pixels, overrides banner_fraction."""
    refresh_ms: int = 1000
    """Telemetry refresh period, at least 200 ms."""
    text_file: str = "overlay_text.txt"
    quality: int = 5
    """MJPEG q:v value, clamped to 2..10."""

    def __post_init__(self) -> None:
        """Clamp values into their supported ranges."""
        self.banner_fraction = min(0.6, max(0.0, float(self.banner_fraction)))
        self.refresh_ms = max(200, int(self.refresh_ms))
        self.quality = min(10, max(2, int(self.quality)))
        if self.box_height is not None and self.box_height <= 0:
            self.box_height = None


@dataclass
class MoonrakerConfig(_Section):
    """Settings for the Moonraker printer API."""

    base_url: str = ""
    api_key: str | None = None
    auth_header: str = "X-Api-Key"
    verbose_logs: bool = False
    poll_interval_seconds: float = 10.0
    fast_poll_interval_seconds: float = 2.0


@dataclass
class LiveBroadcastConfig(_Section):
    """Settings for automatic live broadcasts."""

    enabled: bool = True
    end_stream_after_print: bool = True
    title: str = "3D print live"
    description: str = ""
    privacy: Privacy = Privacy.UNLISTED


@dataclass
class ReuseConfig(_Section):
    """Settings for reusing idle broadcasts."""

    enabled: bool = True
    ttl_minutes: int = 24 * 60
    only_unlisted_or_private_for_reuse: bool = True
    store_file: str = "youtube_broadcasts.json"


@dataclass
class YouTubeConfig(_Section):
    """Settings for YouTube Live."""

    live_broadcast: LiveBroadcastConfig = field(default_factory=LiveBroadcastConfig)
    reuse: ReuseConfig = field(default_factory=ReuseConfig)


@dataclass
class TimelapseConfig(_Section):
    """Settings for time-lapse recording."""

    main_folder: str = "timelapse"
    resume_within_seconds: float = 300.0
    auto_finalize: bool = True
    last_layer_offset: int = 1
    last_layer_remaining_seconds: float = 30.0
    last_layer_progress_percent: float = 98.5
    period: float = 60.0
    """Seconds between two captured frames."""
    start_after_layer1: bool = True

    def __post_init__(self) -> None:
        """Clamp values into their supported ranges."""
        self.last_layer_offset = max(0, int(self.last_layer_offset))
        self.period = max(1.0, float(self.period))


@dataclass
class LifecycleConfig(_Section):
    """Grace periods of the print lifecycle orchestrator."""

    idle_finalize_delay_seconds: float = 20.0
    offline_grace_seconds: float = 600.0


@dataclass
class ServerConfig(_Section):
    """Settings for the HTTP server."""

    host: str = "0.0.0.0"
    port: int = 8080
    public_base_url: str | None = None
    """Base URL stages use to reach each other, defaults to the loopback address."""


@dataclass
class FfmpegConfig(_Section):
    """Settings for the encoder binary."""

    path: str = "ffmpeg"


@dataclass
class PrintStreamerConfig(_Section):
    """Root configuration object."""

    stream: StreamConfig = field(default_factory=StreamConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    overlay: OverlayConfig = field(default_factory=OverlayConfig)
    moonraker: MoonrakerConfig = field(default_factory=MoonrakerConfig)
    youtube: YouTubeConfig = field(default_factory=YouTubeConfig)
    timelapse: TimelapseConfig = field(default_factory=TimelapseConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    ffmpeg: FfmpegConfig = field(default_factory=FfmpegConfig)

    @property
    def base_url(self) -> str:
        """URL under which this process serves its own stages."""
        if self.server.public_base_url:
            return self.server.public_base_url.rstrip("/")
        return f"http://127.0.0.1:{self.server.port}"

    def validate(self) -> None:
        """
        Check mandatory settings.

        Raises:
            ConfigError: If the camera source or Moonraker URL is missing.
        """
        if not self.stream.source:
            raise ConfigError("Stream:Source is not configured")
        if not self.moonraker.base_url:
            raise ConfigError("Moonraker:BaseUrl is not configured")

    def get(self, key: str) -> Any:
        """Return the value stored under a colon separated key."""
        owner, name = self._resolve(key)
        return getattr(owner, name)

    def set(self, key: str, value: Any) -> None:
        """Replace the value stored under a colon separated key."""
        owner, name = self._resolve(key)
        if is_dataclass(getattr(owner, name)):
            raise ConfigError(f"{key} is a section, not a value")
        setattr(owner, name, value)
        logger.debug("Config %s set to %r", key, value)

    def _resolve(self, key: str) -> tuple[Any, str]:
        parts = [p for p in key.split(":") if p]
        if not parts:
            raise ConfigError("Empty configuration key")
        owner: Any = self
        for index, part in enumerate(parts):
            attr = _match_field(owner, part)
            if attr is None:
                raise ConfigError(f"Unknown configuration key: {key}")
            if index == len(parts) - 1:
                return owner, attr
            owner = getattr(owner, attr)
            if not is_dataclass(owner):
                raise ConfigError(f"Unknown configuration key: {key}")
        raise ConfigError(f"Unknown configuration key: {key}")


def _match_field(obj: Any, segment: str) -> str | None:
    wanted = _norm(segment)
    for f in fields(obj):
        if _norm(f.name) == wanted:
            return f.name
    return None


def _parse_env_value(raw: str) -> Any:
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        return raw


def _merge(target: dict[str, Any], source: Mapping[str, Any]) -> None:
    """Merge source into target, matching keys the same way config lookups do."""
    for key, value in source.items():
        existing = next((k for k in target if _norm(k) == _norm(key)), key)
        if isinstance(value, Mapping) and isinstance(target.get(existing), dict):
            _merge(target[existing], value)
        elif isinstance(value, Mapping):
            target[existing] = {}
            _merge(target[existing], value)
        else:
            target[existing] = value


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    sections = {_norm(f.name) for f in fields(PrintStreamerConfig)}
    overrides: dict[str, Any] = {}
    for name, raw in environ.items():
        parts = name.split(ENV_SEPARATOR)
        if len(parts) < 2 or _norm(parts[0]) not in sections:
            continue
        node = overrides
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = _parse_env_value(raw)
    return overrides


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
    *,
    validate: bool = True,
) -> PrintStreamerConfig:
    """
    Load configuration from a JSON file and the environment.

    Args:
        path: Optional JSON file. A missing file is an error when given explicitly.
        environ: Environment mapping, defaults to os.environ.
        validate: Raise ConfigError when mandatory settings are missing.

    Raises:
        ConfigError: If the file cannot be parsed or mandatory settings are missing.
    """
    data: dict[str, Any] = {}
    if path is not None:
        try:
            loaded = orjson.loads(Path(path).read_bytes())
        except (OSError, orjson.JSONDecodeError) as err:
            raise ConfigError(f"Cannot read configuration file {path}: {err}") from err
        if not isinstance(loaded, dict):
            raise ConfigError(f"Configuration file {path} must contain a JSON object")
        _merge(data, loaded)
    _merge(data, _env_overrides(os.environ if environ is None else environ))
    try:
        config = PrintStreamerConfig.from_dict(data)
    except (ValueError, TypeError) as err:
        raise ConfigError(f"Invalid configuration: {err}") from err
    if validate:
        config.validate()
    return config
