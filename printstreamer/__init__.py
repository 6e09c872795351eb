"""Stream a 3D printer webcam with live telemetry and record time-lapses."""

from .config import PrintStreamerConfig, load_config
from .errors import (
    ApiError,
    AuthError,
    BroadcastError,
    ConfigError,
    Conflict,
    EncoderError,
    IngestionError,
    NoFramesError,
    PrintStreamerError,
    QuotaError,
    SpawnError,
    UpstreamUnavailable,
)

__all__ = [
    "ApiError",
    "AuthError",
    "BroadcastError",
    "ConfigError",
    "Conflict",
    "EncoderError",
    "IngestionError",
    "NoFramesError",
    "PrintStreamerConfig",
    "PrintStreamerError",
    "QuotaError",
    "SpawnError",
    "UpstreamUnavailable",
    "load_config",
]
