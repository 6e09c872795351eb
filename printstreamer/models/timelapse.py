"""Time-lapse metadata and listing models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

METADATA_FILENAME = "timelapse_metadata.json"


@dataclass
class TimelapseMetadata(DataClassORJSONMixin):
    """Contents of timelapse_metadata.json stored in every session directory."""

    session_name: str
    moonraker_filename: str | None = None
    """G-code file that owns this time-lapse."""
    started_at: datetime | None = None
    finalized_at: datetime | None = None
    video: str | None = None
    """File name of the assembled video, set once finalized."""
    moonraker_result: str | None = None
    """Final job state reported by the printer."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class TimelapseInfo(DataClassORJSONMixin):
    """Summary of a time-lapse directory for the listing API."""

    name: str
    path: str
    is_active: bool = False
    is_paused: bool = False
    frame_count: int = 0
    video_files: list[str] = field(default_factory=list)
    start_time: datetime | None = None
    last_frame_time: datetime | None = None
