"""Audio queue snapshot model."""

from __future__ import annotations

from dataclasses import dataclass, field

from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import RepeatMode


@dataclass
class AudioQueueState(DataClassORJSONMixin):
    """Point in time view of the audio queue."""

    library: list[str] = field(default_factory=list)
    """Track names found in the audio folder, sorted by name."""
    queue: list[str] = field(default_factory=list)
    """Explicitly queued track names, next first."""
    current: str | None = None
    shuffle: bool = False
    repeat: RepeatMode = RepeatMode.ALL
    end_after_current: bool = False
    playing: bool = False
