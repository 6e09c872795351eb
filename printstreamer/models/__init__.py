"""Data models used by printstreamer."""

from .audio import AudioQueueState
from .broadcast import BroadcastSession, ReuseRecord, ReuseStoreFile
from .overlay import ObsOverlayData
from .printer import FileMetadata, PrinterState, Temperature
from .timelapse import METADATA_FILENAME, TimelapseInfo, TimelapseMetadata
from .types import BroadcastLifecycle, PrintState, Privacy, RepeatMode, TimelapseState

__all__ = [
    "METADATA_FILENAME",
    "AudioQueueState",
    "BroadcastLifecycle",
    "BroadcastSession",
    "FileMetadata",
    "ObsOverlayData",
    "PrintState",
    "PrinterState",
    "Privacy",
    "RepeatMode",
    "ReuseRecord",
    "ReuseStoreFile",
    "Temperature",
    "TimelapseInfo",
    "TimelapseMetadata",
    "TimelapseState",
]
