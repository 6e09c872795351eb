"""Pipeline stages, print lifecycle and the HTTP server."""

from .broadcast_controller import BroadcastController, ReuseStore
from .lifecycle import PrintLifecycleOrchestrator
from .live import LiveStreamManager
from .poller import PrinterPoller, PrintStateChanged
from .server import PrintStreamerServer
from .source import SourceStage
from .telemetry import TelemetryFormatter
from .timelapse import TimelapseManager

__all__ = [
    "BroadcastController",
    "LiveStreamManager",
    "PrintLifecycleOrchestrator",
    "PrintStateChanged",
    "PrintStreamerServer",
    "PrinterPoller",
    "ReuseStore",
    "SourceStage",
    "TelemetryFormatter",
    "TimelapseManager",
]
