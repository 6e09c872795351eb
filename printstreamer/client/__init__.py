"""Clients for the services printstreamer consumes."""

from .moonraker import MoonrakerClient, PrinterDataProvider
from .youtube import LiveStreamInfo, YouTubeLiveApi

__all__ = [
    "LiveStreamInfo",
    "MoonrakerClient",
    "PrinterDataProvider",
    "YouTubeLiveApi",
]
