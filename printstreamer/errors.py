"""Error taxonomy shared by all printstreamer components."""

from __future__ import annotations


class PrintStreamerError(Exception):
    """Base class for all printstreamer errors."""


class ConfigError(PrintStreamerError):
    """Mandatory configuration is missing or invalid. Fatal at startup."""


class UpstreamUnavailable(PrintStreamerError):
    """The camera source or Moonraker could not be reached."""


class EncoderError(PrintStreamerError):
    """An encoder subprocess failed to start or exited with an error."""


class SpawnError(EncoderError):
    """The encoder binary could not be located or executed."""


class BroadcastError(PrintStreamerError):
    """Base class for errors raised by the broadcast controller."""


class AuthError(BroadcastError):
    """Credentials were rejected by the live streaming API."""


class QuotaError(BroadcastError):
    """The live streaming API quota is exhausted."""


class IngestionError(BroadcastError):
    """The ingest endpoint never reported a healthy stream."""


class ApiError(BroadcastError):
    """Any other live streaming API failure."""


class NoFramesError(PrintStreamerError):
    """A time-lapse was finalized without any captured frames."""


class Conflict(PrintStreamerError):
    """The requested change conflicts with an active session."""
