"""Enum types used across printstreamer."""

from __future__ import annotations

from enum import Enum


class PrintState(Enum):
    """Printer job state as seen by the poller."""

    IDLE = "idle"
    PRINTING = "printing"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"
    UNKNOWN = "unknown"
    """The printer could not be queried, or reported a state we do not know."""

    @classmethod
    def from_moonraker(cls, value: str | None) -> PrintState:
        """Map a Moonraker print_stats.state string to a PrintState."""
        if not value:
            return cls.UNKNOWN
        value = value.strip().lower()
        if value in ("printing", "resuming"):
            return cls.PRINTING
        if value in ("standby", "cancelled", "canceled", "stopped", "idle", "ready"):
            return cls.IDLE
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_active(self) -> bool:
        """Whether a print job is running or paused."""
        return self in (PrintState.PRINTING, PrintState.PAUSED)


class TimelapseState(Enum):
    """State of a time-lapse session."""

    ACTIVE = "active"
    PAUSED = "paused"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"


class BroadcastLifecycle(Enum):
    """Lifecycle of a live broadcast, in the order it is traversed."""

    CREATED = "created"
    BOUND = "bound"
    TESTING = "testing"
    LIVE = "live"
    COMPLETE = "complete"
    REVOKED = "revoked"

    @property
    def rank(self) -> int:
        """Position in the lifecycle, terminal states share the highest rank."""
        return _LIFECYCLE_RANK[self]


_LIFECYCLE_RANK = {
    BroadcastLifecycle.CREATED: 0,
    BroadcastLifecycle.BOUND: 1,
    BroadcastLifecycle.TESTING: 2,
    BroadcastLifecycle.LIVE: 3,
    BroadcastLifecycle.COMPLETE: 4,
    BroadcastLifecycle.REVOKED: 4,
}


class Privacy(Enum):
    """Broadcast privacy status."""

    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE = "private"


class RepeatMode(Enum):
    """Audio queue repeat behaviour."""

    NONE = "none"
    ONE = "one"
    ALL = "all"
