"""Live broadcast session models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import BroadcastLifecycle, Privacy


@dataclass
class BroadcastSession(DataClassORJSONMixin):
    """A live broadcast bound to an ingest stream."""

    broadcast_id: str
    stream_id: str
    rtmp_url: str
    stream_key: str
    privacy: Privacy
    title: str = ""
    description: str = ""
    lifecycle_state: BroadcastLifecycle = BroadcastLifecycle.CREATED
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    went_live_at: datetime | None = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True

    @property
    def ingest_url(self) -> str:
        """Full RTMP URL including the stream key."""
        return f"{self.rtmp_url.rstrip('/')}/{self.stream_key}"

    @property
    def is_terminal(self) -> bool:
        """Whether the broadcast has ended."""
        return self.lifecycle_state in (BroadcastLifecycle.COMPLETE, BroadcastLifecycle.REVOKED)

    def advance(self, state: BroadcastLifecycle) -> bool:
        """
        Move the lifecycle forward.

        Returns False, leaving the session unchanged, when state would move backwards
        or when the session already ended.
        """
        if self.is_terminal or state.rank < self.lifecycle_state.rank:
            return False
        self.lifecycle_state = state
        if state == BroadcastLifecycle.LIVE and self.went_live_at is None:
            self.went_live_at = datetime.now(UTC)
        return True


@dataclass
class ReuseRecord(DataClassORJSONMixin):
    """Persisted reference to a broadcast that may be rebound after a restart."""

    broadcast_id: str
    stream_id: str
    rtmp_url: str
    stream_key: str
    privacy: Privacy
    created_at: datetime
    title: str = ""


@dataclass
class ReuseStoreFile(DataClassORJSONMixin):
    """On-disk layout of the reuse store."""

    records: list[ReuseRecord] = field(default_factory=list)
