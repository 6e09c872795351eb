"""Interface of the YouTube Live API consumed by the broadcast controller."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from printstreamer.models import Privacy

HEALTHY_STREAM_STATUSES = frozenset({"good", "ok"})
REUSABLE_BROADCAST_STATUSES = frozenset({"created", "ready", "testStarting", "testing"})


@dataclass(frozen=True)
class LiveStreamInfo:
    """An ingest stream created for a broadcast."""

    stream_id: str
    rtmp_url: str
    stream_key: str


class YouTubeLiveApi(Protocol):
    """
    Calls made against the live streaming API.

    Implementations raise AuthError when credentials are rejected, QuotaError when
    the quota is exhausted and ApiError for every other failure.
    """

    async def create_broadcast(self, title: str, description: str, privacy: Privacy) -> str:
        """Create a broadcast and return its id."""

    async def create_stream(self, title: str) -> LiveStreamInfo:
        """Create an RTMP ingest stream."""

    async def bind(self, broadcast_id: str, stream_id: str) -> None:
        """Bind a stream to a broadcast."""

    async def get_stream_health(self, stream_id: str) -> str | None:
        """Return the ingestion health status (good, ok, bad, noData)."""

    async def get_broadcast_status(self, broadcast_id: str) -> str | None:
        """Return the broadcast life cycle status, None if it does not exist."""

    async def transition(self, broadcast_id: str, status: str) -> None:
        """Transition a broadcast to testing, live or complete."""
