"""Broadcast controller: creates, reuses, starts and ends live broadcasts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from printstreamer.client.youtube import (
    HEALTHY_STREAM_STATUSES,
    REUSABLE_BROADCAST_STATUSES,
    YouTubeLiveApi,
)
from printstreamer.config import ReuseConfig, YouTubeConfig
from printstreamer.errors import ApiError, ConfigError, IngestionError
from printstreamer.models import (
    BroadcastLifecycle,
    BroadcastSession,
    Privacy,
    ReuseRecord,
    ReuseStoreFile,
)
from printstreamer.util import atomic_write_bytes

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT = 60.0
HEALTH_POLL_INTERVAL = 2.0


class ReuseStore:
    """Broadcasts that were created but never went live, one per privacy value."""

    def __init__(self, config: ReuseConfig) -> None:
        """Initialize the store and load it from disk."""
        self._config = config
        self._records: dict[Privacy, ReuseRecord] = {}
        self.load()

    @property
    def path(self) -> Path:
        """Location of the store file."""
        return Path(self._config.store_file)

    @property
    def records(self) -> list[ReuseRecord]:
        """All stored records."""
        return list(self._records.values())

    def load(self) -> None:
        """Read the store file, an unreadable file yields an empty store."""
        self._records = {}
        try:
            stored = ReuseStoreFile.from_json(self.path.read_bytes())
        except FileNotFoundError:
            return
        except (OSError, ValueError, LookupError) as err:
            logger.warning("Ignoring unreadable reuse store %s: %s", self.path, err)
            return
        for record in stored.records:
            self._records[record.privacy] = record

    def save(self) -> None:
        """Atomically write the store file."""
        atomic_write_bytes(self.path, ReuseStoreFile(records=self.records).to_jsonb())

    def allows(self, privacy: Privacy) -> bool:
        """Whether broadcasts with this privacy may be reused."""
        if not self._config.enabled:
            return False
        return not (self._config.only_unlisted_or_private_for_reuse and privacy == Privacy.PUBLIC)

    def find(self, privacy: Privacy, now: datetime | None = None) -> ReuseRecord | None:
        """Return the record for privacy if it is still within the TTL."""
        if not self.allows(privacy):
            return None
        record = self._records.get(privacy)
        if record is None:
            return None
        now = now or datetime.now(UTC)
        if now - record.created_at > timedelta(minutes=self._config.ttl_minutes):
            logger.info("Reusable broadcast %s expired", record.broadcast_id)
            self.remove(record.broadcast_id)
            return None
        return record

    def put(self, record: ReuseRecord) -> None:
        """Store record, replacing any record with the same privacy."""
        if not self.allows(record.privacy):
            return
        self._records[record.privacy] = record
        self.save()

    def remove(self, broadcast_id: str) -> None:
        """Forget a broadcast."""
        for privacy, record in list(self._records.items()):
            if record.broadcast_id == broadcast_id:
                del self._records[privacy]
                self.save()


class BroadcastController:
    """Owns the lifecycle of the live broadcast on the streaming platform."""

    def __init__(
        self,
        api: YouTubeLiveApi,
        config: YouTubeConfig,
        *,
        mix_enabled: Callable[[], bool] = lambda: True,
        health_timeout: float = HEALTH_TIMEOUT,
        health_poll_interval: float = HEALTH_POLL_INTERVAL,
    ) -> None:
        """
        Initialize the controller.

        Args:
            api: Live streaming API client.
            config: Broadcast and reuse settings.
            mix_enabled: Returns whether the mix stage is enabled.
            health_timeout: Seconds to wait for a healthy ingest before going live.
            health_poll_interval: Seconds between two ingest health checks.
        """
        self._api = api
        self._config = config
        self._mix_enabled = mix_enabled
        self._health_timeout = health_timeout
        self._health_poll_interval = health_poll_interval
        self._store = ReuseStore(config.reuse)
        self._session: BroadcastSession | None = None
        self._ended: set[str] = set()

    @property
    def session(self) -> BroadcastSession | None:
        """The current or most recent broadcast."""
        return self._session

    @property
    def store(self) -> ReuseStore:
        """The reuse store."""
        return self._store

    @property
    def is_live(self) -> bool:
        """Whether the current broadcast is live."""
        return self._session is not None and self._session.lifecycle_state == BroadcastLifecycle.LIVE

    async def _try_reuse(self, record: ReuseRecord, title: str, description: str) -> BroadcastSession | None:
        try:
            status = await self._api.get_broadcast_status(record.broadcast_id)
            if status not in REUSABLE_BROADCAST_STATUSES:
                logger.info(
                    "Stored broadcast %s is %s, creating a new one", record.broadcast_id, status
                )
                self._store.remove(record.broadcast_id)
                return None
            await self._api.bind(record.broadcast_id, record.stream_id)
        except ApiError as err:
            logger.warning("Cannot reuse broadcast %s: %s", record.broadcast_id, err)
            self._store.remove(record.broadcast_id)
            return None
        session = BroadcastSession(
            broadcast_id=record.broadcast_id,
            stream_id=record.stream_id,
            rtmp_url=record.rtmp_url,
            stream_key=record.stream_key,
            privacy=record.privacy,
            title=record.title or title,
            description=description,
            created_at=record.created_at,
        )
        session.advance(BroadcastLifecycle.BOUND)
        if status in ("testStarting", "testing"):
            session.advance(BroadcastLifecycle.TESTING)
        logger.info("Reusing broadcast %s", session.broadcast_id)
        return session

    async def _enter_testing(self, session: BroadcastSession) -> None:
        if session.lifecycle_state.rank >= BroadcastLifecycle.TESTING.rank:
            return
        await self._api.transition(session.broadcast_id, "testing")
        session.advance(BroadcastLifecycle.TESTING)

    async def start_broadcast(
        self,
        title: str | None = None,
        description: str | None = None,
        privacy: Privacy | None = None,
    ) -> BroadcastSession:
        """
        Create or reuse a broadcast bound to an ingest stream.

        A stored broadcast with the same privacy that was created within the TTL and
        never went live is rebound instead of creating a new one.

        Raises:
            ConfigError: If the mix stage is disabled.
            AuthError, QuotaError, ApiError: If the API rejects a call.
        """
        if not self._mix_enabled():
            raise ConfigError("Mix stage is disabled, cannot start a broadcast")
        if self._session is not None and not self._session.is_terminal:
            return self._session

        live = self._config.live_broadcast
        title = title or live.title
        description = description if description is not None else live.description
        privacy = privacy or live.privacy

        session: BroadcastSession | None = None
        record = self._store.find(privacy)
        if record is not None:
            session = await self._try_reuse(record, title, description)
        if session is None:
            broadcast_id = await self._api.create_broadcast(title, description, privacy)
            stream = await self._api.create_stream(title)
            await self._api.bind(broadcast_id, stream.stream_id)
            session = BroadcastSession(
                broadcast_id=broadcast_id,
                stream_id=stream.stream_id,
                rtmp_url=stream.rtmp_url,
                stream_key=stream.stream_key,
                privacy=privacy,
                title=title,
                description=description,
            )
            session.advance(BroadcastLifecycle.BOUND)
            self._store.put(
                ReuseRecord(
                    broadcast_id=session.broadcast_id,
                    stream_id=session.stream_id,
                    rtmp_url=session.rtmp_url,
                    stream_key=session.stream_key,
                    privacy=session.privacy,
                    created_at=session.created_at,
                    title=session.title,
                )
            )
            logger.info("Created broadcast %s (%s)", broadcast_id, privacy.value)

        self._session = session
        self._ended.discard(session.broadcast_id)
        try:
            await self._enter_testing(session)
        except ApiError as err:
            # Testing needs ingest data on some channels, retried before going live.
            logger.debug("Broadcast %s not in testing yet: %s", session.broadcast_id, err)
        return session

    def _current(self, broadcast_id: str | None) -> BroadcastSession | None:
        session = self._session
        if session is None or (broadcast_id is not None and session.broadcast_id != broadcast_id):
            return None
        return session

    async def transition_to_live(self, broadcast_id: str | None = None) -> BroadcastSession:
        """
        Wait for a healthy ingest and make the broadcast public.

        Raises:
            IngestionError: If the ingest did not become healthy in time.
            ApiError: If there is no such broadcast or a transition failed.
        """
        session = self._current(broadcast_id)
        if session is None or session.is_terminal:
            raise ApiError(f"No active broadcast {broadcast_id or ''}".strip())
        if session.lifecycle_state == BroadcastLifecycle.LIVE:
            return session
        health: str | None = None
        try:
            async with asyncio.timeout(self._health_timeout):
                while True:
                    health = await self._api.get_stream_health(session.stream_id)
                    if health in HEALTHY_STREAM_STATUSES:
                        break
                    logger.debug("Ingest health of %s: %s", session.stream_id, health)
                    await asyncio.sleep(self._health_poll_interval)
        except TimeoutError as err:
            raise IngestionError(
                f"Ingest for broadcast {session.broadcast_id} not healthy (last status {health})"
            ) from err
        await self._enter_testing(session)
        await self._api.transition(session.broadcast_id, "live")
        session.advance(BroadcastLifecycle.LIVE)
        self._store.remove(session.broadcast_id)
        logger.info("Broadcast %s is live", session.broadcast_id)
        return session

    async def end_broadcast(self, broadcast_id: str | None = None) -> None:
        """
        End the broadcast. Ending an already ended broadcast does nothing.

        A broadcast that never went live is kept in the reuse store.
        """
        session = self._current(broadcast_id)
        target = broadcast_id or (session.broadcast_id if session else None)
        if target is None or target in self._ended:
            return
        if session is None or session.is_terminal:
            self._ended.add(target)
            return
        if session.lifecycle_state == BroadcastLifecycle.LIVE:
            try:
                await self._api.transition(session.broadcast_id, "complete")
            except ApiError:
                status = await self._api.get_broadcast_status(session.broadcast_id)
                if status not in ("complete", "revoked"):
                    raise
            self._store.remove(session.broadcast_id)
            logger.info("Broadcast %s ended", session.broadcast_id)
        else:
            logger.info("Broadcast %s never went live, kept for reuse", session.broadcast_id)
        session.advance(BroadcastLifecycle.COMPLETE)
        self._ended.add(session.broadcast_id)
