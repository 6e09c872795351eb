"""Live stream manager: ties the broadcast controller to the broadcast stage."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import Any, Protocol

from printstreamer.errors import BroadcastError, ConfigError, EncoderError, UpstreamUnavailable
from printstreamer.models import BroadcastSession, Privacy

from .broadcast_controller import BroadcastController
from .stage import EncoderStage

logger = logging.getLogger(__name__)

StageFactory = Callable[[str], EncoderStage]
"""Builds the broadcast stage for an ingest URL."""


class Broadcaster(Protocol):
    """What the print lifecycle needs from the live stream."""

    @property
    def broadcast_active(self) -> bool:
        """Whether a broadcast is being published."""

    async def start_broadcast(self) -> BroadcastSession | None:
        """Start publishing to a live broadcast."""

    async def end_broadcast(self) -> bool:
        """Stop publishing and end the broadcast."""

    async def start_local_stream(self) -> None:
        """Keep the local mix stream available without publishing."""


class LiveStreamManager:
    """Publishes the mix stage to the live broadcast managed by the controller."""

    def __init__(
        self,
        controller: BroadcastController | None,
        stage_factory: StageFactory,
    ) -> None:
        """
        Initialize the manager.

        Args:
            controller: Broadcast controller, None when no live API is configured.
            stage_factory: Builds the broadcast stage for an ingest URL.
        """
        self._controller = controller
        self._stage_factory = stage_factory
        self._lock = asyncio.Lock()
        self._stage: EncoderStage | None = None
        self._local = False
        self._tasks: set[asyncio.Task[None]] = set()
        self._last_error: str | None = None

    @property
    def controller(self) -> BroadcastController | None:
        """The broadcast controller."""
        return self._controller

    @property
    def broadcast_active(self) -> bool:
        """Whether the broadcast stage is publishing."""
        return self._stage is not None

    @property
    def local_stream_active(self) -> bool:
        """Whether a local-only stream was requested."""
        return self._local

    def status(self) -> dict[str, Any]:
        """Summary for the live status endpoint."""
        session = self._controller.session if self._controller else None
        return {
            "broadcast_active": self.broadcast_active,
            "local_stream": self._local,
            "broadcast_id": session.broadcast_id if session else None,
            "lifecycle": session.lifecycle_state.value if session else None,
            "privacy": session.privacy.value if session else None,
            "went_live_at": session.went_live_at.isoformat() if session and session.went_live_at else None,
            "last_error": self._last_error,
        }

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def start_broadcast(
        self,
        title: str | None = None,
        description: str | None = None,
        privacy: Privacy | None = None,
    ) -> BroadcastSession | None:
        """
        Start publishing and schedule the transition to live.

        Raises:
            ConfigError: If no live API is configured or the mix stage is disabled.
            BroadcastError: If the broadcast could not be created.
            UpstreamUnavailable: If the mix stage did not answer.
            EncoderError: If the broadcast encoder could not be started.
        """
        if self._controller is None:
            raise ConfigError("No live streaming API configured")
        async with self._lock:
            if self._stage is not None:
                return self._controller.session
            try:
                session = await self._controller.start_broadcast(title, description, privacy)
                stage = self._stage_factory(session.ingest_url)
                try:
                    await stage.start()
                except (UpstreamUnavailable, EncoderError):
                    await stage.stop()
                    await self._controller.end_broadcast(session.broadcast_id)
                    raise
            except (BroadcastError, ConfigError, UpstreamUnavailable, EncoderError) as err:
                self._last_error = str(err)
                raise
            self._stage = stage
            self._local = False
            self._last_error = None
        self._spawn(self._go_live(session.broadcast_id))
        self._spawn(self._watch(stage))
        return session

    async def _go_live(self, broadcast_id: str) -> None:
        assert self._controller is not None
        try:
            await self._controller.transition_to_live(broadcast_id)
        except BroadcastError as err:
            self._last_error = str(err)
            logger.warning("Broadcast %s did not go live: %s", broadcast_id, err)

    async def _watch(self, stage: EncoderStage) -> None:
        code = await stage.wait_exit()
        if stage is not self._stage or (stage.handle is not None and stage.handle.stop_requested):
            return
        self._last_error = f"broadcast encoder exited with {code}"
        logger.warning("Broadcast encoder exited unexpectedly with %s", code)
        await self.end_broadcast()

    async def end_broadcast(self) -> bool:
        """
        Stop publishing and end the broadcast. Safe to call repeatedly.

        Returns:
            True if a running broadcast was stopped.
        """
        async with self._lock:
            stage, self._stage = self._stage, None
            for task in list(self._tasks):
                if task is not asyncio.current_task():
                    task.cancel()
            if stage is not None:
                await stage.stop()
            if self._controller is not None:
                try:
                    await self._controller.end_broadcast()
                except BroadcastError as err:
                    self._last_error = str(err)
                    logger.warning("Ending broadcast failed: %s", err)
        if stage is not None:
            logger.info("Broadcast stopped")
        return stage is not None

    async def start_local_stream(self) -> None:
        """Keep the mix stream available locally without publishing."""
        if not self._local:
            logger.info("Local stream active, live broadcast disabled")
        self._local = True

    async def stop_local_stream(self) -> None:
        """Forget the local stream request."""
        self._local = False

    async def close(self) -> None:
        """Stop publishing and wait for background tasks."""
        await self.end_broadcast()
        self._local = False
        for task in list(self._tasks):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
