"""Print lifecycle orchestrator: reacts to printer state changes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from contextlib import suppress
from pathlib import Path
from typing import Any

from printstreamer.config import PrintStreamerConfig
from printstreamer.errors import BroadcastError, ConfigError, EncoderError, UpstreamUnavailable
from printstreamer.models import PrinterState, PrintState

from .live import Broadcaster
from .poller import PrintStateChanged
from .timelapse import TimelapseManager, is_last_layer

logger = logging.getLogger(__name__)


class PrintLifecycleOrchestrator:
    """
    Drives time-lapses and broadcasts from printer state changes.

    Events are queued by the poller listener and handled one at a time on a worker
    task. Slow work (finalizing, starting or ending broadcasts) runs in background
    tasks. The lock only guards the lifecycle variables and is never held across
    other awaits.
    """

    def __init__(
        self,
        config: PrintStreamerConfig,
        timelapse: TimelapseManager,
        broadcaster: Broadcaster,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: Application configuration, read on every decision.
            timelapse: Time-lapse manager.
            broadcaster: Live stream control.
        """
        self._config = config
        self._timelapse = timelapse
        self._broadcaster = broadcaster
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[PrintStateChanged] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self._job_key: str | None = None
        self._session_name: str | None = None
        self._last_layer_triggered = False
        self._finalized_for_job: str | None = None
        self._idle_task: asyncio.Task[None] | None = None
        self._offline_task: asyncio.Task[None] | None = None
        self._mix_disabled = False

    @property
    def job_key(self) -> str | None:
        """The job currently tracked."""
        return self._job_key

    @property
    def session_name(self) -> str | None:
        """The open time-lapse session."""
        return self._session_name

    @property
    def last_layer_triggered(self) -> bool:
        """Whether the last layer of the current job was reached."""
        return self._last_layer_triggered

    @property
    def idle_pending(self) -> bool:
        """Whether the idle grace timer is running."""
        return self._idle_task is not None

    @property
    def offline_pending(self) -> bool:
        """Whether the offline grace timer is running."""
        return self._offline_task is not None

    def status(self) -> dict[str, Any]:
        """Summary for the status endpoints."""
        return {
            "job": self._job_key,
            "timelapse": self._session_name,
            "last_layer_triggered": self._last_layer_triggered,
            "idle_pending": self.idle_pending,
            "offline_pending": self.offline_pending,
            "mix_disabled": self._mix_disabled,
        }

    def on_state_changed(self, event: PrintStateChanged) -> None:
        """Poller listener, queues the event for the worker."""
        self._queue.put_nowait(event)

    async def start(self) -> None:
        """Start handling events."""
        if self._worker is None:
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Stop the worker, timers and background work."""
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            with suppress(asyncio.CancelledError):
                await worker
        self._cancel_idle()
        self._cancel_offline()
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception("Error handling printer state %s", event.current.state.value)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until all queued events were handled."""
        await self._queue.join()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and (err := task.exception()) is not None:
            logger.error("Background task failed", exc_info=err)

    async def wait_background(self) -> None:
        """Wait for background work scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _timer(self, delay: float, callback: Callable[[], Awaitable[None]]) -> asyncio.Task[None]:
        async def _fire() -> None:
            await asyncio.sleep(delay)
            await callback()

        return asyncio.get_running_loop().create_task(_fire())

    def _cancel_idle(self) -> None:
        task, self._idle_task = self._idle_task, None
        if task is not None:
            task.cancel()

    def _cancel_offline(self) -> None:
        task, self._offline_task = self._offline_task, None
        if task is not None:
            task.cancel()

    async def handle_event(self, event: PrintStateChanged) -> None:
        """Apply one state change."""
        current = event.current
        if current.state == PrintState.UNKNOWN:
            async with self._lock:
                if self._job_key is not None and self._offline_task is None:
                    grace = self._config.lifecycle.offline_grace_seconds
                    logger.warning("Printer offline, holding %s for %ss", self._job_key, grace)
                    self._offline_task = self._timer(grace, self._offline_expired)
            return

        if self._offline_task is not None:
            logger.info("Printer back online")
            self._cancel_offline()

        if current.state == PrintState.PRINTING:
            await self._on_printing(current)
        elif current.state == PrintState.PAUSED:
            self._cancel_idle()
            if self._session_name is not None:
                await self._timelapse.notify_printer_state(self._session_name, PrintState.PAUSED)
        else:
            async with self._lock:
                if self._job_key is not None and self._idle_task is None:
                    delay = self._config.lifecycle.idle_finalize_delay_seconds
                    logger.info(
                        "Printer %s, finishing %s in %ss", current.state.value, self._job_key, delay
                    )
                    self._idle_task = self._timer(delay, self._idle_expired)

    async def _on_printing(self, current: PrinterState) -> None:
        self._cancel_idle()
        job = current.job_key
        async with self._lock:
            previous_job = self._job_key
            new_job = job != previous_job
            old_session = None
            if new_job:
                old_session, self._session_name = self._session_name, None
                self._last_layer_triggered = False
                if previous_job is not None:
                    self._finalized_for_job = None
                self._job_key = job
        if old_session is not None:
            logger.info("Job changed from %s to %s", previous_job, job)
            self._spawn(self._finalize(old_session))
        if new_job and job != self._finalized_for_job:
            name = await self._timelapse.start_timelapse(current.filename, current.filename)
            async with self._lock:
                self._session_name = name
            logger.info("Print started: %s (time-lapse %s)", job, name)
            await self._start_stream()

        name = self._session_name
        if name is None:
            return
        await self._timelapse.notify_printer_state(name, PrintState.PRINTING)
        if not self._last_layer_triggered and is_last_layer(
            self._config.timelapse,
            current_layer=current.current_layer,
            total_layers=current.total_layers,
            remaining=current.remaining,
            progress=current.progress_percent,
        ):
            async with self._lock:
                self._last_layer_triggered = True
                if self._config.timelapse.auto_finalize:
                    self._session_name = None
                    self._finalized_for_job = job
            logger.info("Last layer of %s reached", job)
            if self._config.timelapse.auto_finalize:
                self._spawn(
                    self._timelapse.notify_print_progress(
                        name,
                        current.current_layer,
                        current.total_layers,
                        remaining=current.remaining,
                        progress=current.progress_percent,
                    )
                )
                return
        await self._timelapse.notify_print_progress(
            name,
            current.current_layer,
            current.total_layers,
            remaining=current.remaining,
            progress=current.progress_percent,
        )

    def _auto_broadcast(self) -> bool:
        return (
            self._config.youtube.live_broadcast.enabled
            and self._config.stream.mix.enabled
            and not self._mix_disabled
        )

    async def _start_stream(self) -> None:
        if self._auto_broadcast():
            self._spawn(self._start_broadcast())
        else:
            await self._broadcaster.start_local_stream()

    async def _start_broadcast(self) -> None:
        try:
            await self._broadcaster.start_broadcast()
        except (BroadcastError, ConfigError, UpstreamUnavailable, EncoderError) as err:
            logger.warning("Broadcast not started, local stream stays available: %s", err)
            await self._broadcaster.start_local_stream()

    async def _finalize(self, name: str) -> Path | None:
        try:
            return await self._timelapse.stop_timelapse(name)
        except EncoderError as err:
            logger.warning("Time-lapse %s could not be assembled: %s", name, err)
            return None

    async def _print_finished(self, reason: str) -> None:
        async with self._lock:
            name, self._session_name = self._session_name, None
            job, self._job_key = self._job_key, None
            self._last_layer_triggered = False
            self._finalized_for_job = None
        logger.info("Print %s finished (%s)", job, reason)
        if self._config.youtube.live_broadcast.end_stream_after_print:
            if self._broadcaster.broadcast_active:
                await self._broadcaster.end_broadcast()
        elif self._broadcaster.broadcast_active:
            logger.info("Leaving broadcast running after print")
        if name is not None:
            await self._finalize(name)

    async def _idle_expired(self) -> None:
        self._idle_task = None
        await self._print_finished("idle")

    async def _offline_expired(self) -> None:
        self._offline_task = None
        await self._print_finished("offline grace expired")

    async def notify_mix_disabled(self) -> None:
        """Stop a running broadcast and keep it from restarting while mix is disabled."""
        async with self._lock:
            already = self._mix_disabled
            self._mix_disabled = True
        if not already and self._broadcaster.broadcast_active:
            logger.info("Mix disabled, stopping broadcast")
            await self._broadcaster.end_broadcast()

    def notify_mix_enabled(self) -> None:
        """Allow broadcasts again, nothing is restarted."""
        self._mix_disabled = False

    def on_audio_track_finished(self, track: str) -> None:
        """Audio listener that ends the broadcast after the current song when requested."""
        if not self._config.stream.end_after_song:
            return
        self._config.stream.end_after_song = False
        if self._broadcaster.broadcast_active:
            logger.info("Track %s finished, ending broadcast", track)
            self._spawn(self._broadcaster.end_broadcast())
