"""Printer poller: turns periodic printer reads into state change events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from datetime import timedelta

from printstreamer.client.moonraker import PrinterDataProvider
from printstreamer.config import MoonrakerConfig
from printstreamer.models import PrinterState, PrintState

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 10.0
NEAR_COMPLETION_REMAINING = timedelta(minutes=2)
NEAR_COMPLETION_PROGRESS = 95.0
NEAR_COMPLETION_LAYERS = 5


@dataclass(frozen=True)
class PrintStateChanged:
    """Emitted on every poll with the previous and the current snapshot."""

    previous: PrinterState | None
    current: PrinterState

    @property
    def online(self) -> bool:
        """Whether the printer answered this poll."""
        return self.current.state != PrintState.UNKNOWN


def is_near_completion(state: PrinterState) -> bool:
    """Whether the job is close enough to its end to poll faster."""
    if not state.state.is_active:
        return False
    if state.remaining is not None and state.remaining <= NEAR_COMPLETION_REMAINING:
        return True
    if state.progress_percent is not None and state.progress_percent >= NEAR_COMPLETION_PROGRESS:
        return True
    return (
        state.current_layer is not None
        and bool(state.total_layers)
        and state.current_layer > 0
        and state.current_layer >= state.total_layers - NEAR_COMPLETION_LAYERS  # type: ignore[operator]
    )


def _is_new_session(previous: PrinterState | None, current: PrinterState) -> bool:
    if current.state != PrintState.PRINTING:
        return False
    if previous is None or previous.job_key != current.job_key:
        return True
    return previous.state in (PrintState.IDLE, PrintState.COMPLETE, PrintState.ERROR)


class PrinterPoller:
    """Polls the printer data provider on one task and notifies listeners."""

    _event_cbs: list[Callable[[PrintStateChanged], None]]

    def __init__(self, provider: PrinterDataProvider, config: MoonrakerConfig) -> None:
        """
        Initialize the poller.

        Args:
            provider: Source of printer snapshots.
            config: Supplies the base and fast poll intervals.
        """
        self._provider = provider
        self._config = config
        self._event_cbs = []
        self._latest: PrinterState | None = None
        self._fast = False
        self._task: asyncio.Task[None] | None = None

    @property
    def latest(self) -> PrinterState | None:
        """The most recent snapshot, None before the first poll."""
        return self._latest

    @property
    def fast(self) -> bool:
        """Whether the fast cadence is in use."""
        return self._fast

    @property
    def interval(self) -> float:
        """Seconds until the next poll."""
        if self._fast:
            return self._config.fast_poll_interval_seconds
        return self._config.poll_interval_seconds

    def add_event_listener(self, callback: Callable[[PrintStateChanged], None]) -> Callable[[], None]:
        """
        Register a callback that receives every PrintStateChanged event.

        Callbacks run on the poller task and must not block.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: PrintStateChanged) -> None:
        for cb in list(self._event_cbs):
            try:
                cb(event)
            except Exception:
                logger.exception("Error in print state listener")

    async def _fetch(self) -> PrinterState | None:
        try:
            async with asyncio.timeout(FETCH_TIMEOUT):
                return await self._provider.get_print_info()
        except TimeoutError:
            logger.debug("Printer poll timed out")
            return None

    async def poll_once(self) -> PrintStateChanged:
        """Read the printer once, update the cadence and dispatch the event."""
        previous = self._latest
        current = await self._fetch()
        if current is None:
            current = (previous or PrinterState()).with_state(PrintState.UNKNOWN)
        if is_near_completion(current):
            if not self._fast:
                logger.info("Print near completion, polling every %ss", self._config.fast_poll_interval_seconds)
            self._fast = True
        elif self._fast and _is_new_session(previous, current):
            logger.info("New print session, polling every %ss", self._config.poll_interval_seconds)
            self._fast = False
        if previous is None or previous.state != current.state:
            logger.info(
                "Printer state %s -> %s",
                previous.state.value if previous else None,
                current.state.value,
            )
        self._latest = current
        event = PrintStateChanged(previous=previous, current=current)
        self._signal_event(event)
        return event

    async def start(self) -> None:
        """Start polling."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Stop polling."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Printer poll failed")
            await asyncio.sleep(self.interval)
