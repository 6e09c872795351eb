"""Application root: builds the components and owns their lifetimes."""

from __future__ import annotations

import logging

from aiohttp import ClientSession, ClientTimeout

from .client.moonraker import MoonrakerClient, PrinterDataProvider
from .client.youtube import YouTubeLiveApi
from .config import PrintStreamerConfig
from .server.audio import AudioBroadcaster, AudioQueue
from .server.broadcast import BroadcastStage
from .server.broadcast_controller import BroadcastController
from .server.lifecycle import PrintLifecycleOrchestrator
from .server.live import LiveStreamManager
from .server.poller import PrinterPoller
from .server.server import PrintStreamerServer
from .server.source import SourceStage
from .server.stage import EncoderStage
from .server.telemetry import TelemetryFormatter
from .server.timelapse import Assembler, TimelapseManager

logger = logging.getLogger(__name__)


class PrintStreamerApp:
    """
    Wires all components together.

    Components start in the order source, audio, formatter, poller, orchestrator,
    HTTP server and stop in reverse.
    """

    _session: ClientSession
    _owns_session: bool
    """Whether this app created the session and must close it."""

    def __init__(
        self,
        config: PrintStreamerConfig,
        *,
        session: ClientSession | None = None,
        provider: PrinterDataProvider | None = None,
        youtube_api: YouTubeLiveApi | None = None,
        assembler: Assembler | None = None,
    ) -> None:
        """
        Build the application. Must be called from a running event loop.

        Args:
            config: Validated configuration.
            session: Optional ClientSession. If None, a new session is created.
            provider: Printer data provider, defaults to a Moonraker client.
            youtube_api: Live streaming API client, None disables live broadcasts.
            assembler: Time-lapse assembler, defaults to running the encoder.
        """
        self.config = config
        if session is None:
            self._session = ClientSession(timeout=ClientTimeout(total=None, sock_connect=10))
            self._owns_session = True
        else:
            self._session = session
            self._owns_session = False
        self._moonraker = (
            MoonrakerClient(config.moonraker, self._session) if provider is None else None
        )
        self.provider: PrinterDataProvider = provider or self._moonraker  # type: ignore[assignment]
        ffmpeg_path = config.ffmpeg.path
        self._now_playing: str | None = None

        self.source = SourceStage(config, self._session)
        self.audio: AudioBroadcaster | None = None
        if config.audio.enabled:
            self.audio = AudioBroadcaster(AudioQueue(config.audio.folder), ffmpeg_path=ffmpeg_path)
        self.formatter = TelemetryFormatter(
            config.overlay, self.provider, audio_name=lambda: self._now_playing
        )
        self.timelapse = TimelapseManager(
            config.timelapse,
            capture=self._capture_frame,
            assembler=assembler,
            ffmpeg_path=ffmpeg_path,
        )
        controller = None
        if youtube_api is not None:
            controller = BroadcastController(
                youtube_api,
                config.youtube,
                mix_enabled=lambda: config.stream.mix.enabled,
            )
        self.live = LiveStreamManager(controller, self._broadcast_stage)
        self.orchestrator = PrintLifecycleOrchestrator(config, self.timelapse, self.live)
        self.poller = PrinterPoller(self.provider, config.moonraker)
        self.server = PrintStreamerServer(
            config,
            source=self.source,
            formatter=self.formatter,
            timelapse=self.timelapse,
            live=self.live,
            orchestrator=self.orchestrator,
            audio=self.audio,
            moonraker_available=lambda: self._moonraker.available if self._moonraker else None,
        )

        self._remove_listeners = [self.poller.add_event_listener(self.orchestrator.on_state_changed)]
        if self.audio is not None:
            self._remove_listeners += [
                self.audio.add_track_listener(self._on_track_changed),
                self.audio.add_finished_listener(self.orchestrator.on_audio_track_finished),
            ]

    def _broadcast_stage(self, ingest_url: str) -> EncoderStage:
        return BroadcastStage(
            self.server.stage_url("/stream/mix"),
            ingest_url,
            self._session,
            ffmpeg_path=self.config.ffmpeg.path,
        )

    async def _capture_frame(self) -> bytes:
        return await self.server.capture_for_timelapse()

    def _on_track_changed(self, track: str | None) -> None:
        self._now_playing = track

    async def start(self) -> None:
        """Start all components."""
        await self.source.start()
        if self.audio is not None:
            await self.audio.start()
        await self.formatter.start()
        await self.poller.start()
        await self.orchestrator.start()
        await self.server.start_server(self.config.server.port, self.config.server.host)

    async def stop(self) -> None:
        """Stop all components in reverse start order."""
        await self.server.stop_server()
        await self.orchestrator.stop()
        await self.live.close()
        await self.timelapse.close()
        await self.poller.stop()
        await self.formatter.stop()
        if self.audio is not None:
            await self.audio.stop()
        await self.source.stop()
        for remove in self._remove_listeners:
            remove()
        if self._moonraker is not None:
            await self._moonraker.close()
        if self._owns_session and not self._session.closed:
            await self._session.close()
