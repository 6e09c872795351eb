"""HTTP server exposing the pipeline stages and the control API."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import orjson
from aiohttp import ClientError, web

from printstreamer.config import PrintStreamerConfig
from printstreamer.errors import (
    Conflict,
    ConfigError,
    EncoderError,
    NoFramesError,
    PrintStreamerError,
    UpstreamUnavailable,
)
from printstreamer.models import RepeatMode

from .audio import AudioBroadcaster
from .lifecycle import PrintLifecycleOrchestrator
from .live import LiveStreamManager
from .mix import MIX_CONTENT_TYPE, FrameGrabStage, MixStage
from .mjpeg import MULTIPART_CONTENT_TYPE, jpeg_size
from .overlay import DEFAULT_FRAME_HEIGHT, OVERLAY_HEADERS, OverlayStage
from .source import CAPTURE_TIMEOUT, SourceStage, capture_response
from .stage import EncoderStage, serve_stage
from .telemetry import TelemetryFormatter
from .timelapse import TimelapseManager

logger = logging.getLogger(__name__)


def _json(data: Any, status: int = 200) -> web.Response:
    return web.Response(body=orjson.dumps(data), status=status, content_type="application/json")


def _error(message: str, status: int) -> web.Response:
    return _json({"success": False, "error": message}, status=status)


def parse_enabled(value: str | None) -> bool | None:
    """Parse the enabled query parameter, only "true" and "1" mean enabled."""
    if value is None:
        return None
    return value.strip().lower() in ("true", "1")


class PrintStreamerServer:
    """Routes HTTP requests to the stages, the time-lapse manager and the live stream."""

    _app: web.Application | None
    """Web application instance for the server."""
    _app_runner: web.AppRunner | None
    """App runner for the web application."""
    _tcp_site: web.TCPSite | None
    """TCP site for the web application."""
    _mix_stages: set[MixStage]
    """Mix encoders serving clients right now."""

    def __init__(
        self,
        config: PrintStreamerConfig,
        *,
        source: SourceStage,
        formatter: TelemetryFormatter,
        timelapse: TimelapseManager,
        live: LiveStreamManager,
        orchestrator: PrintLifecycleOrchestrator,
        audio: AudioBroadcaster | None = None,
        moonraker_available: Callable[[], bool | None] = lambda: None,
    ) -> None:
        """
        Initialize the server.

        Args:
            config: Application configuration, runtime toggles are written back to it.
            source: Camera source stage.
            formatter: Telemetry formatter backing the OBS endpoint.
            timelapse: Time-lapse manager.
            live: Live stream manager.
            orchestrator: Print lifecycle orchestrator.
            audio: Audio broadcaster, None when audio is disabled.
            moonraker_available: Returns whether the printer answered its last request.
        """
        self._config = config
        self._source = source
        self._formatter = formatter
        self._timelapse = timelapse
        self._live = live
        self._orchestrator = orchestrator
        self._audio = audio
        self._moonraker_available = moonraker_available
        self._frame_height: int | None = None
        self._mix_stages = set()
        self._app = None
        self._app_runner = None
        self._tcp_site = None

    @property
    def ffmpeg_path(self) -> str:
        """Encoder binary."""
        return self._config.ffmpeg.path

    def stage_url(self, path: str) -> str:
        """URL under which another stage reaches path on this server."""
        return f"{self._config.base_url}{path}"

    def _create_web_application(self) -> web.Application:
        """
        Create and configure the aiohttp web application.

        Returns:
            Configured aiohttp web.Application instance.
        """
        app = web.Application()
        router = app.router
        router.add_get("/stream/source", self._source.handle_stream)
        router.add_get("/stream/source/capture", self._source.handle_capture)
        router.add_get("/fallback_black.jpg", self._source.handle_fallback)
        router.add_get("/stream/overlay", self.handle_overlay)
        router.add_get("/stream/overlay/capture", self.handle_overlay_capture)
        router.add_get("/stream/audio", self.handle_audio)
        router.add_get("/stream/mix", self.handle_mix)
        router.add_get("/stream/mix/capture", self.handle_mix_capture)
        router.add_get("/stream/obs-urlsource/overlay", self.handle_obs_overlay)
        router.add_get("/stream/obs-urlsource/text", self.handle_obs_text)

        router.add_get("/api/stream/mix-enabled", self.handle_get_mix_enabled)
        router.add_post("/api/stream/mix-enabled", self.handle_set_mix_enabled)
        router.add_get("/api/stream/end-after-song", self.handle_get_end_after_song)
        router.add_post("/api/stream/end-after-song", self.handle_set_end_after_song)
        router.add_get("/api/overlay/enabled", self.handle_get_overlay_enabled)
        router.add_post("/api/overlay/enabled", self.handle_set_overlay_enabled)
        router.add_get("/api/camera", self.handle_get_camera)
        router.add_post("/api/camera/{action:on|off|toggle}", self.handle_camera)

        router.add_get("/api/audio/state", self.handle_audio_state)
        router.add_post("/api/audio/{action}", self.handle_audio_action)

        router.add_get("/api/live/status", self.handle_live_status)
        router.add_post("/api/live/start", self.handle_live_start)
        router.add_post("/api/live/stop", self.handle_live_stop)

        router.add_get("/api/timelapses", self.handle_list_timelapses)
        router.add_delete("/api/timelapses/{name}", self.handle_delete_timelapse)
        router.add_get("/api/timelapses/{name}/frames", self.handle_list_frames)
        router.add_get("/api/timelapses/{name}/frames/{filename}", self.handle_get_frame)
        router.add_delete("/api/timelapses/{name}/frames/{filename}", self.handle_delete_frame)
        router.add_get("/api/timelapses/{name}/metadata", self.handle_timelapse_metadata)
        router.add_post("/api/timelapses/{name}/generate", self.handle_generate)

        router.add_get("/api/health", self.handle_health)
        return app

    # Streams

    async def _probe_frame_height(self) -> int:
        if self._frame_height is None:
            try:
                size = jpeg_size(await self._source.capture())
            except (PrintStreamerError, TimeoutError, ClientError) as err:
                logger.debug("Cannot probe source frame size: %s", err)
                size = jpeg_size(self._source.fallback_jpeg)
                if size is None:
                    return DEFAULT_FRAME_HEIGHT
                return size[1]
            if size is not None:
                self._frame_height = size[1]
                logger.info("Source frames are %dx%d", *size)
        return self._frame_height or DEFAULT_FRAME_HEIGHT

    async def handle_overlay(self, request: web.Request) -> web.StreamResponse:
        """Serve the source stream with the telemetry banner drawn on."""
        stage = OverlayStage(
            self._config.overlay,
            self.stage_url("/stream/source"),
            frame_height=await self._probe_frame_height(),
            ffmpeg_path=self.ffmpeg_path,
        )
        return await serve_stage(request, stage, MULTIPART_CONTENT_TYPE, OVERLAY_HEADERS)

    async def _grab(self, stage: EncoderStage) -> bytes:
        try:
            async with asyncio.timeout(CAPTURE_TIMEOUT):
                await stage.start()
                frame = await stage.capture_jpeg()
        finally:
            await stage.stop()
        if frame is None:
            raise EncoderError(f"{stage.name} produced no frame")
        return frame

    async def capture_overlay(self) -> bytes:
        """Grab a single frame of the overlay stream."""
        stage = FrameGrabStage(
            self.stage_url("/stream/overlay"), input_format="mpjpeg", ffmpeg_path=self.ffmpeg_path
        )
        return await self._grab(stage)

    async def capture_mix(self) -> bytes:
        """Grab a single frame of the mix stream."""
        if not self._config.stream.mix.enabled:
            raise UpstreamUnavailable("Mix stream is disabled")
        stage = FrameGrabStage(
            self.stage_url("/stream/mix"), input_format="mp4", ffmpeg_path=self.ffmpeg_path
        )
        return await self._grab(stage)

    async def capture_for_timelapse(self) -> bytes:
        """Grab a frame for a time-lapse, preferring the overlay over the raw source."""
        try:
            return await self.capture_overlay()
        except (PrintStreamerError, TimeoutError, ClientError) as err:
            logger.debug("Overlay capture failed, using source: %s", err)
        return await self._source.capture()

    async def handle_overlay_capture(self, request: web.Request) -> web.Response:
        """Serve a single overlay frame."""
        return await capture_response(self.capture_overlay)

    async def handle_mix_capture(self, request: web.Request) -> web.Response:
        """Serve a single mix frame."""
        return await capture_response(self.capture_mix)

    async def handle_audio(self, request: web.Request) -> web.StreamResponse:
        """Serve the continuous MP3 stream."""
        if self._audio is None or not self._config.audio.enabled:
            return web.Response(status=503, text="Audio is disabled")
        return await self._audio.handle_stream(request)

    async def handle_mix(self, request: web.Request) -> web.StreamResponse:
        """Serve overlay and audio as fragmented MP4."""
        if not self._config.stream.mix.enabled:
            return web.Response(status=503, text="Mix stream is disabled")
        audio_url = None
        if self._audio is not None and self._config.audio.enabled:
            audio_url = self.stage_url("/stream/audio")
        stage = MixStage(
            self.stage_url("/stream/overlay"), audio_url, ffmpeg_path=self.ffmpeg_path
        )
        self._mix_stages.add(stage)
        try:
            return await serve_stage(request, stage, MIX_CONTENT_TYPE, OVERLAY_HEADERS)
        finally:
            self._mix_stages.discard(stage)

    async def handle_obs_overlay(self, request: web.Request) -> web.Response:
        """Serve the telemetry values for OBS URL sources."""
        try:
            data = self._formatter.obs_data()
        except Exception as err:
            logger.exception("Cannot build OBS overlay data")
            return _json({"error": str(err)}, status=500)
        return web.Response(body=data.to_jsonb(), content_type="application/json")

    async def handle_obs_text(self, request: web.Request) -> web.Response:
        """Serve the rendered banner text for OBS text sources."""
        text = self._formatter.read()
        if text is None:
            return web.Response(status=404, text="Overlay text not written yet")
        return web.Response(text=text, headers=OVERLAY_HEADERS)

    # Toggles

    async def handle_get_mix_enabled(self, request: web.Request) -> web.Response:
        """Report whether the mix stream is enabled."""
        return _json({"success": True, "enabled": self._config.stream.mix.enabled})

    async def set_mix_enabled(self, enabled: bool) -> None:
        """Enable or disable the mix stream; disabling stops mix encoders and the broadcast."""
        self._config.set("Stream:Mix:Enabled", enabled)
        logger.info("Mix stream %s", "enabled" if enabled else "disabled")
        if enabled:
            self._orchestrator.notify_mix_enabled()
            return
        await self._orchestrator.notify_mix_disabled()
        await asyncio.gather(*(stage.stop() for stage in list(self._mix_stages)))

    async def handle_set_mix_enabled(self, request: web.Request) -> web.Response:
        """Enable or disable the mix stream."""
        enabled = parse_enabled(request.query.get("enabled"))
        if enabled is None:
            return _error("Missing enabled parameter", 400)
        try:
            await self.set_mix_enabled(enabled)
        except PrintStreamerError as err:
            logger.warning("Changing mix state failed: %s", err)
            return _error(str(err), 500)
        return _json({"success": True, "enabled": enabled})

    async def handle_get_end_after_song(self, request: web.Request) -> web.Response:
        """Report whether the broadcast ends after the current song."""
        return _json({"success": True, "enabled": self._config.stream.end_after_song})

    async def handle_set_end_after_song(self, request: web.Request) -> web.Response:
        """Request ending the broadcast after the current song."""
        enabled = parse_enabled(request.query.get("enabled"))
        if enabled is None:
            return _error("Missing enabled parameter", 400)
        self._config.set("Stream:EndAfterSong", enabled)
        return _json({"success": True, "enabled": enabled})

    async def handle_get_overlay_enabled(self, request: web.Request) -> web.Response:
        """Report whether the banner is drawn."""
        return _json({"success": True, "enabled": self._config.overlay.enabled})

    async def handle_set_overlay_enabled(self, request: web.Request) -> web.Response:
        """Enable or disable the banner for new overlay streams."""
        enabled = parse_enabled(request.query.get("enabled"))
        if enabled is None:
            return _error("Missing enabled parameter", 400)
        self._config.set("Overlay:Enabled", enabled)
        return _json({"success": True, "enabled": enabled})

    async def handle_get_camera(self, request: web.Request) -> web.Response:
        """Report the camera state."""
        return _json(
            {
                "success": True,
                "enabled": not self._source.disabled,
                "upstream_ok": self._source.upstream_ok,
                "clients": self._source.subscriber_count,
            }
        )

    async def handle_camera(self, request: web.Request) -> web.Response:
        """Turn the camera on or off."""
        action = request.match_info["action"]
        if action == "toggle":
            self._source.toggle()
        else:
            self._source.set_disabled(action == "off")
        return _json({"success": True, "enabled": not self._source.disabled})

    # Audio

    def _audio_state(self) -> dict[str, Any]:
        assert self._audio is not None
        return self._audio.queue.snapshot(
            end_after_current=self._config.stream.end_after_song,
            playing=self._audio.playing,
        ).to_dict()

    async def handle_audio_state(self, request: web.Request) -> web.Response:
        """Report the audio queue."""
        if self._audio is None:
            return _error("Audio is disabled", 503)
        return _json({"success": True, **self._audio_state()})

    async def handle_audio_action(self, request: web.Request) -> web.Response:
        """Control audio playback and the queue."""
        if self._audio is None:
            return _error("Audio is disabled", 503)
        audio = self._audio
        queue = audio.queue
        action = request.match_info["action"]
        query = request.query
        try:
            if action == "next":
                await audio.skip()
            elif action == "prev":
                await audio.previous()
            elif action == "shuffle":
                enabled = parse_enabled(query.get("enabled"))
                queue.shuffle = (not queue.shuffle) if enabled is None else enabled
            elif action == "repeat":
                queue.repeat = RepeatMode(query.get("mode", "all").lower())
            elif action == "enqueue":
                queue.enqueue(query["name"])
                audio.wake()
            elif action == "play":
                queue.play_next(query["name"])
                await audio.skip()
            elif action == "remove":
                queue.remove(int(query["index"]))
            elif action == "clear":
                queue.clear()
            elif action == "scan":
                queue.scan()
                audio.wake()
            else:
                return _error(f"Unknown action {action}", 404)
        except KeyError as err:
            return _error(f"Unknown track or missing parameter: {err}", 400)
        except (ValueError, IndexError) as err:
            return _error(f"Invalid parameter: {err}", 400)
        return _json({"success": True, **self._audio_state()})

    # Live broadcast

    async def handle_live_status(self, request: web.Request) -> web.Response:
        """Report the broadcast and print lifecycle state."""
        return _json(
            {
                "success": True,
                **self._live.status(),
                "mix_enabled": self._config.stream.mix.enabled,
                "print": self._orchestrator.status(),
            }
        )

    async def handle_live_start(self, request: web.Request) -> web.Response:
        """Start a broadcast manually."""
        try:
            session = await self._live.start_broadcast()
        except ConfigError as err:
            return _error(str(err), 409)
        except (PrintStreamerError, ClientError) as err:
            logger.warning("Manual broadcast start failed: %s", err)
            return _error(str(err), 502)
        return _json(
            {"success": True, "broadcast_id": session.broadcast_id if session else None}
        )

    async def handle_live_stop(self, request: web.Request) -> web.Response:
        """Stop the broadcast manually."""
        stopped = await self._live.end_broadcast()
        return _json({"success": True, "stopped": stopped})

    # Time-lapses

    async def handle_list_timelapses(self, request: web.Request) -> web.Response:
        """List time-lapse directories."""
        infos = self._timelapse.list_timelapses()
        return _json({"success": True, "timelapses": [info.to_dict() for info in infos]})

    async def handle_list_frames(self, request: web.Request) -> web.Response:
        """List the frames of a time-lapse."""
        name = request.match_info["name"]
        try:
            frames = self._timelapse.frames(name)
        except FileNotFoundError:
            return _error(f"Time-lapse {name} not found", 404)
        except ValueError as err:
            return _error(str(err), 400)
        return _json({"success": True, "name": name, "frames": frames})

    async def handle_get_frame(self, request: web.Request) -> web.StreamResponse:
        """Serve one frame of a time-lapse."""
        try:
            path = self._timelapse.frame_path(
                request.match_info["name"], request.match_info["filename"]
            )
        except FileNotFoundError:
            return _error("Frame not found", 404)
        except ValueError as err:
            return _error(str(err), 400)
        return web.FileResponse(path, headers={"Content-Type": "image/jpeg"})

    async def handle_delete_frame(self, request: web.Request) -> web.Response:
        """Delete a frame of an inactive time-lapse."""
        name = request.match_info["name"]
        filename = request.match_info["filename"]
        try:
            frames = await self._timelapse.delete_frame(name, filename)
        except Conflict as err:
            return _error(str(err), 409)
        except FileNotFoundError:
            return _error("Frame not found", 404)
        except ValueError as err:
            return _error(str(err), 400)
        except OSError as err:
            logger.warning("Deleting %s/%s failed: %s", name, filename, err)
            return _error(str(err), 500)
        return _json({"success": True, "frames": frames})

    async def handle_timelapse_metadata(self, request: web.Request) -> web.Response:
        """Serve the metadata of a time-lapse."""
        try:
            metadata = self._timelapse.metadata(request.match_info["name"])
        except ValueError as err:
            return _error(str(err), 400)
        if metadata is None:
            return _error("Metadata not found", 404)
        return web.Response(body=metadata.to_jsonb(), content_type="application/json")

    async def handle_delete_timelapse(self, request: web.Request) -> web.Response:
        """Delete an inactive time-lapse directory."""
        name = request.match_info["name"]
        try:
            await self._timelapse.delete_timelapse(name)
        except Conflict as err:
            return _error(str(err), 409)
        except FileNotFoundError:
            return _error(f"Time-lapse {name} not found", 404)
        except ValueError as err:
            return _error(str(err), 400)
        except OSError as err:
            logger.warning("Deleting time-lapse %s failed: %s", name, err)
            return _error(str(err), 500)
        return _json({"success": True})

    async def handle_generate(self, request: web.Request) -> web.Response:
        """Assemble the video of an inactive time-lapse."""
        name = request.match_info["name"]
        try:
            video = await self._timelapse.generate(name)
        except Conflict as err:
            return _error(str(err), 409)
        except FileNotFoundError:
            return _error(f"Time-lapse {name} not found", 404)
        except (NoFramesError, ValueError) as err:
            return _error(str(err), 400)
        except EncoderError as err:
            logger.warning("Generating %s failed: %s", name, err)
            return _error(str(err), 500)
        return _json({"success": True, "video": video.name})

    async def handle_health(self, request: web.Request) -> web.Response:
        """Report upstream reachability."""
        return _json(
            {
                "success": True,
                "source": {
                    "enabled": not self._source.disabled,
                    "upstream_ok": self._source.upstream_ok,
                },
                "moonraker": {"available": self._moonraker_available()},
                "mix_enabled": self._config.stream.mix.enabled,
                "broadcast_active": self._live.broadcast_active,
            }
        )

    # Lifecycle

    async def start_server(self, port: int = 8080, host: str = "0.0.0.0") -> None:
        """
        Start serving HTTP.

        Raises:
            OSError: If the port cannot be bound.
        """
        if self._app is not None:
            logger.warning("Server is already running")
            return

        logger.info("Starting HTTP server on port %d", port)
        self._app = self._create_web_application()
        self._app_runner = web.AppRunner(self._app)
        await self._app_runner.setup()
        try:
            self._tcp_site = web.TCPSite(
                self._app_runner,
                host=host if host != "0.0.0.0" else None,
                port=port,
            )
            await self._tcp_site.start()
            logger.info("HTTP server started on %s:%d", host, port)
        except OSError as e:
            logger.error("Failed to start server on %s:%d: %s", host, port, e)
            await self._app_runner.cleanup()
            self._app_runner = None
            await self._app.shutdown()
            self._app = None
            raise

    async def stop_server(self) -> None:
        """Stop the HTTP server."""
        await asyncio.gather(*(stage.stop() for stage in list(self._mix_stages)))

        if self._tcp_site:
            await self._tcp_site.stop()
            self._tcp_site = None
            logger.debug("TCP site stopped")

        if self._app_runner:
            await self._app_runner.cleanup()
            self._app_runner = None
            logger.debug("App runner cleaned up")

        if self._app:
            await self._app.shutdown()
            self._app = None
