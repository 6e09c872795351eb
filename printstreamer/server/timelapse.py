"""Time-lapse sessions: frame capture, resume across restarts and MP4 assembly."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections.abc import Awaitable, Callable
from contextlib import suppress
from datetime import UTC, datetime, timedelta
from pathlib import Path

from printstreamer.config import TimelapseConfig
from printstreamer.errors import Conflict, EncoderError, NoFramesError, PrintStreamerError
from printstreamer.models import (
    METADATA_FILENAME,
    PrintState,
    TimelapseInfo,
    TimelapseMetadata,
    TimelapseState,
)
from printstreamer.util import atomic_write_bytes

from .stage import EncoderStage

logger = logging.getLogger(__name__)

FRAME_PATTERN = re.compile(r"^frame_(\d{6})\.jpg$")
FRAME_RATE = 30
CAPTURE_TIMEOUT = 10.0
_INVALID_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_SEPARATOR_CHARS = re.compile(r"[ \-()\[\]{}:;,.#]+")

Assembler = Callable[[Path, Path], Awaitable[Path]]
"""Assembles the frames in a directory into the given video file."""
FrameSource = Callable[[], Awaitable[bytes]]


def sanitize_name(name: str | None) -> str:
    """Turn a G-code file name into a safe directory name."""
    if not name:
        return "unknown"
    base = re.split(r"[/\\]", name.strip())[-1]
    stem, dot, suffix = base.rpartition(".")
    if dot and stem and suffix and " " not in suffix:
        base = stem
    base = base.replace("&", "and")
    base = _INVALID_CHARS.sub("_", base)
    base = _SEPARATOR_CHARS.sub("_", base)
    base = re.sub(r"_+", "_", base).strip("_")
    return base or "unknown"


def frame_name(index: int) -> str:
    """File name of the frame with the given index."""
    return f"frame_{index:06d}.jpg"


def list_frames(directory: Path) -> list[Path]:
    """Frames in a directory, ordered by index."""
    try:
        frames = [p for p in directory.iterdir() if FRAME_PATTERN.match(p.name)]
    except OSError:
        return []
    return sorted(frames, key=lambda p: p.name)


def _mtime(path: Path) -> datetime | None:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, UTC)
    except OSError:
        return None


def read_metadata(directory: Path) -> TimelapseMetadata | None:
    """Load timelapse_metadata.json from a directory."""
    try:
        return TimelapseMetadata.from_json((directory / METADATA_FILENAME).read_bytes())
    except (OSError, ValueError, LookupError) as err:
        logger.debug("No usable metadata in %s: %s", directory, err)
        return None


def write_metadata(directory: Path, metadata: TimelapseMetadata) -> None:
    """Atomically store timelapse_metadata.json in a directory."""
    atomic_write_bytes(directory / METADATA_FILENAME, metadata.to_jsonb())


def is_last_layer(
    config: TimelapseConfig,
    *,
    current_layer: int | None,
    total_layers: int | None,
    remaining: timedelta | None = None,
    progress: float | None = None,
) -> bool:
    """Whether any of the near-completion predicates holds."""
    if remaining is not None:
        seconds = remaining.total_seconds()
        if 0 < seconds <= config.last_layer_remaining_seconds:
            return True
    if progress is not None and progress >= config.last_layer_progress_percent:
        return True
    if current_layer is not None and total_layers and total_layers > 0 and current_layer > 0:
        if current_layer >= total_layers - config.last_layer_offset:
            return True
    return False


class AssemblyJob(EncoderStage):
    """Encoder run that turns a directory of frames into an MP4."""

    name = "assembly"
    capture_stdout = False

    def __init__(
        self,
        frames_dir: Path,
        output: Path,
        *,
        use_glob: bool = False,
        ffmpeg_path: str = "ffmpeg",
    ) -> None:
        """Initialize the job for a frames directory and an output file."""
        super().__init__(ffmpeg_path)
        self._frames_dir = frames_dir
        self._output = output
        self._use_glob = use_glob

    def build_args(self) -> list[str]:
        """Return the encoder arguments."""
        if self._use_glob:
            source = ["-pattern_type", "glob", "-i", str(self._frames_dir / "frame_*.jpg")]
        else:
            source = ["-start_number", "0", "-i", str(self._frames_dir / "frame_%06d.jpg")]
        return [
            "-hide_banner", "-nostats", "-loglevel", "error",
            "-y",
            "-f", "image2",
            "-framerate", str(FRAME_RATE),
            *source,
            "-vf", "scale=trunc(iw/2)*2:trunc(ih/2)*2",
            "-c:v", "libx264",
            "-preset", "medium",
            "-crf", "18",
            "-pix_fmt", "yuv420p",
            "-movflags", "+faststart",
            str(self._output),
        ]  # fmt: skip

    async def run(self) -> int:
        """Run the job to completion; cancelling the caller stops the encoder."""
        await self.start()
        try:
            return await self.wait_exit()
        finally:
            await self.stop()


def make_assembler(ffmpeg_path: str = "ffmpeg") -> Assembler:
    """Return an assembler that runs the encoder, retrying with a glob pattern."""

    async def _assemble(frames_dir: Path, output: Path) -> Path:
        for use_glob in (False, True):
            job = AssemblyJob(frames_dir, output, use_glob=use_glob, ffmpeg_path=ffmpeg_path)
            code = await job.run()
            if code == 0 and output.exists() and output.stat().st_size > 0:
                return output
            logger.warning(
                "Assembly of %s failed with exit code %s%s",
                frames_dir,
                code,
                ", retrying with glob pattern" if not use_glob else "",
            )
        raise EncoderError(f"Could not assemble {output}")

    return _assemble


class TimelapseSession:
    """An open time-lapse directory that receives frames."""

    def __init__(
        self,
        name: str,
        output_dir: Path,
        *,
        moonraker_filename: str | None,
        frame_counter: int = 0,
        started_at: datetime | None = None,
        last_frame_time: datetime | None = None,
    ) -> None:
        """Initialize a session for an existing directory."""
        self.name = name
        self.output_dir = output_dir
        self.moonraker_filename = moonraker_filename
        self.frame_counter = frame_counter
        self.started_at = started_at or datetime.now(UTC)
        self.last_frame_time = last_frame_time
        self.state = TimelapseState.ACTIVE
        self.capture_enabled = False
        self.last_layer_triggered = False
        self.lock = asyncio.Lock()
        self.capture_task: asyncio.Task[None] | None = None

    @property
    def video_path(self) -> Path:
        """Where the assembled video is written."""
        return self.output_dir / f"{self.name}.mp4"

    @property
    def is_open(self) -> bool:
        """Whether the session still accepts state changes."""
        return self.state in (TimelapseState.ACTIVE, TimelapseState.PAUSED)


class TimelapseManager:
    """Owns all time-lapse sessions below the configured root folder."""

    def __init__(
        self,
        config: TimelapseConfig,
        *,
        capture: FrameSource | None = None,
        assembler: Assembler | None = None,
        ffmpeg_path: str = "ffmpeg",
    ) -> None:
        """
        Initialize the manager.

        Args:
            config: Time-lapse settings.
            capture: Returns one JPEG; when given, active sessions capture periodically.
            assembler: Builds the video at finalize, defaults to running the encoder.
            ffmpeg_path: Encoder binary for the default assembler.
        """
        self._config = config
        self._capture = capture
        self._assembler = assembler or make_assembler(ffmpeg_path)
        self._sessions: dict[str, TimelapseSession] = {}
        self._finalized: set[str] = set()

    @property
    def root(self) -> Path:
        """Folder holding one directory per time-lapse."""
        return Path(self._config.main_folder)

    @property
    def sessions(self) -> dict[str, TimelapseSession]:
        """Open sessions by name."""
        return dict(self._sessions)

    def get(self, name: str) -> TimelapseSession | None:
        """Return an open session."""
        return self._sessions.get(name)

    def _directory(self, name: str) -> Path:
        if not name or name.startswith(".") or re.search(r"[/\\\x00]", name):
            raise ValueError(f"Invalid time-lapse name: {name!r}")
        path = (self.root / name).resolve()
        if path.parent != self.root.resolve():
            raise ValueError(f"Invalid time-lapse name: {name!r}")
        return path

    def _resume_candidate(
        self, base: str, moonraker_filename: str | None
    ) -> tuple[Path, TimelapseMetadata | None, list[Path]] | None:
        pattern = re.compile(rf"^{re.escape(base)}(?:_(\d+))?$", re.IGNORECASE)
        window = timedelta(seconds=self._config.resume_within_seconds)
        now = datetime.now(UTC)
        candidates: list[tuple[datetime, Path, TimelapseMetadata | None, list[Path]]] = []
        try:
            entries = [p for p in self.root.iterdir() if p.is_dir() and pattern.match(p.name)]
        except OSError:
            return None
        for directory in entries:
            if directory.name in self._sessions or any(directory.glob("*.mp4")):
                continue
            metadata = read_metadata(directory)
            if metadata is not None and metadata.finalized_at is not None:
                continue
            frames = list_frames(directory)
            last = _mtime(frames[-1]) if frames else None
            # Without metadata only a directory named exactly after the session qualifies
            session_name = metadata.session_name if metadata is not None else directory.name
            saved_filename = metadata.moonraker_filename if metadata is not None else None
            by_file = (
                moonraker_filename is not None
                and saved_filename is not None
                and saved_filename.casefold() == moonraker_filename.casefold()
                and bool(frames)
            )
            by_name = (
                session_name.casefold() == base.casefold()
                and last is not None
                and now - last <= window
            )
            if by_file or by_name:
                candidates.append((last or datetime.min.replace(tzinfo=UTC), directory, metadata, frames))
        if not candidates:
            return None
        candidates.sort(key=lambda c: c[0], reverse=True)
        _, directory, metadata, frames = candidates[0]
        return directory, metadata, frames

    def _allocate_directory(self, base: str) -> Path:
        candidate = self.root / base
        suffix = 0
        while candidate.exists():
            suffix += 1
            candidate = self.root / f"{base}_{suffix}"
        candidate.mkdir(parents=True)
        return candidate

    async def start_timelapse(
        self, name: str | None, moonraker_filename: str | None = None
    ) -> str | None:
        """
        Open a time-lapse session, resuming a matching directory when allowed.

        Returns:
            The session name, or None if the directory could not be created.
        """
        base = sanitize_name(name or moonraker_filename)
        for session in self._sessions.values():
            if session.is_open and moonraker_filename and session.moonraker_filename == moonraker_filename:
                return session.name
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            resume = self._resume_candidate(base, moonraker_filename)
            if resume is not None:
                directory, metadata, frames = resume
                last_index = int(FRAME_PATTERN.match(frames[-1].name).group(1)) if frames else -1  # type: ignore[union-attr]
                session = TimelapseSession(
                    directory.name,
                    directory,
                    moonraker_filename=moonraker_filename or (metadata.moonraker_filename if metadata else None),
                    frame_counter=last_index + 1,
                    started_at=metadata.started_at if metadata else None,
                    last_frame_time=_mtime(frames[-1]) if frames else None,
                )
                logger.info(
                    "Resuming time-lapse %s at frame %d", session.name, session.frame_counter
                )
            else:
                directory = self._allocate_directory(base)
                session = TimelapseSession(
                    directory.name, directory, moonraker_filename=moonraker_filename
                )
                logger.info("Started time-lapse %s in %s", session.name, directory)
            write_metadata(
                directory,
                TimelapseMetadata(
                    session_name=base,
                    moonraker_filename=session.moonraker_filename,
                    started_at=session.started_at,
                ),
            )
        except OSError as err:
            logger.error("Cannot start time-lapse %s: %s", base, err)
            return None
        session.capture_enabled = not self._config.start_after_layer1
        self._sessions[session.name] = session
        self._finalized.discard(session.name)
        if self._capture is not None:
            session.capture_task = asyncio.get_running_loop().create_task(
                self._capture_loop(session)
            )
        return session.name

    async def append_frame(self, name: str, jpeg: bytes) -> Path | None:
        """
        Store the next frame of a session.

        Returns:
            Path of the written frame, or None when the session is not capturing.
        """
        session = self._sessions.get(name)
        if session is None:
            return None
        async with session.lock:
            if session.state != TimelapseState.ACTIVE:
                return None
            path = session.output_dir / frame_name(session.frame_counter)
            atomic_write_bytes(path, jpeg)
            session.frame_counter += 1
            session.last_frame_time = _mtime(path) or datetime.now(UTC)
        logger.debug("Time-lapse %s: wrote %s", name, path.name)
        return path

    async def notify_printer_state(self, name: str, state: PrintState) -> None:
        """Pause or resume frame capture according to the printer state."""
        session = self._sessions.get(name)
        if session is None:
            return
        async with session.lock:
            if state == PrintState.PAUSED and session.state == TimelapseState.ACTIVE:
                session.state = TimelapseState.PAUSED
                logger.info("Time-lapse %s paused", name)
            elif state == PrintState.PRINTING and session.state == TimelapseState.PAUSED:
                session.state = TimelapseState.ACTIVE
                logger.info("Time-lapse %s resumed", name)

    async def notify_print_progress(
        self,
        name: str,
        current_layer: int | None,
        total_layers: int | None,
        *,
        remaining: timedelta | None = None,
        progress: float | None = None,
    ) -> Path | None:
        """
        Track layer progress and act on the last layer.

        On the last layer the session is finalized, or with auto-finalize off its
        periodic capture is stopped and the session stays open.

        Returns:
            The video path when this call finalized the session, otherwise None.
        """
        session = self._sessions.get(name)
        if session is None:
            return None
        if session.last_layer_triggered:
            return None
        if not session.capture_enabled and current_layer is not None and current_layer >= 1:
            session.capture_enabled = True
            logger.info("Time-lapse %s: capture enabled at layer %d", name, current_layer)
        if not is_last_layer(
            self._config,
            current_layer=current_layer,
            total_layers=total_layers,
            remaining=remaining,
            progress=progress,
        ):
            return None
        session.last_layer_triggered = True
        if not self._config.auto_finalize:
            session.capture_enabled = False
            logger.info("Time-lapse %s reached its last layer, capture stopped", name)
            return None
        logger.info("Time-lapse %s reached its last layer, finalizing", name)
        try:
            return await self.finalize(name)
        except NoFramesError:
            logger.warning("Time-lapse %s has no frames, nothing to assemble", name)
            return None

    async def _capture_loop(self, session: TimelapseSession) -> None:
        while session.is_open:
            await asyncio.sleep(self._config.period)
            if session.state != TimelapseState.ACTIVE or not session.capture_enabled:
                continue
            assert self._capture is not None
            try:
                async with asyncio.timeout(CAPTURE_TIMEOUT):
                    jpeg = await self._capture()
            except (PrintStreamerError, TimeoutError, OSError) as err:
                logger.warning("Time-lapse %s: capture failed: %s", session.name, err)
                continue
            await self.append_frame(session.name, jpeg)

    async def _stop_capture(self, session: TimelapseSession) -> None:
        task, session.capture_task = session.capture_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def finalize(self, name: str) -> Path | None:
        """
        Close a session and assemble its video.

        Returns:
            The video path, or None if the session was already finalized.

        Raises:
            NoFramesError: If the session never captured a frame.
            EncoderError: If assembly failed.
        """
        session = self._sessions.get(name)
        if session is None:
            if name in self._finalized:
                logger.debug("Time-lapse %s already finalized", name)
            return None
        async with session.lock:
            if not session.is_open:
                return None
            session.state = TimelapseState.FINALIZING
        await self._stop_capture(session)
        try:
            frames = list_frames(session.output_dir)
            if not frames:
                raise NoFramesError(f"Time-lapse {name} has no frames")
            logger.info("Assembling %d frames of %s", len(frames), name)
            video = await self._assembler(session.output_dir, session.video_path)
            metadata = read_metadata(session.output_dir) or TimelapseMetadata(session_name=name)
            metadata.finalized_at = datetime.now(UTC)
            metadata.video = video.name
            write_metadata(session.output_dir, metadata)
        finally:
            session.state = TimelapseState.FINALIZED
            self._sessions.pop(name, None)
            self._finalized.add(name)
        logger.info("Time-lapse %s finalized: %s", name, video)
        return video

    async def stop_timelapse(self, name: str) -> Path | None:
        """Finalize a session; a session without frames yields None."""
        try:
            return await self.finalize(name)
        except NoFramesError:
            logger.warning("Time-lapse %s stopped without frames", name)
            return None

    async def close(self) -> None:
        """Stop capturing without finalizing; sessions can be resumed later."""
        for session in list(self._sessions.values()):
            await self._stop_capture(session)

    def _ensure_inactive(self, name: str) -> Path:
        directory = self._directory(name)
        if name in self._sessions:
            raise Conflict(f"Time-lapse {name} is active")
        if not directory.is_dir():
            raise FileNotFoundError(name)
        return directory

    async def delete_frame(self, name: str, filename: str) -> list[str]:
        """
        Delete a frame of an inactive time-lapse and renumber the rest.

        Returns:
            Remaining frame names.

        Raises:
            Conflict: If the session is active.
            FileNotFoundError: If the time-lapse or frame does not exist.
            ValueError: If filename is not a frame name.
        """
        if not FRAME_PATTERN.match(filename):
            raise ValueError(f"Invalid frame name: {filename!r}")
        directory = self._ensure_inactive(name)
        target = directory / filename
        if not target.is_file():
            raise FileNotFoundError(filename)
        target.unlink()
        for index, frame in enumerate(list_frames(directory)):
            wanted = directory / frame_name(index)
            if frame != wanted:
                frame.rename(wanted)
        logger.info("Deleted %s from time-lapse %s", filename, name)
        return [p.name for p in list_frames(directory)]

    def list_timelapses(self) -> list[TimelapseInfo]:
        """Describe every time-lapse directory, newest first."""
        try:
            directories = [p for p in self.root.iterdir() if p.is_dir()]
        except OSError:
            return []
        infos = []
        for directory in directories:
            frames = list_frames(directory)
            metadata = read_metadata(directory)
            session = self._sessions.get(directory.name)
            infos.append(
                TimelapseInfo(
                    name=directory.name,
                    path=str(directory),
                    is_active=session is not None,
                    is_paused=session is not None and session.state == TimelapseState.PAUSED,
                    frame_count=len(frames),
                    video_files=sorted(p.name for p in directory.glob("*.mp4")),
                    start_time=(
                        metadata.started_at if metadata and metadata.started_at else _mtime(directory)
                    ),
                    last_frame_time=_mtime(frames[-1]) if frames else None,
                )
            )
        infos.sort(key=lambda i: i.start_time or datetime.min.replace(tzinfo=UTC), reverse=True)
        return infos

    def frames(self, name: str) -> list[str]:
        """Frame names of a time-lapse."""
        directory = self._directory(name)
        if not directory.is_dir():
            raise FileNotFoundError(name)
        return [p.name for p in list_frames(directory)]

    def frame_path(self, name: str, filename: str) -> Path:
        """Path of a single frame."""
        if not FRAME_PATTERN.match(filename):
            raise ValueError(f"Invalid frame name: {filename!r}")
        path = self._directory(name) / filename
        if not path.is_file():
            raise FileNotFoundError(filename)
        return path

    def metadata(self, name: str) -> TimelapseMetadata | None:
        """Stored metadata of a time-lapse."""
        return read_metadata(self._directory(name))

    async def delete_timelapse(self, name: str) -> None:
        """Remove an inactive time-lapse directory."""
        directory = self._ensure_inactive(name)
        await asyncio.get_running_loop().run_in_executor(None, shutil.rmtree, directory)
        self._finalized.discard(name)
        logger.info("Deleted time-lapse %s", name)

    async def generate(self, name: str) -> Path:
        """
        Assemble the video of an inactive time-lapse.

        Raises:
            Conflict: If the session is active.
            NoFramesError: If the directory has no frames.
        """
        directory = self._ensure_inactive(name)
        if not list_frames(directory):
            raise NoFramesError(f"Time-lapse {name} has no frames")
        video = await self._assembler(directory, directory / f"{name}.mp4")
        metadata = read_metadata(directory) or TimelapseMetadata(session_name=name)
        metadata.finalized_at = datetime.now(UTC)
        metadata.video = video.name
        write_metadata(directory, metadata)
        logger.info("Generated %s", video)
        return video
