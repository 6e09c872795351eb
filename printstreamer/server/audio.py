"""Audio stage: track queue and the continuous MP3 broadcaster."""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path

from aiohttp import web

from printstreamer.errors import EncoderError
from printstreamer.models import AudioQueueState, RepeatMode

from .process import ProcessHandle, start_process

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset({".mp3", ".aac", ".m4a", ".wav", ".flac", ".ogg", ".opus"})
SUBSCRIBER_QUEUE_SIZE = 64
CHUNK_SIZE = 16 * 1024
INITIAL_BACKOFF = 0.5
MAX_BACKOFF = 10.0
HISTORY_SIZE = 50


class AudioQueue:
    """
    Ordered track queue built from an audio folder.

    Explicitly queued tracks play first; when the queue runs dry the library is
    rotated through (in name order, or randomly with shuffle). While a track plays
    it is the head of the queue.
    """

    def __init__(self, folder: str | Path, *, rng: random.Random | None = None) -> None:
        """Initialize the queue for a folder, call scan() to load the library."""
        self._folder = Path(folder)
        self._rng = rng or random.Random()
        self._library: list[Path] = []
        self._queue: deque[Path] = deque()
        self._current: Path | None = None
        self._history: deque[Path] = deque(maxlen=HISTORY_SIZE)
        self.shuffle = False
        self.repeat = RepeatMode.ALL

    @property
    def folder(self) -> Path:
        """Folder the library is scanned from."""
        return self._folder

    @folder.setter
    def folder(self, folder: str | Path) -> None:
        self._folder = Path(folder)
        self.scan()

    @property
    def library(self) -> list[Path]:
        """Tracks in the library, sorted by name."""
        return list(self._library)

    @property
    def queue(self) -> list[Path]:
        """Queued tracks, the playing track first."""
        return list(self._queue)

    @property
    def current(self) -> Path | None:
        """Track currently playing."""
        return self._current

    def scan(self) -> list[Path]:
        """Reload the library from the folder."""
        try:
            entries = [
                p
                for p in self._folder.iterdir()
                if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
            ]
        except OSError as err:
            logger.warning("Cannot scan audio folder %s: %s", self._folder, err)
            entries = []
        self._library = sorted(entries, key=lambda p: p.name.lower())
        known = set(self._library)
        playing = self._queue[0] if self._current is not None and self._queue else None
        self._queue = deque(p for p in self._queue if p in known or p is playing)
        logger.info("Audio library: %d tracks in %s", len(self._library), self._folder)
        return self.library

    def find(self, name: str) -> Path:
        """
        Look up a library track by file name.

        Raises:
            KeyError: If the track is not in the library.
        """
        for path in self._library:
            if path.name == name:
                return path
        raise KeyError(name)

    def enqueue(self, name: str) -> Path:
        """Append a library track to the queue."""
        path = self.find(name)
        self._queue.append(path)
        return path

    def play_next(self, name: str) -> Path:
        """Queue a library track right after the current one."""
        path = self.find(name)
        self._queue.insert(1 if self._current is not None and self._queue else 0, path)
        return path

    def remove(self, index: int) -> Path:
        """
        Remove a queued track by position; the playing track cannot be removed.

        Raises:
            IndexError: If index does not address a waiting track.
        """
        offset = 1 if self._current is not None and self._queue else 0
        if index < 0 or index + offset >= len(self._queue):
            raise IndexError(index)
        path = self._queue[index + offset]
        del self._queue[index + offset]
        return path

    def clear(self) -> None:
        """Drop all waiting tracks, keeping the one that plays."""
        head = self._queue[0] if self._current is not None and self._queue else None
        self._queue.clear()
        if head is not None:
            self._queue.append(head)

    def _rotation_pick(self) -> Path | None:
        if not self._library:
            return None
        if self.shuffle:
            choices = [p for p in self._library if p != self._current] or self._library
            return self._rng.choice(choices)
        if self._current is None or self._current not in self._library:
            return self._library[0]
        index = self._library.index(self._current) + 1
        if index >= len(self._library):
            if self.repeat == RepeatMode.NONE:
                return None
            index = 0
        return self._library[index]

    def advance(self, *, skip: bool = False) -> Path | None:
        """
        Finish the current track and select the next one.

        Args:
            skip: Treat the current track as skipped, ignoring repeat one.

        Returns:
            The track to play next, or None when nothing is left to play.
        """
        if self._current is not None:
            if self.repeat == RepeatMode.ONE and not skip:
                return self._current
            if self._queue and self._queue[0] == self._current:
                self._queue.popleft()
            self._history.append(self._current)
        if not self._queue and (pick := self._rotation_pick()) is not None:
            self._queue.append(pick)
        self._current = self._queue[0] if self._queue else None
        return self._current

    def previous(self) -> Path | None:
        """Put the previously played track at the head of the queue."""
        if not self._history:
            return None
        track = self._history.pop()
        if self._current is not None and self._queue and self._queue[0] == self._current:
            self._queue[0] = track
            self._queue.insert(1, self._current)
        else:
            self._queue.appendleft(track)
        self._current = track
        return track

    def stop(self) -> None:
        """Forget the playing track, leaving the waiting queue intact."""
        if self._current is not None and self._queue and self._queue[0] == self._current:
            self._queue.popleft()
        self._current = None

    def snapshot(self, *, end_after_current: bool = False, playing: bool = False) -> AudioQueueState:
        """Return a serializable view of the queue."""
        return AudioQueueState(
            library=[p.name for p in self._library],
            queue=[p.name for p in self._queue],
            current=self._current.name if self._current else None,
            shuffle=self.shuffle,
            repeat=self.repeat,
            end_after_current=end_after_current,
            playing=playing,
        )


class AudioBroadcaster:
    """
    Plays the queue as one continuous MP3 stream shared by all subscribers.

    One encoder runs per track in real time; its output is fanned out to bounded
    per-subscriber queues. Subscribers that fall behind are dropped.
    """

    def __init__(
        self,
        queue: AudioQueue,
        *,
        ffmpeg_path: str = "ffmpeg",
        bitrate: str = "192k",
    ) -> None:
        """Initialize the broadcaster for a queue."""
        self._queue = queue
        self._ffmpeg_path = ffmpeg_path
        self._bitrate = bitrate
        self._subscribers: set[asyncio.Queue[bytes | None]] = set()
        self._track_cbs: list[Callable[[str | None], None]] = []
        self._finished_cbs: list[Callable[[str], None]] = []
        self._task: asyncio.Task[None] | None = None
        self._handle: ProcessHandle | None = None
        self._wake = asyncio.Event()
        self._skip: str | None = None
        self._paused = False

    @property
    def queue(self) -> AudioQueue:
        """The underlying track queue."""
        return self._queue

    @property
    def playing(self) -> bool:
        """Whether a track is being encoded."""
        return self._handle is not None and self._handle.returncode is None

    @property
    def subscriber_count(self) -> int:
        """Number of connected listeners."""
        return len(self._subscribers)

    def add_track_listener(self, callback: Callable[[str | None], None]) -> Callable[[], None]:
        """
        Register a callback invoked with the name of every track that starts playing.

        None is passed when playback stops. Returns a function that removes the listener.
        """
        self._track_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._track_cbs.remove(callback)

        return _remove

    def add_finished_listener(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register a callback invoked with the track name whenever a track played to its end."""
        self._finished_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._finished_cbs.remove(callback)

        return _remove

    def _signal(self, callbacks: list[Callable[..., None]], value: str | None) -> None:
        for cb in list(callbacks):
            try:
                cb(value)
            except Exception:
                logger.exception("Error in audio listener")

    def subscribe(self) -> asyncio.Queue[bytes | None]:
        """Register a listener queue; None in the queue marks the end of the stream."""
        subscriber: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.add(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: asyncio.Queue[bytes | None]) -> None:
        """Remove a listener queue."""
        self._subscribers.discard(subscriber)

    def _drop(self, subscriber: asyncio.Queue[bytes | None]) -> None:
        self._subscribers.discard(subscriber)
        while not subscriber.empty():
            subscriber.get_nowait()
        subscriber.put_nowait(None)

    def fan_out(self, chunk: bytes) -> None:
        """Deliver a chunk to every subscriber, dropping those that are full."""
        for subscriber in list(self._subscribers):
            try:
                subscriber.put_nowait(chunk)
            except asyncio.QueueFull:
                logger.info("Dropping slow audio listener")
                self._drop(subscriber)

    async def start(self) -> None:
        """Scan the library and start playback."""
        if self._task is not None:
            return
        self._queue.scan()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Stop playback and end all listener streams."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if self._handle is not None:
            await self._handle.stop(0.5)
            self._handle = None
        for subscriber in list(self._subscribers):
            self._drop(subscriber)

    def wake(self) -> None:
        """Re-check the queue, used after tracks were added to an idle broadcaster."""
        self._wake.set()

    async def skip(self) -> None:
        """Stop the current track and continue with the next one."""
        await self._interrupt("next")

    async def previous(self) -> None:
        """Stop the current track and replay the previous one."""
        await self._interrupt("prev")

    async def _interrupt(self, action: str) -> None:
        self._skip = action
        self._wake.set()
        if self._handle is not None:
            await self._handle.stop(0.5)

    def _track_args(self, track: Path) -> list[str]:
        return [
            self._ffmpeg_path,
            "-hide_banner", "-nostats", "-loglevel", "error",
            "-re",
            "-i", str(track),
            "-vn",
            "-f", "mp3",
            "-b:a", self._bitrate,
            "pipe:1",
        ]  # fmt: skip

    def _next_track(self) -> Path | None:
        action, self._skip = self._skip, None
        if action == "prev":
            return self._queue.previous() or self._queue.current
        return self._queue.advance(skip=action == "next")

    async def _run(self) -> None:
        backoff = INITIAL_BACKOFF
        while True:
            track = self._next_track()
            if track is None:
                self._signal(self._track_cbs, None)
                logger.info("Audio queue empty, waiting for tracks")
                self._wake.clear()
                await self._wake.wait()
                self._queue.scan()
                continue
            logger.info("Now playing %s", track.name)
            self._signal(self._track_cbs, track.name)
            try:
                completed = await self._play(track)
            except EncoderError as err:
                logger.warning("Cannot play %s: %s", track.name, err)
                completed = False
            if completed:
                backoff = INITIAL_BACKOFF
                self._signal(self._finished_cbs, track.name)
            elif self._skip is None:
                logger.debug("Retrying audio in %.1fs", backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF)

    async def _play(self, track: Path) -> bool:
        handle = await start_process(self._track_args(track), name="audio", stdin_enabled=True)
        self._handle = handle
        try:
            assert handle.stdout is not None
            while chunk := await handle.stdout.read(CHUNK_SIZE):
                self.fan_out(chunk)
            code = await handle.wait()
        finally:
            await handle.stop(0.5)
            self._handle = None
        if handle.stop_requested and self._skip is not None:
            return False
        if code != 0:
            logger.warning("Audio encoder exited with %d for %s", code, track.name)
            return False
        return True

    async def handle_stream(self, request: web.Request) -> web.StreamResponse:
        """Serve the continuous MP3 stream."""
        response = web.StreamResponse(
            headers={"Content-Type": "audio/mpeg", "Cache-Control": "no-cache, no-store"}
        )
        await response.prepare(request)
        subscriber = self.subscribe()
        logger.debug("Audio listener connected: %s", request.remote)
        try:
            while (chunk := await subscriber.get()) is not None:
                await response.write(chunk)
        except ConnectionResetError:
            logger.debug("Audio listener went away: %s", request.remote)
        finally:
            self.unsubscribe(subscriber)
        return response
