from __future__ import annotations

import asyncio
from pathlib import Path
import random

import pytest

from printstreamer.models import RepeatMode
from printstreamer.server.audio import SUBSCRIBER_QUEUE_SIZE, AudioBroadcaster, AudioQueue


def _library(tmp_path: Path) -> AudioQueue:
    for name in ("b.mp3", "a.mp3", "c.flac", "notes.txt"):
        (tmp_path / name).write_bytes(b"\x00")
    queue = AudioQueue(tmp_path, rng=random.Random(1))
    queue.scan()
    return queue


def test_scan_filters_and_sorts(tmp_path: Path) -> None:
    queue = _library(tmp_path)
    assert [p.name for p in queue.library] == ["a.mp3", "b.mp3", "c.flac"]
    assert queue.repeat == RepeatMode.ALL
    with pytest.raises(KeyError):
        queue.find("notes.txt")


def test_scan_missing_folder(tmp_path: Path) -> None:
    queue = AudioQueue(tmp_path / "missing")
    assert queue.scan() == []
    assert queue.advance() is None


def test_queue_editing(tmp_path: Path) -> None:
    queue = _library(tmp_path)
    assert queue.advance() == tmp_path / "a.mp3"

    queue.enqueue("c.flac")
    queue.play_next("b.mp3")
    assert [p.name for p in queue.queue] == ["a.mp3", "b.mp3", "c.flac"]

    assert queue.remove(1) == tmp_path / "c.flac"
    with pytest.raises(IndexError):
        queue.remove(1)

    queue.enqueue("c.flac")
    queue.clear()
    assert [p.name for p in queue.queue] == ["a.mp3"]


def test_advance_and_previous(tmp_path: Path) -> None:
    queue = _library(tmp_path)
    queue.repeat = RepeatMode.NONE
    assert queue.advance().name == "a.mp3"
    assert queue.advance().name == "b.mp3"

    assert queue.previous().name == "a.mp3"
    assert [p.name for p in queue.queue] == ["a.mp3", "b.mp3"]

    assert queue.advance().name == "b.mp3"
    assert queue.advance().name == "c.flac"
    assert queue.advance() is None
    assert queue.current is None


def test_repeat_one_unless_skipped(tmp_path: Path) -> None:
    queue = _library(tmp_path)
    queue.repeat = RepeatMode.ONE
    assert queue.advance().name == "a.mp3"
    assert queue.advance().name == "a.mp3"
    assert queue.advance(skip=True).name == "b.mp3"


def test_repeat_all_wraps(tmp_path: Path) -> None:
    queue = _library(tmp_path)
    names = [queue.advance().name for _ in range(4)]
    assert names == ["a.mp3", "b.mp3", "c.flac", "a.mp3"]


def test_shuffle_avoids_current(tmp_path: Path) -> None:
    queue = _library(tmp_path)
    queue.shuffle = True
    previous = queue.advance()
    for _ in range(10):
        track = queue.advance()
        assert track != previous
        previous = track


def test_snapshot(tmp_path: Path) -> None:
    queue = _library(tmp_path)
    queue.advance()
    state = queue.snapshot(end_after_current=True, playing=True)
    assert state.current == "a.mp3"
    assert state.queue == ["a.mp3"]
    assert state.to_dict()["repeat"] == "all"
    assert state.end_after_current is True


@pytest.mark.asyncio
async def test_slow_listener_is_dropped(tmp_path: Path) -> None:
    broadcaster = AudioBroadcaster(AudioQueue(tmp_path))
    fast = broadcaster.subscribe()
    slow = broadcaster.subscribe()
    for i in range(SUBSCRIBER_QUEUE_SIZE):
        broadcaster.fan_out(b"x")
        if i % 2 == 0:
            fast.get_nowait()
    while not fast.empty():
        fast.get_nowait()

    broadcaster.fan_out(b"y")
    assert broadcaster.subscriber_count == 1
    assert slow.get_nowait() is None
    assert fast.get_nowait() == b"y"

    await broadcaster.stop()
    assert fast.get_nowait() is None


@pytest.mark.asyncio
async def test_track_listener_remover(tmp_path: Path) -> None:
    broadcaster = AudioBroadcaster(AudioQueue(tmp_path))
    seen: list[str | None] = []
    remove = broadcaster.add_track_listener(seen.append)
    broadcaster._signal(broadcaster._track_cbs, "a.mp3")  # noqa: SLF001
    remove()
    remove()
    broadcaster._signal(broadcaster._track_cbs, "b.mp3")  # noqa: SLF001
    assert seen == ["a.mp3"]
    await asyncio.sleep(0)
