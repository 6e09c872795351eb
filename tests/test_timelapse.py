from __future__ import annotations

from datetime import timedelta
import os
from pathlib import Path
import time

import pytest

from printstreamer.config import TimelapseConfig
from printstreamer.errors import Conflict, NoFramesError
from printstreamer.models import PrintState
from printstreamer.server.timelapse import (
    TimelapseManager,
    is_last_layer,
    list_frames,
    read_metadata,
    sanitize_name,
)


class FakeAssembler:
    def __init__(self) -> None:
        self.calls: list[Path] = []

    async def __call__(self, frames_dir: Path, output: Path) -> Path:
        self.calls.append(frames_dir)
        output.write_bytes(b"mp4")
        return output


def _manager(tmp_path: Path, **kwargs) -> tuple[TimelapseManager, FakeAssembler]:
    assembler = FakeAssembler()
    kwargs.setdefault("start_after_layer1", False)
    config = TimelapseConfig(main_folder=str(tmp_path), **kwargs)
    return TimelapseManager(config, assembler=assembler), assembler


def test_sanitize_name() -> None:
    assert sanitize_name("prints/Benchy & Co (v2).gcode") == "Benchy_and_Co_v2"
    assert sanitize_name("C:\\jobs\\a:b?.gcode") == "a_b"
    assert sanitize_name("...") == "unknown"
    assert sanitize_name(None) == "unknown"


def test_is_last_layer() -> None:
    config = TimelapseConfig(last_layer_offset=1)
    assert is_last_layer(config, current_layer=49, total_layers=50)
    assert not is_last_layer(config, current_layer=10, total_layers=50)
    assert not is_last_layer(config, current_layer=0, total_layers=1)
    assert is_last_layer(config, current_layer=None, total_layers=None, progress=99.0)
    assert is_last_layer(
        config, current_layer=None, total_layers=None, remaining=timedelta(seconds=20)
    )
    assert not is_last_layer(
        config, current_layer=None, total_layers=None, remaining=timedelta(seconds=0)
    )


@pytest.mark.asyncio
async def test_frames_are_contiguous(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path)
    name = await manager.start_timelapse("benchy.gcode", "benchy.gcode")
    assert name == "benchy"
    assert await manager.start_timelapse("benchy.gcode", "benchy.gcode") == "benchy"

    for i in range(3):
        await manager.append_frame(name, b"jpeg%d" % i)
    frames = list_frames(tmp_path / "benchy")
    assert [p.name for p in frames] == [
        "frame_000000.jpg",
        "frame_000001.jpg",
        "frame_000002.jpg",
    ]
    mtimes = [p.stat().st_mtime for p in frames]
    assert mtimes == sorted(mtimes)
    metadata = read_metadata(tmp_path / "benchy")
    assert metadata is not None
    assert metadata.moonraker_filename == "benchy.gcode"
    assert metadata.finalized_at is None


@pytest.mark.asyncio
async def test_resume_by_filename(tmp_path: Path) -> None:
    first, _ = _manager(tmp_path)
    name = await first.start_timelapse("benchy.gcode", "benchy.gcode")
    await first.append_frame(name, b"a")
    await first.append_frame(name, b"b")
    await first.close()

    second, _ = _manager(tmp_path)
    assert await second.start_timelapse("benchy.gcode", "benchy.gcode") == "benchy"
    path = await second.append_frame("benchy", b"c")
    assert path == tmp_path / "benchy" / "frame_000002.jpg"


@pytest.mark.asyncio
async def test_resume_by_name_only_within_window(tmp_path: Path) -> None:
    first, _ = _manager(tmp_path)
    await first.start_timelapse("cube")
    await first.append_frame("cube", b"a")
    await first.close()

    second, _ = _manager(tmp_path)
    assert await second.start_timelapse("cube") == "cube"
    await second.close()

    old = time.time() - 3600
    os.utime(tmp_path / "cube" / "frame_000000.jpg", (old, old))
    third, _ = _manager(tmp_path)
    assert await third.start_timelapse("cube") == "cube_1"


@pytest.mark.asyncio
async def test_resume_by_filename_ignores_case(tmp_path: Path) -> None:
    first, _ = _manager(tmp_path)
    name = await first.start_timelapse("Benchy.gcode", "Benchy.gcode")
    assert name == "Benchy"
    await first.append_frame(name, b"a")
    await first.close()
    old = time.time() - 3600
    os.utime(tmp_path / "Benchy" / "frame_000000.jpg", (old, old))

    second, _ = _manager(tmp_path)
    assert await second.start_timelapse("benchy.gcode", "BENCHY.GCODE") == "Benchy"
    path = await second.append_frame("Benchy", b"b")
    assert path == tmp_path / "Benchy" / "frame_000001.jpg"


@pytest.mark.asyncio
async def test_resume_directory_without_metadata(tmp_path: Path) -> None:
    directory = tmp_path / "cube"
    directory.mkdir()
    (directory / "frame_000000.jpg").write_bytes(b"a")
    (directory / "frame_000001.jpg").write_bytes(b"b")
    stray = tmp_path / "cube_7"
    stray.mkdir()
    (stray / "frame_000000.jpg").write_bytes(b"a")

    manager, _ = _manager(tmp_path)
    assert await manager.start_timelapse("cube.gcode", "cube.gcode") == "cube"
    path = await manager.append_frame("cube", b"c")
    assert path == directory / "frame_000002.jpg"
    metadata = read_metadata(directory)
    assert metadata is not None
    assert metadata.moonraker_filename == "cube.gcode"


@pytest.mark.asyncio
async def test_stale_directory_without_metadata_is_not_resumed(tmp_path: Path) -> None:
    directory = tmp_path / "cube"
    directory.mkdir()
    frame = directory / "frame_000000.jpg"
    frame.write_bytes(b"a")
    old = time.time() - 3600
    os.utime(frame, (old, old))

    manager, _ = _manager(tmp_path)
    assert await manager.start_timelapse("cube.gcode", "cube.gcode") == "cube_1"


@pytest.mark.asyncio
async def test_pause_skips_frames(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path)
    name = await manager.start_timelapse("benchy.gcode", "benchy.gcode")
    await manager.append_frame(name, b"a")

    await manager.notify_printer_state(name, PrintState.PAUSED)
    assert await manager.append_frame(name, b"b") is None
    assert manager.list_timelapses()[0].is_paused

    await manager.notify_printer_state(name, PrintState.PRINTING)
    path = await manager.append_frame(name, b"c")
    assert path is not None
    assert path.name == "frame_000001.jpg"


@pytest.mark.asyncio
async def test_finalize_once(tmp_path: Path) -> None:
    manager, assembler = _manager(tmp_path)
    name = await manager.start_timelapse("benchy.gcode", "benchy.gcode")
    await manager.append_frame(name, b"a")

    video = await manager.finalize(name)
    assert video == tmp_path / "benchy" / "benchy.mp4"
    assert await manager.finalize(name) is None
    assert assembler.calls == [tmp_path / "benchy"]
    assert manager.get(name) is None

    metadata = read_metadata(tmp_path / "benchy")
    assert metadata is not None
    assert metadata.video == "benchy.mp4"
    assert metadata.finalized_at is not None

    assert await manager.start_timelapse("benchy.gcode", "benchy.gcode") == "benchy_1"


@pytest.mark.asyncio
async def test_finalize_without_frames(tmp_path: Path) -> None:
    manager, assembler = _manager(tmp_path)
    name = await manager.start_timelapse("empty")
    with pytest.raises(NoFramesError):
        await manager.finalize(name)
    assert await manager.stop_timelapse(name) is None
    assert assembler.calls == []


@pytest.mark.asyncio
async def test_last_layer_finalizes_once(tmp_path: Path) -> None:
    manager, assembler = _manager(tmp_path, start_after_layer1=True)
    name = await manager.start_timelapse("benchy.gcode", "benchy.gcode")
    session = manager.get(name)
    assert session is not None
    assert not session.capture_enabled

    assert await manager.notify_print_progress(name, 0, 10) is None
    assert not session.capture_enabled
    assert await manager.notify_print_progress(name, 1, 10) is None
    assert session.capture_enabled

    await manager.append_frame(name, b"a")
    assert await manager.notify_print_progress(name, 9, 10) == session.video_path
    assert await manager.notify_print_progress(name, 10, 10) is None
    assert len(assembler.calls) == 1


@pytest.mark.asyncio
async def test_last_layer_without_auto_finalize_stops_capture(tmp_path: Path) -> None:
    manager, assembler = _manager(tmp_path, start_after_layer1=True, auto_finalize=False)
    name = await manager.start_timelapse("benchy.gcode", "benchy.gcode")
    session = manager.get(name)
    assert session is not None

    assert await manager.notify_print_progress(name, 1, 10) is None
    assert session.capture_enabled
    assert await manager.notify_print_progress(name, 9, 10) is None
    assert session.last_layer_triggered
    assert not session.capture_enabled

    assert await manager.notify_print_progress(name, 10, 10) is None
    assert not session.capture_enabled
    assert manager.get(name) is session
    assert assembler.calls == []


@pytest.mark.asyncio
async def test_delete_frame(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path)
    name = await manager.start_timelapse("benchy.gcode", "benchy.gcode")
    for data in (b"a", b"b", b"c"):
        await manager.append_frame(name, data)

    with pytest.raises(Conflict):
        await manager.delete_frame(name, "frame_000001.jpg")
    assert len(list_frames(tmp_path / name)) == 3

    await manager.finalize(name)
    remaining = await manager.delete_frame(name, "frame_000001.jpg")
    assert remaining == ["frame_000000.jpg", "frame_000001.jpg"]
    assert (tmp_path / name / "frame_000001.jpg").read_bytes() == b"c"

    with pytest.raises(FileNotFoundError):
        await manager.delete_frame(name, "frame_000005.jpg")
    with pytest.raises(ValueError):
        await manager.delete_frame(name, "../secret.jpg")


@pytest.mark.asyncio
async def test_generate_and_delete(tmp_path: Path) -> None:
    manager, assembler = _manager(tmp_path)
    name = await manager.start_timelapse("cube")
    await manager.append_frame(name, b"a")

    with pytest.raises(Conflict):
        await manager.generate(name)
    await manager.close()
    manager, assembler = _manager(tmp_path)
    assert await manager.generate(name) == tmp_path / "cube" / "cube.mp4"

    infos = manager.list_timelapses()
    assert [info.name for info in infos] == ["cube"]
    assert infos[0].video_files == ["cube.mp4"]
    assert infos[0].frame_count == 1

    await manager.delete_timelapse(name)
    assert not (tmp_path / "cube").exists()


def test_rejects_path_traversal(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path)
    with pytest.raises(ValueError):
        manager.metadata("../outside")
    with pytest.raises(ValueError):
        manager.frame_path("cube", "notes.txt")
    with pytest.raises(FileNotFoundError):
        manager.frames("missing")
