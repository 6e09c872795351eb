from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path
import sys

from aiohttp import ClientSession
import pytest

from printstreamer.config import OverlayConfig
from printstreamer.errors import EncoderError
from printstreamer.server import stage as stage_module
from printstreamer.server.broadcast import BroadcastStage
from printstreamer.server.mix import FrameGrabStage, MixStage
from printstreamer.server.overlay import (
    OverlayLayout,
    OverlayStage,
    banner_height,
    build_filter,
    escape_filter_value,
)
from printstreamer.server.process import ProcessHandle, start_process
from printstreamer.server.stage import EncoderStage
from printstreamer.server.timelapse import AssemblyJob


def _value_after(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


def test_escape_filter_value() -> None:
    assert escape_filter_value("C:\\fonts\\mono.ttf") == "C:\\\\fonts\\\\mono.ttf"
    assert escape_filter_value("it's") == "it\\'s"


def test_banner_height() -> None:
    config = OverlayConfig(banner_fraction=0.25)
    assert banner_height(config, 480) == 120
    assert banner_height(OverlayConfig(banner_fraction=0.9), 100) == 60
    assert banner_height(OverlayConfig(box_height=75), 1080) == 75
    assert banner_height(OverlayConfig(banner_fraction=0.2), 1081) == 217


def test_layout_anchors_text_inside_banner() -> None:
    layout = OverlayLayout.calculate(OverlayConfig(box_border_w=10, banner_fraction=0.2), 720)
    assert layout.banner_top == 0
    assert layout.banner_height == 144
    assert (layout.text_x, layout.text_y) == (5, 5)


def test_filter_chain() -> None:
    config = OverlayConfig(font_file="/fonts/it's.ttf", font_size=20, box_color="black@0.5")
    chain = build_filter(config, "/tmp/overlay_text.txt", OverlayLayout.calculate(config, 480))
    assert chain.startswith("format=yuv420p,drawbox=x=0:y=0:w=iw:h=96:color=black@0.5:t=fill,")
    assert "drawtext=fontfile='/fonts/it\\'s.ttf'" in chain
    assert ":textfile='/tmp/overlay_text.txt':reload=1:expansion=none" in chain
    assert ":fontsize=20:fontcolor=white:x=4:y=4" in chain


def test_overlay_stage_argv() -> None:
    config = OverlayConfig(quality=4, text_file="banner.txt")
    stage = OverlayStage(config, "http://127.0.0.1:8080/stream/source", ffmpeg_path="/usr/bin/ffmpeg")
    argv = stage.argv
    assert argv[0] == "/usr/bin/ffmpeg"
    assert "-nostdin" not in argv
    assert _value_after(argv, "-i") == "http://127.0.0.1:8080/stream/source"
    assert _value_after(argv, "-reconnect_on_network_error") == "1"
    assert _value_after(argv, "-fflags") == "+nobuffer+genpts+discardcorrupt"
    assert _value_after(argv, "-q:v") == "4"
    assert _value_after(argv, "-f") == "mjpeg"
    assert argv[-5:] == ["-f", "mpjpeg", "-boundary_tag", "frame", "pipe:1"]
    assert "textfile='banner.txt'" in _value_after(argv, "-vf")
    assert "-an" in argv


def test_overlay_stage_without_banner() -> None:
    stage = OverlayStage(OverlayConfig(enabled=False), "http://src")
    assert "-vf" not in stage.build_args()


def test_mix_stage_args() -> None:
    args = MixStage("http://h/stream/overlay", "http://h/stream/audio").build_args()
    assert _value_after(args, "-profile:v") == "high"
    assert _value_after(args, "-tune") == "zerolatency"
    assert _value_after(args, "-c:a") == "aac"
    assert _value_after(args, "-movflags") == "+frag_keyframe+empty_moov"
    assert args.count("-map") == 2
    assert args[-1] == "pipe:1"

    silent = MixStage("http://h/stream/overlay", None).build_args()
    assert "-c:a" not in silent
    assert "http://h/stream/audio" not in silent
    assert silent.count("-map") == 1


def test_frame_grab_args() -> None:
    args = FrameGrabStage("http://h/stream/mix", input_format="mp4").build_args()
    assert _value_after(args, "-f") == "mp4"
    assert _value_after(args, "-frames:v") == "1"
    assert args[-3:] == ["-f", "image2pipe", "pipe:1"]


@pytest.mark.asyncio
async def test_broadcast_stage_remuxes_to_flv() -> None:
    async with ClientSession() as session:
        stage = BroadcastStage("http://h/stream/mix", "rtmp://a.rtmp.youtube.com/live2/key", session)
        args = stage.build_args()
    assert _value_after(args, "-c") == "copy"
    assert _value_after(args, "-flvflags") == "no_duration_filesize"
    assert args[-3:] == ["-f", "flv", "rtmp://a.rtmp.youtube.com/live2/key"]
    assert stage.stop_grace == 15.0


def test_assembly_job_args(tmp_path: Path) -> None:
    output = tmp_path / "benchy.mp4"
    args = AssemblyJob(tmp_path, output).build_args()
    assert _value_after(args, "-framerate") == "30"
    assert _value_after(args, "-start_number") == "0"
    assert _value_after(args, "-i") == str(tmp_path / "frame_%06d.jpg")
    assert _value_after(args, "-c:v") == "libx264"
    assert args[-1] == str(output)

    glob_args = AssemblyJob(tmp_path, output, use_glob=True).build_args()
    assert _value_after(glob_args, "-pattern_type") == "glob"
    assert _value_after(glob_args, "-i") == str(tmp_path / "frame_*.jpg")


class SleepStage(EncoderStage):
    name = "sleeper"
    stop_grace = 0.1

    def __init__(self) -> None:
        super().__init__(sys.executable)

    def build_args(self) -> list[str]:
        return ["-c", "import time\ntime.sleep(30)\n"]


@pytest.mark.asyncio
async def test_stage_stopped_before_start_never_spawns(monkeypatch: pytest.MonkeyPatch) -> None:
    spawned: list[Sequence[str]] = []

    async def _recording_start(argv: Sequence[str], **kwargs) -> ProcessHandle:
        spawned.append(argv)
        return await start_process(argv, **kwargs)

    monkeypatch.setattr(stage_module, "start_process", _recording_start)
    stage = SleepStage()
    await stage.stop()
    assert stage.stopped
    with pytest.raises(EncoderError):
        await stage.start()
    assert spawned == []
    assert stage.handle is None


@pytest.mark.asyncio
async def test_stage_stopped_while_spawning(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _slow_start(argv: Sequence[str], **kwargs) -> ProcessHandle:
        await asyncio.sleep(0.2)
        return await start_process(argv, **kwargs)

    monkeypatch.setattr(stage_module, "start_process", _slow_start)
    stage = SleepStage()
    starting = asyncio.create_task(stage.start())
    await asyncio.sleep(0.05)
    await stage.stop()

    with pytest.raises(EncoderError):
        await starting
    assert stage.handle is not None
    assert stage.handle.returncode is not None
    assert not stage.running
