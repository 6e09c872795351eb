from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from printstreamer.config import PrintStreamerConfig
from printstreamer.errors import ApiError
from printstreamer.models import PrinterState, PrintState
from printstreamer.server.lifecycle import PrintLifecycleOrchestrator
from printstreamer.server.poller import PrintStateChanged
from printstreamer.server.timelapse import TimelapseManager


class FakeBroadcaster:
    def __init__(self, *, fail: bool = False) -> None:
        self.broadcast_active = False
        self.fail = fail
        self.started = 0
        self.ended = 0
        self.local = 0

    async def start_broadcast(self) -> None:
        self.started += 1
        if self.fail:
            raise ApiError("quota")
        self.broadcast_active = True

    async def end_broadcast(self) -> bool:
        self.ended += 1
        was_active, self.broadcast_active = self.broadcast_active, False
        return was_active

    async def start_local_stream(self) -> None:
        self.local += 1


class FakeAssembler:
    def __init__(self) -> None:
        self.calls: list[Path] = []

    async def __call__(self, frames_dir: Path, output: Path) -> Path:
        self.calls.append(frames_dir)
        output.write_bytes(b"mp4")
        return output


def _setup(
    tmp_path: Path, *, fail: bool = False
) -> tuple[PrintLifecycleOrchestrator, TimelapseManager, FakeBroadcaster, FakeAssembler]:
    config = PrintStreamerConfig()
    config.timelapse.main_folder = str(tmp_path)
    config.timelapse.start_after_layer1 = False
    config.lifecycle.idle_finalize_delay_seconds = 0.01
    config.lifecycle.offline_grace_seconds = 0.01
    assembler = FakeAssembler()
    timelapse = TimelapseManager(config.timelapse, assembler=assembler)
    broadcaster = FakeBroadcaster(fail=fail)
    return PrintLifecycleOrchestrator(config, timelapse, broadcaster), timelapse, broadcaster, assembler


def _event(state: PrintState, filename: str | None = "benchy.gcode", **kwargs) -> PrintStateChanged:
    return PrintStateChanged(previous=None, current=PrinterState(state=state, filename=filename, **kwargs))


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_print_start_and_idle_finish(tmp_path: Path) -> None:
    orchestrator, timelapse, broadcaster, assembler = _setup(tmp_path)

    await orchestrator.handle_event(_event(PrintState.PRINTING, current_layer=1, total_layers=50))
    await orchestrator.wait_background()
    assert orchestrator.session_name == "benchy"
    assert broadcaster.started == 1
    await timelapse.append_frame("benchy", b"a")

    await orchestrator.handle_event(_event(PrintState.COMPLETE))
    assert orchestrator.idle_pending
    await _wait_for(lambda: orchestrator.job_key is None and bool(assembler.calls))
    assert broadcaster.ended == 1
    assert not broadcaster.broadcast_active
    assert (tmp_path / "benchy" / "benchy.mp4").exists()


@pytest.mark.asyncio
async def test_printing_again_cancels_idle(tmp_path: Path) -> None:
    orchestrator, _, broadcaster, assembler = _setup(tmp_path)
    orchestrator._config.lifecycle.idle_finalize_delay_seconds = 30  # noqa: SLF001

    await orchestrator.handle_event(_event(PrintState.PRINTING))
    await orchestrator.handle_event(_event(PrintState.IDLE))
    assert orchestrator.idle_pending
    await orchestrator.handle_event(_event(PrintState.PRINTING))
    assert not orchestrator.idle_pending
    assert orchestrator.session_name == "benchy"
    await orchestrator.stop()
    assert assembler.calls == []


@pytest.mark.asyncio
async def test_short_outage_keeps_session(tmp_path: Path) -> None:
    orchestrator, _, _, assembler = _setup(tmp_path)
    orchestrator._config.lifecycle.offline_grace_seconds = 30  # noqa: SLF001

    await orchestrator.handle_event(_event(PrintState.PRINTING))
    await orchestrator.handle_event(_event(PrintState.UNKNOWN))
    assert orchestrator.offline_pending
    assert not orchestrator.idle_pending

    await orchestrator.handle_event(_event(PrintState.PRINTING))
    assert not orchestrator.offline_pending
    assert orchestrator.session_name == "benchy"
    assert assembler.calls == []
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_offline_grace_expiry_finishes_print(tmp_path: Path) -> None:
    orchestrator, timelapse, broadcaster, assembler = _setup(tmp_path)
    await orchestrator.handle_event(_event(PrintState.PRINTING))
    await orchestrator.wait_background()
    await timelapse.append_frame("benchy", b"a")

    await orchestrator.handle_event(_event(PrintState.UNKNOWN))
    await _wait_for(lambda: orchestrator.job_key is None and bool(assembler.calls))
    assert broadcaster.ended == 1
    assert not orchestrator.offline_pending


@pytest.mark.asyncio
async def test_last_layer_finalizes_once(tmp_path: Path) -> None:
    orchestrator, timelapse, broadcaster, assembler = _setup(tmp_path)
    await orchestrator.handle_event(_event(PrintState.PRINTING, current_layer=5, total_layers=10))
    await timelapse.append_frame("benchy", b"a")

    await orchestrator.handle_event(_event(PrintState.PRINTING, current_layer=9, total_layers=10))
    assert orchestrator.last_layer_triggered
    assert orchestrator.session_name is None
    await orchestrator.wait_background()
    assert len(assembler.calls) == 1

    await orchestrator.handle_event(_event(PrintState.PRINTING, current_layer=10, total_layers=10))
    await orchestrator.wait_background()
    assert len(assembler.calls) == 1
    assert [p.name for p in tmp_path.iterdir()] == ["benchy"]
    assert broadcaster.broadcast_active


@pytest.mark.asyncio
async def test_last_layer_without_auto_finalize_keeps_session(tmp_path: Path) -> None:
    orchestrator, timelapse, _, assembler = _setup(tmp_path)
    orchestrator._config.timelapse.auto_finalize = False  # noqa: SLF001
    await orchestrator.handle_event(_event(PrintState.PRINTING, current_layer=5, total_layers=10))
    session = timelapse.get("benchy")
    assert session is not None
    assert session.capture_enabled

    await orchestrator.handle_event(_event(PrintState.PRINTING, current_layer=9, total_layers=10))
    await orchestrator.wait_background()
    assert orchestrator.last_layer_triggered
    assert orchestrator.session_name == "benchy"
    assert not session.capture_enabled
    assert assembler.calls == []
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_job_change_finalizes_previous(tmp_path: Path) -> None:
    orchestrator, timelapse, _, assembler = _setup(tmp_path)
    await orchestrator.handle_event(_event(PrintState.PRINTING, filename="a.gcode"))
    await timelapse.append_frame("a", b"a")

    await orchestrator.handle_event(_event(PrintState.PRINTING, filename="b.gcode"))
    await orchestrator.wait_background()
    assert orchestrator.job_key == "b.gcode"
    assert orchestrator.session_name == "b"
    assert assembler.calls == [tmp_path / "a"]


@pytest.mark.asyncio
async def test_broadcast_failure_falls_back_to_local(tmp_path: Path) -> None:
    orchestrator, _, broadcaster, _ = _setup(tmp_path, fail=True)
    await orchestrator.handle_event(_event(PrintState.PRINTING))
    await orchestrator.wait_background()
    assert broadcaster.started == 1
    assert broadcaster.local == 1


@pytest.mark.asyncio
async def test_mix_disabled_ends_broadcast_once(tmp_path: Path) -> None:
    orchestrator, _, broadcaster, _ = _setup(tmp_path)
    broadcaster.broadcast_active = True

    await orchestrator.notify_mix_disabled()
    await orchestrator.notify_mix_disabled()
    assert broadcaster.ended == 1

    await orchestrator.handle_event(_event(PrintState.PRINTING))
    await orchestrator.wait_background()
    assert broadcaster.started == 0
    assert broadcaster.local == 1

    orchestrator.notify_mix_enabled()
    assert not orchestrator.status()["mix_disabled"]


@pytest.mark.asyncio
async def test_end_after_song(tmp_path: Path) -> None:
    orchestrator, _, broadcaster, _ = _setup(tmp_path)
    config = orchestrator._config  # noqa: SLF001
    broadcaster.broadcast_active = True

    orchestrator.on_audio_track_finished("a.mp3")
    await orchestrator.wait_background()
    assert broadcaster.ended == 0

    config.stream.end_after_song = True
    orchestrator.on_audio_track_finished("a.mp3")
    await orchestrator.wait_background()
    assert broadcaster.ended == 1
    assert config.stream.end_after_song is False


@pytest.mark.asyncio
async def test_worker_handles_queued_events(tmp_path: Path) -> None:
    orchestrator, _, _, _ = _setup(tmp_path)
    await orchestrator.start()
    orchestrator.on_state_changed(_event(PrintState.PRINTING))
    orchestrator.on_state_changed(_event(PrintState.PAUSED))
    await orchestrator.drain()
    assert orchestrator.job_key == "benchy.gcode"
    assert orchestrator.status()["timelapse"] == "benchy"
    await orchestrator.stop()
