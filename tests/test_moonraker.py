from __future__ import annotations

from datetime import timedelta
import socket

from aiohttp import web
import pytest

from printstreamer.client.moonraker import (
    MoonrakerClient,
    normalize_progress,
    parse_file_metadata,
    parse_print_status,
)
from printstreamer.config import MoonrakerConfig
from printstreamer.models import PrintState, Temperature

STATUS = {
    "print_stats": {
        "state": "printing",
        "filename": "benchy.gcode",
        "print_duration": 600.0,
        "info": {"current_layer": 10, "total_layer": 40},
    },
    "display_status": {"progress": 0.5},
    "virtual_sdcard": {"progress": 0.49},
    "extruder": {"temperature": 214.6, "target": 215.0},
    "heater_bed": {"temperature": 60.1, "target": 60.0},
}


def _get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_normalize_progress() -> None:
    assert normalize_progress(0.25) == 25.0
    assert normalize_progress(42) == 42.0
    assert normalize_progress(250) == 100.0
    assert normalize_progress(None) is None
    assert normalize_progress("n/a") is None


def test_parse_print_status() -> None:
    state = parse_print_status(STATUS)
    assert state.state == PrintState.PRINTING
    assert state.filename == "benchy.gcode"
    assert state.job_key == "benchy.gcode"
    assert state.progress_percent == 50.0
    assert (state.current_layer, state.total_layers) == (10, 40)
    assert state.elapsed == timedelta(seconds=600)
    assert state.remaining == timedelta(seconds=600)
    assert state.tool0_temp == Temperature(actual=214.6, target=215.0)


def test_parse_print_status_sparse() -> None:
    state = parse_print_status({"print_stats": {"state": "standby"}})
    assert state.state == PrintState.IDLE
    assert state.filename is None
    assert state.progress_percent is None
    assert state.bed_temp is None
    assert parse_print_status({}).state == PrintState.UNKNOWN


def test_parse_file_metadata() -> None:
    metadata = parse_file_metadata(
        "benchy.gcode",
        {
            "slicer": "OrcaSlicer",
            "filament_total": 3021.5,
            "filament_type": ["PLA", "PETG"],
            "layer_count": 120,
            "filament_colors": [],
            "filament_color": "#FF0000",
        },
    )
    assert metadata.slicer == "OrcaSlicer"
    assert metadata.filament_total_mm == 3021.5
    assert metadata.filament_type == "PLA;PETG"
    assert metadata.layer_count == 120
    assert metadata.filament_color == "#FF0000"


@pytest.mark.asyncio
async def test_client_against_server() -> None:
    seen_keys: list[str | None] = []

    async def _query(request: web.Request) -> web.Response:
        seen_keys.append(request.headers.get("X-Api-Key"))
        return web.json_response({"result": {"eventtime": 1.0, "status": STATUS}})

    async def _metadata(request: web.Request) -> web.Response:
        if request.query["filename"] != "gcodes/benchy.gcode":
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response({"result": {"slicer": "PrusaSlicer", "layer_count": 40}})

    async def _download(request: web.Request) -> web.Response:
        return web.Response(body=b"G28\n")

    async def _list(request: web.Request) -> web.Response:
        assert request.query["root"] == "gcodes"
        return web.json_response({"result": [{"path": "benchy.gcode", "size": 4}]})

    app = web.Application()
    app.router.add_get("/printer/objects/query", _query)
    app.router.add_get("/server/files/metadata", _metadata)
    app.router.add_get("/server/files/gcodes/{name}", _download)
    app.router.add_get("/server/files/list", _list)
    runner = web.AppRunner(app)
    await runner.setup()
    port = _get_free_port()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()

    client = MoonrakerClient(MoonrakerConfig(base_url=f"http://127.0.0.1:{port}", api_key="k"))
    try:
        assert client.available is None
        state = await client.get_print_info()
        assert state is not None
        assert state.state == PrintState.PRINTING
        assert seen_keys == ["k"]
        assert client.available is True

        metadata = await client.get_file_metadata("benchy.gcode")
        assert metadata == {"slicer": "PrusaSlicer", "layer_count": 40}
        info = await client.get_file_info("benchy.gcode")
        assert info is not None
        assert info.layer_count == 40

        assert await client.download_file("gcodes/benchy.gcode") == b"G28\n"
        assert await client.list_files() == [{"path": "benchy.gcode", "size": 4}]
    finally:
        await client.close()
        await runner.cleanup()


@pytest.mark.asyncio
async def test_client_unreachable() -> None:
    client = MoonrakerClient(MoonrakerConfig(base_url=f"http://127.0.0.1:{_get_free_port()}"))
    try:
        assert await client.get_print_info() is None
        assert client.available is False
    finally:
        await client.close()
