from __future__ import annotations

from pathlib import Path

import orjson
import pytest

from printstreamer.config import PrintStreamerConfig, load_config
from printstreamer.errors import ConfigError
from printstreamer.models import Privacy


def _write(path: Path, data: dict) -> Path:
    path.write_bytes(orjson.dumps(data))
    return path


def test_load_config_pascal_case_keys(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "config.json",
        {
            "Stream": {"Source": "http://cam/stream", "Mix": {"Enabled": False}},
            "Moonraker": {"BaseUrl": "http://printer:7125", "ApiKey": "secret"},
            "Overlay": {"BannerFraction": 0.9, "RefreshMs": 50, "BoxBorderW": 12},
            "YouTube": {"LiveBroadcast": {"Privacy": "private"}, "Reuse": {"TtlMinutes": 30}},
            "Timelapse": {"LastLayerOffset": 2},
        },
    )
    config = load_config(path, environ={})
    assert config.stream.source == "http://cam/stream"
    assert config.stream.mix.enabled is False
    assert config.moonraker.api_key == "secret"
    assert config.overlay.banner_fraction == 0.6
    assert config.overlay.refresh_ms == 200
    assert config.overlay.box_border_w == 12
    assert config.youtube.live_broadcast.privacy == Privacy.PRIVATE
    assert config.youtube.reuse.ttl_minutes == 30
    assert config.timelapse.last_layer_offset == 2


def test_env_overrides_file(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "config.json",
        {"Stream": {"Source": "http://cam"}, "Moonraker": {"BaseUrl": "http://printer"}},
    )
    config = load_config(
        path,
        environ={
            "Stream__Mix__Enabled": "false",
            "Server__Port": "9090",
            "Moonraker__ApiKey": "abc",
            "PATH": "/usr/bin",
        },
    )
    assert config.stream.mix.enabled is False
    assert config.server.port == 9090
    assert config.moonraker.api_key == "abc"


def test_missing_source_is_fatal() -> None:
    with pytest.raises(ConfigError):
        load_config(environ={"Moonraker__BaseUrl": "http://printer"})
    config = load_config(environ={}, validate=False)
    assert config.stream.source == ""


def test_unreadable_file(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(ConfigError):
        load_config(path, environ={})
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.json", environ={})


def test_get_and_set_by_key() -> None:
    config = PrintStreamerConfig()
    assert config.get("Stream:Mix:Enabled") is True
    config.set("Stream:Mix:Enabled", False)
    assert config.stream.mix.enabled is False
    config.set("Stream:EndAfterSong", True)
    assert config.get("stream:end_after_song") is True
    with pytest.raises(ConfigError):
        config.get("Stream:Nope")
    with pytest.raises(ConfigError):
        config.set("Stream:Mix", False)


def test_base_url() -> None:
    config = PrintStreamerConfig()
    config.server.port = 8123
    assert config.base_url == "http://127.0.0.1:8123"
    config.server.public_base_url = "http://streamer.local:80/"
    assert config.base_url == "http://streamer.local:80"
