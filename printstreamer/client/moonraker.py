"""Client for the Moonraker printer API."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Protocol
from urllib.parse import quote

import orjson
from aiohttp import ClientError, ClientSession, ClientTimeout
from yarl import URL

from printstreamer.config import MoonrakerConfig
from printstreamer.models import FileMetadata, PrinterState, PrintState, Temperature

logger = logging.getLogger(__name__)

STATUS_TIMEOUT = 4.0
METADATA_TIMEOUT = 5.0
DOWNLOAD_TIMEOUT = 60.0
STATUS_QUERY = (
    "print_stats&virtual_sdcard=progress,print_duration&display_status=progress"
    "&extruder=temperature,target&heater_bed=temperature,target"
)


class PrinterDataProvider(Protocol):
    """Read access to printer state and files. Failures are reported as None."""

    async def get_print_info(self) -> PrinterState | None:
        """Return a snapshot of the printer."""

    async def get_file_metadata(self, filename: str) -> dict[str, Any] | None:
        """Return the slicer metadata of a G-code file."""

    async def list_files(self, path: str | None = None) -> list[dict[str, Any]] | None:
        """List G-code files."""

    async def download_file(self, filename: str) -> bytes | None:
        """Download a G-code file."""

    async def query_objects(self, query: str) -> dict[str, Any] | None:
        """Query printer objects, returning the status mapping."""


def _float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> int | None:
    number = _float(value)
    return int(number) if number is not None else None


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def normalize_progress(value: Any) -> float | None:
    """Return progress in percent; fractions (<= 1) are scaled by 100."""
    progress = _float(value)
    if progress is None or progress < 0:
        return None
    if progress <= 1.0:
        progress *= 100.0
    return min(progress, 100.0)


def _temperature(heater: Any) -> Temperature | None:
    if not isinstance(heater, Mapping):
        return None
    actual = _float(heater.get("temperature"))
    target = _float(heater.get("target"))
    if actual is None and target is None:
        return None
    return Temperature(actual=actual, target=target)


def parse_print_status(status: Mapping[str, Any]) -> PrinterState:
    """Build a PrinterState from a Moonraker objects query status mapping."""
    print_stats = status.get("print_stats") or {}
    info = print_stats.get("info") or {}
    state = PrintState.from_moonraker(print_stats.get("state"))

    current_layer = _int(_first(info, "current_layer", "CURRENT_LAYER"))
    total_layers = _int(
        _first(info, "total_layer", "TOTAL_LAYER", "total_layers", "layer_count")
    )

    display = status.get("display_status") or {}
    sdcard = status.get("virtual_sdcard") or {}
    progress = normalize_progress(display.get("progress") or sdcard.get("progress"))
    if progress is None and current_layer is not None and total_layers:
        progress = min(100.0, current_layer / total_layers * 100.0)

    duration = _float(print_stats.get("print_duration"))
    elapsed = timedelta(seconds=duration) if duration is not None else None
    remaining: timedelta | None = None
    reported_remaining = _float(_first(info, "time_remaining", "remaining_time"))
    if reported_remaining is not None:
        remaining = timedelta(seconds=max(0.0, reported_remaining))
    elif duration and progress and progress > 0:
        remaining = timedelta(seconds=max(0.0, duration / (progress / 100.0) - duration))

    return PrinterState(
        state=state,
        filename=print_stats.get("filename") or None,
        progress_percent=progress,
        current_layer=current_layer,
        total_layers=total_layers,
        elapsed=elapsed,
        remaining=remaining,
        bed_temp=_temperature(status.get("heater_bed")),
        tool0_temp=_temperature(status.get("extruder")),
    )


def parse_file_metadata(filename: str, metadata: Mapping[str, Any]) -> FileMetadata:
    """Extract the values shown in the overlay from Moonraker file metadata."""

    def _text(key: str) -> str | None:
        value = metadata.get(key)
        if isinstance(value, list):
            value = ";".join(str(v) for v in value if v)
        return str(value) if value not in (None, "") else None

    return FileMetadata(
        filename=filename,
        slicer=_text("slicer"),
        estimated_time=_float(metadata.get("estimated_time")),
        layer_count=_int(metadata.get("layer_count")),
        filament_total_mm=_float(metadata.get("filament_total")),
        filament_type=_text("filament_type"),
        filament_name=_text("filament_name"),
        filament_brand=_text("filament_brand"),
        filament_color=_text("filament_colors") or _text("filament_color"),
    )


class MoonrakerClient:
    """Printer data provider talking to a Moonraker instance over HTTP."""

    _session: ClientSession
    _owns_session: bool
    """Whether this client created the session and must close it."""

    def __init__(self, config: MoonrakerConfig, session: ClientSession | None = None) -> None:
        """
        Initialize the client.

        Args:
            config: Moonraker settings (base URL, API key, auth header).
            session: Optional ClientSession. If None, a new session is created.
        """
        self._config = config
        if session is None:
            self._session = ClientSession(timeout=ClientTimeout(total=30))
            self._owns_session = True
        else:
            self._session = session
            self._owns_session = False
        self._available: bool | None = None

    @property
    def base_url(self) -> URL:
        """Moonraker base URL."""
        return URL(self._config.base_url.rstrip("/") + "/")

    @property
    def available(self) -> bool | None:
        """Result of the last request, None before the first one."""
        return self._available

    def _headers(self) -> dict[str, str]:
        if self._config.api_key:
            return {self._config.auth_header or "X-Api-Key": self._config.api_key}
        return {}

    def _mark(self, available: bool, reason: object = None) -> None:
        if available != self._available:
            if available:
                logger.info("Moonraker reachable at %s", self._config.base_url)
            elif self._available is not None:
                logger.warning("Moonraker unreachable: %s", reason)
        self._available = available

    async def _request(self, path: str, timeout: float) -> bytes | None:
        url = str(self.base_url) + path.lstrip("/")
        if self._config.verbose_logs:
            logger.debug("GET %s", url)
        try:
            async with self._session.get(
                URL(url, encoded=True),
                headers=self._headers(),
                timeout=ClientTimeout(total=timeout),
            ) as resp:
                if resp.status == 404:
                    self._mark(True)
                    return None
                resp.raise_for_status()
                body = await resp.read()
        except (ClientError, TimeoutError) as err:
            logger.debug("Moonraker request %s failed: %s", path, err)
            self._mark(False, err)
            return None
        self._mark(True)
        if self._config.verbose_logs:
            logger.debug("Response %s: %d bytes", path, len(body))
        return body

    async def _request_json(self, path: str, timeout: float) -> Any:
        body = await self._request(path, timeout)
        if body is None:
            return None
        try:
            payload = orjson.loads(body)
        except orjson.JSONDecodeError as err:
            logger.warning("Invalid JSON from Moonraker %s: %s", path, err)
            return None
        if isinstance(payload, dict) and "result" in payload:
            return payload["result"]
        return payload

    async def query_objects(self, query: str) -> dict[str, Any] | None:
        """Run a printer objects query and return its status mapping."""
        result = await self._request_json(f"printer/objects/query?{query}", STATUS_TIMEOUT)
        if not isinstance(result, dict):
            return None
        status = result.get("status")
        return status if isinstance(status, dict) else None

    async def get_print_info(self) -> PrinterState | None:
        """Return a snapshot of the printer, None if Moonraker cannot be reached."""
        status = await self.query_objects(STATUS_QUERY)
        if status is None:
            return None
        return parse_print_status(status)

    async def get_file_metadata(self, filename: str) -> dict[str, Any] | None:
        """Return metadata for a G-code file, retrying with the gcodes/ prefix."""
        candidates = [filename]
        if not filename.startswith("gcodes/"):
            candidates.append(f"gcodes/{filename}")
        for candidate in candidates:
            result = await self._request_json(
                f"server/files/metadata?filename={quote(candidate)}", METADATA_TIMEOUT
            )
            if isinstance(result, dict):
                return result
        return None

    async def get_file_info(self, filename: str) -> FileMetadata | None:
        """Return the parsed overlay metadata of a G-code file."""
        metadata = await self.get_file_metadata(filename)
        if metadata is None:
            return None
        return parse_file_metadata(filename, metadata)

    async def list_files(self, path: str | None = None) -> list[dict[str, Any]] | None:
        """List files below a root (gcodes by default)."""
        result = await self._request_json(
            f"server/files/list?root={quote(path or 'gcodes')}", METADATA_TIMEOUT
        )
        return result if isinstance(result, list) else None

    async def download_file(self, filename: str) -> bytes | None:
        """Download a G-code file."""
        return await self._request(
            f"server/files/gcodes/{quote(filename.removeprefix('gcodes/'))}", DOWNLOAD_TIMEOUT
        )

    async def close(self) -> None:
        """Close the session if this client owns it."""
        if self._owns_session and not self._session.closed:
            await self._session.close()
