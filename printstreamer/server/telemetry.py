"""Telemetry formatter: renders printer state into the overlay text file."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from printstreamer.client.moonraker import (
    PrinterDataProvider,
    parse_file_metadata,
    parse_print_status,
)
from printstreamer.config import OverlayConfig
from printstreamer.models import FileMetadata, ObsOverlayData, PrinterState, PrintState
from printstreamer.util import atomic_write_text, read_text_retry

logger = logging.getLogger(__name__)

OVERLAY_QUERY = (
    "extruder=temperature,target&heater_bed=temperature,target"
    "&print_stats&display_status=progress"
    "&virtual_sdcard=progress,file_position,print_duration"
    "&gcode_move=speed,speed_factor,extrude_factor&motion_report"
)
FILAMENT_DIAMETER_MM = 1.75
FETCH_TIMEOUT = 4.0


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Everything shown on the banner at one point in time."""

    printer: PrinterState
    speed: float | None = None
    """Toolhead velocity in mm/s."""
    speed_factor: float | None = None
    """Speed override in percent."""
    flow: float | None = None
    """Volumetric flow in mm³/s."""
    filament_used_mm: float | None = None
    metadata: FileMetadata | None = None
    audio_name: str | None = None
    online: bool = True
    time: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def eta(self) -> datetime | None:
        """Estimated completion time."""
        if self.printer.remaining is None or self.printer.state != PrintState.PRINTING:
            return None
        return self.time + self.printer.remaining


def _float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def build_snapshot(
    status: dict[str, Any],
    *,
    metadata: FileMetadata | None = None,
    audio_name: str | None = None,
) -> TelemetrySnapshot:
    """Derive banner values from a printer objects query status mapping."""
    printer = parse_print_status(status)
    motion = status.get("motion_report") or {}
    gcode_move = status.get("gcode_move") or {}
    print_stats = status.get("print_stats") or {}

    speed = _float(motion.get("live_velocity"))
    factor = _float(gcode_move.get("speed_factor"))
    speed_factor = factor * 100.0 if factor is not None else None

    flow = _float((status.get("display_status") or {}).get("volumetric_flow"))
    if flow is None:
        extruder_velocity = _float(motion.get("live_extruder_velocity"))
        if extruder_velocity is not None:
            extrude_factor = _float(gcode_move.get("extrude_factor")) or 1.0
            area = math.pi * (FILAMENT_DIAMETER_MM / 2) ** 2
            flow = max(0.0, extruder_velocity) * area * extrude_factor

    return TelemetrySnapshot(
        printer=printer,
        speed=speed,
        speed_factor=speed_factor,
        flow=flow,
        filament_used_mm=_float(print_stats.get("filament_used")),
        metadata=metadata,
        audio_name=audio_name,
    )


def _num(value: float | None, spec: str = ".0f", width: int = 0) -> str:
    text = format(value, spec) if value is not None else "--"
    return text.rjust(width)


def render_banner(snapshot: TelemetrySnapshot) -> str:
    """Render the multi-line banner with fixed column widths."""
    printer = snapshot.printer
    tool = printer.tool0_temp
    bed = printer.bed_temp
    state = printer.state.value if snapshot.online else "offline"

    nozzle = f"{_num(tool.actual if tool else None, width=3)}/{_num(tool.target if tool else None, width=3)}°C"
    bed_text = f"{_num(bed.actual if bed else None, width=3)}/{_num(bed.target if bed else None, width=3)}°C"
    layer = f"{_num(printer.current_layer, 'd', 3)}/{_num(printer.total_layers, 'd', 3)}"
    eta = snapshot.eta
    eta_text = eta.astimezone().strftime("%H:%M") if eta else "--:--"
    filament_m = snapshot.filament_used_mm / 1000.0 if snapshot.filament_used_mm is not None else None

    lines = [
        f"Nozzle:   {nozzle:<13} | Bed:   {bed_text:<13} | State: {state}",
        f"Progress: {_num(printer.progress_percent, '.1f', 5) + '%':<13} | Layer: {layer:<13} | ETA: {eta_text}",
        f"Speed:    {_num(snapshot.speed, width=4) + 'mm/s':<13} | Flow:  "
        f"{_num(snapshot.flow, '.1f', 4) + 'mm³/s':<13} | Fil: {_num(filament_m, '.2f')}m",
        f"File: {printer.filename or '-'}",
    ]
    if snapshot.audio_name:
        lines.append(f"Song: {snapshot.audio_name}")
    return "\n".join(lines)


def _text(value: float | int | None, spec: str = ".0f") -> str:
    if value is None:
        return ""
    return format(value, spec)


def build_obs_data(snapshot: TelemetrySnapshot) -> ObsOverlayData:
    """Format a snapshot for OBS URL sources; missing values become empty strings."""
    printer = snapshot.printer
    tool = printer.tool0_temp
    bed = printer.bed_temp
    meta = snapshot.metadata
    eta = snapshot.eta
    filament_m = snapshot.filament_used_mm / 1000.0 if snapshot.filament_used_mm is not None else None
    return ObsOverlayData(
        nozzle=_text(tool.actual if tool else None),
        nozzle_target=_text(tool.target if tool else None),
        bed=_text(bed.actual if bed else None),
        bed_target=_text(bed.target if bed else None),
        state=printer.state.value if snapshot.online else "offline",
        progress=_text(printer.progress_percent),
        layer=_text(printer.current_layer, "d"),
        layer_max=_text(printer.total_layers, "d"),
        time=snapshot.time.astimezone(UTC).isoformat(),
        filename=printer.filename or "",
        speed=_text(snapshot.speed),
        speed_factor=_text(snapshot.speed_factor),
        flow=_text(snapshot.flow, ".1f"),
        filament=_text(filament_m, ".2f"),
        filament_type=(meta.filament_type or "") if meta else "",
        filament_brand=(meta.filament_brand or "") if meta else "",
        filament_color=(meta.filament_color or "") if meta else "",
        filament_name=(meta.filament_name or "") if meta else "",
        filament_used_mm=_text(snapshot.filament_used_mm),
        filament_total_mm=_text(meta.filament_total_mm if meta else None),
        slicer=(meta.slicer or "") if meta else "",
        eta=eta.astimezone(UTC).isoformat() if eta else "",
        audio_name=snapshot.audio_name or "",
    )


class TelemetryFormatter:
    """Periodically refreshes the overlay text file from the printer."""

    def __init__(
        self,
        config: OverlayConfig,
        provider: PrinterDataProvider,
        *,
        audio_name: Callable[[], str | None] | None = None,
    ) -> None:
        """
        Initialize the formatter.

        Args:
            config: Overlay settings (text file, refresh period).
            provider: Printer data provider queried on every tick.
            audio_name: Returns the name of the track playing, if any.
        """
        self._config = config
        self._provider = provider
        self._audio_name = audio_name or (lambda: None)
        self._snapshot: TelemetrySnapshot | None = None
        self._metadata: FileMetadata | None = None
        self._metadata_for: str | None = None
        self._last_text: str | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def text_file(self) -> Path:
        """Path of the overlay text file."""
        return Path(self._config.text_file)

    @property
    def snapshot(self) -> TelemetrySnapshot | None:
        """The most recent snapshot."""
        return self._snapshot

    async def start(self) -> None:
        """Write an initial banner and start refreshing."""
        if self._task is not None:
            return
        if not self.text_file.exists():
            self.write(render_banner(TelemetrySnapshot(printer=PrinterState(), online=False)))
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Stop refreshing."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Telemetry refresh failed")
            await asyncio.sleep(self._config.refresh_ms / 1000.0)

    async def _file_metadata(self, filename: str | None) -> FileMetadata | None:
        if filename != self._metadata_for:
            self._metadata_for = filename
            self._metadata = None
            if filename:
                raw = await self._provider.get_file_metadata(filename)
                if raw is not None:
                    self._metadata = parse_file_metadata(filename, raw)
        return self._metadata

    async def refresh(self) -> TelemetrySnapshot:
        """Query the printer once and rewrite the overlay text file."""
        try:
            async with asyncio.timeout(FETCH_TIMEOUT):
                status = await self._provider.query_objects(OVERLAY_QUERY)
        except TimeoutError:
            status = None
        audio = self._audio_name()
        if status is None:
            previous = self._snapshot.printer if self._snapshot else PrinterState()
            snapshot = TelemetrySnapshot(
                printer=previous.with_state(PrintState.UNKNOWN),
                metadata=self._metadata,
                audio_name=audio,
                online=False,
            )
        else:
            filename = (status.get("print_stats") or {}).get("filename") or None
            metadata = await self._file_metadata(filename)
            snapshot = build_snapshot(status, metadata=metadata, audio_name=audio)
        self._snapshot = snapshot
        text = render_banner(snapshot)
        if text != self._last_text:
            self.write(text)
        return snapshot

    def write(self, text: str) -> None:
        """Atomically replace the overlay text file."""
        atomic_write_text(self.text_file, text)
        self._last_text = text

    def read(self) -> str | None:
        """Current contents of the overlay text file, None if it does not exist."""
        return read_text_retry(self.text_file)

    def obs_data(self) -> ObsOverlayData:
        """Overlay values for OBS URL sources."""
        snapshot = self._snapshot or TelemetrySnapshot(printer=PrinterState(), online=False)
        return build_obs_data(snapshot)
