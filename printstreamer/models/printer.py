"""Printer state snapshots produced by the poller."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import PrintState


@dataclass(frozen=True)
class Temperature(DataClassORJSONMixin):
    """Actual and target temperature of a heater in °C."""

    actual: float | None = None
    target: float | None = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class PrinterState(DataClassORJSONMixin):
    """
    Immutable snapshot of the printer, built from a single status read.

    Any field may be None when the printer did not report it.
    """

    state: PrintState = PrintState.UNKNOWN
    filename: str | None = None
    """G-code file name of the current job."""
    job_id: str | None = None
    """Moonraker job queue id, if reported."""
    progress_percent: float | None = None
    """Job progress in percent (0..100)."""
    current_layer: int | None = None
    total_layers: int | None = None
    elapsed: timedelta | None = None
    remaining: timedelta | None = None
    bed_temp: Temperature | None = None
    tool0_temp: Temperature | None = None
    snapshot_time: datetime = field(default_factory=_utcnow)

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True

    def with_state(self, state: PrintState) -> PrinterState:
        """Return a copy with another state and a fresh snapshot time."""
        return replace(self, state=state, snapshot_time=_utcnow())

    @property
    def job_key(self) -> str | None:
        """Identifier of the job this snapshot belongs to."""
        return self.job_id or self.filename


@dataclass(frozen=True)
class FileMetadata(DataClassORJSONMixin):
    """Subset of the Moonraker file metadata used by the overlay."""

    filename: str
    slicer: str | None = None
    estimated_time: float | None = None
    layer_count: int | None = None
    filament_total_mm: float | None = None
    filament_type: str | None = None
    filament_name: str | None = None
    filament_brand: str | None = None
    filament_color: str | None = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True
