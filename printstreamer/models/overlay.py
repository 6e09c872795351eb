"""Overlay data served to OBS URL sources."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Alias


@dataclass
class ObsOverlayData(DataClassORJSONMixin):
    """Presentation ready overlay values. Missing values are empty strings."""

    nozzle: str = ""
    nozzle_target: Annotated[str, Alias("nozzleTarget")] = ""
    bed: str = ""
    bed_target: Annotated[str, Alias("bedTarget")] = ""
    state: str = ""
    progress: str = ""
    layer: str = ""
    layer_max: Annotated[str, Alias("layerMax")] = ""
    time: str = ""
    """Snapshot time, ISO-8601 UTC."""
    filename: str = ""
    speed: str = ""
    speed_factor: Annotated[str, Alias("speedFactor")] = ""
    flow: str = ""
    filament: str = ""
    filament_type: Annotated[str, Alias("filamentType")] = ""
    filament_brand: Annotated[str, Alias("filamentBrand")] = ""
    filament_color: Annotated[str, Alias("filamentColor")] = ""
    filament_name: Annotated[str, Alias("filamentName")] = ""
    filament_used_mm: Annotated[str, Alias("filamentUsedMm")] = ""
    filament_total_mm: Annotated[str, Alias("filamentTotalMm")] = ""
    slicer: str = ""
    eta: str = ""
    audio_name: Annotated[str, Alias("audioName")] = ""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
