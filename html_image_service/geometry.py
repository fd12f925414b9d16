"""Turn requested sizes and presets into concrete viewport and clip geometry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from html_image_service.errors import SizeBudgetExceeded, UnknownPreset
from html_image_service.service_config import DEFAULT_HEIGHT, DEFAULT_WIDTH

if TYPE_CHECKING:
    from html_image_service.presets import PresetTable
    from html_image_service.service_config import ServiceConfig


@dataclass(frozen=True)
class ClipRegion:
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> ClipRegion:
        return cls(x=float(data["x"]), y=float(data["y"]), width=float(data["width"]), height=float(data["height"]))

    def as_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class ResolvedGeometry:
    width: int
    height: int
    clip: ClipRegion | None = None


def resolve_geometry(
    presets: PresetTable,
    config: ServiceConfig,
    width: int | None = None,
    height: int | None = None,
    size_preset: str | None = None,
    clip: ClipRegion | None = None,
    clip_preset: str | None = None,
) -> ResolvedGeometry:
    """
    Resolve the viewport size and optional clip for one request.

    A size preset replaces any explicit width/height. Missing dimensions fall
    back to 1200x630. Each axis is clamped to its configured maximum, and the
    clamped area must fit into ``config.max_pixels``. A clip preset replaces
    any explicit clip.

    Raises:
        UnknownPreset: If ``size_preset`` or ``clip_preset`` is not in the table.
        SizeBudgetExceeded: If the clamped viewport has too many pixels.
    """
    if size_preset:
        preset = presets.sizes.get(size_preset)
        if preset is None:
            raise UnknownPreset("sizePreset", size_preset)
        width = int(preset["width"])
        height = int(preset["height"])

    clamped_width = min(width or DEFAULT_WIDTH, config.max_width)
    clamped_height = min(height or DEFAULT_HEIGHT, config.max_height)
    if clamped_width * clamped_height > config.max_pixels:
        raise SizeBudgetExceeded(clamped_width, clamped_height, config.max_pixels)

    if clip_preset:
        clip_data = presets.clips.get(clip_preset)
        if clip_data is None:
            raise UnknownPreset("clipPreset", clip_preset)
        clip = ClipRegion.from_mapping(clip_data)

    return ResolvedGeometry(width=clamped_width, height=clamped_height, clip=clip)
