"""
Named size, clip and font size presets.

The preset table is read once at startup from a JSON file of the form::

    {
        "sizes": {"twitter_card": {"width": 1200, "height": 630}},
        "clips": {"avatar": {"x": 0, "y": 0, "width": 400, "height": 400}},
        "fontSizes": {"large": {"mainTitle": "64px"}}
    }

A missing or broken file yields empty tables instead of failing startup.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresetTable:
    sizes: dict[str, dict[str, Any]] = field(default_factory=dict)
    clips: dict[str, dict[str, Any]] = field(default_factory=dict)
    font_sizes: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        """Return the table as it was loaded, for the ``/presets`` endpoint."""
        if self.raw:
            return self.raw
        return {"sizes": self.sizes, "clips": self.clips, "fontSizes": self.font_sizes}


def load_presets(path: Path) -> PresetTable:
    """
    Load the preset table from ``path``.

    Returns:
        The parsed table, or an empty table if the file is missing, is not
        valid JSON, or does not contain a JSON object.
    """
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Could not load presets from %s, continuing with empty tables: %s", path, e)
        return PresetTable()

    if not isinstance(data, dict):
        logger.warning("Presets file %s does not contain a JSON object, continuing with empty tables", path)
        return PresetTable()

    table = PresetTable(
        sizes=_section(data, "sizes"),
        clips=_section(data, "clips"),
        font_sizes=_section(data, "fontSizes"),
        raw=data,
    )
    logger.info("Presets loaded: sizes=%s, clips=%s", sorted(table.sizes), sorted(table.clips))
    return table


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    section = data.get(key)
    if section is None:
        return {}
    if not isinstance(section, dict):
        logger.warning("Presets section '%s' is not an object, ignoring it", key)
        return {}
    return section
