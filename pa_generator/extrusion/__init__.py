"""Extrusion physics and virtual extruder state."""

from pa_generator.extrusion.extruder import (
    ExtruderState,
    ExtrusionWidths,
    RetractionSettings,
    feed_word,
    resolve_width,
)
from pa_generator.extrusion.model import (
    clamp_speed_by_flow,
    cross_section_area,
    extrusion_length,
    max_speed_for_cross_section,
)

__all__ = [
    "ExtruderState",
    "ExtrusionWidths",
    "RetractionSettings",
    "clamp_speed_by_flow",
    "cross_section_area",
    "extrusion_length",
    "feed_word",
    "max_speed_for_cross_section",
    "resolve_width",
]
