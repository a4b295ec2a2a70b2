"""Toolpath geometry and plate layout."""

from pa_generator.geometry.layout import (
    DEFAULT_MARGIN,
    Layout,
    ObjectSize,
    best_layout,
    max_object_count,
    object_size_for_nozzle,
    print_order,
)
from pa_generator.geometry.paths import (
    Perimeter,
    Segment,
    clip_line_to_rect,
    diagonal_zigzag_infill,
    infill_rectangle,
    perimeter_offsets,
    rectangular_perimeter,
)

__all__ = [
    "DEFAULT_MARGIN",
    "Layout",
    "ObjectSize",
    "Perimeter",
    "Segment",
    "best_layout",
    "clip_line_to_rect",
    "diagonal_zigzag_infill",
    "infill_rectangle",
    "max_object_count",
    "object_size_for_nozzle",
    "perimeter_offsets",
    "print_order",
    "rectangular_perimeter",
]
