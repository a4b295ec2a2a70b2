"""Plate layout: grid search and serpentine print order.

``best_layout`` tries every column count ``1..count`` and keeps the grid
whose footprint is closest to square (smallest
``max(W/H, H/W)``; the first candidate wins ties), centred inside the
margin-reduced plate.

``print_order`` visits rows bottom-to-top on even layers and
top-to-bottom on odd layers; a row runs right-to-left when
``row + layer`` is odd.  For 6 objects in 3 columns::

    layer 0: [0, 1, 2, 5, 4, 3]
    layer 1: [3, 4, 5, 2, 1, 0]

so the last object of one layer is next to the first of the following
layer.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace

from pa_generator.errors import LayoutError

DEFAULT_MARGIN = 10.0
"""Clearance kept free along every plate edge (mm)."""

OBJECT_SPACING = 5.0


@dataclass(frozen=True, slots=True)
class ObjectSize:
    """Footprint of one test object and the gap between objects (mm)."""

    width: float
    height: float
    spacing: float = OBJECT_SPACING


def object_size_for_nozzle(nozzle_diameter: float) -> ObjectSize:
    """Test-object footprint scaled to the nozzle size."""
    if nozzle_diameter <= 0.4:
        return ObjectSize(30.0, 20.0)
    if nozzle_diameter <= 0.6:
        return ObjectSize(35.0, 25.0)
    return ObjectSize(40.0, 30.0)


@dataclass(frozen=True, slots=True)
class Layout:
    """Grid arrangement of the test objects.

    Parameters
    ----------
    cols, rows : int
        Grid dimensions.
    total_width, total_height : float
        Footprint of the whole grid in mm.
    start_x, start_y : float
        Bottom-left corner of the grid on the plate.
    """

    cols: int
    rows: int
    total_width: float
    total_height: float
    start_x: float
    start_y: float

    @property
    def aspect_ratio(self) -> float:
        return max(
            self.total_width / self.total_height,
            self.total_height / self.total_width,
        )

    def origin(
        self,
        index: int,
        object_width: float,
        object_height: float,
        spacing: float,
    ) -> tuple[float, float]:
        """Bottom-left corner of object *index* (row-major)."""
        row, col = divmod(index, self.cols)
        return (
            self.start_x + col * (object_width + spacing),
            self.start_y + row * (object_height + spacing),
        )

    def translated(self, dx: float, dy: float) -> Layout:
        """Same grid shifted by (dx, dy), e.g. onto a bed with a non-zero origin."""
        return replace(self, start_x=self.start_x + dx, start_y=self.start_y + dy)


def max_object_count(
    object_width: float,
    object_height: float,
    spacing: float,
    plate_width: float,
    plate_height: float,
    margin: float = DEFAULT_MARGIN,
) -> int:
    """Upper bound on how many objects fit on the plate."""
    avail_w = plate_width - 2 * margin
    avail_h = plate_height - 2 * margin
    if avail_w <= 0 or avail_h <= 0:
        return 0
    cols = math.floor((avail_w + spacing) / (object_width + spacing))
    rows = math.floor((avail_h + spacing) / (object_height + spacing))
    return max(cols, 0) * max(rows, 0)


def best_layout(
    count: int,
    object_width: float,
    object_height: float,
    spacing: float,
    plate_width: float,
    plate_height: float,
    margin: float = DEFAULT_MARGIN,
) -> Layout:
    """Closest-to-square grid for *count* objects, centred on the plate.

    Raises
    ------
    ValueError
        If *count* is not positive.
    LayoutError
        If no column count fits inside the margins.
    """
    if count <= 0:
        raise ValueError(f"count must be > 0, got {count}")

    avail_w = plate_width - 2 * margin
    avail_h = plate_height - 2 * margin

    best: tuple[int, int, float, float] | None = None
    best_ratio = math.inf
    for cols in range(1, count + 1):
        rows = math.ceil(count / cols)
        total_w = cols * object_width + (cols - 1) * spacing
        total_h = rows * object_height + (rows - 1) * spacing
        if total_w > avail_w or total_h > avail_h:
            continue
        ratio = max(total_w / total_h, total_h / total_w)
        if ratio < best_ratio:
            best_ratio = ratio
            best = (cols, rows, total_w, total_h)

    if best is None:
        raise LayoutError(
            f"No grid of {count} objects ({object_width:.1f}x{object_height:.1f} mm) "
            f"fits a {plate_width:.1f}x{plate_height:.1f} mm plate "
            f"with {margin:.1f} mm margins"
        )

    cols, rows, total_w, total_h = best
    return Layout(
        cols=cols,
        rows=rows,
        total_width=total_w,
        total_height=total_h,
        start_x=margin + (avail_w - total_w) / 2.0,
        start_y=margin + (avail_h - total_h) / 2.0,
    )


def print_order(count: int, cols: int, layer_index: int) -> list[int]:
    """Serpentine visiting order of object indices for one layer."""
    if count <= 0:
        return []
    if cols <= 0:
        raise ValueError(f"cols must be > 0, got {cols}")

    rows = math.ceil(count / cols)
    row_sequence = range(rows) if layer_index % 2 == 0 else range(rows - 1, -1, -1)

    order: list[int] = []
    for row in row_sequence:
        indices = list(range(row * cols, min((row + 1) * cols, count)))
        if (row + layer_index) % 2 == 1:
            indices.reverse()
        order.extend(indices)
    return order
