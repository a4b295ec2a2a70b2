"""Toolpath geometry: rectangular perimeters and diagonal zigzag infill.

All routines are pure and work in absolute plate coordinates (mm).

Perimeters
----------
Perimeter *i* of an object is a rectangle inset by ``width / 2 +
prior_offset``, where ``prior_offset`` is the summed width of the
perimeters already closer to the object edge.  Sides run
counter-clockwise from the bottom-left corner.  The closing side stops
``nozzle_diameter * 0.15`` short of the start point so the seam does not
blob.

Infill
------
A family of parallel lines ``width`` apart, covering a square 1.5x the
larger side of the infill rectangle, is rotated +-45 degrees about the
rectangle centre and clipped against it (Liang-Barsky).  Clipped lines
shorter than ``width * min_line_length_factor`` are dropped; survivors
are chained with alternating direction into one zigzag polyline.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

Point = tuple[float, float]

SEAM_GAP_FACTOR = 0.15
"""Closing-side gap as a multiple of the nozzle diameter."""


@dataclass(frozen=True, slots=True)
class Segment:
    """Straight move from ``start`` to ``end``."""

    start: Point
    end: Point

    @property
    def length(self) -> float:
        return math.hypot(self.end[0] - self.start[0], self.end[1] - self.start[1])


@dataclass(frozen=True, slots=True)
class Perimeter:
    """One closed (seam-gapped) perimeter loop.

    Parameters
    ----------
    index : int
        0 is the external perimeter, higher indices lie further inside.
    sides : tuple[Segment, ...]
        Connected sides in print order.
    """

    index: int
    sides: tuple[Segment, ...]

    @property
    def is_external(self) -> bool:
        return self.index == 0

    @property
    def start(self) -> Point:
        return self.sides[0].start


# ---------------------------------------------------------------------------
# Perimeters
# ---------------------------------------------------------------------------


def rectangular_perimeter(
    origin: Point,
    size: tuple[float, float],
    perimeter_index: int,
    extrusion_width: float,
    prior_offset: float,
    nozzle_diameter: float,
) -> Perimeter | None:
    """Build perimeter *perimeter_index* of an axis-aligned object.

    Parameters
    ----------
    origin : Point
        Bottom-left corner of the object.
    size : tuple[float, float]
        Object width and height.
    perimeter_index : int
        Perimeter number (0 = external).
    extrusion_width : float
        Width of this perimeter.
    prior_offset : float
        Summed width of the perimeters outside this one.
    nozzle_diameter : float
        Sets the seam gap on the closing side.

    Returns
    -------
    Perimeter | None
        ``None`` when the inset consumes the whole rectangle.
    """
    inset = extrusion_width / 2.0 + prior_offset
    x1 = origin[0] + inset
    y1 = origin[1] + inset
    x2 = origin[0] + size[0] - inset
    y2 = origin[1] + size[1] - inset
    if x2 <= x1 or y2 <= y1:
        return None

    corners = [(x1, y1), (x2, y1), (x2, y2), (x1, y2), (x1, y1)]
    sides = [Segment(a, b) for a, b in zip(corners, corners[1:])]

    closing = sides[-1]
    gap = nozzle_diameter * SEAM_GAP_FACTOR
    if closing.length > gap:
        ratio = (closing.length - gap) / closing.length
        (sx, sy), (ex, ey) = closing.start, closing.end
        sides[-1] = Segment(closing.start, (sx + (ex - sx) * ratio, sy + (ey - sy) * ratio))
    else:
        sides.pop()

    return Perimeter(index=perimeter_index, sides=tuple(sides))


def perimeter_offsets(widths: list[float]) -> list[float]:
    """Cumulative ``prior_offset`` for each perimeter given their widths."""
    offsets = []
    total = 0.0
    for w in widths:
        offsets.append(total)
        total += w
    return offsets


# ---------------------------------------------------------------------------
# Infill
# ---------------------------------------------------------------------------


def infill_rectangle(
    origin: Point,
    size: tuple[float, float],
    perimeter_band: float,
    extrusion_width: float,
    overlap: float,
) -> tuple[float, float, float, float] | None:
    """Area left for infill inside a band of perimeters.

    The band is shrunk by *overlap* so infill bonds to the innermost
    perimeter, then inset by half an infill line.

    Returns
    -------
    tuple | None
        ``(x1, y1, x2, y2)`` or ``None`` when nothing remains.
    """
    offset = perimeter_band - overlap + extrusion_width / 2.0
    x1 = origin[0] + offset
    y1 = origin[1] + offset
    x2 = origin[0] + size[0] - offset
    y2 = origin[1] + size[1] - offset
    if x2 <= x1 or y2 <= y1:
        return None
    return x1, y1, x2, y2


def clip_line_to_rect(
    p1: Point,
    p2: Point,
    x1: float,
    y1: float,
    x2: float,
    y2: float,
) -> Segment | None:
    """Clip segment *p1*-*p2* to the rectangle (Liang-Barsky).

    Returns ``None`` if the segment lies entirely outside.
    """
    dx = p2[0] - p1[0]
    dy = p2[1] - p1[1]
    t0, t1 = 0.0, 1.0

    for p, q in (
        (-dx, p1[0] - x1),
        (dx, x2 - p1[0]),
        (-dy, p1[1] - y1),
        (dy, y2 - p1[1]),
    ):
        if p == 0:
            if q < 0:
                return None
            continue
        t = q / p
        if p < 0:
            if t > t1:
                return None
            t0 = max(t0, t)
        else:
            if t < t0:
                return None
            t1 = min(t1, t)

    return Segment(
        (p1[0] + t0 * dx, p1[1] + t0 * dy),
        (p1[0] + t1 * dx, p1[1] + t1 * dy),
    )


def diagonal_zigzag_infill(
    x1: float,
    y1: float,
    x2: float,
    y2: float,
    extrusion_width: float,
    rotate_left: bool = True,
    min_line_length_factor: float = 2.0,
) -> list[Point]:
    """Zigzag polyline filling the rectangle at +-45 degrees.

    Parameters
    ----------
    x1, y1, x2, y2 : float
        Infill rectangle.
    extrusion_width : float
        Line spacing.
    rotate_left : bool
        ``True`` rotates the line family by +45 degrees, ``False`` by -45.
    min_line_length_factor : float
        Clipped lines shorter than ``extrusion_width * factor`` are dropped.

    Returns
    -------
    list[Point]
        Polyline vertices; empty if no line survives.  The first line
        always runs start -> end, later ones alternate.
    """
    width = x2 - x1
    height = y2 - y1
    if width <= 0 or height <= 0 or extrusion_width <= 0:
        return []

    max_dim = max(width, height) * 1.5
    count = math.ceil(max_dim / extrusion_width) + 2

    xs = -max_dim / 2.0 + np.arange(count) * extrusion_width
    starts = np.column_stack([xs, np.full(count, -max_dim / 2.0)])
    ends = np.column_stack([xs, np.full(count, max_dim / 2.0)])

    angle = math.pi / 4.0 if rotate_left else -math.pi / 4.0
    c, s = math.cos(angle), math.sin(angle)
    rotation = np.array([[c, -s], [s, c]])
    center = np.array([(x1 + x2) / 2.0, (y1 + y2) / 2.0])
    starts = starts @ rotation.T + center
    ends = ends @ rotation.T + center

    min_length = extrusion_width * min_line_length_factor
    points: list[Point] = []
    kept = 0
    for a, b in zip(starts, ends):
        seg = clip_line_to_rect(
            (float(a[0]), float(a[1])), (float(b[0]), float(b[1])), x1, y1, x2, y2
        )
        if seg is None or seg.length < min_length:
            continue
        if kept % 2 == 0:
            points.extend([seg.start, seg.end])
        else:
            points.extend([seg.end, seg.start])
        kept += 1

    return points
