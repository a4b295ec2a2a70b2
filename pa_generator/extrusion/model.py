"""Extrusion physics: cross-section, filament length, volumetric flow.

Cross-section model
-------------------
The extrudate is a flattened stadium: a rectangle ``height x (width -
height)`` with two half-discs of diameter ``height`` on its ends.  When
``height >= width`` it degenerates to a single disc of diameter
``height``::

    A(w, h) = pi * (h / 2)^2                    if h >= w
    A(w, h) = h * (w - h) + pi * (h / 2)^2      otherwise

The function is continuous at ``w == h``.

Units: lengths in mm, speeds in mm/s, volumetric flow in mm^3/s.
"""

from __future__ import annotations

import math


def cross_section_area(width: float, height: float) -> float:
    """Area (mm^2) of one extruded line of *width* x *height*."""
    disc = math.pi * (height / 2.0) ** 2
    if height >= width:
        return disc
    return height * (width - height) + disc


def filament_area(filament_diameter: float) -> float:
    """Cross-section (mm^2) of the raw filament."""
    if filament_diameter <= 0:
        raise ValueError(f"filament_diameter must be > 0, got {filament_diameter}")
    return math.pi * (filament_diameter / 2.0) ** 2


def extrusion_length(
    path_length: float,
    width: float,
    height: float,
    filament_diameter: float,
    flow_multiplier: float = 1.0,
) -> float:
    """Filament length (mm) that fills *path_length* of extrudate.

    Parameters
    ----------
    path_length : float
        XY length of the move in mm.
    width, height : float
        Extrusion width and layer height in mm.
    filament_diameter : float
        Raw filament diameter in mm.
    flow_multiplier : float
        Extrusion multiplier / flow ratio.

    Returns
    -------
    float
        Length of filament to feed, in mm.
    """
    return (
        cross_section_area(width, height)
        * path_length
        / filament_area(filament_diameter)
        * flow_multiplier
    )


def max_speed_for_cross_section(area: float, max_volumetric_flow: float) -> float:
    """Highest linear speed (mm/s) that keeps flow under the ceiling.

    Returns ``0.0`` for a non-positive *area*.
    """
    if area <= 0:
        return 0.0
    return max_volumetric_flow / area


def clamp_speed_by_flow(
    requested_speed: float,
    width: float,
    height: float,
    max_volumetric_flow: float,
) -> float:
    """Limit *requested_speed* to the volumetric-flow ceiling.

    A ceiling ``<= 0`` disables limiting and returns the request as is.
    """
    if max_volumetric_flow <= 0:
        return requested_speed
    limit = max_speed_for_cross_section(
        cross_section_area(width, height), max_volumetric_flow
    )
    return min(requested_speed, limit)
