"""Per-feature print speeds.

Speeds are configured in mm/s.  ``external_perimeter_speed`` may be a
percentage of ``perimeter_speed``.  On the first layer
``first_layer_speed`` (absolute, or a percentage of each base speed)
replaces the perimeter speeds and ``first_layer_infill_speed`` (falling
back to ``first_layer_speed``) replaces the infill speed.  Every
extruding speed is finally clamped by the volumetric-flow ceiling for
that feature's cross-section.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pa_generator.configs.loader import ConfigEnvironment
from pa_generator.extrusion.extruder import ExtruderState
from pa_generator.extrusion.model import clamp_speed_by_flow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FeatureSpeeds:
    """Resolved speeds for one layer, in mm/s."""

    perimeter: float
    external_perimeter: float
    infill: float
    travel: float
    travel_z: float


def resolve_speeds(
    cfg: ConfigEnvironment,
    extruder: ExtruderState,
    layer_height: float,
    first_layer: bool = False,
) -> FeatureSpeeds:
    """Resolve and flow-clamp the speeds for one layer.

    Parameters
    ----------
    cfg : ConfigEnvironment
        Merged configuration.
    extruder : ExtruderState
        Supplies per-feature widths (for the current layer) and the
        volumetric-flow ceiling.
    layer_height : float
        Height of the layer being printed.
    first_layer : bool
        Apply the first-layer speed overrides.
    """
    perimeter = cfg.float_at("perimeter_speed")
    external = cfg.relative_at("external_perimeter_speed", perimeter)
    infill = cfg.float_at("infill_speed")

    if first_layer:
        raw = cfg.scalar_at("first_layer_speed")
        external = cfg.relative_at("first_layer_speed", external)
        perimeter = cfg.relative_at("first_layer_speed", perimeter)
        infill = cfg.relative_at("first_layer_infill_speed", infill, default=raw)

    cap = extruder.max_volumetric_speed
    speeds = FeatureSpeeds(
        perimeter=clamp_speed_by_flow(
            perimeter, extruder.get_extrusion_width("perimeter"), layer_height, cap
        ),
        external_perimeter=clamp_speed_by_flow(
            external, extruder.get_extrusion_width("external_perimeter"), layer_height, cap
        ),
        infill=clamp_speed_by_flow(
            infill, extruder.get_extrusion_width("infill"), layer_height, cap
        ),
        travel=cfg.float_at("travel_speed"),
        travel_z=cfg.float_at("travel_speed_z"),
    )
    logger.debug("Speeds (first_layer=%s): %s", first_layer, speeds)
    return speeds
