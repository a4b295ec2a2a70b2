"""Virtual extruder: E position, retraction state, per-feature widths.

One :class:`ExtruderState` lives for a whole generation run.  The layer
loop rebases the E axis to zero after every Z move (``G92 E0``) via
:meth:`ExtruderState.set_position`; extrusion then accumulates across all
objects of that layer.

E words
-------
``current_e`` always holds the absolute E position.  With relative E
distances (``M83``) the emitted ``E`` word is the per-move delta instead;
see :meth:`ExtruderState.e_word`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from pa_generator.configs.loader import ConfigEnvironment, ConfigError, parse_relative
from pa_generator.extrusion.model import extrusion_length

logger = logging.getLogger(__name__)

FeatureKind = Literal["default", "perimeter", "external_perimeter", "infill"]

DEFAULT_WIDTH_FACTOR = 1.125
"""Default extrusion width as a multiple of the nozzle diameter."""

# PrusaSlicer key first, then OrcaSlicer and generic aliases
_WIDTH_KEYS: dict[str, tuple[str, ...]] = {
    "default": ("extrusion_width", "line_width"),
    "perimeter": ("perimeter_extrusion_width", "inner_wall_line_width"),
    "external_perimeter": (
        "external_perimeter_extrusion_width",
        "outer_wall_line_width",
    ),
    "infill": (
        "solid_infill_extrusion_width",
        "internal_solid_infill_line_width",
        "infill_extrusion_width",
    ),
    "first_layer": ("first_layer_extrusion_width", "initial_layer_line_width"),
}


def feed_word(feed_mm_s: float) -> str:
    """Convert mm/s feed rate to G-code ``F`` parameter (mm/min)."""
    return f"F{feed_mm_s * 60.0:.1f}"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetractionSettings:
    """Retraction parameters.  Lengths in mm, speeds in mm/s.

    ``deretract_speed`` of ``None`` reuses ``speed``.
    """

    length: float = 0.8
    speed: float = 35.0
    deretract_speed: float | None = 40.0
    before_travel: float = 2.0
    use_firmware: bool = False

    @classmethod
    def from_config(cls, cfg: ConfigEnvironment) -> RetractionSettings:
        deretract = cfg.float_at("deretract_speed")
        return cls(
            length=cfg.float_at("retract_length"),
            speed=cfg.float_at("retract_speed"),
            deretract_speed=deretract if deretract > 0 else None,
            before_travel=cfg.float_at("retract_before_travel"),
            use_firmware=cfg.bool_at("use_firmware_retraction"),
        )


@dataclass(frozen=True)
class ExtrusionWidths:
    """Resolved extrusion widths in mm."""

    default: float
    perimeter: float
    external_perimeter: float
    infill: float
    first_layer: float

    def for_feature(self, kind: FeatureKind) -> float:
        if kind not in ("default", "perimeter", "external_perimeter", "infill"):
            raise ValueError(f"Unknown feature kind: {kind!r}")
        return getattr(self, kind)


def resolve_width(raw: str | None, layer_height: float, fallback: float) -> float:
    """Resolve one configured width.

    Precedence: explicit positive number, then ``"<n>%"`` of
    *layer_height*, then *fallback*.  ``None``, ``""`` and zero count as
    "not configured".
    """
    if raw is None:
        return fallback
    text = str(raw).strip()
    if not text:
        return fallback
    if text.endswith("%"):
        value = parse_relative(text, layer_height)
    else:
        value = parse_relative(text, 0.0)
    return value if value > 0 else fallback


def _configured_width(cfg: ConfigEnvironment, kind: str) -> str | None:
    """First alias of *kind* holding a usable (non-zero) width."""
    for key in _WIDTH_KEYS[kind]:
        if cfg.has_value(key) and resolve_width(cfg.scalar_at(key), 1.0, 0.0) > 0:
            return cfg.scalar_at(key)
    return None


# ---------------------------------------------------------------------------
# Extruder state
# ---------------------------------------------------------------------------


class ExtruderState:
    """Tracks E position, retraction flag and extrusion widths.

    Parameters
    ----------
    filament_diameter : float
        Raw filament diameter in mm.
    flow_multiplier : float
        Extrusion multiplier.
    max_volumetric_speed : float
        Flow ceiling in mm^3/s (``0`` disables speed clamping).
    retraction : RetractionSettings | None
        Retraction parameters; defaults when ``None``.
    relative_e : bool
        Emit relative E words (``M83`` mode).
    """

    def __init__(
        self,
        filament_diameter: float = 1.75,
        flow_multiplier: float = 1.0,
        max_volumetric_speed: float = 0.0,
        retraction: RetractionSettings | None = None,
        relative_e: bool = False,
    ) -> None:
        self.filament_diameter = filament_diameter
        self.flow_multiplier = flow_multiplier
        self.max_volumetric_speed = max_volumetric_speed
        self.retraction = retraction or RetractionSettings()
        self.relative_e = relative_e

        self.current_e: float = 0.0
        self.is_retracted: bool = False
        self.is_first_layer: bool = False
        self.widths: ExtrusionWidths | None = None
        self._last_delta: float = 0.0

    @classmethod
    def from_config(cls, cfg: ConfigEnvironment) -> ExtruderState:
        """Build an extruder from the flow and retraction settings in *cfg*."""
        flow = cfg.float_at(
            "extrusion_multiplier",
            default=cfg.scalar_at("filament_flow_ratio"),
        )
        return cls(
            filament_diameter=cfg.float_at("filament_diameter"),
            flow_multiplier=flow,
            max_volumetric_speed=cfg.float_at("max_volumetric_speed"),
            retraction=RetractionSettings.from_config(cfg),
            relative_e=cfg.bool_at("use_relative_e_distances"),
        )

    # ------------------------------------------------------------------
    # Widths
    # ------------------------------------------------------------------

    def initialize_widths(
        self,
        cfg: ConfigEnvironment,
        nozzle_diameter: float,
        layer_height: float,
        first_layer_height: float | None = None,
    ) -> ExtrusionWidths:
        """Resolve every feature width from *cfg* once per run.

        Unconfigured widths fall back to the default width, which itself
        falls back to ``nozzle_diameter * 1.125``.
        """
        if nozzle_diameter <= 0:
            raise ConfigError(f"nozzle_diameter must be > 0, got {nozzle_diameter}")
        if first_layer_height is None:
            first_layer_height = layer_height

        base = resolve_width(
            _configured_width(cfg, "default"),
            layer_height,
            nozzle_diameter * DEFAULT_WIDTH_FACTOR,
        )
        self.widths = ExtrusionWidths(
            default=base,
            perimeter=resolve_width(_configured_width(cfg, "perimeter"), layer_height, base),
            external_perimeter=resolve_width(
                _configured_width(cfg, "external_perimeter"), layer_height, base
            ),
            infill=resolve_width(_configured_width(cfg, "infill"), layer_height, base),
            first_layer=resolve_width(
                _configured_width(cfg, "first_layer"), first_layer_height, base
            ),
        )
        logger.debug("Extrusion widths: %s", self.widths)
        return self.widths

    def set_layer(self, layer_index: int) -> None:
        """Mark whether the current layer is the first one."""
        self.is_first_layer = layer_index == 0

    def get_extrusion_width(self, kind: FeatureKind = "default") -> float:
        """Width for *kind* on the current layer.

        A distinct first-layer width overrides every feature kind on the
        first layer.
        """
        if self.widths is None:
            raise RuntimeError("initialize_widths() must be called first")
        w = self.widths
        if self.is_first_layer and w.first_layer != w.default:
            return w.first_layer
        return w.for_feature(kind)

    # ------------------------------------------------------------------
    # Extrusion
    # ------------------------------------------------------------------

    def extrusion_for(self, length: float, width: float, height: float) -> float:
        """Filament length for a move, without changing state."""
        return extrusion_length(
            length, width, height, self.filament_diameter, self.flow_multiplier
        )

    def extrude(self, length: float, width: float, height: float) -> float:
        """Advance E for an extruding move and return the new ``current_e``."""
        delta = self.extrusion_for(length, width, height)
        self.current_e += delta
        self._last_delta = delta
        self.is_retracted = False
        return self.current_e

    def e_word(self) -> str:
        """``E`` word for the most recent move in the active E mode."""
        value = self._last_delta if self.relative_e else self.current_e
        return f"E{value:.5f}"

    # ------------------------------------------------------------------
    # Retraction
    # ------------------------------------------------------------------

    def should_retract(self, travel_distance: float) -> bool:
        """Whether a travel of *travel_distance* mm needs retraction."""
        r = self.retraction
        return (
            not self.is_retracted
            and r.length > 0
            and travel_distance >= r.before_travel
        )

    def retract(self) -> str | None:
        """Retract and return the G-code line, or ``None`` if nothing to do."""
        r = self.retraction
        if self.is_retracted or r.length <= 0:
            return None
        self.is_retracted = True
        if r.use_firmware:
            return "G10 ; Retract"
        self.current_e -= r.length
        self._last_delta = -r.length
        return f"G1 {self.e_word()} {feed_word(r.speed)} ; Retract"

    def unretract(self) -> str | None:
        """Undo a retraction and return the G-code line, or ``None``."""
        r = self.retraction
        if not self.is_retracted or r.length <= 0:
            return None
        self.is_retracted = False
        if r.use_firmware:
            return "G11 ; Unretract"
        self.current_e += r.length
        self._last_delta = r.length
        speed = r.deretract_speed if r.deretract_speed is not None else r.speed
        return f"G1 {self.e_word()} {feed_word(speed)} ; Unretract"

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def set_position(self, e: float = 0.0) -> None:
        """Rebase ``current_e`` (mirrors ``G92 E<e>``); retraction is kept."""
        self.current_e = e

    def reset(self) -> None:
        """Clear E position and retraction state."""
        self.current_e = 0.0
        self.is_retracted = False
        self._last_delta = 0.0
