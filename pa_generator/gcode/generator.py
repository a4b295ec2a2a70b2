"""Layer orchestration: PA values + merged config -> one G-code document.

The test print is a grid of identical rectangular objects, one per PA
value, printed over a fixed stack of layers:

    layers 0-2   5 perimeters + solid diagonal infill
    layers 3-24  2 perimeters, hollow
    layer 3      additionally the PA value as a stroke-font label, placed
                 as if the object had 6 perimeters

Within a layer objects are visited in serpentine order
(:func:`~pa_generator.geometry.layout.print_order`) and each object starts
with its own pressure-advance command.  Perimeters are printed innermost
first so the external one is laid last.

Feed rate convention:
    Python stores speeds in **mm/s**.  They are converted to the G-code
    ``F`` parameter (mm/min) at the emission boundary::

        F_value = speed_mm_s * 60.0

E axis:
    ``G92 E0`` follows every Z move; extrusion accumulates across the
    objects of one layer.  With ``use_relative_e_distances`` the E words
    are per-move deltas and the document switches to ``M83``.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from io import StringIO
from typing import Any

from pa_generator.configs.loader import BedBounds, ConfigEnvironment, ConfigError, parse_bed_shape
from pa_generator.errors import CapacityError, GenerationCancelled, LayoutError
from pa_generator.extrusion.extruder import ExtruderState, feed_word
from pa_generator.gcode.digits import DigitGenerator, format_pa
from pa_generator.gcode.estimator import EstimateResult, PrintTimeEstimator, format_duration
from pa_generator.gcode.speeds import FeatureSpeeds, resolve_speeds
from pa_generator.geometry.layout import (
    Layout,
    ObjectSize,
    best_layout,
    max_object_count,
    object_size_for_nozzle,
    print_order,
)
from pa_generator.geometry.paths import (
    Point,
    diagonal_zigzag_infill,
    infill_rectangle,
    perimeter_offsets,
    rectangular_perimeter,
)
from pa_generator.template.engine import (
    TOTAL_LAYER_COUNT,
    TemplateEngine,
    TemplateWarning,
    normalize_variables,
)

logger = logging.getLogger(__name__)

SHELL_LAYERS = 3
SHELL_PERIMETERS = 5
WALL_PERIMETERS = 2
LABEL_LAYER = 3
LABEL_PERIMETERS = 6

_UNRESOLVED_RE = re.compile(r"\{[^{}\n]*\}|\[[A-Za-z_]\w*\]")


@dataclass
class GenerationResult:
    """Everything one ``generate`` call produces.

    Attributes
    ----------
    gcode : str
        Complete document.
    filename : str
        Expanded ``output_filename_format`` ending in ``.gcode``.
    layout : Layout
        Grid the objects were placed on (bed coordinates).
    estimate : EstimateResult
        Replay estimate of the object block.
    warnings : list[TemplateWarning]
        Template failures from every expansion.
    unresolved : list[str]
        ``{...}`` / ``[name]`` fragments left in non-comment lines.
    """

    gcode: str
    filename: str
    layout: Layout
    estimate: EstimateResult
    warnings: list[TemplateWarning] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def pressure_advance_command(flavor: str, value: float) -> str:
    """Firmware command setting pressure advance to *value*."""
    text = format_pa(value)
    flavor = flavor.strip().lower()
    if flavor == "klipper":
        return f"SET_PRESSURE_ADVANCE ADVANCE={text}"
    if flavor == "reprapfirmware":
        return f"M572 D0 S{text}"
    return f"M900 K{text}"


def find_unresolved(gcode: str) -> list[str]:
    """Placeholder fragments left in the executable part of each line."""
    found: list[str] = []
    for line in gcode.splitlines():
        code = line.split(";", 1)[0]
        found.extend(_UNRESOLVED_RE.findall(code))
    return found


# ---------------------------------------------------------------------------
# Object block writer
# ---------------------------------------------------------------------------


class _ObjectBlockWriter:
    """Emits the layer loop for one generation call.

    Owns the toolhead XY position; the extruder owns E and retraction.
    """

    def __init__(
        self,
        cfg: ConfigEnvironment,
        extruder: ExtruderState,
        engine: TemplateEngine,
        digits: DigitGenerator,
        variables: dict[str, list[Any]],
        warnings: list[TemplateWarning],
    ) -> None:
        self.cfg = cfg
        self.extruder = extruder
        self.engine = engine
        self.digits = digits
        self.variables = variables
        self.warnings = warnings
        self.buf = StringIO()
        self.pos: Point = (0.0, 0.0)
        self.speeds: FeatureSpeeds | None = None
        self.height = 0.0

    # -- moves -------------------------------------------------------------

    def _line(self, text: str) -> None:
        self.buf.write(text + "\n")

    def travel(self, x: float, y: float) -> None:
        assert self.speeds is not None
        if self.extruder.should_retract(math.hypot(x - self.pos[0], y - self.pos[1])):
            retract = self.extruder.retract()
            if retract:
                self._line(retract)
        self._line(f"G1 X{x:.3f} Y{y:.3f} {feed_word(self.speeds.travel)}")
        self.pos = (x, y)

    def extrude_to(self, x: float, y: float, width: float, speed: float) -> None:
        unretract = self.extruder.unretract()
        if unretract:
            self._line(unretract)
        length = math.hypot(x - self.pos[0], y - self.pos[1])
        self.extruder.extrude(length, width, self.height)
        self._line(f"G1 X{x:.3f} Y{y:.3f} {self.extruder.e_word()} {feed_word(speed)}")
        self.pos = (x, y)

    # -- templates ---------------------------------------------------------

    def _expand_slot(self, key: str, extra: Mapping[str, Any]) -> None:
        template = self.cfg.text(key)
        if not template.strip():
            return
        expansion = self.engine.expand(template, {**self.variables, **extra}, source=key)
        self.warnings.extend(expansion.warnings)
        if expansion.text:
            self._line(expansion.text)

    # -- layers ------------------------------------------------------------

    def write_layers(
        self,
        layout: Layout,
        size: ObjectSize,
        pa_values: Sequence[float],
        nozzle_diameter: float,
        layer_height: float,
        first_layer_height: float,
        cancel_event: threading.Event | None,
    ) -> str:
        flavor = self.cfg.scalar_at("gcode_flavor")
        fan_off_layers = self.cfg.int_at("disable_fan_first_layers")
        min_fan = self.cfg.float_at("min_fan_speed")

        for layer in range(TOTAL_LAYER_COUNT):
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled(f"Generation cancelled before layer {layer}")

            z = first_layer_height + layer * layer_height
            self.height = first_layer_height if layer == 0 else layer_height
            self.extruder.set_layer(layer)
            self.speeds = resolve_speeds(self.cfg, self.extruder, self.height, first_layer=layer == 0)
            layer_vars = {"layer_num": layer, "layer_z": z}

            self._expand_slot("before_layer_gcode", layer_vars)
            self._line(";LAYER_CHANGE")
            self._line(f";Z:{z:.3f}")
            self._line(f";HEIGHT:{self.height:.3f}")
            self._line(f"G1 Z{z:.3f} {feed_word(self.speeds.travel_z)}")
            self._line("G92 E0")
            self.extruder.set_position(0.0)
            self._expand_slot("layer_gcode", layer_vars)

            if layer == 0 and fan_off_layers > 0:
                self._line("M107 ; Disable fan")
            if layer == fan_off_layers:
                duty = round(min_fan / 100.0 * 255)
                self._line(f"M106 S{duty} ; Enable fan at {min_fan:g}%")

            for index in print_order(len(pa_values), layout.cols, layer):
                origin = layout.origin(index, size.width, size.height, size.spacing)
                value = pa_values[index]
                self._line(f"; Object {index + 1}, PA: {format_pa(value)}")
                self._line(pressure_advance_command(flavor, value))
                self._write_object(layer, origin, size, nozzle_diameter, value)

            logger.debug("Layer %d at Z=%.3f written", layer, z)

        return self.buf.getvalue()

    def _write_object(
        self,
        layer: int,
        origin: Point,
        size: ObjectSize,
        nozzle_diameter: float,
        value: float,
    ) -> None:
        assert self.speeds is not None
        count = SHELL_PERIMETERS if layer < SHELL_LAYERS else WALL_PERIMETERS
        dims = (size.width, size.height)

        widths = [self.extruder.get_extrusion_width("external_perimeter")]
        widths += [self.extruder.get_extrusion_width("perimeter")] * (count - 1)
        offsets = perimeter_offsets(widths)

        for p in range(count - 1, -1, -1):
            perimeter = rectangular_perimeter(origin, dims, p, widths[p], offsets[p], nozzle_diameter)
            if perimeter is None:
                continue
            if perimeter.is_external:
                self._line(";TYPE:External perimeter")
                speed = self.speeds.external_perimeter
            else:
                self._line(";TYPE:Perimeter")
                speed = self.speeds.perimeter
            self._line(f";WIDTH:{widths[p]:.3f}")
            self.travel(*perimeter.start)
            for side in perimeter.sides:
                self.extrude_to(*side.end, widths[p], speed)

        if layer < SHELL_LAYERS:
            self._write_infill(layer, origin, dims, sum(widths))

        if layer == LABEL_LAYER:
            width = self.extruder.get_extrusion_width("default")
            overlap = self.cfg.relative_at("infill_overlap", width)
            inset = LABEL_PERIMETERS * width - overlap
            label = self.digits.generate_digits(
                value,
                origin[0] + inset,
                origin[1] + inset,
                self.extruder,
                self.speeds,
                layer_height=self.height,
                position=self.pos,
            )
            for line in label.lines:
                self._line(line)
            self.pos = label.end

    def _write_infill(self, layer: int, origin: Point, dims: tuple[float, float], band: float) -> None:
        assert self.speeds is not None
        width = self.extruder.get_extrusion_width("infill")
        overlap = self.cfg.relative_at("infill_overlap", width)
        rect = infill_rectangle(origin, dims, band, width, overlap)
        if rect is None:
            return
        points = diagonal_zigzag_infill(*rect, width, rotate_left=layer % 2 == 0)
        if not points:
            return
        self._line(";TYPE:Solid infill")
        self._line(f";WIDTH:{width:.3f}")
        self.travel(*points[0])
        for point in points[1:]:
            self.extrude_to(*point, width, self.speeds.infill)


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class PATestGenerator:
    """Builds pressure-advance calibration prints.

    Parameters
    ----------
    engine : TemplateEngine | None
        Template engine for the user G-code slots.
    digits : DigitGenerator | None
        Label renderer.
    accel_mm_s2 : float | None
        Acceleration for the print-time estimate; ``None`` assumes
        constant velocity.

    Notes
    -----
    Calls to :meth:`generate` are serialised by an internal lock, so one
    instance can back a service handling requests from several threads.
    """

    def __init__(
        self,
        engine: TemplateEngine | None = None,
        digits: DigitGenerator | None = None,
        accel_mm_s2: float | None = None,
    ) -> None:
        self.engine = engine or TemplateEngine()
        self.digits = digits or DigitGenerator()
        self.accel_mm_s2 = accel_mm_s2
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def generate(
        self,
        config: ConfigEnvironment | Mapping[str, Any],
        pa_values: Sequence[float],
        placeholders: Mapping[str, Any] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> GenerationResult:
        """Generate the calibration document.

        Parameters
        ----------
        config : ConfigEnvironment | Mapping[str, Any]
            Merged printer / filament / print configuration.
        pa_values : Sequence[float]
            One PA value per test object, ascending.
        placeholders : Mapping[str, Any] | None
            Extra template variables; they override computed ones
            (e.g. a caller-supplied ``print_time``).
        cancel_event : threading.Event | None
            Checked between layers.

        Returns
        -------
        GenerationResult

        Raises
        ------
        ValueError
            If *pa_values* is empty.
        ConfigError
            If ``nozzle_diameter`` or ``layer_height`` is missing or invalid.
        LayoutError
            If ``bed_shape`` is missing or no grid fits.
        CapacityError
            If more objects are requested than the plate holds.
        GenerationCancelled
            If *cancel_event* is set while generating.
        """
        with self._lock:
            return self._generate(config, list(pa_values), placeholders, cancel_event)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _generate(
        self,
        config: ConfigEnvironment | Mapping[str, Any],
        pa_values: list[float],
        placeholders: Mapping[str, Any] | None,
        cancel_event: threading.Event | None,
    ) -> GenerationResult:
        if not pa_values:
            raise ValueError("At least one PA value is required")
        cfg = config if isinstance(config, ConfigEnvironment) else ConfigEnvironment(config)

        nozzle = cfg.float_at("nozzle_diameter")
        layer_height = cfg.float_at("layer_height")
        first_layer_height = cfg.float_at("first_layer_height", default=layer_height)
        for key, value in (
            ("nozzle_diameter", nozzle),
            ("layer_height", layer_height),
            ("first_layer_height", first_layer_height),
        ):
            if value <= 0:
                raise ConfigError(f"{key} must be > 0, got {value}")

        bed = self._bed(cfg)
        size = object_size_for_nozzle(nozzle)
        layout = self._layout(len(pa_values), size, bed)
        logger.info(
            "Generating %d PA objects in a %dx%d grid (nozzle %.2f mm, layer %.2f mm)",
            len(pa_values), layout.cols, layout.rows, nozzle, layer_height,
        )

        extruder = ExtruderState.from_config(cfg)
        extruder.initialize_widths(cfg, nozzle, layer_height, first_layer_height)

        variables = cfg.as_variables()
        variables.update(self._derived_variables(bed, layout, layer_height, first_layer_height))
        extra = normalize_variables(placeholders)
        variables.update(extra)

        warnings: list[TemplateWarning] = []
        writer = _ObjectBlockWriter(cfg, extruder, self.engine, self.digits, variables, warnings)
        objects = writer.write_layers(
            layout, size, pa_values, nozzle, layer_height, first_layer_height, cancel_event
        )

        estimate = PrintTimeEstimator(accel_mm_s2=self.accel_mm_s2, bed=bed).run(objects)
        if "print_time" not in extra:
            variables["print_time"] = [format_duration(estimate.time_estimate_s)]

        buf = StringIO()
        self._write_header(buf, cfg, variables, warnings, relative_e=extruder.relative_e)
        buf.write("; PA Test Objects\n")
        buf.write(objects)
        buf.write("\n")
        self._write_footer(buf, cfg, variables, warnings)
        gcode = buf.getvalue()

        filename_exp = self.engine.expand_filename(cfg.text("output_filename_format"), variables)
        warnings.extend(filename_exp.warnings)

        unresolved = find_unresolved(gcode)
        if unresolved:
            logger.warning("%d unresolved placeholder(s) in output: %s", len(unresolved), unresolved[:5])
        logger.info(
            "Generated %s: %d lines, estimated %s",
            filename_exp.text, gcode.count("\n"), format_duration(estimate.time_estimate_s),
        )

        return GenerationResult(
            gcode=gcode,
            filename=filename_exp.text,
            layout=layout,
            estimate=estimate,
            warnings=warnings,
            unresolved=unresolved,
        )

    def _bed(self, cfg: ConfigEnvironment) -> BedBounds:
        if not cfg.has_value("bed_shape"):
            raise LayoutError("bed_shape is not configured; cannot place test objects")
        return parse_bed_shape(",".join(cfg["bed_shape"]))

    def _layout(self, count: int, size: ObjectSize, bed: BedBounds) -> Layout:
        maximum = max_object_count(size.width, size.height, size.spacing, bed.width, bed.height)
        if count > maximum:
            raise CapacityError(count, maximum)
        layout = best_layout(count, size.width, size.height, size.spacing, bed.width, bed.height)
        return layout.translated(bed.min_x, bed.min_y)

    def _derived_variables(
        self,
        bed: BedBounds,
        layout: Layout,
        layer_height: float,
        first_layer_height: float,
    ) -> dict[str, list[Any]]:
        max_x = layout.start_x + layout.total_width
        max_y = layout.start_y + layout.total_height
        return {
            "first_layer_height": [first_layer_height],
            "print_bed_min": [bed.min_x, bed.min_y],
            "print_bed_max": [bed.max_x, bed.max_y],
            "print_bed_size": [bed.width, bed.height],
            "first_layer_print_min": [layout.start_x, layout.start_y],
            "first_layer_print_max": [max_x, max_y],
            "first_layer_print_size": [layout.total_width, layout.total_height],
            "total_layer_count": [TOTAL_LAYER_COUNT],
            "max_layer_z": [first_layer_height + layer_height * (TOTAL_LAYER_COUNT - 1)],
        }

    def _expand(
        self,
        cfg: ConfigEnvironment,
        key: str,
        variables: dict[str, list[Any]],
        warnings: list[TemplateWarning],
    ) -> str:
        expansion = self.engine.expand(cfg.text(key), variables, source=key)
        warnings.extend(expansion.warnings)
        return expansion.text

    # ------------------------------------------------------------------
    # Header / footer
    # ------------------------------------------------------------------

    def _write_header(
        self,
        buf: StringIO,
        cfg: ConfigEnvironment,
        variables: dict[str, list[Any]],
        warnings: list[TemplateWarning],
        relative_e: bool,
    ) -> None:
        buf.write("; PA Test Generator\n")
        buf.write("; Start G-code\n")
        buf.write(self._expand(cfg, "start_gcode", variables, warnings) + "\n")
        buf.write("\n")
        buf.write("G21 ; set units to millimeters\n")
        buf.write("G90 ; use absolute coordinates\n")
        if relative_e:
            buf.write("M83 ; use relative distances for extrusion\n")
        else:
            buf.write("M82 ; use absolute distances for extrusion\n")
        buf.write("\n")
        buf.write("; Filament G-code\n")
        buf.write(self._expand(cfg, "start_filament_gcode", variables, warnings) + "\n")
        buf.write("\n")

    def _write_footer(
        self,
        buf: StringIO,
        cfg: ConfigEnvironment,
        variables: dict[str, list[Any]],
        warnings: list[TemplateWarning],
    ) -> None:
        buf.write("; Filament end G-code\n")
        buf.write(self._expand(cfg, "end_filament_gcode", variables, warnings) + "\n")
        buf.write("; End G-code\n")
        buf.write(self._expand(cfg, "end_gcode", variables, warnings) + "\n")
        buf.write(";\n")
