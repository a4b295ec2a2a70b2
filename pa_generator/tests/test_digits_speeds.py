"""Tests for per-layer speed resolution and the PA label renderer."""

from __future__ import annotations

import pytest

from pa_generator.configs.loader import ConfigEnvironment
from pa_generator.extrusion.extruder import ExtruderState
from pa_generator.extrusion.model import cross_section_area
from pa_generator.gcode.digits import DigitGenerator, format_pa
from pa_generator.gcode.speeds import FeatureSpeeds, resolve_speeds

SPEEDS = FeatureSpeeds(perimeter=50.0, external_perimeter=25.0, infill=80.0, travel=150.0, travel_z=5.0)


def make_extruder(cfg: ConfigEnvironment) -> ExtruderState:
    ext = ExtruderState.from_config(cfg)
    ext.initialize_widths(cfg, 0.4, 0.2)
    return ext


# ---------------------------------------------------------------------------
# Speeds
# ---------------------------------------------------------------------------


class TestResolveSpeeds:
    def test_regular_layer(self, cfg: ConfigEnvironment) -> None:
        speeds = resolve_speeds(cfg, make_extruder(cfg), 0.2)
        assert speeds == FeatureSpeeds(50.0, 25.0, 80.0, 150.0, 5.0)

    def test_first_layer_absolute(self, cfg: ConfigEnvironment) -> None:
        ext = make_extruder(cfg)
        ext.set_layer(0)
        speeds = resolve_speeds(cfg, ext, 0.2, first_layer=True)
        assert (speeds.perimeter, speeds.external_perimeter, speeds.infill) == (30.0, 30.0, 30.0)

    def test_first_layer_percentage(self, cfg: ConfigEnvironment) -> None:
        cfg = cfg.with_overrides({"first_layer_speed": "50%"})
        speeds = resolve_speeds(cfg, make_extruder(cfg), 0.2, first_layer=True)
        assert speeds.perimeter == pytest.approx(25.0)
        assert speeds.external_perimeter == pytest.approx(12.5)
        assert speeds.infill == pytest.approx(40.0)

    def test_first_layer_infill_speed(self, cfg: ConfigEnvironment) -> None:
        cfg = cfg.with_overrides({"first_layer_infill_speed": "20"})
        speeds = resolve_speeds(cfg, make_extruder(cfg), 0.2, first_layer=True)
        assert speeds.infill == 20.0
        assert speeds.perimeter == 30.0

    def test_flow_ceiling(self, cfg: ConfigEnvironment) -> None:
        cfg = cfg.with_overrides({"max_volumetric_speed": "1"})
        speeds = resolve_speeds(cfg, make_extruder(cfg), 0.2)
        area = cross_section_area(0.45, 0.2)
        assert speeds.infill == pytest.approx(1.0 / area)
        assert speeds.travel == 150.0


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------


class TestFormatPA:
    def test_trailing_zeros_dropped(self) -> None:
        assert format_pa(0.020) == "0.02"
        assert format_pa(0.1) == "0.1"
        assert format_pa(0.0) == "0"
        assert format_pa(1.0) == "1"


class TestDigitGenerator:
    @pytest.fixture()
    def extruder(self, cfg: ConfigEnvironment) -> ExtruderState:
        return make_extruder(cfg)

    def test_label_width(self) -> None:
        assert DigitGenerator().label_width("0.01") == pytest.approx(13.8)

    def test_single_glyph(self, extruder: ExtruderState) -> None:
        label = DigitGenerator().generate_digits(
            "1", 10.0, 10.0, extruder, SPEEDS, layer_height=0.2, position=(10.0, 10.0)
        )
        assert label.lines[:3] == ["; PA label: 1", ";TYPE:Custom", ";WIDTH:0.450"]
        assert label.lines[3] == "G1 X10.000 Y10.000 F9000.0"
        assert label.lines[5].startswith("G1 X11.000 Y15.000 E")
        assert label.lines[5].endswith("F1500.0")
        assert label.end == pytest.approx((13.5, 10.0))

    def test_long_travel_retracts(self, extruder: ExtruderState) -> None:
        label = DigitGenerator().generate_digits(
            "1", 10.0, 10.0, extruder, SPEEDS, layer_height=0.2, position=(10.0, 10.0)
        )
        assert label.lines[-2].endswith("; Retract")
        assert extruder.is_retracted

    def test_short_travel_keeps_pressure(self, extruder: ExtruderState) -> None:
        label = DigitGenerator().generate_digits(
            "1", 10.0, 10.0, extruder, SPEEDS, layer_height=0.2, position=(9.0, 10.0)
        )
        assert not any("Retract" in line for line in label.lines[:5])

    def test_unretracts_before_drawing(self, extruder: ExtruderState) -> None:
        extruder.retract()
        label = DigitGenerator().generate_digits(
            "0", 10.0, 10.0, extruder, SPEEDS, layer_height=0.2, position=(10.0, 10.0)
        )
        assert label.lines[4].endswith("; Unretract")

    def test_glyphs_advance(self, extruder: ExtruderState) -> None:
        label = DigitGenerator().generate_digits(
            "11", 10.0, 10.0, extruder, SPEEDS, layer_height=0.2, position=(10.0, 10.0)
        )
        assert any(line.startswith("G1 X14.500 Y15.000 E") for line in label.lines)
        assert label.end == pytest.approx((17.0, 10.0))

    def test_unknown_characters_skipped(self, extruder: ExtruderState) -> None:
        label = DigitGenerator().generate_digits(
            "1a", 10.0, 10.0, extruder, SPEEDS, layer_height=0.2, position=(10.0, 10.0)
        )
        assert label.end == pytest.approx((13.5, 10.0))

    def test_float_value_formatted(self, extruder: ExtruderState) -> None:
        label = DigitGenerator().generate_digits(
            0.050, 0.0, 0.0, extruder, SPEEDS, layer_height=0.2, position=(0.0, 0.0)
        )
        assert label.lines[0] == "; PA label: 0.05"
