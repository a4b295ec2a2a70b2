"""Tests for extrusion physics and the virtual extruder.

Covers the stadium cross-section, filament-length conversion, flow
clamping, retraction bookkeeping and extrusion-width resolution.
"""

from __future__ import annotations

import math

import pytest

from pa_generator.configs.loader import ConfigEnvironment, ConfigError
from pa_generator.extrusion.extruder import (
    ExtruderState,
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


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def extruder() -> ExtruderState:
    ext = ExtruderState(filament_diameter=1.75, flow_multiplier=1.0)
    ext.initialize_widths(ConfigEnvironment(), nozzle_diameter=0.4, layer_height=0.2)
    return ext


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class TestCrossSection:
    def test_disc_when_height_exceeds_width(self) -> None:
        assert cross_section_area(0.3, 0.4) == pytest.approx(math.pi * 0.2**2)

    def test_stadium_when_flat(self) -> None:
        expected = 0.2 * (0.45 - 0.2) + math.pi * 0.1**2
        assert cross_section_area(0.45, 0.2) == pytest.approx(expected)

    def test_continuous_at_equal_sides(self) -> None:
        assert cross_section_area(0.4 + 1e-9, 0.4) == pytest.approx(
            cross_section_area(0.4, 0.4)
        )


class TestExtrusionLength:
    def test_formula(self) -> None:
        area = cross_section_area(0.45, 0.2)
        filament = math.pi * (1.75 / 2) ** 2
        assert extrusion_length(10.0, 0.45, 0.2, 1.75, 0.95) == pytest.approx(
            area * 10.0 / filament * 0.95
        )

    def test_zero_path_is_zero(self) -> None:
        assert extrusion_length(0.0, 0.45, 0.2, 1.75) == 0.0

    def test_invalid_filament_rejected(self) -> None:
        with pytest.raises(ValueError):
            extrusion_length(10.0, 0.45, 0.2, 0.0)


class TestFlowClamp:
    def test_zero_ceiling_disables_clamp(self) -> None:
        assert clamp_speed_by_flow(500.0, 0.45, 0.2, 0.0) == 500.0

    def test_never_exceeds_ceiling(self) -> None:
        area = cross_section_area(0.45, 0.2)
        speed = clamp_speed_by_flow(500.0, 0.45, 0.2, 5.0)
        assert speed == pytest.approx(5.0 / area)
        assert speed * area <= 5.0 + 1e-9

    def test_slow_request_unchanged(self) -> None:
        assert clamp_speed_by_flow(10.0, 0.45, 0.2, 15.0) == 10.0

    def test_non_positive_area(self) -> None:
        assert max_speed_for_cross_section(0.0, 15.0) == 0.0


# ---------------------------------------------------------------------------
# Extruder state
# ---------------------------------------------------------------------------


class TestExtrude:
    def test_delta_matches_model(self, extruder: ExtruderState) -> None:
        before = extruder.current_e
        after = extruder.extrude(12.5, 0.45, 0.2)
        assert after - before == pytest.approx(extrusion_length(12.5, 0.45, 0.2, 1.75, 1.0))

    def test_extrude_clears_retraction(self, extruder: ExtruderState) -> None:
        extruder.retract()
        extruder.extrude(1.0, 0.45, 0.2)
        assert not extruder.is_retracted

    def test_absolute_e_word(self, extruder: ExtruderState) -> None:
        extruder.extrude(10.0, 0.45, 0.2)
        extruder.extrude(10.0, 0.45, 0.2)
        assert extruder.e_word() == f"E{extruder.current_e:.5f}"

    def test_relative_e_word(self) -> None:
        ext = ExtruderState(relative_e=True)
        ext.extrude(10.0, 0.45, 0.2)
        ext.extrude(10.0, 0.45, 0.2)
        delta = extrusion_length(10.0, 0.45, 0.2, 1.75)
        assert ext.e_word() == f"E{delta:.5f}"

    def test_set_position_keeps_retraction(self, extruder: ExtruderState) -> None:
        extruder.extrude(10.0, 0.45, 0.2)
        extruder.retract()
        extruder.set_position(0.0)
        assert extruder.current_e == 0.0
        assert extruder.is_retracted

    def test_reset(self, extruder: ExtruderState) -> None:
        extruder.extrude(10.0, 0.45, 0.2)
        extruder.retract()
        extruder.reset()
        assert extruder.current_e == 0.0
        assert not extruder.is_retracted


class TestRetraction:
    def test_second_retract_is_noop(self, extruder: ExtruderState) -> None:
        extruder.extrude(5.0, 0.45, 0.2)
        first = extruder.retract()
        e_after_first = extruder.current_e
        assert first is not None
        assert extruder.retract() is None
        assert extruder.current_e == e_after_first

    def test_retract_subtracts_length(self, extruder: ExtruderState) -> None:
        extruder.extrude(5.0, 0.45, 0.2)
        before = extruder.current_e
        line = extruder.retract()
        assert extruder.current_e == pytest.approx(before - 0.8)
        assert line == f"G1 E{before - 0.8:.5f} F2100.0 ; Retract"

    def test_unretract_uses_deretract_speed(self, extruder: ExtruderState) -> None:
        extruder.retract()
        line = extruder.unretract()
        assert line is not None
        assert line.endswith("F2400.0 ; Unretract")
        assert extruder.current_e == pytest.approx(0.0)

    def test_unretract_without_retract_is_noop(self, extruder: ExtruderState) -> None:
        assert extruder.unretract() is None

    def test_firmware_retraction(self) -> None:
        ext = ExtruderState(retraction=RetractionSettings(use_firmware=True))
        assert ext.retract() == "G10 ; Retract"
        assert ext.current_e == 0.0
        assert ext.unretract() == "G11 ; Unretract"

    def test_zero_length_disables(self) -> None:
        ext = ExtruderState(retraction=RetractionSettings(length=0.0))
        assert ext.retract() is None
        assert not ext.should_retract(100.0)

    def test_should_retract_threshold(self, extruder: ExtruderState) -> None:
        assert extruder.should_retract(2.0)
        assert not extruder.should_retract(1.99)
        extruder.retract()
        assert not extruder.should_retract(50.0)

    def test_settings_from_config(self) -> None:
        cfg = ConfigEnvironment(
            {"retract_length": "1.2", "deretract_speed": "0", "use_firmware_retraction": "1"}
        )
        settings = RetractionSettings.from_config(cfg)
        assert settings.length == 1.2
        assert settings.deretract_speed is None
        assert settings.use_firmware


# ---------------------------------------------------------------------------
# Widths
# ---------------------------------------------------------------------------


class TestWidths:
    def test_resolve_precedence(self) -> None:
        assert resolve_width("0.5", 0.2, 0.45) == 0.5
        assert resolve_width("150%", 0.2, 0.45) == pytest.approx(0.3)
        assert resolve_width("0", 0.2, 0.45) == 0.45
        assert resolve_width("", 0.2, 0.45) == 0.45
        assert resolve_width(None, 0.2, 0.45) == 0.45

    def test_default_from_nozzle(self, extruder: ExtruderState) -> None:
        assert extruder.get_extrusion_width("default") == pytest.approx(0.45)
        assert extruder.get_extrusion_width("infill") == pytest.approx(0.45)

    def test_per_feature_widths(self) -> None:
        cfg = ConfigEnvironment(
            {
                "extrusion_width": "0.45",
                "external_perimeter_extrusion_width": "0.42",
                "solid_infill_extrusion_width": "250%",
            }
        )
        ext = ExtruderState()
        ext.initialize_widths(cfg, 0.4, 0.2)
        assert ext.get_extrusion_width("external_perimeter") == pytest.approx(0.42)
        assert ext.get_extrusion_width("perimeter") == pytest.approx(0.45)
        assert ext.get_extrusion_width("infill") == pytest.approx(0.5)

    def test_orca_alias(self) -> None:
        ext = ExtruderState()
        ext.initialize_widths(ConfigEnvironment({"outer_wall_line_width": "0.41"}), 0.4, 0.2)
        assert ext.get_extrusion_width("external_perimeter") == pytest.approx(0.41)

    def test_generic_infill_width(self) -> None:
        ext = ExtruderState()
        ext.initialize_widths(ConfigEnvironment({"infill_extrusion_width": "0.5"}), 0.4, 0.2)
        assert ext.get_extrusion_width("infill") == pytest.approx(0.5)

    def test_zero_alias_falls_through(self) -> None:
        cfg = ConfigEnvironment(
            {"solid_infill_extrusion_width": "0", "infill_extrusion_width": "0.48"}
        )
        ext = ExtruderState()
        ext.initialize_widths(cfg, 0.4, 0.2)
        assert ext.get_extrusion_width("infill") == pytest.approx(0.48)

    def test_first_layer_width_wins_on_first_layer(self) -> None:
        cfg = ConfigEnvironment({"first_layer_extrusion_width": "0.6"})
        ext = ExtruderState()
        ext.initialize_widths(cfg, 0.4, 0.2)
        ext.set_layer(0)
        assert ext.get_extrusion_width("infill") == pytest.approx(0.6)
        assert ext.get_extrusion_width("external_perimeter") == pytest.approx(0.6)
        ext.set_layer(1)
        assert ext.get_extrusion_width("infill") == pytest.approx(0.45)

    def test_widths_required_before_lookup(self) -> None:
        with pytest.raises(RuntimeError):
            ExtruderState().get_extrusion_width()

    def test_invalid_nozzle(self) -> None:
        with pytest.raises(ConfigError):
            ExtruderState().initialize_widths(ConfigEnvironment(), 0.0, 0.2)

    def test_unknown_kind(self, extruder: ExtruderState) -> None:
        with pytest.raises(ValueError):
            extruder.get_extrusion_width("ironing")  # type: ignore[arg-type]


def test_feed_word_converts_to_mm_min() -> None:
    assert feed_word(42.0) == "F2520.0"
