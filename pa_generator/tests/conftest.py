"""Shared fixtures: a small printer / filament / print profile set."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from pa_generator.configs.loader import ConfigEnvironment

PRINTER: dict[str, Any] = {
    "printer_model": "MK3S",
    "bed_shape": "0x0,200x0,200x200,0x200",
    "nozzle_diameter": "0.4",
    "gcode_flavor": "marlin2",
    "retract_length": "0.8",
    "retract_speed": "35",
    "deretract_speed": "40",
    "retract_before_travel": "2",
    "use_firmware_retraction": "0",
    "use_relative_e_distances": "0",
    "start_gcode": "G28 ; home\nM104 S[first_layer_temperature]",
    "end_gcode": "M104 S0\nM140 S0",
}

FILAMENT: dict[str, Any] = {
    "filament_diameter": "1.75",
    "extrusion_multiplier": "1",
    "max_volumetric_speed": "15",
    "first_layer_temperature": "215",
    "temperature": "210",
    "disable_fan_first_layers": "1",
    "min_fan_speed": "35",
    "start_filament_gcode": "; filament start",
    "end_filament_gcode": "; filament end",
}

PRINT: dict[str, Any] = {
    "layer_height": "0.2",
    "first_layer_height": "0.2",
    "perimeter_speed": "50",
    "external_perimeter_speed": "50%",
    "infill_speed": "80",
    "first_layer_speed": "30",
    "travel_speed": "150",
    "infill_overlap": "10%",
}


@pytest.fixture()
def raw_config() -> dict[str, Any]:
    """Merged raw profile map (printer, filament, print)."""
    return {**PRINTER, **FILAMENT, **PRINT}


@pytest.fixture()
def cfg(raw_config: dict[str, Any]) -> ConfigEnvironment:
    return ConfigEnvironment(raw_config)


@pytest.fixture()
def profile_dir(tmp_path: Path) -> Path:
    """Directory with one ``.ini`` profile per kind, the print one inheriting."""
    def write(name: str, values: dict[str, Any]) -> None:
        lines = []
        for key, value in values.items():
            escaped = str(value).replace("\n", "\\n")
            lines.append(f"{key} = {escaped}")
        (tmp_path / name).write_text("\n".join(lines) + "\n", encoding="utf-8")

    write("printer.ini", PRINTER)
    write("filament.ini", FILAMENT)
    write("print_base.ini", PRINT)
    write("print.ini", {"inherits": "print_base", "layer_height": "0.2"})
    return tmp_path
