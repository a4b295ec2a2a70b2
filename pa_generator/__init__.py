"""
Pressure-Advance Test Generator.

Produces a single G-code document that prints one small test object per
candidate pressure-advance value, so the best value can be picked by eye.

Subpackages:
    configs: Config environment, central defaults, slicer profile loading
    extrusion: Extrusion physics and virtual extruder state
    geometry: Perimeter / infill paths and plate layout
    template: Safe expression evaluator and G-code template engine
    gcode: Layer orchestration, digit labels, print-time estimation
    utils: Logging setup and atomic file writes
    scripts: Command-line entry point
"""

from pa_generator.errors import (
    CapacityError,
    GenerationCancelled,
    GenerationError,
    LayoutError,
)

__version__ = "0.3.0"

__all__ = [
    "CapacityError",
    "GenerationCancelled",
    "GenerationError",
    "LayoutError",
    "configs",
    "extrusion",
    "gcode",
    "geometry",
    "template",
    "utils",
]
