"""G-code emission: layer orchestration, digit labels, time estimation."""

from pa_generator.gcode.digits import DigitGenerator, DigitLabel, format_pa
from pa_generator.gcode.estimator import EstimateResult, PrintTimeEstimator, format_duration
from pa_generator.gcode.generator import (
    GenerationResult,
    PATestGenerator,
    find_unresolved,
    pressure_advance_command,
)
from pa_generator.gcode.speeds import FeatureSpeeds, resolve_speeds

__all__ = [
    "DigitGenerator",
    "DigitLabel",
    "EstimateResult",
    "FeatureSpeeds",
    "GenerationResult",
    "PATestGenerator",
    "PrintTimeEstimator",
    "find_unresolved",
    "format_duration",
    "format_pa",
    "pressure_advance_command",
    "resolve_speeds",
]
