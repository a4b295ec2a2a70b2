"""Config environment, central defaults and slicer profile loading."""

from pa_generator.configs.loader import (
    BedBounds,
    ConfigEnvironment,
    ConfigError,
    ProfileDirectory,
    load_profile,
    parse_bed_shape,
    parse_relative,
    resolve_inherits,
)
from pa_generator.configs.validators import PARange

__all__ = [
    "BedBounds",
    "ConfigEnvironment",
    "ConfigError",
    "PARange",
    "ProfileDirectory",
    "load_profile",
    "parse_bed_shape",
    "parse_relative",
    "resolve_inherits",
]
