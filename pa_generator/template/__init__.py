"""Template placeholder expansion for user G-code snippets."""

from pa_generator.template.engine import (
    Expansion,
    TemplateEngine,
    TemplateWarning,
    generate_filename,
    normalize_variables,
    sanitize_filename,
    seed_defaults,
)
from pa_generator.template.expression import ExpressionError, evaluate, format_number

__all__ = [
    "Expansion",
    "ExpressionError",
    "TemplateEngine",
    "TemplateWarning",
    "evaluate",
    "format_number",
    "generate_filename",
    "normalize_variables",
    "sanitize_filename",
    "seed_defaults",
]
