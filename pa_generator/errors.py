"""Exception taxonomy for G-code generation.

``CapacityError`` and ``LayoutError`` are fatal to a generation call.
Template problems never raise; they are collected as
:class:`~pa_generator.template.engine.TemplateWarning` records instead.
Configuration problems raise
:class:`~pa_generator.configs.loader.ConfigError`.
"""

from __future__ import annotations


class GenerationError(Exception):
    """Base class for failures that abort a generation call."""

    pass


class CapacityError(GenerationError):
    """Raised when more test objects are requested than the plate holds.

    Parameters
    ----------
    requested : int
        Number of PA values (objects) requested.
    maximum : int
        Largest object count that fits on the plate.
    """

    def __init__(self, requested: int, maximum: int) -> None:
        self.requested = requested
        self.maximum = maximum
        super().__init__(
            f"{requested} test objects requested but the plate holds at "
            f"most {maximum}"
        )


class LayoutError(GenerationError):
    """Raised when no grid arrangement fits inside the plate margins."""

    pass


class GenerationCancelled(GenerationError):
    """Raised when a caller cancels generation between layers."""

    pass
