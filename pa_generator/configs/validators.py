"""Pydantic models for user-supplied generation requests.

Usage:
    from pa_generator.configs.validators import PARange

    values = PARange(start=0.0, end=0.08, step=0.01).values()
    # [0.0, 0.01, 0.02, ..., 0.08]
"""

from __future__ import annotations

import math

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_PA_VALUES = 100
"""Hard ceiling on the number of values one range may expand to."""


class PARange(BaseModel):
    """Ascending pressure-advance sweep ``start, start+step, ..., end``."""

    model_config = ConfigDict(frozen=True)

    start: float = Field(0.0, ge=0.0, description="First PA value")
    end: float = Field(..., ge=0.0, description="Last PA value (inclusive)")
    step: float = Field(..., gt=0.0, description="Increment between values")

    @field_validator("step")
    @classmethod
    def _step_resolution(cls, v: float) -> float:
        if v < 0.001:
            raise ValueError(f"step must be >= 0.001 (values keep 3 decimals), got {v}")
        return v

    @model_validator(mode="after")
    def _check_span(self) -> "PARange":
        if self.end < self.start:
            raise ValueError(f"end ({self.end}) must be >= start ({self.start})")
        if self.count() > MAX_PA_VALUES:
            raise ValueError(
                f"range expands to {self.count()} values, limit is {MAX_PA_VALUES}"
            )
        return self

    def count(self) -> int:
        """Number of values in the sweep (end inclusive, float-tolerant)."""
        return int(math.floor((self.end - self.start) / self.step + 1e-9)) + 1

    def values(self) -> list[float]:
        """Expand to the list of PA values rounded to 3 decimals."""
        return [round(self.start + i * self.step, 3) for i in range(self.count())]
