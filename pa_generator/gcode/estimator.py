"""Offline G-code replay for print-time estimation.

Provides:
    - Time estimation: distance / modal feed per move, optional
      trapezoidal acceleration profile
    - Bed check: moves outside the bed bounds are reported as violations
    - Dwell and firmware-retract accounting

Public API:
    est = PrintTimeEstimator(accel_mm_s2=1000.0, bed=bounds)
    est.load_string(gcode)
    result = est.run()  # -> EstimateResult

Tracks:
    - Current position (X, Y, Z) and E
    - Feed rate (F in mm/min, modal)
    - Positioning modes (G90/G91 for XYZ, M82/M83 for E)

Usage:
    from pa_generator.gcode.estimator import PrintTimeEstimator, format_duration

    est = PrintTimeEstimator()
    est.load_file("PA_Test.gcode")
    result = est.run()
    print(f"Estimated time: {format_duration(result.time_estimate_s)}")
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from pa_generator.configs.loader import BedBounds

logger = logging.getLogger(__name__)

DEFAULT_FEED_MM_MIN = 3000.0
FIRMWARE_RETRACT_TIME_S = 0.05
"""Time charged for each ``G10``/``G11``."""

_MOVE_RE = re.compile(r"^G0?[01](?!\d)")
_COORD_RE = {
    axis: re.compile(rf"{axis}\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+))", re.IGNORECASE)
    for axis in ("X", "Y", "Z", "E", "F", "P", "S")
}


@dataclass
class EstimateResult:
    """Outcome of one replay."""

    time_estimate_s: float
    move_count: int
    violations: List[str] = field(default_factory=list)
    final_pos: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    @property
    def formatted(self) -> str:
        return format_duration(self.time_estimate_s)


def format_duration(seconds: float) -> str:
    """Format *seconds* as ``"{h}h{m}m"`` (minutes rounded)."""
    total_minutes = int(round(max(seconds, 0.0) / 60.0))
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h{minutes}m"


# ============================================================================
# ESTIMATOR
# ============================================================================

class PrintTimeEstimator:
    """Replays G-code and accumulates an execution-time estimate.

    Parameters
    ----------
    accel_mm_s2 : Optional[float]
        Acceleration for trapezoidal motion (mm/s^2), None for constant
        velocity.
    bed : Optional[BedBounds]
        When given, XY moves outside the bed are recorded as violations.
    default_feed_mm_min : float
        Feed used until the first ``F`` word.

    Attributes
    ----------
    pos : Tuple[float, float, float]
        Current position (X, Y, Z) in mm
    e : float
        Current E position in mm of filament
    feed : float
        Current feed rate (mm/min)
    total_time : float
        Accumulated time estimate (seconds)
    """

    def __init__(
        self,
        accel_mm_s2: Optional[float] = None,
        bed: Optional[BedBounds] = None,
        default_feed_mm_min: float = DEFAULT_FEED_MM_MIN,
    ):
        if accel_mm_s2 is not None and accel_mm_s2 <= 0:
            raise ValueError(f"accel_mm_s2 must be > 0, got {accel_mm_s2}")
        self.accel_mm_s2 = accel_mm_s2
        self.bed = bed
        self.default_feed_mm_min = default_feed_mm_min

        self.gcode_lines: List[str] = []
        self.reset()

    def load_file(self, path: Union[str, Path]) -> None:
        """Load G-code file for replay.

        Raises
        ------
        FileNotFoundError
            If file doesn't exist
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"G-code file not found: {path}")
        self.gcode_lines = path.read_text(encoding="utf-8").splitlines()
        logger.info(f"Loaded {len(self.gcode_lines)} G-code lines from {path}")

    def load_string(self, gcode: str) -> None:
        """Load G-code from string."""
        self.gcode_lines = gcode.splitlines()
        logger.debug(f"Loaded {len(self.gcode_lines)} G-code lines from string")

    def reset(self) -> None:
        """Reset replay state to the initial position."""
        self.pos: Tuple[float, float, float] = (0.0, 0.0, 0.0)
        self.e: float = 0.0
        self.feed: float = self.default_feed_mm_min
        self.absolute_mode: bool = True
        self.absolute_e: bool = True
        self.units_scale: float = 1.0
        self.violations: List[str] = []
        self.total_time: float = 0.0
        self.move_count: int = 0

    def estimate_move_time(self, dist: float, feed_mm_min: float) -> float:
        """Estimate time for a single move of *dist* mm.

        Uses constant velocity if accel_mm_s2 is None, otherwise a
        trapezoidal (or triangular, for short moves) profile starting and
        ending at rest.
        """
        if dist < 1e-6 or feed_mm_min <= 0:
            return 0.0

        feed_mm_s = feed_mm_min / 60.0
        if self.accel_mm_s2 is None:
            return dist / feed_mm_s

        t_accel = feed_mm_s / self.accel_mm_s2
        d_accel = 0.5 * self.accel_mm_s2 * t_accel * t_accel
        if 2 * d_accel >= dist:
            # never reaches cruise speed
            return 2.0 * math.sqrt(dist / self.accel_mm_s2)
        d_const = dist - 2 * d_accel
        return 2 * t_accel + d_const / feed_mm_s

    def parse_coordinates(self, line: str) -> Dict[str, float]:
        """Parse X, Y, Z, E, F, P, S words from a G-code line.

        Accepts numbers like X.5 (leading decimal point).
        """
        coords: Dict[str, float] = {}
        for axis, pattern in _COORD_RE.items():
            match = pattern.search(line)
            if match:
                coords[axis] = float(match.group(1))
        return coords

    def _check_bed(self, x: float, y: float, line_idx: Optional[int]) -> None:
        if self.bed is None or self.bed.contains(x, y):
            return
        where = f"line {line_idx + 1}" if line_idx is not None else f"move {self.move_count}"
        msg = (
            f"X={x:.2f} Y={y:.2f} outside bed "
            f"[{self.bed.min_x:g}..{self.bed.max_x:g}, {self.bed.min_y:g}..{self.bed.max_y:g}] at {where}"
        )
        self.violations.append(msg)
        logger.warning(msg)

    def _move(self, line: str, line_idx: Optional[int]) -> None:
        coords = self.parse_coordinates(line)
        if "F" in coords:
            self.feed = coords["F"] * self.units_scale

        new = list(self.pos)
        for i, axis in enumerate(("X", "Y", "Z")):
            if axis in coords:
                value = coords[axis] * self.units_scale
                new[i] = value if self.absolute_mode else new[i] + value
        new_pos = (new[0], new[1], new[2])

        de = 0.0
        if "E" in coords:
            value = coords["E"] * self.units_scale
            de = value - self.e if self.absolute_e else value
            self.e += de

        dist = math.dist(self.pos, new_pos)
        if dist < 1e-9:
            # E-only move (retract / unretract)
            dist = abs(de)
        elif "X" in coords or "Y" in coords:
            self._check_bed(new_pos[0], new_pos[1], line_idx)

        self.total_time += self.estimate_move_time(dist, self.feed)
        self.pos = new_pos
        self.move_count += 1

    def execute_line(self, line: str, line_idx: Optional[int] = None) -> None:
        """Execute a single G-code line and update the replay state."""
        line = line.split(";", 1)[0].strip()
        if not line:
            return
        upper = line.upper()

        if _MOVE_RE.match(upper):
            self._move(upper, line_idx)
        elif upper.startswith(("G10", "G11")):
            self.total_time += FIRMWARE_RETRACT_TIME_S
        elif upper.startswith("G4"):
            coords = self.parse_coordinates(upper[2:])
            if "P" in coords:
                self.total_time += coords["P"] / 1000.0
            elif "S" in coords:
                self.total_time += coords["S"]
        elif upper.startswith("G21"):
            self.units_scale = 1.0
        elif upper.startswith("G20"):
            self.units_scale = 25.4
            logger.warning("Inch units (G20) detected, converting to mm internally")
        elif upper.startswith("G90"):
            self.absolute_mode = True
            self.absolute_e = True
        elif upper.startswith("G91"):
            self.absolute_mode = False
            self.absolute_e = False
        elif upper.startswith("M82"):
            self.absolute_e = True
        elif upper.startswith("M83"):
            self.absolute_e = False
        elif upper.startswith("G92"):
            coords = self.parse_coordinates(upper)
            new = list(self.pos)
            for i, axis in enumerate(("X", "Y", "Z")):
                if axis in coords:
                    new[i] = coords[axis] * self.units_scale
            self.pos = (new[0], new[1], new[2])
            if "E" in coords:
                self.e = coords["E"] * self.units_scale

    def run(self, gcode: Optional[str] = None) -> EstimateResult:
        """Replay the loaded G-code (or *gcode*, if given).

        Raises
        ------
        RuntimeError
            If no G-code is loaded
        """
        if gcode is not None:
            self.load_string(gcode)
        if not self.gcode_lines:
            raise RuntimeError("No G-code loaded, call load_file() or load_string() first")

        self.reset()
        for i, line in enumerate(self.gcode_lines):
            try:
                self.execute_line(line, line_idx=i)
            except ValueError as exc:
                msg = f"Error at line {i + 1}: {line.strip()}: {exc}"
                logger.error(msg)
                self.violations.append(msg)

        logger.info(f"Replay complete: {self.move_count} moves, {self.total_time:.1f}s estimated")
        if self.violations:
            logger.warning(f"Found {len(self.violations)} violations")

        return EstimateResult(
            time_estimate_s=self.total_time,
            move_count=self.move_count,
            violations=list(self.violations),
            final_pos=self.pos,
        )
