"""Stroke-font label renderer for the PA value printed on each object.

Each glyph is a polyline of ``(x, y, extrude)`` points inside a
2.5 x 5 mm box, relative to the glyph origin (bottom-left).  The pen
starts at the glyph origin; ``extrude = 1`` draws to the point,
``extrude = 0`` travels.  Every glyph ends with a travel to the right
that becomes the origin of the next glyph.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from pa_generator.extrusion.extruder import ExtruderState, feed_word
from pa_generator.gcode.speeds import FeatureSpeeds
from pa_generator.geometry.paths import Point

logger = logging.getLogger(__name__)

LABEL_RETRACT_DISTANCE = 2.0
"""Travel moves inside a label longer than this (mm) are retracted."""

GLYPHS: dict[str, tuple[tuple[float, float, int], ...]] = {
    "0": ((0, 5, 1), (2.5, 5, 1), (2.5, 0, 1), (0, 0, 1), (3.5, 0, 0)),
    "1": ((1.0, 0, 0), (1.0, 5, 1), (3.5, 0, 0)),
    "2": ((2.5, 0, 0), (0, 0, 1), (0, 2.5, 1), (2.5, 2.5, 1), (2.5, 5, 1), (0, 5, 1), (3.5, 0, 0)),
    "3": ((2.5, 0, 1), (2.5, 2.5, 1), (0, 2.5, 0), (2.5, 2.5, 1), (2.5, 5, 1), (0, 5, 1), (3.5, 0, 0)),
    "4": ((2.5, 0, 0), (2.5, 5, 1), (2.5, 2.5, 0), (0, 2.5, 1), (0, 5, 1), (3.5, 0, 0)),
    "5": ((2.5, 0, 1), (2.5, 2.5, 1), (0, 2.5, 1), (0, 5, 1), (2.5, 5, 1), (3.5, 0, 0)),
    "6": ((2.5, 5, 0), (0, 5, 1), (0, 0, 1), (2.5, 0, 1), (2.5, 2.5, 1), (0, 2.5, 1), (3.5, 0, 0)),
    "7": ((2.5, 0, 0), (2.5, 5, 1), (0, 5, 1), (3.5, 0, 0)),
    "8": ((0, 5, 1), (2.5, 5, 1), (2.5, 0, 1), (0, 0, 1), (0, 2.5, 0), (2.5, 2.5, 1), (3.5, 0, 0)),
    "9": ((2.5, 0, 1), (2.5, 5, 1), (0, 5, 1), (0, 2.5, 1), (2.5, 2.5, 1), (3.5, 0, 0)),
    ".": ((0.95, 0, 0), (0.95, 0.3, 1), (1.25, 0.3, 1), (1.25, 0, 1), (3.3, 0, 0)),
}


def format_pa(value: float) -> str:
    """Shortest decimal text for a PA value (``0.020`` -> ``"0.02"``)."""
    text = f"{value:.4f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


@dataclass(frozen=True)
class DigitLabel:
    """G-code of one rendered label and the pen position afterwards."""

    lines: list[str]
    end: Point


class DigitGenerator:
    """Renders numeric labels as extrusion moves."""

    def __init__(self, glyphs: dict[str, tuple[tuple[float, float, int], ...]] | None = None) -> None:
        self.glyphs = glyphs or GLYPHS

    def label_width(self, text: str) -> float:
        """Horizontal advance of *text* in mm."""
        return sum(self.glyphs[ch][-1][0] for ch in text if ch in self.glyphs)

    def generate_digits(
        self,
        value: float | str,
        origin_x: float,
        origin_y: float,
        extruder: ExtruderState,
        speeds: FeatureSpeeds,
        *,
        layer_height: float,
        position: Point,
    ) -> DigitLabel:
        """Draw *value* with its bottom-left corner at (origin_x, origin_y).

        Parameters
        ----------
        value : float | str
            PA value; floats are rendered with :func:`format_pa`.
        origin_x, origin_y : float
            Label origin on the plate.
        extruder : ExtruderState
            Shared extruder; E position and retraction state advance.
        speeds : FeatureSpeeds
            Drawing uses ``external_perimeter``, travel uses ``travel``.
        layer_height : float
            Height of the current layer.
        position : Point
            Current pen position, for the approach travel.

        Returns
        -------
        DigitLabel
        """
        text = value if isinstance(value, str) else format_pa(value)
        width = extruder.get_extrusion_width("default")
        lines: list[str] = [f"; PA label: {text}", ";TYPE:Custom", f";WIDTH:{width:.3f}"]

        x, y = position

        def travel(tx: float, ty: float) -> None:
            nonlocal x, y
            if math.hypot(tx - x, ty - y) > LABEL_RETRACT_DISTANCE:
                retract = extruder.retract()
                if retract:
                    lines.append(retract)
            lines.append(f"G1 X{tx:.3f} Y{ty:.3f} {feed_word(speeds.travel)}")
            x, y = tx, ty

        def draw(tx: float, ty: float) -> None:
            nonlocal x, y
            unretract = extruder.unretract()
            if unretract:
                lines.append(unretract)
            extruder.extrude(math.hypot(tx - x, ty - y), width, layer_height)
            lines.append(
                f"G1 X{tx:.3f} Y{ty:.3f} {extruder.e_word()} "
                f"{feed_word(speeds.external_perimeter)}"
            )
            x, y = tx, ty

        travel(origin_x, origin_y)
        delta_x = 0.0
        for ch in text:
            glyph = self.glyphs.get(ch)
            if glyph is None:
                logger.debug("No glyph for %r in label %r, skipped", ch, text)
                continue
            for gx, gy, extrude in glyph:
                px = origin_x + delta_x + gx
                py = origin_y + gy
                if extrude:
                    draw(px, py)
                else:
                    travel(px, py)
            delta_x = x - origin_x

        return DigitLabel(lines=lines, end=(x, y))
