"""
Seed-point capture for interactive subject picking.

A `SeedPicker` tracks one editing session: the user enters pick mode, taps
the displayed image, and may clear, cancel or apply. Points are kept in
display coordinates and mapped to working resolution when the pipeline runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from io import BytesIO
import logging
import math
from typing import Optional, Tuple

from PIL import Image, ImageDraw

logger = logging.getLogger(__name__)

Point = Tuple[float, float]
Size = Tuple[float, float]

MARKER_FILL = (0, 150, 255, 204)  # rgba(0,150,255,0.8)
MARKER_OUTLINE = (255, 255, 255, 255)
MARKER_OUTLINE_WIDTH = 2


class PickState(str, Enum):
    IDLE = "idle"
    PICKING = "picking"
    SEEDED = "seeded"


@dataclass
class PendingSeed:
    point: Point
    display_size: Size

    def to_working(self, working_size: Tuple[int, int]) -> Tuple[int, int]:
        return map_display_to_working(self.point, self.display_size, working_size)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def map_display_to_working(point: Point, display_size: Size, working_size: Tuple[int, int]) -> Tuple[int, int]:
    """Scale a point on the displayed image proportionally into working pixels."""
    display_w, display_h = display_size
    if display_w <= 0 or display_h <= 0:
        raise ValueError(f"Display size must be positive, got {display_size}")
    x, y = point
    working_w, working_h = working_size
    return (
        _round_half_up(x / display_w * working_w),
        _round_half_up(y / display_h * working_h),
    )


class SeedPicker:
    """Finite-state machine behind the pick-subject control."""

    def __init__(self) -> None:
        self.state = PickState.IDLE
        self.pending: Optional[PendingSeed] = None

    def start_picking(self) -> None:
        if self.state == PickState.IDLE:
            self.state = PickState.PICKING

    def pointer_down(self, x: float, y: float, display_size: Size) -> bool:
        """Record a tap. Ignored unless pick mode is active."""
        if self.state == PickState.IDLE:
            return False
        if display_size[0] <= 0 or display_size[1] <= 0:
            raise ValueError(f"Display size must be positive, got {display_size}")
        self.pending = PendingSeed(point=(float(x), float(y)), display_size=display_size)
        self.state = PickState.SEEDED
        logger.debug("seed: pointer down at (%.1f, %.1f) on %sx%s", x, y, *display_size)
        return True

    def clear(self) -> None:
        if self.state == PickState.SEEDED:
            self.pending = None
            self.state = PickState.PICKING

    def cancel(self) -> None:
        self.pending = None
        self.state = PickState.IDLE

    def apply(self) -> Optional[PendingSeed]:
        seed = self.pending
        self.pending = None
        self.state = PickState.IDLE
        return seed

    def reset(self) -> None:
        """A new image was loaded; any earlier seed no longer applies."""
        self.cancel()


def render_marker(display_size: Tuple[int, int], point: Optional[Point], radius: int = 8) -> bytes:
    """Draw the seed marker on a transparent overlay the size of the displayed image."""
    width = max(1, int(round(display_size[0])))
    height = max(1, int(round(display_size[1])))
    overlay = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    if point is not None:
        x, y = point
        draw = ImageDraw.Draw(overlay)
        draw.ellipse(
            (x - radius, y - radius, x + radius, y + radius),
            fill=MARKER_FILL,
            outline=MARKER_OUTLINE,
            width=MARKER_OUTLINE_WIDTH,
        )
    buf = BytesIO()
    overlay.save(buf, format="PNG")
    return buf.getvalue()
