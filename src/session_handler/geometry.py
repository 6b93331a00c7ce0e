"""
2D bounding boxes shared by the engine, read filters and rasterization.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class Bounds2D:
    """2D bounding box defined by min/max coordinates.

    Attributes:
        min_x: Minimum X coordinate
        min_y: Minimum Y coordinate
        max_x: Maximum X coordinate
        max_y: Maximum Y coordinate
    """
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> "Bounds2D":
        """Build from ``[min_x, min_y, max_x, max_y]``."""
        if len(values) != 4:
            raise ValueError(f"bounds must have 4 values [min_x, min_y, max_x, max_y], got {len(values)}")
        min_x, min_y, max_x, max_y = (float(v) for v in values)
        return cls(min_x=min_x, min_y=min_y, max_x=max_x, max_y=max_y)

    def to_list(self) -> list:
        return [self.min_x, self.min_y, self.max_x, self.max_y]

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    def is_valid(self) -> bool:
        """True when both extents are strictly positive."""
        return self.max_x > self.min_x and self.max_y > self.min_y


def bounds_intersect(a: Bounds2D, b: Bounds2D) -> bool:
    """Check if two 2D bounding boxes intersect (inclusive edges)."""
    return not (a.max_x < b.min_x or a.min_x > b.max_x or a.max_y < b.min_y or a.min_y > b.max_y)
