"""
Raster metadata and streaming binning for rasterized reads.

Provides:
- RasterMeta: immutable description of the output grid
- RasterGrid: bins point chunks into the grid, one point per cell

Each output cell is a one-byte validity flag followed by the requested
dimensions of the first point that fell into it. Cells are laid out row-major
starting at (x_begin, y_begin).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from ..engine.base import Dimension, structured_dtype
from ..geometry import Bounds2D

VALID_FIELD = "_valid"


def _axis_cells(begin: float, end: float, step: float) -> int:
    # Rounding keeps float noise (1.0 / 0.1 = 10.000000000000002) from adding a cell
    return int(math.ceil(round((end - begin) / step, 9)))


@dataclass(frozen=True)
class RasterMeta:
    """2D grid over which rasterized reads bin points.

    Attributes:
        x_begin: Grid origin along X
        x_end: End of the requested X range
        x_step: Cell size along X
        y_begin: Grid origin along Y
        y_end: End of the requested Y range
        y_step: Cell size along Y
    """
    x_begin: float
    x_end: float
    x_step: float
    y_begin: float
    y_end: float
    y_step: float

    def __post_init__(self) -> None:
        if not (self.x_step > 0 and self.y_step > 0):
            raise ValueError(f"Raster steps must be positive, got ({self.x_step}, {self.y_step})")
        if not (self.x_end > self.x_begin and self.y_end > self.y_begin):
            raise ValueError("Raster range must be non-empty on both axes")

    @classmethod
    def from_bounds(cls, bounds: Bounds2D, x_step: float, y_step: float) -> "RasterMeta":
        return cls(
            x_begin=bounds.min_x,
            x_end=bounds.max_x,
            x_step=float(x_step),
            y_begin=bounds.min_y,
            y_end=bounds.max_y,
            y_step=float(y_step),
        )

    @property
    def x_num(self) -> int:
        return _axis_cells(self.x_begin, self.x_end, self.x_step)

    @property
    def y_num(self) -> int:
        return _axis_cells(self.y_begin, self.y_end, self.y_step)

    @property
    def num_cells(self) -> int:
        return self.x_num * self.y_num

    def as_tuple(self) -> tuple:
        """The six scalars delivered with a rastered read, in callback order."""
        return (self.x_begin, self.x_step, self.x_num, self.y_begin, self.y_step, self.y_num)

    def to_dict(self) -> dict:
        return {
            "xBegin": self.x_begin,
            "xStep": self.x_step,
            "xNum": self.x_num,
            "yBegin": self.y_begin,
            "yStep": self.y_step,
            "yNum": self.y_num,
        }


class RasterGrid:
    """Streaming first-point-wins binning over a RasterMeta grid.

    Attributes:
        meta: Grid description
        cells: Structured array (x_num * y_num) of the validity flag plus dimensions
    """

    def __init__(self, meta: RasterMeta, dimensions: Sequence[Dimension]):
        self.meta = meta
        self.names = [d.name for d in dimensions]
        record = structured_dtype(dimensions)
        self.dtype = np.dtype([(VALID_FIELD, np.uint8)] + [(n, record.fields[n][0]) for n in self.names])
        self.cells = np.zeros(meta.num_cells, dtype=self.dtype)

    @property
    def record_size(self) -> int:
        return self.dtype.itemsize

    def accumulate(self, chunk: np.ndarray) -> None:
        """Bin a structured chunk holding at least X, Y and the grid's dimensions.

        Points outside the grid are ignored. A cell keeps the first point
        assigned to it across all chunks.
        """
        if chunk.size == 0:
            return

        m = self.meta
        fx = np.floor((chunk["X"] - m.x_begin) / m.x_step)
        fy = np.floor((chunk["Y"] - m.y_begin) / m.y_step)
        mask = (fx >= 0) & (fy >= 0) & (fx < m.x_num) & (fy < m.y_num)
        if not np.any(mask):
            return

        lin = fy[mask].astype(np.int64) * m.x_num + fx[mask].astype(np.int64)
        points = chunk[mask]

        # np.unique returns the index of the first occurrence of each cell
        uniq, first = np.unique(lin, return_index=True)
        fresh = self.cells[VALID_FIELD][uniq] == 0
        if not np.any(fresh):
            return
        targets = uniq[fresh]
        sources = first[fresh]

        self.cells[VALID_FIELD][targets] = 1
        for name in self.names:
            self.cells[name][targets] = points[name][sources]

    def filled(self) -> int:
        return int(np.count_nonzero(self.cells[VALID_FIELD]))

    def to_bytes(self) -> bytes:
        return self.cells.tobytes()
