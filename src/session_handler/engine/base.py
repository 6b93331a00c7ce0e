"""
Point-cloud engine interface.

The session layer treats the engine as an opaque capability: it builds a
pipeline, answers metadata queries and streams points in chunks. Engines are
shared between the session and every in-flight read, so implementations must
declare whether they tolerate concurrent reads. An engine that sets
``concurrent_reads = False`` has its background access serialized by the
owning session.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, TYPE_CHECKING

import numpy as np

from ..geometry import Bounds2D

if TYPE_CHECKING:
    from .pipeline import PipelineSpec


_KIND_CODES = {"floating": "f", "signed": "i", "unsigned": "u"}
_VALID_SIZES = {"floating": (4, 8), "signed": (1, 2, 4, 8), "unsigned": (1, 2, 4, 8)}


@dataclass(frozen=True)
class Dimension:
    """A named point attribute with a PDAL-style type and byte size."""
    name: str
    type: str
    size: int

    def __post_init__(self) -> None:
        if self.type not in _KIND_CODES:
            raise ValueError(f"Unsupported dimension type '{self.type}' for {self.name}")
        if self.size not in _VALID_SIZES[self.type]:
            raise ValueError(f"Unsupported size {self.size} for {self.type} dimension {self.name}")

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(f"<{_KIND_CODES[self.type]}{self.size}")

    def to_dict(self) -> Dict[str, object]:
        return {"name": self.name, "type": self.type, "size": self.size}


def structured_dtype(dimensions: Sequence[Dimension]) -> np.dtype:
    """Packed little-endian record dtype for the given dimensions, in order."""
    return np.dtype([(d.name, d.dtype) for d in dimensions])


class PointCloudEngine(ABC):
    """Abstract point-cloud engine consumed by :class:`Session`."""

    #: Whether extract_points may run from several threads at once.
    concurrent_reads: bool = True

    @abstractmethod
    def initialize_pipeline(
        self,
        pipeline_id: str,
        pipeline: "PipelineSpec",
        aux_paths: Sequence[str],
        execute: bool,
    ) -> None:
        """Build the pipeline. With ``execute=False`` only validate its inputs."""

    @abstractmethod
    def point_count(self) -> int:
        ...

    @abstractmethod
    def dimensions(self) -> List[Dimension]:
        ...

    @abstractmethod
    def bounds(self) -> Bounds2D:
        ...

    @abstractmethod
    def stats(self) -> str:
        """Per-dimension statistics as a JSON document."""

    @abstractmethod
    def spatial_reference(self) -> str:
        """Spatial reference as WKT, or an empty string when unknown."""

    @abstractmethod
    def fill_counts(self) -> List[int]:
        ...

    @abstractmethod
    def serialize_to(self, paths: Sequence[str]) -> str:
        """Persist the executed pipeline to the first usable path and return the file written."""

    @abstractmethod
    def extract_points(
        self,
        names: Sequence[str],
        bounds: Optional[Bounds2D],
        chunk_size: int,
    ) -> Iterator[np.ndarray]:
        """Yield structured arrays of at most ``chunk_size`` points holding ``names``."""

    def schema(self) -> str:
        """Dimension list as a JSON document."""
        return json.dumps({"dimensions": [d.to_dict() for d in self.dimensions()]})

    def find_dimension(self, name: str) -> Optional[Dimension]:
        for dim in self.dimensions():
            if dim.name == name:
                return dim
        return None
