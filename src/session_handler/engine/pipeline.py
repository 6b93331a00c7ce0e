"""
Pipeline description parsing.

A pipeline description is JSON: either ``{"pipeline": [stage, ...]}`` or a
bare list of stages. Supported stages:

- a string, or ``{"type": "readers.las", "filename": ...}``: a LAS/LAZ reader
- ``{"type": "filters.crop", "bounds": [min_x, min_y, max_x, max_y]}``
- ``{"type": "filters.range", "limits": "Classification[2:2],Z[0:100]"}``

Parsing is cheap and does no file I/O, so it runs on the calling context and
rejects malformed descriptions before any background work is scheduled.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, List, Union

import numpy as np

from ..exceptions import PipelineError
from ..geometry import Bounds2D

_READER_TYPES = ("readers.las", "readers.laz")
_LIMIT_RE = re.compile(
    r"^\s*(?P<name>\w+)\s*(?P<open>[\[\(])\s*(?P<lo>[^:\]\)]*?)\s*:\s*(?P<hi>[^:\]\)]*?)\s*(?P<close>[\]\)])\s*$"
)


@dataclass(frozen=True)
class RangeLimit:
    """One ``Name[lo:hi]`` clause; an empty side is unbounded."""
    name: str
    lower: float = -math.inf
    upper: float = math.inf
    lower_inclusive: bool = True
    upper_inclusive: bool = True

    def mask(self, values: np.ndarray) -> np.ndarray:
        lo = values >= self.lower if self.lower_inclusive else values > self.lower
        hi = values <= self.upper if self.upper_inclusive else values < self.upper
        return lo & hi


@dataclass(frozen=True)
class CropFilter:
    bounds: Bounds2D


@dataclass(frozen=True)
class RangeFilter:
    limits: List[RangeLimit]


FilterStage = Union[CropFilter, RangeFilter]


@dataclass
class PipelineSpec:
    """Parsed pipeline: input files plus filters applied in order."""
    readers: List[str] = field(default_factory=list)
    filters: List[FilterStage] = field(default_factory=list)


def parse_range_limits(text: str) -> List[RangeLimit]:
    """Parse a comma-separated ``filters.range`` limits string."""
    limits = []
    for clause in text.split(","):
        if not clause.strip():
            continue
        match = _LIMIT_RE.match(clause)
        if match is None:
            raise PipelineError(f"Invalid range limit '{clause.strip()}'")
        try:
            lower = float(match.group("lo")) if match.group("lo") else -math.inf
            upper = float(match.group("hi")) if match.group("hi") else math.inf
        except ValueError:
            raise PipelineError(f"Invalid range limit '{clause.strip()}'")
        limits.append(RangeLimit(
            name=match.group("name"),
            lower=lower,
            upper=upper,
            lower_inclusive=match.group("open") == "[",
            upper_inclusive=match.group("close") == "]",
        ))
    if not limits:
        raise PipelineError("filters.range requires at least one limit")
    return limits


def _parse_stage(stage: Any, index: int, spec: PipelineSpec) -> None:
    if isinstance(stage, str):
        spec.readers.append(stage)
        return
    if not isinstance(stage, dict):
        raise PipelineError(f"Stage {index} must be a string or an object")

    stage_type = stage.get("type")
    if stage_type is None and "filename" in stage:
        stage_type = "readers.las"

    if stage_type in _READER_TYPES:
        filename = stage.get("filename")
        if not isinstance(filename, str) or not filename:
            raise PipelineError(f"Stage {index} ({stage_type}) requires a 'filename' string")
        spec.readers.append(filename)
    elif stage_type == "filters.crop":
        raw = stage.get("bounds")
        if not isinstance(raw, list):
            raise PipelineError(f"Stage {index} (filters.crop) requires 'bounds' [min_x, min_y, max_x, max_y]")
        try:
            bounds = Bounds2D.from_sequence(raw)
        except (TypeError, ValueError) as e:
            raise PipelineError(f"Stage {index} (filters.crop): {e}")
        if not bounds.is_valid():
            raise PipelineError(f"Stage {index} (filters.crop) has empty bounds {raw}")
        spec.filters.append(CropFilter(bounds))
    elif stage_type == "filters.range":
        limits = stage.get("limits")
        if not isinstance(limits, str):
            raise PipelineError(f"Stage {index} (filters.range) requires a 'limits' string")
        spec.filters.append(RangeFilter(parse_range_limits(limits)))
    else:
        raise PipelineError(f"Stage {index} has unsupported type '{stage_type}'")


def parse_pipeline(description: str) -> PipelineSpec:
    """
    Parse and structurally validate a pipeline description.

    Args:
        description: JSON pipeline text

    Returns:
        PipelineSpec with at least one reader

    Raises:
        PipelineError: If the text is not valid JSON or describes an unusable pipeline
    """
    try:
        doc = json.loads(description)
    except json.JSONDecodeError as e:
        raise PipelineError(f"Pipeline is not valid JSON: {e}")

    stages = doc.get("pipeline") if isinstance(doc, dict) else doc
    if not isinstance(stages, list):
        raise PipelineError("Pipeline must be a list of stages or an object with a 'pipeline' list")

    spec = PipelineSpec()
    for i, stage in enumerate(stages):
        _parse_stage(stage, i, spec)

    if not spec.readers:
        raise PipelineError("Pipeline has no reader stage")
    return spec
