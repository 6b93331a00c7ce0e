"""
Engine Module

The point-cloud engine behind a session:
- PointCloudEngine interface and dimension types
- Pipeline description parsing
- LaspyEngine, the LAS/LAZ implementation
"""

from .base import Dimension, PointCloudEngine, structured_dtype
from .pipeline import CropFilter, PipelineSpec, RangeFilter, RangeLimit, parse_pipeline
from .laspy_engine import LaspyEngine, serialized_path

__all__ = [
    "Dimension",
    "PointCloudEngine",
    "structured_dtype",
    "CropFilter",
    "PipelineSpec",
    "RangeFilter",
    "RangeLimit",
    "parse_pipeline",
    "LaspyEngine",
    "serialized_path",
]
