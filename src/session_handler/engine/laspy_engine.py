"""
LAS/LAZ point-cloud engine backed by laspy.

Executing a pipeline reads every input file into per-dimension NumPy arrays
and applies the pipeline's filters. The arrays are never mutated afterwards,
so any number of reads may extract from the same engine concurrently.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import laspy
import numpy as np

from ..exceptions import EngineError
from ..geometry import Bounds2D
from ..utils.logging import setup_logger
from .base import Dimension, PointCloudEngine, structured_dtype
from .pipeline import CropFilter, PipelineSpec, RangeFilter

logger = setup_logger(__name__)

# (dimension name, laspy attribute, type, size)
LAS_DIMENSIONS: List[Tuple[str, str, str, int]] = [
    ("X", "x", "floating", 8),
    ("Y", "y", "floating", 8),
    ("Z", "z", "floating", 8),
    ("Intensity", "intensity", "unsigned", 2),
    ("ReturnNumber", "return_number", "unsigned", 1),
    ("NumberOfReturns", "number_of_returns", "unsigned", 1),
    ("Classification", "classification", "unsigned", 1),
    ("UserData", "user_data", "unsigned", 1),
    ("PointSourceId", "point_source_id", "unsigned", 2),
    ("GpsTime", "gps_time", "floating", 8),
    ("Red", "red", "unsigned", 2),
    ("Green", "green", "unsigned", 2),
    ("Blue", "blue", "unsigned", 2),
]

_XYZ = ("x", "y", "z")
_WKT_RECORD_ID = 2112


def serialized_path(directory: str | Path, pipeline_id: str) -> Path:
    """Location of the serialized LAS file for a pipeline inside ``directory``."""
    return Path(directory) / f"{pipeline_id}.las"


def _read_wkt(header) -> str:
    """Return the WKT from a LASF_Projection VLR, or an empty string."""
    for vlr in header.vlrs:
        if vlr.user_id == "LASF_Projection" and vlr.record_id == _WKT_RECORD_ID:
            if hasattr(vlr, "string"):
                return vlr.string.strip("\x00")
            return vlr.record_data.decode("utf-8", errors="ignore").strip("\x00")
    return ""


class LaspyEngine(PointCloudEngine):
    """
    Engine reading LAS/LAZ inputs with laspy.

    Features:
    - readers.las stages, crop and range filters
    - Schema, statistics, WKT spatial reference and quadtree fill counts
    - Serialization to a LAS cache file that later initializations pick up
    - Chunked extraction of any subset of dimensions
    """

    concurrent_reads = True

    def __init__(self, *, fill_depth: int = 8):
        """
        Args:
            fill_depth: Deepest quadtree level reported by fill_counts
        """
        self.fill_depth = int(fill_depth)
        self.pipeline_id: Optional[str] = None
        self.executed = False
        self._arrays: Dict[str, np.ndarray] = {}
        self._dimensions: List[Dimension] = []
        self._wkt = ""
        self._header_count = 0
        self._header_bounds: Optional[Bounds2D] = None

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def initialize_pipeline(
        self,
        pipeline_id: str,
        pipeline: PipelineSpec,
        aux_paths: Sequence[str],
        execute: bool,
    ) -> None:
        self.pipeline_id = pipeline_id

        if not execute:
            self._scan_headers(pipeline.readers)
            logger.info(
                f"Parsed pipeline {pipeline_id}: {len(pipeline.readers)} input(s), "
                f"{self._header_count:,} points in headers"
            )
            return

        cached = self._find_serialized(pipeline_id, aux_paths)
        if cached is not None:
            logger.info(f"Loading serialized pipeline {pipeline_id} from {cached}")
            self._load([str(cached)])
        else:
            self._load(pipeline.readers)
            for stage in pipeline.filters:
                self._apply_filter(stage)

        self.executed = True
        logger.info(f"Executed pipeline {pipeline_id}: {self.point_count():,} points")

    def _find_serialized(self, pipeline_id: str, aux_paths: Sequence[str]) -> Optional[Path]:
        for directory in aux_paths:
            candidate = serialized_path(directory, pipeline_id)
            if candidate.is_file():
                return candidate
        return None

    def _scan_headers(self, files: Sequence[str]) -> None:
        min_x = min_y = float("inf")
        max_x = max_y = float("-inf")
        total = 0
        for fp in files:
            path = self._check_input(fp)
            try:
                with laspy.open(str(path)) as reader:
                    h = reader.header
                    total += int(h.point_count)
                    min_x = min(min_x, float(h.x_min))
                    min_y = min(min_y, float(h.y_min))
                    max_x = max(max_x, float(h.x_max))
                    max_y = max(max_y, float(h.y_max))
                    if not self._wkt:
                        self._wkt = _read_wkt(h)
            except (laspy.errors.LaspyException, OSError) as e:
                raise EngineError(f"Could not read header of {fp}: {e}") from e
        self._header_count = total
        self._header_bounds = Bounds2D(min_x, min_y, max_x, max_y)

    @staticmethod
    def _check_input(fp: str) -> Path:
        path = Path(fp)
        if not path.exists():
            raise EngineError(f"Input file not found: {fp}")
        if path.suffix.lower() not in (".las", ".laz"):
            raise EngineError(f"Unsupported input format: {path.suffix}")
        return path

    def _load(self, files: Sequence[str]) -> None:
        """Read all inputs and keep the dimensions every file provides."""
        parts: List[Dict[str, np.ndarray]] = []
        for fp in files:
            path = self._check_input(fp)
            try:
                las = laspy.read(str(path))
            except (laspy.errors.LaspyException, OSError) as e:
                raise EngineError(f"Could not read {fp}: {e}") from e

            available = set(las.point_format.dimension_names)
            arrays = {}
            for name, attr, _, _ in LAS_DIMENSIONS:
                if attr in _XYZ or attr in available:
                    arrays[name] = np.asarray(getattr(las, attr))
            parts.append(arrays)

            if not self._wkt:
                self._wkt = _read_wkt(las.header)
            logger.debug(f"Read {len(las.points):,} points from {path}")

        common = set(parts[0])
        for arrays in parts[1:]:
            common &= set(arrays)

        self._dimensions = [
            Dimension(name, kind, size)
            for name, _, kind, size in LAS_DIMENSIONS
            if name in common
        ]
        self._arrays = {
            d.name: np.concatenate([p[d.name] for p in parts]).astype(d.dtype, copy=False)
            for d in self._dimensions
        }

    def _apply_filter(self, stage) -> None:
        n = len(self._arrays["X"])
        if isinstance(stage, CropFilter):
            b = stage.bounds
            x, y = self._arrays["X"], self._arrays["Y"]
            mask = (x >= b.min_x) & (x <= b.max_x) & (y >= b.min_y) & (y <= b.max_y)
        elif isinstance(stage, RangeFilter):
            mask = np.ones(n, dtype=bool)
            for limit in stage.limits:
                if limit.name not in self._arrays:
                    raise EngineError(f"filters.range: unknown dimension '{limit.name}'")
                mask &= limit.mask(self._arrays[limit.name])
        else:
            raise EngineError(f"Unsupported filter stage: {stage!r}")

        kept = int(np.count_nonzero(mask))
        logger.info(f"{type(stage).__name__} kept {kept:,} of {n:,} points")
        self._arrays = {name: values[mask] for name, values in self._arrays.items()}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _require_executed(self) -> None:
        if not self.executed:
            raise EngineError("Pipeline has not been executed")

    def point_count(self) -> int:
        self._require_executed()
        return int(len(self._arrays["X"]))

    def dimensions(self) -> List[Dimension]:
        self._require_executed()
        return list(self._dimensions)

    def bounds(self) -> Bounds2D:
        if not self.executed:
            if self._header_bounds is None:
                raise EngineError("Pipeline has not been initialized")
            return self._header_bounds
        x, y = self._arrays["X"], self._arrays["Y"]
        if x.size == 0:
            return Bounds2D(0.0, 0.0, 0.0, 0.0)
        return Bounds2D(float(x.min()), float(y.min()), float(x.max()), float(y.max()))

    def stats(self) -> str:
        self._require_executed()
        statistic = []
        for dim in self._dimensions:
            values = self._arrays[dim.name]
            entry = {"name": dim.name, "count": int(values.size)}
            if values.size:
                entry.update(
                    minimum=float(values.min()),
                    maximum=float(values.max()),
                    average=float(values.mean(dtype=np.float64)),
                )
            statistic.append(entry)
        return json.dumps({"statistic": statistic})

    def spatial_reference(self) -> str:
        return self._wkt

    def fill_counts(self) -> List[int]:
        """Occupied quadtree cells per depth, from the root (depth 0) down to fill_depth."""
        self._require_executed()
        x, y = self._arrays["X"], self._arrays["Y"]
        if x.size == 0:
            return [0] * (self.fill_depth + 1)

        b = self.bounds()
        # Unit-square coordinates; degenerate extents collapse to column/row 0
        ux = (x - b.min_x) / b.width if b.width > 0 else np.zeros_like(x)
        uy = (y - b.min_y) / b.height if b.height > 0 else np.zeros_like(y)

        fills = []
        for depth in range(self.fill_depth + 1):
            n = 1 << depth
            col = np.minimum((ux * n).astype(np.int64), n - 1)
            row = np.minimum((uy * n).astype(np.int64), n - 1)
            fills.append(int(np.unique(row * n + col).size))
        return fills

    # ------------------------------------------------------------------
    # Serialization and extraction
    # ------------------------------------------------------------------

    def serialize_to(self, paths: Sequence[str]) -> str:
        self._require_executed()
        if not paths:
            raise EngineError("No serialization paths supplied")

        for directory in paths:
            target = serialized_path(directory, self.pipeline_id)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                self._write_las(target)
            except OSError as e:
                logger.warning(f"Could not serialize to {target}: {e}")
                continue
            logger.info(f"Serialized pipeline {self.pipeline_id} to {target}")
            return str(target)

        raise EngineError(f"Could not serialize to any of: {', '.join(paths)}")

    def _write_las(self, target: Path) -> None:
        has_gps = "GpsTime" in self._arrays
        has_rgb = all(c in self._arrays for c in ("Red", "Green", "Blue"))
        point_format = {(False, False): 0, (True, False): 1, (False, True): 2, (True, True): 3}[(has_gps, has_rgb)]

        header = laspy.LasHeader(point_format=point_format, version="1.2")
        xyz = [self._arrays[c] for c in ("X", "Y", "Z")]
        header.offsets = np.array([np.floor(v.min()) if v.size else 0.0 for v in xyz])
        header.scales = np.array([0.001, 0.001, 0.001])

        if self._wkt:
            header.vlrs.append(laspy.VLR(
                user_id="LASF_Projection",
                record_id=_WKT_RECORD_ID,
                description="WKT Coordinate System",
                record_data=self._wkt.encode("utf-8"),
            ))

        las = laspy.LasData(header)
        las.x, las.y, las.z = xyz
        for name, attr, _, _ in LAS_DIMENSIONS:
            if attr in _XYZ or name not in self._arrays:
                continue
            setattr(las, attr, self._arrays[name])
        las.write(str(target))

    def extract_points(
        self,
        names: Sequence[str],
        bounds: Optional[Bounds2D],
        chunk_size: int,
    ) -> Iterator[np.ndarray]:
        self._require_executed()
        dims = []
        for name in names:
            dim = self.find_dimension(name)
            if dim is None:
                raise EngineError(f"Unknown dimension '{name}'")
            dims.append(dim)
        dtype = structured_dtype(dims)

        if bounds is not None:
            x, y = self._arrays["X"], self._arrays["Y"]
            selection = np.flatnonzero(
                (x >= bounds.min_x) & (x <= bounds.max_x) & (y >= bounds.min_y) & (y <= bounds.max_y)
            )
            total = selection.size
        else:
            selection = None
            total = self.point_count()

        for start in range(0, total, chunk_size):
            stop = min(start + chunk_size, total)
            index = selection[start:stop] if selection is not None else slice(start, stop)
            chunk = np.empty(stop - start, dtype=dtype)
            for dim in dims:
                chunk[dim.name] = self._arrays[dim.name][index]
            yield chunk
