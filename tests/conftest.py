"""
Shared test fixtures.

Writes small LAS files with laspy into per-test temporary directories and
provides an in-memory engine for exercising the session core without I/O.
"""

import json
import sys
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Union

import laspy
import numpy as np
import pytest

sys.path.append(str(Path(__file__).parent.parent / "src"))

from session_handler.engine.base import Dimension, PointCloudEngine, structured_dtype
from session_handler.exceptions import EngineError
from session_handler.geometry import Bounds2D

WKT_UTM33 = (
    'PROJCS["ETRS89 / UTM zone 33N",GEOGCS["ETRS89",DATUM["European_Terrestrial_Reference_System_1989",'
    'SPHEROID["GRS 1980",6378137,298.257222101]],PRIMEM["Greenwich",0],UNIT["degree",0.0174532925199433]],'
    'PROJECTION["Transverse_Mercator"],PARAMETER["latitude_of_origin",0],PARAMETER["central_meridian",15],'
    'PARAMETER["scale_factor",0.9996],PARAMETER["false_easting",500000],PARAMETER["false_northing",0],'
    'UNIT["metre",1],AUTHORITY["EPSG","25833"]]'
)


def write_las(path, xs, ys, zs, classification=None, wkt: Optional[str] = None) -> str:
    """Write a point format 1 LAS file; quarter-unit scales keep grid coordinates exact."""
    header = laspy.LasHeader(point_format=1, version="1.2")
    header.scales = np.array([0.25, 0.25, 0.25])
    header.offsets = np.array([0.0, 0.0, 0.0])
    if wkt:
        header.vlrs.append(laspy.VLR(
            user_id="LASF_Projection",
            record_id=2112,
            description="WKT Coordinate System",
            record_data=wkt.encode("utf-8"),
        ))
    las = laspy.LasData(header)
    las.x = np.asarray(xs, dtype=np.float64)
    las.y = np.asarray(ys, dtype=np.float64)
    las.z = np.asarray(zs, dtype=np.float64)
    if classification is not None:
        las.classification = np.asarray(classification, dtype=np.uint8)
    las.gps_time = np.arange(len(xs), dtype=np.float64)
    las.write(str(path))
    return str(path)


def grid_points(n: int = 10):
    """n x n points at cell centres (0.5, 1.5, ...); Z = X + Y; classes alternate 2/1."""
    xs, ys = np.meshgrid(np.arange(n) + 0.5, np.arange(n) + 0.5)
    xs, ys = xs.ravel(), ys.ravel()
    zs = xs + ys
    classification = np.where(np.arange(xs.size) % 2 == 0, 2, 1)
    return xs, ys, zs, classification


def pipeline_json(*stages) -> str:
    return json.dumps({"pipeline": list(stages)})


@pytest.fixture
def grid_las(tmp_path) -> str:
    xs, ys, zs, classification = grid_points()
    return write_las(tmp_path / "grid.las", xs, ys, zs, classification, wkt=WKT_UTM33)


@pytest.fixture
def grid_pipeline(grid_las) -> str:
    return pipeline_json(grid_las)


class CallbackRecorder:
    """Callable recording the positional arguments of every invocation."""

    def __init__(self):
        self.calls: List[tuple] = []

    def __call__(self, *args):
        self.calls.append(args)

    @property
    def last(self) -> tuple:
        return self.calls[-1]


@pytest.fixture
def recorder() -> CallbackRecorder:
    return CallbackRecorder()


class FakeEngine(PointCloudEngine):
    """In-memory engine over a fixed grid; optionally fails on extraction.

    ``fail_extract`` is either a message raised as EngineError or an exception
    instance raised as is.
    """

    DIMENSIONS = [
        Dimension("X", "floating", 8),
        Dimension("Y", "floating", 8),
        Dimension("Z", "floating", 8),
        Dimension("Classification", "unsigned", 1),
    ]

    def __init__(
        self,
        n: int = 10,
        fail_extract: Union[str, BaseException, None] = None,
        concurrent_reads: bool = True,
    ):
        xs, ys, zs, classification = grid_points(n)
        self.arrays = {"X": xs, "Y": ys, "Z": zs, "Classification": classification.astype(np.uint8)}
        self.fail_extract = fail_extract
        self.concurrent_reads = concurrent_reads
        self.executed = False

    def initialize_pipeline(self, pipeline_id, pipeline, aux_paths, execute):
        if "fail.las" in pipeline.readers:
            raise EngineError("Pipeline build failed")
        self.executed = execute

    def point_count(self) -> int:
        return len(self.arrays["X"])

    def dimensions(self) -> List[Dimension]:
        return list(self.DIMENSIONS)

    def bounds(self) -> Bounds2D:
        x, y = self.arrays["X"], self.arrays["Y"]
        return Bounds2D(float(x.min()), float(y.min()), float(x.max()), float(y.max()))

    def stats(self) -> str:
        return json.dumps({"statistic": []})

    def spatial_reference(self) -> str:
        return ""

    def fill_counts(self) -> List[int]:
        return [1, 4]

    def serialize_to(self, paths: Sequence[str]) -> str:
        if not paths:
            raise EngineError("No serialization paths supplied")
        return paths[0]

    def extract_points(self, names, bounds, chunk_size) -> Iterator[np.ndarray]:
        if isinstance(self.fail_extract, BaseException):
            raise self.fail_extract
        if self.fail_extract:
            raise EngineError(self.fail_extract)
        x, y = self.arrays["X"], self.arrays["Y"]
        mask = np.ones(x.size, dtype=bool)
        if bounds is not None:
            mask = (x >= bounds.min_x) & (x <= bounds.max_x) & (y >= bounds.min_y) & (y <= bounds.max_y)
        index = np.flatnonzero(mask)
        dtype = structured_dtype([self.find_dimension(n) for n in names])
        for start in range(0, index.size, chunk_size):
            sel = index[start:start + chunk_size]
            chunk = np.empty(sel.size, dtype=dtype)
            for name in names:
                chunk[name] = self.arrays[name][sel]
            yield chunk
