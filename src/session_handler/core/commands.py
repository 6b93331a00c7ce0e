"""
Read commands: one object per in-flight read.

A command is built and registered on the caller's context, buffers points on
a worker thread (``run``) and hands its results back on the caller's context
(``deliver``), after which it removes itself from the registry.

Raw reads produce packed records of the requested dimensions. Rastered reads
bin points into a RasterMeta grid and produce one record per cell.
"""

from __future__ import annotations

import zlib
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Tuple, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..engine.base import Dimension, PointCloudEngine, structured_dtype
from ..exceptions import ReadValidationError, SessionError
from ..geometry import Bounds2D, bounds_intersect
from ..utils.logging import setup_logger
from .dispatcher import TaskResult, describe_error
from .raster import RasterGrid, RasterMeta
from .registry import CommandRegistry
from .session import Session

logger = setup_logger(__name__)

DEFAULT_CHUNK_SIZE = 65536

ReadCallback = Callable[..., None]


# -----------------------
# Parameters
# -----------------------


class DimensionParam(BaseModel):
    name: str
    type: str
    size: int


class ReadParams(BaseModel):
    """Parameters of one read request."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    dimensions: Optional[List[DimensionParam]] = Field(
        default=None, alias="schema", description="Output dimensions (None = every engine dimension)"
    )
    compress: bool = Field(default=False, description="zlib-compress the result buffer")
    bounds: Optional[List[float]] = Field(default=None, description="[min_x, min_y, max_x, max_y]")
    resolution: Optional[Tuple[float, float]] = Field(
        default=None, description="Raster cell size (x, y); presence selects a rastered read"
    )

    @field_validator("bounds")
    @classmethod
    def _four_bounds(cls, v):
        if v is not None and len(v) != 4:
            raise ValueError("bounds must be [min_x, min_y, max_x, max_y]")
        return v

    @field_validator("resolution", mode="before")
    @classmethod
    def _scalar_resolution(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return (v, v)
        return v

    @field_validator("resolution")
    @classmethod
    def _positive_resolution(cls, v):
        if v is not None and (v[0] <= 0 or v[1] <= 0):
            raise ValueError("resolution must be positive")
        return v

    @property
    def rasterize(self) -> bool:
        return self.resolution is not None


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "Invalid read parameters - " + "; ".join(parts)


# -----------------------
# Commands
# -----------------------


class CommandState(Enum):
    CONSTRUCTED = "constructed"
    REGISTERED = "registered"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DELIVERED = "delivered"
    REMOVED = "removed"


_TRANSITIONS = {
    CommandState.CONSTRUCTED: {CommandState.REGISTERED},
    CommandState.REGISTERED: {CommandState.RUNNING},
    CommandState.RUNNING: {CommandState.SUCCEEDED, CommandState.FAILED},
    CommandState.SUCCEEDED: {CommandState.DELIVERED},
    CommandState.FAILED: {CommandState.DELIVERED},
    CommandState.DELIVERED: {CommandState.REMOVED},
    CommandState.REMOVED: set(),
}


class ReadCommand:
    """
    An in-flight raw read.

    Attributes:
        read_id: Identifier under which the command is registered
        params: Validated read parameters
        dimensions: Output dimensions, in record order
        bounds: Optional spatial filter
        num_points: Points buffered by run()
        num_bytes: Size of the buffer handed to the callback
        error: Failure message; empty on success
        state: Position in the command state machine
    """

    def __init__(
        self,
        read_id: str,
        session: Session,
        registry: CommandRegistry,
        params: ReadParams,
        dimensions: List[Dimension],
        bounds: Optional[Bounds2D],
        callback: ReadCallback,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.read_id = read_id
        self.session = session
        # Own reference: the engine outlives a concurrent session.destroy()
        self.engine: PointCloudEngine = session.engine
        self.registry = registry
        self.params = params
        self.dimensions = dimensions
        self.bounds = bounds
        self.chunk_size = int(chunk_size)
        self.dtype = structured_dtype(dimensions)

        self.num_points = 0
        self.num_bytes = 0
        self.error = ""
        self.state = CommandState.CONSTRUCTED
        self._buffer: Optional[bytearray] = None
        self._callback: Optional[ReadCallback] = callback

    def _advance(self, new_state: CommandState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Read {self.read_id}: invalid transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    @property
    def buffer(self) -> Optional[bytearray]:
        """The result buffer while the command still owns it."""
        return self._buffer

    def register(self) -> None:
        """Insert into the registry; must happen before dispatch."""
        self.registry.insert(self.read_id, self)
        self._advance(CommandState.REGISTERED)

    # ------------------------------------------------------------------
    # Background phase
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Buffer points from the engine. Failures are stored in ``error``."""
        self._advance(CommandState.RUNNING)
        try:
            with self.session.engine_access(self.engine):
                buffer, num_points = self._fill()
        except Exception as e:
            self.error = describe_error(e, "read")
            self._buffer = None
            self.num_points = 0
            self.num_bytes = 0
            logger.error(f"Read {self.read_id} failed: {self.error}")
            self._advance(CommandState.FAILED)
            return

        self._buffer = buffer
        self.num_points = num_points
        self.num_bytes = len(buffer)
        logger.debug(f"Read {self.read_id} buffered {num_points:,} points ({self.num_bytes:,} bytes)")
        self._advance(CommandState.SUCCEEDED)

    def _engine_names(self) -> List[str]:
        return list(self.dtype.names)

    def _fill(self) -> Tuple[bytearray, int]:
        sink = _BufferSink(self.params.compress)
        count = 0
        for chunk in self.engine.extract_points(self._engine_names(), self.bounds, self.chunk_size):
            out = np.empty(chunk.size, dtype=self.dtype)
            for name in self.dtype.names:
                out[name] = chunk[name]
            sink.write(out.tobytes())
            count += int(chunk.size)
        return sink.close(), count

    # ------------------------------------------------------------------
    # Completion phase
    # ------------------------------------------------------------------

    def extra_result_args(self) -> Tuple[Any, ...]:
        """Variant-specific values appended to the success callback arguments."""
        return ()

    def deliver(self, result: Optional[TaskResult] = None) -> None:
        """
        Invoke the callback once, then remove the command from the registry.

        Args:
            result: Dispatcher outcome of run(); an error there marks the
                command failed if run() itself did not get to record one.
        """
        if result is not None and not result.ok and not self.error:
            self.error = result.error
        if self.state is CommandState.RUNNING:
            # run() was interrupted before recording an outcome
            self.error = self.error or "Unknown error"
            self._advance(CommandState.FAILED)
        if self.error:
            self._buffer = None
            self.num_bytes = 0

        callback, self._callback = self._callback, None
        try:
            self._advance(CommandState.DELIVERED)
            if self.error:
                callback(self.error)
            else:
                # Ownership of the buffer passes to the callback
                buffer, self._buffer = self._buffer, None
                callback(
                    None,
                    self.read_id,
                    self.num_points,
                    self.num_bytes,
                    buffer,
                    *self.extra_result_args(),
                )
        finally:
            self.erase_self()

    def erase_self(self) -> None:
        self.registry.remove(self.read_id)
        if self.state is CommandState.DELIVERED:
            self._advance(CommandState.REMOVED)


class RasteredReadCommand(ReadCommand):
    """
    An in-flight read binned onto a grid.

    ``num_points`` is the number of cells; every cell is a validity byte
    followed by the output dimensions.
    """

    def __init__(self, *args, raster_meta: RasterMeta, **kwargs):
        super().__init__(*args, **kwargs)
        self._raster_meta = raster_meta

    @property
    def raster_meta(self) -> RasterMeta:
        return self._raster_meta

    def _engine_names(self) -> List[str]:
        names = list(self.dtype.names)
        for axis in ("Y", "X"):
            if axis not in names:
                names.insert(0, axis)
        return names

    def _fill(self) -> Tuple[bytearray, int]:
        grid = RasterGrid(self._raster_meta, self.dimensions)
        for chunk in self.engine.extract_points(self._engine_names(), self.bounds, self.chunk_size):
            grid.accumulate(chunk)
        logger.debug(
            f"Read {self.read_id} filled {grid.filled():,} of {self._raster_meta.num_cells:,} cells"
        )
        sink = _BufferSink(self.params.compress)
        sink.write(grid.to_bytes())
        return sink.close(), self._raster_meta.num_cells

    def extra_result_args(self) -> Tuple[Any, ...]:
        return self._raster_meta.as_tuple()


class _BufferSink:
    """Growing result buffer with optional streaming zlib compression."""

    def __init__(self, compress: bool):
        self._buffer = bytearray()
        self._compressor = zlib.compressobj() if compress else None

    def write(self, data: bytes) -> None:
        if self._compressor is not None:
            data = self._compressor.compress(data)
        self._buffer += data

    def close(self) -> bytearray:
        if self._compressor is not None:
            self._buffer += self._compressor.flush()
            self._compressor = None
        return self._buffer


# -----------------------
# Factory
# -----------------------


def _output_dimensions(params: ReadParams, engine: PointCloudEngine) -> List[Dimension]:
    if params.dimensions is None:
        return engine.dimensions()
    if not params.dimensions:
        raise ReadValidationError("schema must list at least one dimension")

    dims = []
    for requested in params.dimensions:
        if engine.find_dimension(requested.name) is None:
            raise ReadValidationError(f"Unknown dimension '{requested.name}' in schema")
        try:
            dims.append(Dimension(requested.name, requested.type, requested.size))
        except ValueError as e:
            raise ReadValidationError(str(e))
    if len({d.name for d in dims}) != len(dims):
        raise ReadValidationError("schema lists a dimension more than once")
    return dims


def create_read_command(
    read_id: str,
    session: Session,
    registry: CommandRegistry,
    params: Union[ReadParams, Mapping[str, Any]],
    callback: ReadCallback,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> ReadCommand:
    """
    Validate a read request and build the matching command.

    Nothing is registered here; the caller registers the command before
    dispatching it.

    Args:
        read_id: Identifier for the new command
        session: Session to read from; must be READY
        registry: Registry the command will remove itself from
        params: ReadParams or a mapping validated into one
        callback: Completion callback
        chunk_size: Points pulled from the engine per chunk

    Returns:
        ReadCommand or RasteredReadCommand

    Raises:
        ReadValidationError: If the session is not ready or the parameters are invalid
    """
    if not session.is_ready:
        raise ReadValidationError(f"Cannot read: session is not ready (state: {session.state.value})")

    if not isinstance(params, ReadParams):
        try:
            params = ReadParams.model_validate(dict(params or {}))
        except ValidationError as e:
            raise ReadValidationError(_format_validation_error(e))

    try:
        engine = session.engine
        dimensions = _output_dimensions(params, engine)
        dataset_bounds = engine.bounds()
    except SessionError as e:
        raise ReadValidationError(f"Cannot read: {e}")

    bounds = None
    if params.bounds is not None:
        bounds = Bounds2D.from_sequence(params.bounds)
        if not bounds.is_valid():
            raise ReadValidationError(f"Invalid bounds {bounds.to_list()}: min must be below max")
        if not bounds_intersect(bounds, dataset_bounds):
            raise ReadValidationError(
                f"Requested bounds {bounds.to_list()} do not intersect "
                f"dataset bounds {dataset_bounds.to_list()}"
            )

    args = (read_id, session, registry, params, dimensions, bounds, callback, chunk_size)

    if not params.rasterize:
        return ReadCommand(*args)

    x_step, y_step = params.resolution
    try:
        meta = RasterMeta.from_bounds(bounds or dataset_bounds, x_step, y_step)
    except ValueError as e:
        raise ReadValidationError(f"Cannot rasterize: {e}")
    return RasteredReadCommand(*args, raster_meta=meta)
