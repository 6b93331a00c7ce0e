"""
Session lifecycle and synchronous query surface.

A Session owns one engine handle. Building the engine is the expensive part
and runs on a worker thread through ``build``; attaching the built engine and
every other state change happen on the caller's context. Background tasks
keep their own reference to the engine, so ``destroy`` never pulls it out
from under an in-flight read.

Of overlapping initializations, the first build to finish is attached and
later ones are discarded.
"""

from __future__ import annotations

import contextlib
import threading
from enum import Enum
from typing import Callable, ContextManager, List, Optional, Sequence

from ..engine.base import Dimension, PointCloudEngine
from ..engine.pipeline import PipelineSpec
from ..exceptions import SessionError
from ..geometry import Bounds2D
from ..utils.logging import setup_logger

logger = setup_logger(__name__)


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DESTROYED = "destroyed"


class Session:
    """
    One initialized point-cloud pipeline and its query surface.

    Attributes:
        engine_factory: Zero-argument callable returning a fresh engine
        state: Current lifecycle state
    """

    def __init__(self, engine_factory: Callable[[], PointCloudEngine]):
        self.engine_factory = engine_factory
        self.state = SessionState.UNINITIALIZED
        self._engine: Optional[PointCloudEngine] = None
        self._engine_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin_initialize(self) -> None:
        """Mark an initialization as in flight."""
        if self.state is SessionState.DESTROYED:
            raise SessionError("Session has been destroyed")
        self.state = SessionState.INITIALIZING

    def build(
        self,
        pipeline_id: str,
        pipeline: PipelineSpec,
        aux_paths: Sequence[str],
        execute: bool,
    ) -> PointCloudEngine:
        """
        Construct and initialize a new engine without touching session state.

        Safe to run on a worker thread.

        Raises:
            EngineError: If the pipeline cannot be built
        """
        engine = self.engine_factory()
        engine.initialize_pipeline(pipeline_id, pipeline, list(aux_paths), execute)
        return engine

    def attach(self, engine: PointCloudEngine) -> bool:
        """
        Install a built engine and become READY.

        Returns:
            False if the session was destroyed or released while building,
            in which case the engine is discarded.
        """
        if self.state is not SessionState.INITIALIZING:
            logger.info(f"Discarding engine built for a {self.state.value} session")
            return False
        self._engine = engine
        self.state = SessionState.READY
        return True

    def abandon_initialize(self) -> None:
        """Return to UNINITIALIZED after a failed build, dropping any previous engine."""
        if self.state is SessionState.INITIALIZING:
            self._engine = None
            self.state = SessionState.UNINITIALIZED

    def initialize(
        self,
        pipeline_id: str,
        pipeline: PipelineSpec,
        aux_paths: Sequence[str] = (),
        execute: bool = True,
    ) -> None:
        """
        Build and attach an engine on the calling thread.

        With ``execute=False`` the pipeline is only validated and the session
        stays UNINITIALIZED, since a parsed-only engine cannot serve queries.
        """
        self.begin_initialize()
        try:
            engine = self.build(pipeline_id, pipeline, aux_paths, execute)
        except Exception:
            self.abandon_initialize()
            raise
        if execute:
            self.attach(engine)
        else:
            self.abandon_initialize()

    def release(self) -> None:
        """Drop the engine so the session must be initialized again."""
        self._engine = None
        if self.state is not SessionState.DESTROYED:
            self.state = SessionState.UNINITIALIZED

    def destroy(self) -> None:
        """Release the engine. Calling this more than once is a no-op."""
        if self.state is SessionState.DESTROYED:
            return
        self._engine = None
        self.state = SessionState.DESTROYED
        logger.debug("Session destroyed")

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    # ------------------------------------------------------------------
    # Engine access
    # ------------------------------------------------------------------

    @property
    def engine(self) -> PointCloudEngine:
        """The engine of a READY session."""
        if self.state is not SessionState.READY or self._engine is None:
            raise SessionError(f"Session is not ready (state: {self.state.value})")
        return self._engine

    def engine_access(self, engine: Optional[PointCloudEngine] = None) -> ContextManager:
        """
        Guard for background use of an engine.

        A no-op for engines that support concurrent reads; otherwise a
        session-wide lock serializing access.
        """
        engine = engine if engine is not None else self.engine
        if engine.concurrent_reads:
            return contextlib.nullcontext()
        return self._engine_lock

    # ------------------------------------------------------------------
    # Synchronous queries
    # ------------------------------------------------------------------

    def point_count(self) -> int:
        return self.engine.point_count()

    def schema(self) -> str:
        return self.engine.schema()

    def stats(self) -> str:
        return self.engine.stats()

    def spatial_reference(self) -> str:
        return self.engine.spatial_reference()

    def fill_counts(self) -> List[int]:
        return self.engine.fill_counts()

    def bounds(self) -> Bounds2D:
        return self.engine.bounds()

    def dimensions(self) -> List[Dimension]:
        return self.engine.dimensions()
