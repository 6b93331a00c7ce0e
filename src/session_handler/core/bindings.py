"""
Session bindings: the operations exposed to callers.

Every asynchronous operation validates its arguments on the calling context,
reports validation failures through the callback immediately, and otherwise
dispatches the work and reports through the callback once it finishes.

Callback contracts:
- parse / create / serialize: ``callback(error_message)``, empty on success
- read (raw): ``callback(None, read_id, num_points, num_bytes, buffer)``
- read (rastered): ``callback(None, read_id, num_points, num_bytes, buffer,
  x_begin, x_step, x_num, y_begin, y_step, y_num)``
- read (failure): ``callback(error_message)``

Reads cannot be cancelled once dispatched.
"""

from __future__ import annotations

from typing import Any, Callable, List, Mapping, Optional

from ..engine.base import PointCloudEngine
from ..engine.laspy_engine import LaspyEngine
from ..engine.pipeline import PipelineSpec, parse_pipeline
from ..exceptions import PipelineError, ReadValidationError, SessionError
from ..utils.config import AppConfig
from ..utils.identifiers import generate_read_id
from ..utils.logging import setup_logger
from .commands import RasteredReadCommand, ReadCommand, create_read_command
from .dispatcher import TaskDispatcher, TaskResult
from .registry import CommandRegistry
from .session import Session

logger = setup_logger(__name__)


def parse_path_list(raw: Any) -> List[str]:
    """Keep the string entries of a list; anything else yields no paths."""
    if not isinstance(raw, (list, tuple)):
        return []
    return [p for p in raw if isinstance(p, str)]


def _require_callback(callback: Any, operation: str) -> None:
    if not callable(callback):
        raise TypeError(f"Invalid callback supplied to '{operation}'")


class SessionBindings:
    """
    Asynchronous façade over one Session.

    Attributes:
        session: The owned session
        registry: In-flight reads of this session
        dispatcher: Shared background dispatcher
    """

    def __init__(
        self,
        dispatcher: TaskDispatcher,
        *,
        config: Optional[AppConfig] = None,
        engine_factory: Optional[Callable[[], PointCloudEngine]] = None,
    ):
        self.config = config or AppConfig()
        if engine_factory is None:
            fill_depth = self.config.engine.fill_depth
            engine_factory = lambda: LaspyEngine(fill_depth=fill_depth)  # noqa: E731
        self.dispatcher = dispatcher
        self.session = Session(engine_factory)
        self.registry = CommandRegistry()

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _initialize(
        self,
        pipeline_id: Any,
        pipeline: Any,
        paths: Any,
        callback: Any,
        execute: bool,
    ) -> None:
        operation = "create" if execute else "parse"
        _require_callback(callback, operation)

        err_msg = ""
        if not isinstance(pipeline_id, str):
            err_msg = "'pipelineId' must be a string"
        elif not isinstance(pipeline, str):
            err_msg = "'pipeline' must be a string"

        spec: Optional[PipelineSpec] = None
        if not err_msg:
            try:
                spec = parse_pipeline(pipeline)
                self.session.begin_initialize()
            except (PipelineError, SessionError) as e:
                err_msg = str(e)

        if err_msg:
            logger.warning(f"Rejected {operation} of {pipeline_id!r}: {err_msg}")
            callback(err_msg)
            return

        serial_paths = parse_path_list(paths)
        session = self.session

        def _complete(result: TaskResult) -> None:
            # parse() releases the session on dispatch; only create touches state here
            err_msg = result.error
            if not execute:
                callback(err_msg)
                return
            if not result.ok:
                session.abandon_initialize()
            elif not session.attach(result.value):
                err_msg = (
                    f"Pipeline {pipeline_id} was built but discarded: "
                    f"session is {session.state.value}"
                )
                logger.warning(err_msg)
            callback(err_msg)

        logger.info(f"Dispatching {operation} for pipeline {pipeline_id}")
        try:
            self.dispatcher.submit(
                lambda: session.build(pipeline_id, spec, serial_paths, execute),
                _complete,
                label=operation,
            )
        except Exception:
            session.abandon_initialize()
            raise

    def create(self, pipeline_id: str, pipeline: str, paths: Any, callback: Callable[[str], None]) -> None:
        """Build and execute the pipeline; the session is READY on success."""
        self._initialize(pipeline_id, pipeline, paths, callback, execute=True)

    def parse(self, pipeline_id: str, pipeline: str, paths: Any, callback: Callable[[str], None]) -> None:
        """
        Validate the pipeline without executing it.

        The session is released right after dispatch: a parsed-only session
        cannot be queried and must be initialized again with create().
        """
        self._initialize(pipeline_id, pipeline, paths, callback, execute=False)
        self.session.release()

    def destroy(self) -> None:
        """Release the engine. In-flight reads keep it alive until delivered."""
        self.session.destroy()

    # ------------------------------------------------------------------
    # Synchronous queries
    # ------------------------------------------------------------------

    def get_num_points(self) -> int:
        return self.session.point_count()

    def get_schema(self) -> str:
        return self.session.schema()

    def get_stats(self) -> str:
        return self.session.stats()

    def get_srs(self) -> str:
        return self.session.spatial_reference()

    def get_fills(self) -> List[int]:
        return self.session.fill_counts()

    # ------------------------------------------------------------------
    # Serialize and read
    # ------------------------------------------------------------------

    def serialize(self, paths: Any, callback: Callable[[str], None]) -> None:
        """Persist the executed pipeline to the first writable path."""
        _require_callback(callback, "serialize")

        serial_paths = parse_path_list(paths)
        try:
            engine = self.session.engine
        except SessionError as e:
            callback(str(e))
            return

        def _work() -> str:
            with self.session.engine_access(engine):
                return engine.serialize_to(serial_paths)

        logger.info(f"Starting serialization task ({len(serial_paths)} path(s))")
        self.dispatcher.submit(_work, lambda result: callback(result.error), label="serialize")

    def read(self, params: Optional[Mapping[str, Any]], callback: Callable[..., None]) -> Optional[str]:
        """
        Start an asynchronous read.

        Returns:
            The read identifier, or None when the request was rejected (the
            callback has then already received the error).

        Raises:
            RegistryError: If the command could not be registered
        """
        _require_callback(callback, "read")

        id_size = self.config.read.id_size
        read_id = generate_read_id(id_size)
        while read_id in self.registry:
            read_id = generate_read_id(id_size)

        try:
            command = create_read_command(
                read_id,
                self.session,
                self.registry,
                params or {},
                callback,
                chunk_size=self.config.read.chunk_size,
            )
        except ReadValidationError as e:
            logger.warning(f"Rejected read: {e}")
            callback(str(e))
            return None

        command.register()
        self._dispatch(command)
        return read_id

    def _dispatch(self, command: ReadCommand) -> None:
        try:
            self.dispatcher.submit(command.run, command.deliver, label="read")
        except Exception:
            # Nothing will deliver this command; keep the registry consistent
            self.registry.remove(command.read_id)
            raise
        logger.debug(
            f"Dispatched {'rastered' if isinstance(command, RasteredReadCommand) else 'raw'} read {command.read_id}"
        )

    @property
    def outstanding_reads(self) -> List[str]:
        return self.registry.ids()
