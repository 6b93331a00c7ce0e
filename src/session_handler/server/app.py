"""
FastAPI application exposing sessions over HTTP.

Endpoints:
- POST   /create/{pipeline_id}           build a session, returns its id
- POST   /parse/{pipeline_id}            validate a pipeline without keeping a session
- GET    /session/{session}/numPoints
- GET    /session/{session}/schema
- GET    /session/{session}/stats
- GET    /session/{session}/srs
- GET    /session/{session}/fills
- POST   /session/{session}/serialize
- DELETE /session/{session}
- GET    /session/{session}/read         binary point buffer

JSON responses carry ``status`` and ``command`` plus ``reason`` on failure.
Read responses carry ``Num-Points``, ``Read-ID`` and, for rastered reads,
``Raster-Meta`` headers.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from ..core.bindings import SessionBindings
from ..core.dispatcher import TaskDispatcher
from ..exceptions import SessionHandlerError
from ..utils.config import AppConfig
from ..utils.identifiers import generate_read_id
from ..utils.logging import setup_logger

logger = setup_logger(__name__)


class CreateRequest(BaseModel):
    pipeline: str
    paths: Optional[List[str]] = Field(default=None, description="Serialization paths (default: config)")


class SerializeRequest(BaseModel):
    paths: Optional[List[str]] = Field(default=None)


class SessionManager:
    """Live sessions keyed by generated session id."""

    def __init__(self, dispatcher: TaskDispatcher, config: AppConfig):
        self.dispatcher = dispatcher
        self.config = config
        self._sessions: Dict[str, SessionBindings] = {}

    def open(self) -> Tuple[str, SessionBindings]:
        session_id = generate_read_id(self.config.read.id_size)
        while session_id in self._sessions:
            session_id = generate_read_id(self.config.read.id_size)
        bindings = SessionBindings(self.dispatcher, config=self.config)
        self._sessions[session_id] = bindings
        return session_id, bindings

    def get(self, session_id: str) -> Optional[SessionBindings]:
        return self._sessions.get(session_id)

    def close(self, session_id: str) -> bool:
        bindings = self._sessions.pop(session_id, None)
        if bindings is None:
            return False
        bindings.destroy()
        return True

    def __len__(self) -> int:
        return len(self._sessions)


def _extend(command: str, error: Optional[str] = None, data: Optional[Dict[str, Any]] = None,
            status_code: Optional[int] = None) -> JSONResponse:
    body = dict(data or {})
    body.update(status=not error, command=command)
    if error:
        body["reason"] = error
    return JSONResponse(body, status_code=status_code or (400 if error else 200))


def _callback_future() -> Tuple[asyncio.Future, Callable[..., None]]:
    """A future resolved with the positional arguments of the first callback call."""
    future = asyncio.get_running_loop().create_future()

    def callback(*args: Any) -> None:
        if not future.done():
            future.set_result(args)

    return future, callback


def _parse_json_param(raw: Optional[str], name: str) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"'{name}' is not valid JSON: {e}")


def _read_params(request: Request) -> Dict[str, Any]:
    query = request.query_params
    params: Dict[str, Any] = {}
    for name in ("schema", "bounds", "resolution"):
        value = _parse_json_param(query.get(name), name)
        if value is not None:
            params[name] = value
    if "compress" in query:
        params["compress"] = query["compress"].lower() in ("1", "true", "yes")
    return params


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the application; the dispatcher lives for the app's lifespan."""
    config = config or AppConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        dispatcher = TaskDispatcher(n_workers=config.dispatcher.n_workers)
        app.state.sessions = SessionManager(dispatcher, config)
        try:
            yield
        finally:
            await dispatcher.join()
            dispatcher.shutdown()

    app = FastAPI(
        title="Session Handler",
        description="Point-cloud pipeline sessions with asynchronous reads",
        lifespan=lifespan,
    )

    def _sessions(request: Request) -> SessionManager:
        return request.app.state.sessions

    async def _initialize(request: Request, pipeline_id: str, body: CreateRequest, execute: bool) -> JSONResponse:
        command = "create" if execute else "parse"
        manager = _sessions(request)
        session_id, bindings = manager.open()
        paths = body.paths if body.paths is not None else config.server.serial_paths

        future, callback = _callback_future()
        if execute:
            bindings.create(pipeline_id, body.pipeline, paths, callback)
        else:
            bindings.parse(pipeline_id, body.pipeline, paths, callback)
        (err,) = await future

        if err or not execute:
            manager.close(session_id)
            return _extend(command, err or None)
        return _extend(command, data={"session": session_id})

    @app.post("/create/{pipeline_id}")
    async def create(request: Request, pipeline_id: str, body: CreateRequest):
        return await _initialize(request, pipeline_id, body, execute=True)

    @app.post("/parse/{pipeline_id}")
    async def parse(request: Request, pipeline_id: str, body: CreateRequest):
        return await _initialize(request, pipeline_id, body, execute=False)

    def _query(request: Request, session_id: str, command: str, key: str, getter: Callable[[SessionBindings], Any]):
        bindings = _sessions(request).get(session_id)
        if bindings is None:
            return _extend(command, "Session not found", status_code=404)
        try:
            return _extend(command, data={key: getter(bindings)})
        except SessionHandlerError as e:
            return _extend(command, str(e), status_code=409)

    @app.get("/session/{session_id}/numPoints")
    async def num_points(request: Request, session_id: str):
        return _query(request, session_id, "numPoints", "numPoints", lambda b: b.get_num_points())

    @app.get("/session/{session_id}/schema")
    async def schema(request: Request, session_id: str):
        return _query(request, session_id, "schema", "schema", lambda b: json.loads(b.get_schema()))

    @app.get("/session/{session_id}/stats")
    async def stats(request: Request, session_id: str):
        return _query(request, session_id, "stats", "stats", lambda b: json.loads(b.get_stats()))

    @app.get("/session/{session_id}/srs")
    async def srs(request: Request, session_id: str):
        return _query(request, session_id, "srs", "srs", lambda b: b.get_srs())

    @app.get("/session/{session_id}/fills")
    async def fills(request: Request, session_id: str):
        return _query(request, session_id, "fills", "fills", lambda b: b.get_fills())

    @app.post("/session/{session_id}/serialize")
    async def serialize(request: Request, session_id: str, body: Optional[SerializeRequest] = None):
        bindings = _sessions(request).get(session_id)
        if bindings is None:
            return _extend("serialize", "Session not found", status_code=404)
        paths = body.paths if body is not None and body.paths is not None else config.server.serial_paths

        future, callback = _callback_future()
        bindings.serialize(paths, callback)
        (err,) = await future
        return _extend("serialize", err or None)

    @app.delete("/session/{session_id}")
    async def destroy(request: Request, session_id: str):
        if not _sessions(request).close(session_id):
            return _extend("destroy", "Session not found", status_code=404)
        return _extend("destroy")

    @app.get("/session/{session_id}/read")
    async def read(request: Request, session_id: str):
        bindings = _sessions(request).get(session_id)
        if bindings is None:
            return _extend("read", "Session not found", status_code=404)
        try:
            params = _read_params(request)
        except ValueError as e:
            return _extend("read", str(e))

        future, callback = _callback_future()
        bindings.read(params, callback)
        args = await future

        if args[0]:
            return _extend("read", args[0])

        _, read_id, n_points, _, buffer = args[:5]
        headers = {"Num-Points": str(n_points), "Read-ID": read_id}
        if len(args) > 5:
            x_begin, x_step, x_num, y_begin, y_step, y_num = args[5:]
            headers["Raster-Meta"] = json.dumps({
                "xBegin": x_begin, "xStep": x_step, "xNum": x_num,
                "yBegin": y_begin, "yStep": y_step, "yNum": y_num,
            })
        return Response(content=bytes(buffer), media_type="application/octet-stream", headers=headers)

    return app
