"""
End-to-end tests for the asynchronous session operations.

Every scenario runs inside asyncio.run with a real TaskDispatcher; callbacks
are collected and checked after the dispatcher has drained.
"""

import asyncio
import json

import numpy as np
import pytest

from conftest import CallbackRecorder, FakeEngine, pipeline_json
from session_handler.core.bindings import SessionBindings, parse_path_list
from session_handler.core.dispatcher import TaskDispatcher
from session_handler.core.session import SessionState
from session_handler.engine.laspy_engine import serialized_path
from session_handler.exceptions import SessionError
from session_handler.utils.config import AppConfig

Z_ONLY = [{"name": "Z", "type": "floating", "size": 8}]


class ExtractAbort(BaseException):
    """Engine interruption outside the Exception hierarchy."""


def _run(scenario, n_workers=4):
    """Run ``scenario(dispatcher)`` on a fresh loop and drain the dispatcher."""
    dispatcher = TaskDispatcher(n_workers=n_workers)

    async def _main():
        result = await scenario(dispatcher)
        await dispatcher.join()
        return result

    try:
        return asyncio.run(_main())
    finally:
        dispatcher.shutdown()


async def _created(dispatcher, pipeline, **kwargs) -> SessionBindings:
    bindings = SessionBindings(dispatcher, **kwargs)
    done = CallbackRecorder()
    bindings.create("p1", pipeline, [], done)
    await dispatcher.join()
    assert done.calls == [("",)]
    return bindings


class TestParsePathList:

    def test_keeps_strings(self):
        assert parse_path_list(["/a", 3, "/b"]) == ["/a", "/b"]

    def test_non_list(self):
        assert parse_path_list("/a") == []
        assert parse_path_list(None) == []


class TestCreate:

    def test_create_then_query(self, grid_pipeline):
        """A valid pipeline yields an empty error and a queryable session."""
        async def scenario(dispatcher):
            bindings = await _created(dispatcher, grid_pipeline)
            return bindings

        bindings = _run(scenario)
        assert bindings.session.state is SessionState.READY
        assert bindings.get_num_points() == 100
        assert "dimensions" in json.loads(bindings.get_schema())
        assert "statistic" in json.loads(bindings.get_stats())
        assert "UTM" in bindings.get_srs()
        assert bindings.get_fills()[0] == 1

    def test_malformed_pipeline_reported_before_dispatch(self, recorder):
        async def scenario(dispatcher):
            bindings = SessionBindings(dispatcher, engine_factory=FakeEngine)
            bindings.create("p1", "{not json", [], recorder)
            # Reported during the call itself
            assert len(recorder.calls) == 1
            assert dispatcher.pending == 0
            return bindings

        bindings = _run(scenario)
        (err,) = recorder.last
        assert "not valid JSON" in err
        assert bindings.session.state is SessionState.UNINITIALIZED
        assert len(bindings.registry) == 0

    def test_non_string_arguments(self, recorder):
        async def scenario(dispatcher):
            bindings = SessionBindings(dispatcher, engine_factory=FakeEngine)
            bindings.create(7, pipeline_json("a.las"), [], recorder)
            bindings.create("p1", {"pipeline": []}, [], recorder)

        _run(scenario)
        assert recorder.calls == [("'pipelineId' must be a string",), ("'pipeline' must be a string",)]

    def test_engine_failure(self, recorder):
        async def scenario(dispatcher):
            bindings = SessionBindings(dispatcher, engine_factory=FakeEngine)
            bindings.create("p1", pipeline_json("fail.las"), [], recorder)
            return bindings

        bindings = _run(scenario)
        assert recorder.calls == [("Pipeline build failed",)]
        assert bindings.session.state is SessionState.UNINITIALIZED

    def test_missing_input_file(self, tmp_path, recorder):
        async def scenario(dispatcher):
            bindings = SessionBindings(dispatcher)
            bindings.create("p1", pipeline_json(str(tmp_path / "missing.las")), [], recorder)

        _run(scenario)
        (err,) = recorder.last
        assert "not found" in err

    def test_invalid_callback(self):
        async def scenario(dispatcher):
            bindings = SessionBindings(dispatcher, engine_factory=FakeEngine)
            with pytest.raises(TypeError, match="create"):
                bindings.create("p1", pipeline_json("a.las"), [], None)
            with pytest.raises(TypeError, match="read"):
                bindings.read({}, "not callable")

        _run(scenario)

    def test_destroy_while_building(self, recorder):
        async def scenario(dispatcher):
            bindings = SessionBindings(dispatcher, engine_factory=FakeEngine)
            bindings.create("p1", pipeline_json("a.las"), [], recorder)
            bindings.destroy()
            return bindings

        bindings = _run(scenario)
        (err,) = recorder.last
        assert err == "Pipeline p1 was built but discarded: session is destroyed"
        assert bindings.session.state is SessionState.DESTROYED


class TestParse:

    def test_parse_releases_session(self, grid_pipeline, recorder):
        async def scenario(dispatcher):
            bindings = SessionBindings(dispatcher)
            bindings.parse("p1", grid_pipeline, [], recorder)
            return bindings

        bindings = _run(scenario)
        assert recorder.calls == [("",)]
        assert bindings.session.state is SessionState.UNINITIALIZED
        with pytest.raises(SessionError, match="not ready"):
            bindings.get_num_points()

    def test_parse_reports_bad_input(self, tmp_path, recorder):
        async def scenario(dispatcher):
            bindings = SessionBindings(dispatcher)
            bindings.parse("p1", pipeline_json(str(tmp_path / "x.xyz")), [], recorder)

        _run(scenario)
        assert "Input file not found" in recorder.last[0]

    def test_create_overlapping_parse(self, recorder):
        """A parse still in flight does not undo a create started after it."""
        parsed = CallbackRecorder()

        async def scenario(dispatcher):
            bindings = SessionBindings(dispatcher, engine_factory=FakeEngine)
            bindings.parse("p1", pipeline_json("a.las"), [], parsed)
            bindings.create("p1", pipeline_json("a.las"), [], recorder)
            return bindings

        bindings = _run(scenario)
        assert parsed.calls == [("",)]
        assert recorder.calls == [("",)]
        assert bindings.session.state is SessionState.READY
        assert bindings.get_num_points() == 100

    def test_failed_recreate_drops_previous_engine(self, recorder):
        async def scenario(dispatcher):
            bindings = await _created(dispatcher, pipeline_json("a.las"), engine_factory=FakeEngine)
            bindings.create("p1", pipeline_json("fail.las"), [], recorder)
            return bindings

        bindings = _run(scenario)
        assert recorder.calls == [("Pipeline build failed",)]
        assert bindings.session.state is SessionState.UNINITIALIZED
        assert bindings.session._engine is None


class TestSerialize:

    def test_serialize(self, grid_pipeline, tmp_path, recorder):
        target = tmp_path / "serial"

        async def scenario(dispatcher):
            bindings = await _created(dispatcher, grid_pipeline)
            bindings.serialize([str(target)], recorder)

        _run(scenario)
        assert recorder.calls == [("",)]
        assert serialized_path(target, "p1").is_file()

    def test_serialize_before_ready(self, recorder):
        async def scenario(dispatcher):
            bindings = SessionBindings(dispatcher, engine_factory=FakeEngine)
            bindings.serialize(["/tmp"], recorder)
            assert dispatcher.pending == 0

        _run(scenario)
        (err,) = recorder.last
        assert "not ready" in err

    def test_serialize_without_paths(self, recorder):
        async def scenario(dispatcher):
            bindings = await _created(dispatcher, pipeline_json("a.las"), engine_factory=FakeEngine)
            bindings.serialize("not-a-list", recorder)

        _run(scenario)
        assert recorder.calls == [("No serialization paths supplied",)]


class TestRead:

    def test_raw_read(self, grid_pipeline, recorder):
        async def scenario(dispatcher):
            bindings = await _created(dispatcher, grid_pipeline)
            read_id = bindings.read({"schema": Z_ONLY}, recorder)
            assert bindings.outstanding_reads == [read_id]
            return bindings, read_id

        bindings, read_id = _run(scenario)
        (call,) = recorder.calls
        err, delivered_id, num_points, num_bytes, buffer = call
        assert err is None
        assert delivered_id == read_id
        assert len(read_id) == 24
        assert num_points == 100
        assert num_bytes == len(buffer) == 800
        assert bindings.outstanding_reads == []

    def test_out_of_range_bounds(self, recorder):
        async def scenario(dispatcher):
            bindings = await _created(dispatcher, pipeline_json("a.las"), engine_factory=FakeEngine)
            assert bindings.read({"bounds": [1000, 1000, 2000, 2000]}, recorder) is None
            assert dispatcher.pending == 0
            return bindings

        bindings = _run(scenario)
        (call,) = recorder.calls
        assert len(call) == 1
        assert "do not intersect" in call[0]
        assert len(bindings.registry) == 0

    def test_read_before_create(self, recorder):
        async def scenario(dispatcher):
            bindings = SessionBindings(dispatcher, engine_factory=FakeEngine)
            assert bindings.read({}, recorder) is None

        _run(scenario)
        assert "not ready" in recorder.last[0]

    def test_concurrent_reads(self):
        """Each read gets its own identifier and exactly its own points."""
        left, right = CallbackRecorder(), CallbackRecorder()

        async def scenario(dispatcher):
            bindings = await _created(dispatcher, pipeline_json("a.las"), engine_factory=FakeEngine)
            ids = (
                bindings.read({"schema": Z_ONLY, "bounds": [0, 0, 4.9, 9.9]}, left),
                bindings.read({"schema": Z_ONLY, "bounds": [5, 0, 9.9, 0.9]}, right),
            )
            assert len(bindings.registry) == 2
            return bindings, ids

        bindings, (left_id, right_id) = _run(scenario)
        assert left_id != right_id
        assert left.last[1] == left_id and left.last[2] == 50
        assert right.last[1] == right_id and right.last[2] == 5

        right_z = np.frombuffer(bytes(right.last[4]), dtype="<f8")
        assert right_z.tolist() == [6.0, 7.0, 8.0, 9.0, 10.0]
        assert len(bindings.registry) == 0

    def test_many_reads_drain_registry(self):
        recorders = [CallbackRecorder() for _ in range(20)]

        async def scenario(dispatcher):
            bindings = await _created(dispatcher, pipeline_json("a.las"), engine_factory=FakeEngine)
            ids = [bindings.read({"schema": Z_ONLY}, r) for r in recorders]
            return bindings, ids

        bindings, ids = _run(scenario)
        assert len(set(ids)) == 20
        assert all(len(r.calls) == 1 for r in recorders)
        assert len(bindings.registry) == 0

    def test_rastered_read(self, grid_pipeline, recorder):
        async def scenario(dispatcher):
            bindings = await _created(dispatcher, grid_pipeline)
            bindings.read({"schema": Z_ONLY, "bounds": [0, 0, 10, 10], "resolution": [2, 2]}, recorder)

        _run(scenario)
        (call,) = recorder.calls
        assert len(call) == 11
        assert call[2] == 25
        assert call[5:] == (0.0, 2.0, 5, 0.0, 2.0, 5)

    def test_failed_read(self, recorder):
        async def scenario(dispatcher):
            bindings = await _created(
                dispatcher, pipeline_json("a.las"),
                engine_factory=lambda: FakeEngine(fail_extract="Disk read failed"),
            )
            bindings.read({}, recorder)
            return bindings

        bindings = _run(scenario)
        assert recorder.calls == [("Disk read failed",)]
        assert len(bindings.registry) == 0

    def test_read_aborted_outside_exception_hierarchy(self, recorder):
        """A BaseException from the engine still produces one failed delivery."""
        async def scenario(dispatcher):
            bindings = await _created(
                dispatcher, pipeline_json("a.las"),
                engine_factory=lambda: FakeEngine(fail_extract=ExtractAbort("stopped")),
            )
            bindings.read({}, recorder)
            await asyncio.wait_for(dispatcher.join(), timeout=5)
            return bindings

        bindings = _run(scenario)
        assert recorder.calls == [("ExtractAbort: stopped",)]
        assert len(bindings.registry) == 0

    def test_read_id_collision_regenerates(self, monkeypatch):
        first, second = CallbackRecorder(), CallbackRecorder()
        ids = iter(["AAAA", "AAAA", "BBBB"])
        monkeypatch.setattr("session_handler.core.bindings.generate_read_id", lambda size: next(ids))

        async def scenario(dispatcher):
            bindings = await _created(dispatcher, pipeline_json("a.las"), engine_factory=FakeEngine)
            read_ids = (
                bindings.read({"schema": Z_ONLY}, first),
                bindings.read({"schema": Z_ONLY}, second),
            )
            return bindings, read_ids

        bindings, read_ids = _run(scenario)
        assert read_ids == ("AAAA", "BBBB")
        assert first.last[1] == "AAAA" and second.last[1] == "BBBB"
        assert first.last[2] == second.last[2] == 100
        assert len(bindings.registry) == 0

    def test_destroy_with_read_in_flight(self, recorder):
        async def scenario(dispatcher):
            bindings = await _created(dispatcher, pipeline_json("a.las"), engine_factory=FakeEngine)
            bindings.read({"schema": Z_ONLY}, recorder)
            bindings.destroy()
            bindings.destroy()
            return bindings

        bindings = _run(scenario)
        err, _, num_points = recorder.last[:3]
        assert err is None
        assert num_points == 100
        assert bindings.session.state is SessionState.DESTROYED

    def test_chunk_size_from_config(self, recorder):
        config = AppConfig.model_validate({"read": {"chunk_size": 3, "id_size": 8}})

        async def scenario(dispatcher):
            bindings = await _created(dispatcher, pipeline_json("a.las"), engine_factory=FakeEngine, config=config)
            return bindings.read({"schema": Z_ONLY}, recorder)

        read_id = _run(scenario)
        assert len(read_id) == 8
        assert recorder.last[2] == 100
