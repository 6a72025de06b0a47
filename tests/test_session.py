"""
flamefuse Session Tests

Tests cover: the profiling session lifecycle, telemetry retrieval, the
end-to-end scenarios, and the reference collaborators.
"""

import asyncio
import threading
from unittest.mock import AsyncMock, Mock, patch

import pytest
from structlog.testing import capture_logs


TRACE = {
    "resources": ["app.py"],
    "frames": [{"name": "main", "resourceId": 0}, {"name": "render", "resourceId": 0}],
    "stacks": [{"frameId": 0}, {"frameId": 1, "parentId": 0}],
    "samples": [
        {"timestamp": 1001.0, "stackId": 0},
        {"timestamp": 1002.0, "stackId": 1},
        {"timestamp": 1003.0, "stackId": 1},
    ],
}


def _clock(*times):
    ticks = iter(times)
    return lambda: next(ticks)


def _record(context_id, name, start, end):
    return {"contextId": context_id, "functionName": name, "startTime": start, "endTime": end}


@pytest.fixture
def config():
    """Default configuration, independent of the environment."""
    from flamefuse.core.config import FlameFuseConfig

    return FlameFuseConfig()


@pytest.fixture
def session(config):
    """A session without a sampler, running from 1000ms to 1100ms."""
    from flamefuse.profiling.markers import MarkerRegistry
    from flamefuse.profiling.session import ProfilingSession

    return ProfilingSession(config=config, markers=MarkerRegistry(), clock=_clock(1000.0, 1100.0))


@pytest.fixture
def sampler():
    """A sampler that starts and returns TRACE."""
    sampler = Mock()
    sampler.start = AsyncMock(return_value=True)
    sampler.stop = AsyncMock(return_value=TRACE)
    return sampler


@pytest.fixture
def sampled_session(config, sampler):
    """A session whose sampler yields TRACE."""
    from flamefuse.profiling.markers import MarkerRegistry
    from flamefuse.profiling.session import ProfilingSession

    return ProfilingSession(
        config=config,
        sampler=sampler,
        markers=MarkerRegistry(),
        clock=_clock(1000.0, 1100.0),
    )


class SlowCollaborator:
    """Async collaborator that never answers in time."""

    def get_context_id(self):
        return "worker-slow"

    async def get_all_telemetry(self):
        await asyncio.sleep(5)
        return []

    def clear(self):
        pass


# =============================================================================
# Lifecycle Tests
# =============================================================================

class TestSessionLifecycle:
    """Test session state transitions."""

    @pytest.mark.asyncio
    async def test_start_stop(self, session):
        """Test idle -> collecting -> stopped."""
        from flamefuse.profiling.session import SessionState

        assert session.state == SessionState.IDLE

        await session.start()
        assert session.state == SessionState.COLLECTING
        assert session.start_time == 1000.0

        await session.stop()
        assert session.state == SessionState.STOPPED
        assert session.end_time == 1100.0

    @pytest.mark.asyncio
    async def test_generate_requires_stopped(self, session):
        """Test generating while collecting is a contract violation."""
        from flamefuse.profiling.errors import SessionStateError

        with pytest.raises(SessionStateError):
            session.generate_call_tree()

        await session.start()
        with pytest.raises(SessionStateError) as exc_info:
            session.generate_flame_chart()

        assert exc_info.value.state == "collecting"
        assert exc_info.value.expected == "stopped"

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, session):
        """Test stop before start and double start."""
        from flamefuse.profiling.errors import SessionStateError

        with pytest.raises(SessionStateError):
            await session.stop()
        with pytest.raises(SessionStateError):
            session.add_records([])

        await session.start()
        with pytest.raises(SessionStateError):
            await session.start()

    @pytest.mark.asyncio
    async def test_restart_clears_buffers(self, config):
        """Test a stopped session can start over."""
        from flamefuse.profiling.markers import MarkerRegistry
        from flamefuse.profiling.session import ProfilingSession

        session = ProfilingSession(
            config=config,
            markers=MarkerRegistry(),
            clock=_clock(1000.0, 1100.0, 2000.0, 2100.0),
        )
        await session.start()
        session.add_records([_record("worker-1", "f", 1000.0, 1010.0)])
        await session.stop()

        await session.start()
        await session.stop()

        assert session.records() == []
        assert session.start_time == 2000.0
        assert session.generate() is None

    @pytest.mark.asyncio
    async def test_sampler_failure_degrades(self, config):
        """Test an unavailable sampler leaves instrumentation working."""
        from flamefuse.profiling.markers import MarkerRegistry
        from flamefuse.profiling.session import ProfilingSession

        sampler = Mock()
        sampler.start = AsyncMock(return_value=False)
        sampler.stop = AsyncMock()
        session = ProfilingSession(config=config, sampler=sampler, markers=MarkerRegistry(), clock=_clock(0.0, 1.0))

        with capture_logs() as logs:
            await session.start()
        await session.stop()

        assert session.sampling_active is False
        sampler.stop.assert_not_awaited()
        assert session.trace is None
        assert any(entry["log_level"] == "warning" for entry in logs)

    @pytest.mark.asyncio
    async def test_sampler_exception_degrades(self, config):
        """Test a sampler raising on start is absorbed."""
        from flamefuse.profiling.markers import MarkerRegistry
        from flamefuse.profiling.session import ProfilingSession, SessionState

        sampler = Mock()
        sampler.start = AsyncMock(side_effect=RuntimeError("no profiler"))
        session = ProfilingSession(config=config, sampler=sampler, markers=MarkerRegistry(), clock=_clock(0.0, 1.0))

        await session.start()

        assert session.state == SessionState.COLLECTING
        assert session.sampling_active is False

    @pytest.mark.asyncio
    async def test_sampling_disabled_by_config(self, sampler):
        """Test the sampler is not started when sampling is disabled."""
        from flamefuse.core.config import FlameFuseConfig, SamplingConfig
        from flamefuse.profiling.markers import MarkerRegistry
        from flamefuse.profiling.session import ProfilingSession

        config = FlameFuseConfig(sampling=SamplingConfig(enabled=False))
        session = ProfilingSession(config=config, sampler=sampler, markers=MarkerRegistry(), clock=_clock(0.0, 1.0))

        await session.start()
        await session.stop()

        sampler.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stats(self, sampled_session):
        """Test session statistics."""
        await sampled_session.start()
        sampled_session.add_records([_record("worker-1", "f", 1000.0, 1010.0)])
        await sampled_session.stop()

        stats = sampled_session.get_stats()
        assert stats["state"] == "stopped"
        assert stats["sampler_configured"] is True
        assert stats["trace_samples"] == 3
        assert stats["records"] == {"worker-1": 1}


# =============================================================================
# Retrieval Tests
# =============================================================================

class TestTelemetryRetrieval:
    """Test pulling telemetry from collaborators."""

    @pytest.mark.asyncio
    async def test_pull_sync_collaborator(self, session):
        """Test a blocking collaborator is pulled off the event loop."""
        from flamefuse.profiling.collectors import ContextRecorder

        recorder = ContextRecorder("worker-1")
        recorder.record("f", 1000.0, 1010.0)
        recorder.record("g", 1002.0, 1004.0)

        await session.start()
        await session.stop()
        pulled = await session.pull_telemetry(recorder)

        assert pulled == 2
        assert len(session.records("worker-1")) == 2

    @pytest.mark.asyncio
    async def test_pull_async_collaborator(self, session):
        """Test an async collaborator and its context id."""
        collaborator = Mock()
        collaborator.get_all_telemetry = AsyncMock(return_value=[
            {"functionName": "decode", "startTime": 1000.0, "endTime": 1001.0},
        ])
        collaborator.get_context_id = Mock(return_value="worker-9")

        await session.start()
        await session.stop()
        pulled = await session.pull_telemetry(collaborator)

        assert pulled == 1
        assert session.records("worker-9")[0].function_name == "decode"

    @pytest.mark.asyncio
    async def test_worker_id_fallback(self, session):
        """Test get_worker_id() names the context when get_context_id() is absent."""
        collaborator = Mock(spec=["get_all_telemetry", "get_worker_id"])
        collaborator.get_all_telemetry = Mock(return_value=[
            {"functionName": "f", "startTime": 1000.0, "endTime": 1001.0},
        ])
        collaborator.get_worker_id = Mock(return_value="worker-4")

        await session.start()
        await session.stop()
        await session.pull_telemetry(collaborator)

        assert len(session.records("worker-4")) == 1

    @pytest.mark.asyncio
    async def test_pull_timeout_skips_context(self, session):
        """Test a retrieval timeout contributes nothing and does not raise."""
        await session.start()
        await session.stop()

        with capture_logs() as logs:
            pulled = await session.pull_telemetry(SlowCollaborator(), timeout=0.05)

        assert pulled == 0
        assert session.records() == []
        assert any(entry["event"] == "Telemetry retrieval timed out, skipping context" for entry in logs)

    @pytest.mark.asyncio
    async def test_pull_error_skips_context(self, session):
        """Test a failing collaborator contributes nothing."""
        collaborator = Mock(spec=["get_all_telemetry"])
        collaborator.get_all_telemetry = Mock(side_effect=RuntimeError("worker gone"))

        await session.start()
        await session.stop()
        pulled = await session.pull_telemetry(collaborator)

        assert pulled == 0

    @pytest.mark.asyncio
    async def test_timeout_does_not_block_other_contexts(self, session):
        """Test other contexts still contribute after one times out."""
        from flamefuse.profiling.collectors import ContextRecorder

        recorder = ContextRecorder("worker-1")
        recorder.record("f", 1000.0, 1010.0)

        await session.start()
        await session.stop()
        await session.pull_telemetry(SlowCollaborator(), timeout=0.05)
        await session.pull_telemetry(recorder)

        chart = session.generate_flame_chart()
        assert [track.name for track in chart.tracks] == ["web-worker-1"]

    @pytest.mark.asyncio
    async def test_context_id_overrides_record_ids(self, session):
        """Test records are attributed to the collaborator's context."""
        from flamefuse.profiling.types import TelemetryRecord

        await session.start()
        session.add_records([TelemetryRecord("unknown", "f", 1000.0, 1001.0)], context_id="worker-2")

        assert session.records("worker-2")[0].context_id == "worker-2"


# =============================================================================
# Scenario Tests
# =============================================================================

class TestScenarios:
    """End-to-end aggregation scenarios."""

    @pytest.mark.asyncio
    async def test_single_context_call_tree(self, session):
        """Test three sequential main-context records."""
        await session.start()
        session.add_records([
            _record("main", "fetchImage", 1000.0, 1010.0),
            _record("main", "decodeImage", 1010.0, 1015.0),
            _record("main", "processImage", 1015.0, 1020.0),
        ])
        await session.stop()

        tree = session.generate()

        assert len(tree.nodes) == 3
        assert len(tree.samples) == 3
        assert tree.time_deltas == [0.0, 10000.0, 15000.0]
        assert [n.frame.function_name for n in tree.nodes] == ["fetchImage", "decodeImage", "processImage"]

    @pytest.mark.asyncio
    async def test_two_workers_flame_chart(self, session):
        """Test overlapping workers produce two evented tracks over one frame table."""
        from flamefuse.profiling.types import EventedTrack

        await session.start()
        session.add_records([
            _record("worker-1", "parse", 1000.0, 1020.0),
            _record("worker-1", "tokenize", 1005.0, 1015.0),
            _record("worker-2", "resize", 1002.0, 1030.0),
            _record("worker-2", "encode", 1010.0, 1012.0),
        ])
        await session.stop()

        chart = session.generate_flame_chart()

        assert len(chart.tracks) == 2
        assert all(isinstance(track, EventedTrack) for track in chart.tracks)
        assert len(chart.frames) == 4
        for track in chart.tracks:
            times = [event.at for event in track.events]
            assert times == sorted(times)

    @pytest.mark.asyncio
    async def test_records_without_trace(self, sampled_session, sampler):
        """Test a null trace still yields a call tree from the records."""
        sampler.stop.return_value = None

        await sampled_session.start()
        sampled_session.add_records([_record("worker-1", "f", 1000.0, 1001.0)])
        await sampled_session.stop()

        tree = sampled_session.generate()

        assert tree is not None
        assert len(tree.nodes) == 1
        assert tree.samples == [0]

    @pytest.mark.asyncio
    async def test_inverted_record_never_negative(self, session):
        """Test a record ending before it starts leaves no negative durations."""
        await session.start()
        session.add_records([
            _record("worker-1", "ok", 1000.0, 1005.0),
            _record("worker-1", "inverted", 1010.0, 1002.0),
        ])
        await session.stop()

        tree = session.generate()
        chart = session.generate_flame_chart()

        assert all(delta >= 0 for delta in tree.time_deltas)
        assert tree.time_deltas == sorted(tree.time_deltas)
        opened = {}
        for event in chart.tracks[0].events:
            if event.type.value == "O":
                opened[event.frame] = event.at
            else:
                assert event.at >= opened.pop(event.frame)
        assert len(chart.tracks[0].events) == 2

    @pytest.mark.asyncio
    async def test_nothing_to_profile(self, session):
        """Test no telemetry at all yields None rather than an error."""
        await session.start()
        await session.stop()

        assert session.generate() is None
        assert session.generate_flame_chart() is None
        assert session.generate_context_flame_charts() is None

    @pytest.mark.asyncio
    async def test_main_trace_and_workers_merge(self, sampled_session):
        """Test the sampled main profile merges with worker profiles."""
        await sampled_session.start()
        sampled_session.add_records([
            _record("worker-1", "f", 1000.5, 1002.0),
            _record("worker-2", "f", 1001.5, 1003.0),
        ])
        await sampled_session.stop()

        tree = sampled_session.generate_call_tree()

        assert len(tree.nodes) == 4
        assert len(tree.samples) == 5
        assert len({node.id for node in tree.nodes}) == 4
        assert all(b > a for a, b in zip(tree.time_deltas, tree.time_deltas[1:]))
        names = {node.frame.display_name for node in tree.nodes}
        assert {"[worker-1] f", "[worker-2] f"} <= names

    @pytest.mark.asyncio
    async def test_main_trace_and_main_records_merge(self, sampled_session):
        """Test main instrumentation merges into the sampled main profile."""
        await sampled_session.start()
        sampled_session.add_records([_record("main", "onClick", 1000.5, 1001.5)])
        await sampled_session.stop()

        tree = sampled_session.generate_call_tree()
        chart = sampled_session.generate_flame_chart()

        assert len(tree.nodes) == 3
        assert len(tree.samples) == 4
        assert [track.name for track in chart.tracks] == ["Main Thread"]
        assert len(chart.tracks[0].samples) == 4

    @pytest.mark.asyncio
    async def test_generation_is_idempotent(self, sampled_session):
        """Test repeated generation gives equal artifacts."""
        await sampled_session.start()
        sampled_session.add_records([_record("worker-1", "f", 1000.0, 1001.0)])
        await sampled_session.stop()

        assert sampled_session.generate().to_dict() == sampled_session.generate().to_dict()
        assert sampled_session.generate_flame_chart().to_dict() == sampled_session.generate_flame_chart().to_dict()

    @pytest.mark.asyncio
    async def test_context_flame_charts(self, sampled_session):
        """Test one artifact per context, main first."""
        await sampled_session.start()
        sampled_session.add_records([
            _record("worker-1", "f", 1000.0, 1001.0),
            _record("worker-2", "g", 1000.0, 1002.0),
        ])
        await sampled_session.stop()

        charts = sampled_session.generate_context_flame_charts()

        assert [context_id for context_id, _ in charts] == ["main", "worker-1", "worker-2"]
        assert [track.name for track in charts[1][1].tracks] == ["web-worker-1"]
        assert len(charts[2][1].frames) == 1

    @pytest.mark.asyncio
    async def test_session_markers(self, config):
        """Test a session-scoped registry marks frames in the artifact."""
        from flamefuse.profiling.markers import MarkerRegistry
        from flamefuse.profiling.session import ProfilingSession

        markers = MarkerRegistry()
        markers.mark("fetchImage", "network")
        session = ProfilingSession(config=config, markers=markers, clock=_clock(1000.0, 1100.0))

        await session.start()
        session.add_records([_record("main", "fetchImage", 1000.0, 1010.0)])
        await session.stop()

        node = session.generate().to_dict()["nodes"][0]
        assert node["marker"]["color"] == "#ff6b6b"


# =============================================================================
# Collaborator Tests
# =============================================================================

class TestContextRecorder:
    """Test the in-process instrumentation recorder."""

    def test_default_context_id(self):
        """Test a recorder without an id gets a worker id."""
        from flamefuse.profiling.collectors import ContextRecorder

        assert ContextRecorder().get_context_id().startswith("worker-")

    def test_protocol(self):
        """Test the recorder satisfies the collaborator contract."""
        from flamefuse.profiling.collectors import ContextRecorder, TelemetryCollaborator

        assert isinstance(ContextRecorder("main"), TelemetryCollaborator)

    def test_nested_spans(self):
        """Test call stacks and times of nested spans."""
        from flamefuse.profiling.collectors import ContextRecorder

        recorder = ContextRecorder("worker-1", clock=_clock(1.0, 2.0, 3.0, 4.0))

        finish = recorder.start_function("outer")
        with recorder.span("inner"):
            pass
        outer = finish()

        inner = recorder.get_all_telemetry()[0]
        assert (inner.function_name, inner.start_time, inner.end_time) == ("inner", 2.0, 3.0)
        assert inner.call_stack == ("outer",)
        assert (outer.start_time, outer.end_time) == (1.0, 4.0)
        assert outer.call_stack == ()
        assert len(recorder) == 2

    def test_instrument_sync(self):
        """Test the decorator on a plain function."""
        from flamefuse.profiling.collectors import ContextRecorder
        from flamefuse.profiling.markers import MarkerRegistry

        markers = MarkerRegistry()
        markers.mark("resize", "compute")
        recorder = ContextRecorder("worker-1", markers=markers)

        @recorder.instrument("resize")
        def resize(x):
            return x * 2

        assert resize(2) == 4
        record = recorder.get_all_telemetry()[0]
        assert record.function_name == "resize"
        assert record.marker.category.value == "compute"
        assert record.end_time >= record.start_time

    @pytest.mark.asyncio
    async def test_instrument_async(self):
        """Test the decorator on a coroutine function."""
        from flamefuse.profiling.collectors import ContextRecorder

        recorder = ContextRecorder("worker-1")

        @recorder.instrument()
        async def fetch():
            await asyncio.sleep(0)
            return "ok"

        assert await fetch() == "ok"
        assert recorder.get_all_telemetry()[0].function_name.endswith("fetch")

    def test_instrument_records_on_error(self):
        """Test a raising function is still recorded."""
        from flamefuse.profiling.collectors import ContextRecorder

        recorder = ContextRecorder("worker-1")

        @recorder.instrument("boom")
        def boom():
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            boom()
        assert len(recorder) == 1

    def test_history_is_repeatable_until_clear(self):
        """Test get_all_telemetry() returns the same history until cleared."""
        from flamefuse.profiling.collectors import ContextRecorder

        recorder = ContextRecorder("worker-1")
        recorder.record("f", 0.0, 1.0)

        assert recorder.get_all_telemetry() == recorder.get_all_telemetry()
        recorder.clear()
        assert recorder.get_all_telemetry() == []


class TestStackSampler:
    """Test the stack sampler."""

    @pytest.mark.asyncio
    async def test_sample_main_thread(self):
        """Test sampling produces a trace the builder accepts."""
        from flamefuse.profiling.builder import ProfileBuilder
        from flamefuse.profiling.collectors import SamplingCollaborator, StackSampler

        sampler = StackSampler(interval_ms=1)
        assert isinstance(sampler, SamplingCollaborator)

        assert await sampler.start() is True
        assert sampler.is_running
        await asyncio.sleep(0.1)
        trace = await sampler.stop()

        assert not sampler.is_running
        assert trace.has_samples
        for stack in trace.stacks:
            assert 0 <= stack.frame_id < len(trace.frames)
            assert stack.parent_id is None or stack.parent_id < len(trace.stacks)

        profile = ProfileBuilder().from_sampled_trace(trace, trace.samples[0].timestamp, trace.samples[-1].timestamp)
        assert profile.sample_count == len(trace.samples)
        assert all(delta >= 0 for delta in profile.time_deltas)

    def test_from_config(self):
        """Test the sampler takes its interval and buffer size from configuration."""
        from flamefuse.core.config import SamplingConfig
        from flamefuse.profiling.collectors import StackSampler

        sampler = StackSampler.from_config(SamplingConfig(interval_ms=2.5, max_buffer_size=64), thread_id=7)

        assert sampler.interval_ms == 2.5
        assert sampler.max_buffer_size == 64
        assert sampler.thread_id == 7

    @pytest.mark.asyncio
    async def test_from_config_buffer_limit(self):
        """Test the configured buffer size bounds the trace."""
        from flamefuse.core.config import SamplingConfig
        from flamefuse.profiling.collectors import StackSampler

        sampler = StackSampler.from_config(SamplingConfig(interval_ms=1, max_buffer_size=2))
        await sampler.start()
        await asyncio.sleep(0.05)
        trace = await sampler.stop()

        assert len(trace.samples) <= 2

    @pytest.mark.asyncio
    async def test_buffer_limit(self):
        """Test samples beyond the buffer size are dropped."""
        from flamefuse.profiling.collectors import StackSampler

        sampler = StackSampler(interval_ms=1, max_buffer_size=3)
        await sampler.start()
        await asyncio.sleep(0.05)
        trace = await sampler.stop()

        assert len(trace.samples) <= 3

    @pytest.mark.asyncio
    async def test_unsupported_returns_false(self):
        """Test start() reports unavailability instead of raising."""
        from flamefuse.profiling.collectors import StackSampler

        sampler = StackSampler()
        with patch.object(StackSampler, "is_supported", return_value=False):
            assert await sampler.start() is False

        assert await sampler.stop() is None

    @pytest.mark.asyncio
    async def test_sample_other_thread(self):
        """Test sampling a specific thread by id."""
        from flamefuse.profiling.collectors import StackSampler

        done = threading.Event()

        def busy_worker():
            done.wait(1.0)

        thread = threading.Thread(target=busy_worker)
        thread.start()
        try:
            sampler = StackSampler(thread_id=thread.ident, interval_ms=1)
            await sampler.start()
            await asyncio.sleep(0.05)
            trace = await sampler.stop()
        finally:
            done.set()
            thread.join()

        names = {frame.name for frame in trace.frames}
        assert "busy_worker" in names
