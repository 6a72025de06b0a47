"""
flamefuse Profiling

Builds, merges, and exports profiles from several execution contexts.

Usage:
    from flamefuse.profiling import (
        ProfilingSession,
        ContextRecorder,
        StackSampler,
        mark_function,
    )

    mark_function("fetch_tiles", "network", "Tile download")

    worker = ContextRecorder("worker-1")
    session = ProfilingSession(sampler=StackSampler())
    await session.start()

    with worker.span("fetch_tiles"):
        ...

    await session.stop()
    await session.pull_telemetry(worker)

    call_tree = session.generate_call_tree()
    flame_chart = session.generate_flame_chart()
    Path("profile.cpuprofile").write_text(call_tree.to_json())
"""

from flamefuse.profiling.builder import ProfileBuilder, normalize_time_deltas
from flamefuse.profiling.collectors import (
    ContextRecorder,
    SamplingCollaborator,
    StackSampler,
    TelemetryCollaborator,
)
from flamefuse.profiling.errors import EmptyMergeError, FlameFuseError, SessionStateError
from flamefuse.profiling.exporters import CallTreeExporter, FlameChartExporter
from flamefuse.profiling.frames import FrameRegistry
from flamefuse.profiling.markers import MarkerRegistry, get_marker_registry, mark_function
from flamefuse.profiling.merger import ProfileMerger
from flamefuse.profiling.session import ProfilingSession, SessionState
from flamefuse.profiling.types import (
    CallTree,
    FlameChart,
    Frame,
    InstrumentedInput,
    Marker,
    MarkerCategory,
    MergedProfile,
    Profile,
    ProfileNode,
    SampledInput,
    SampledTrace,
    TelemetryRecord,
)

__all__ = [
    # Session
    "ProfilingSession",
    "SessionState",
    # Pipeline
    "ProfileBuilder",
    "ProfileMerger",
    "CallTreeExporter",
    "FlameChartExporter",
    "FrameRegistry",
    "normalize_time_deltas",
    # Collaborators
    "ContextRecorder",
    "StackSampler",
    "TelemetryCollaborator",
    "SamplingCollaborator",
    # Markers
    "MarkerRegistry",
    "get_marker_registry",
    "mark_function",
    # Types
    "CallTree",
    "FlameChart",
    "Frame",
    "InstrumentedInput",
    "Marker",
    "MarkerCategory",
    "MergedProfile",
    "Profile",
    "ProfileNode",
    "SampledInput",
    "SampledTrace",
    "TelemetryRecord",
    # Errors
    "FlameFuseError",
    "EmptyMergeError",
    "SessionStateError",
]
