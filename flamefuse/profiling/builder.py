"""
flamefuse Profile Builder

Converts one context's telemetry into a per-context Profile. Both
telemetry shapes go through the same assembly:
- Sampled: a stack-sampling trace, one profile sample per trace sample
- Instrumented: start/end records, one profile sample per record

Every built profile ends with a normalization pass that makes
time_deltas non-decreasing.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from flamefuse.profiling.frames import FrameRegistry
from flamefuse.profiling.markers import MarkerRegistry
from flamefuse.profiling.types import (
    ContextInput,
    InputKind,
    Marker,
    Profile,
    ProfileNode,
    SampledTrace,
    SourceLocation,
    TelemetryRecord,
    TraceStack,
)

logger = structlog.get_logger(__name__)

DEFAULT_MAIN_CONTEXT = "main"
MAIN_SCHEME = "main-thread"
ANONYMOUS = "(anonymous)"


def to_microseconds(time_ms: float, origin_ms: float) -> float:
    """Offset of time_ms from origin_ms, in microseconds."""
    return (time_ms - origin_ms) * 1000


def normalize_time_deltas(time_deltas: Sequence[float]) -> Tuple[List[float], int]:
    """
    Make deltas non-decreasing in one pass.

    Any value below its predecessor becomes predecessor + 1. The first
    predecessor is 0, so negative leading values become 1. Returns the
    normalized list and how many values were corrected.
    """
    normalized: List[float] = []
    corrected = 0
    last = 0.0
    for delta in time_deltas:
        if delta < last:
            delta = last + 1
            corrected += 1
        normalized.append(delta)
        last = delta
    return normalized, corrected


class _ProfileAssembly:
    """Accumulates frames and samples for one context."""

    def __init__(self, context_id: str, start_time: float, end_time: float):
        self.context_id = context_id
        self.start_time = start_time
        self.end_time = end_time
        self.registry = FrameRegistry()
        self.hits: Dict[int, int] = defaultdict(int)
        self.samples: List[int] = []
        self.time_deltas: List[float] = []

    def add_sample(self, frame_id: int, time_ms: float) -> None:
        self.hits[frame_id] += 1
        self.samples.append(frame_id)
        self.time_deltas.append(to_microseconds(time_ms, self.start_time))

    def finish(self) -> Profile:
        time_deltas, corrected = normalize_time_deltas(self.time_deltas)
        if corrected:
            logger.warning(
                "Clamped non-monotonic time deltas",
                context_id=self.context_id,
                corrected=corrected,
                samples=len(time_deltas),
            )

        return Profile(
            nodes=[ProfileNode(frame=frame, hit_count=self.hits[frame.id]) for frame in self.registry],
            samples=self.samples,
            time_deltas=time_deltas,
            start_time=self.start_time,
            end_time=self.end_time,
            context_id=self.context_id,
        )


class ProfileBuilder:
    """
    Builds per-context profiles.

    Frames are context-qualified, so the same function name seen in two
    contexts yields two distinct frames.
    """

    def __init__(
        self,
        markers: Optional[MarkerRegistry] = None,
        main_context_id: str = DEFAULT_MAIN_CONTEXT,
    ):
        self.markers = markers
        self.main_context_id = main_context_id

    def build(self, context_input: ContextInput, start_time: float, end_time: float) -> Profile:
        """Build a profile from either telemetry shape."""
        if context_input.kind is InputKind.SAMPLED:
            return self.from_sampled_trace(
                context_input.trace, start_time, end_time, context_input.context_id,
            )
        if context_input.kind is InputKind.INSTRUMENTED:
            return self.from_telemetry_records(
                context_input.records, start_time, end_time, context_input.context_id,
            )
        raise TypeError(f"Unsupported context input: {type(context_input).__name__}")

    def from_sampled_trace(
        self,
        trace: Optional[SampledTrace],
        start_time: float,
        end_time: float,
        context_name: Optional[str] = None,
    ) -> Profile:
        """Build a profile from a sampled trace. Missing data gives an empty profile."""
        context_id = context_name or self.main_context_id
        assembly = _ProfileAssembly(context_id, start_time, end_time)

        if trace is None or not trace.has_samples:
            logger.debug("No sampled trace data", context_id=context_id)
            return assembly.finish()

        frame_ids: Dict[int, int] = {}
        for stack in trace.stacks:
            index = stack.frame_id
            if index is None or index in frame_ids:
                continue
            if not 0 <= index < len(trace.frames):
                continue
            frame_ids[index] = self._intern_trace_frame(assembly, trace, index)

        idle = 0
        dangling = 0
        for sample in trace.samples:
            stack = self._stack_at(trace, sample.stack_id)
            if stack is None:
                idle += 1
                continue
            frame_id = frame_ids.get(stack.frame_id)
            if frame_id is None:
                dangling += 1
                continue
            assembly.add_sample(frame_id, sample.timestamp)

        if dangling:
            logger.warning(
                "Skipped samples referencing unknown frames",
                context_id=context_id,
                skipped=dangling,
            )

        logger.debug(
            "Built sampled profile",
            context_id=context_id,
            frames=len(assembly.registry),
            samples=len(assembly.samples),
            idle=idle,
        )
        return assembly.finish()

    def from_telemetry_records(
        self,
        records: Sequence[TelemetryRecord],
        start_time: float,
        end_time: float,
        context_id: str,
    ) -> Profile:
        """Build a profile from instrumentation records, one sample per record."""
        assembly = _ProfileAssembly(context_id, start_time, end_time)
        scheme = self._scheme(context_id)

        ordered = sorted(records, key=lambda r: (r.start_time, -r.end_time))
        for record in ordered:
            marker = record.marker or self._marker_for(record.function_name)
            frame_id = assembly.registry.intern(
                context_id,
                record.function_name,
                SourceLocation(file=f"{scheme}://{record.function_name}"),
                marker=marker,
                display_name=self._display_name(context_id, record.function_name),
            )
            assembly.add_sample(frame_id, record.start_time)

        logger.debug(
            "Built instrumented profile",
            context_id=context_id,
            frames=len(assembly.registry),
            records=len(ordered),
        )
        return assembly.finish()

    def _intern_trace_frame(
        self,
        assembly: _ProfileAssembly,
        trace: SampledTrace,
        index: int,
    ) -> int:
        trace_frame = trace.frames[index]
        function_name = trace_frame.name or ANONYMOUS

        resource_id = trace_frame.resource_id
        if resource_id is None:
            resource = "inline"
        elif 0 <= resource_id < len(trace.resources):
            resource = trace.resources[resource_id]
        else:
            resource = f"script-{resource_id}"

        location = SourceLocation(
            file=f"{self._scheme(assembly.context_id)}://{resource}",
            line=trace_frame.line or 0,
            col=trace_frame.column or 0,
        )
        return assembly.registry.intern(
            assembly.context_id,
            function_name,
            location,
            marker=self._marker_for(function_name),
            display_name=self._display_name(assembly.context_id, function_name),
        )

    @staticmethod
    def _stack_at(trace: SampledTrace, stack_id: Optional[int]) -> Optional[TraceStack]:
        if stack_id is None or not 0 <= stack_id < len(trace.stacks):
            return None
        return trace.stacks[stack_id]

    def _marker_for(self, function_name: str) -> Optional[Marker]:
        if self.markers is None:
            return None
        return self.markers.get(function_name)

    def _scheme(self, context_id: str) -> str:
        return MAIN_SCHEME if context_id == self.main_context_id else context_id

    def _display_name(self, context_id: str, function_name: str) -> str:
        if context_id == self.main_context_id:
            return function_name
        return f"[{context_id}] {function_name}"
