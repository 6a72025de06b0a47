"""
flamefuse Profiling Types

Dataclasses for raw telemetry, per-context intermediate profiles, and the
two exported artifact encodings:
- CallTree: Chrome DevTools .cpuprofile shape
- FlameChart: speedscope file format with one track per context

Raw telemetry times are milliseconds on a monotonic clock. Artifact time
values are microseconds.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

SPEEDSCOPE_SCHEMA = "https://www.speedscope.app/file-format-schema.json"
TIME_UNIT = "microseconds"


def _opt_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first key present in data (camelCase or snake_case)."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


# === Markers ===

class MarkerCategory(str, Enum):
    """Categories used to highlight marked functions in viewers."""
    NETWORK = "network"
    RENDER = "render"
    COMPUTE = "compute"
    CUSTOM = "custom"

    @property
    def default_color(self) -> str:
        return CATEGORY_COLORS[self]


CATEGORY_COLORS: Dict[MarkerCategory, str] = {
    MarkerCategory.NETWORK: "#ff6b6b",
    MarkerCategory.RENDER: "#4ecdc4",
    MarkerCategory.COMPUTE: "#ffe66d",
    MarkerCategory.CUSTOM: "#95e1d3",
}


@dataclass(frozen=True)
class Marker:
    """Descriptive metadata attached to a function name."""
    function_name: str
    category: MarkerCategory = MarkerCategory.CUSTOM
    description: Optional[str] = None
    color: Optional[str] = None

    def __post_init__(self):
        category = MarkerCategory(self.category)
        object.__setattr__(self, "category", category)
        if not self.color:
            object.__setattr__(self, "color", category.default_color)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "functionName": self.function_name,
            "category": self.category.value,
            "color": self.color,
        }
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], function_name: str = "") -> "Marker":
        return cls(
            function_name=_pick(data, "functionName", "function_name", default=function_name),
            category=MarkerCategory(_pick(data, "category", default="custom")),
            description=data.get("description"),
            color=data.get("color"),
        )


# === Frames ===

@dataclass(frozen=True)
class SourceLocation:
    """Where a function lives. The empty location is a wildcard."""
    file: str = ""
    line: int = 0
    col: int = 0

    @property
    def is_wildcard(self) -> bool:
        return not self.file and self.line == 0 and self.col == 0


WILDCARD_LOCATION = SourceLocation()


@dataclass(frozen=True)
class FrameKey:
    """Structural identity of a frame within one aggregation run."""
    context_id: str
    function_name: str
    file: str = ""
    line: int = 0
    col: int = 0


@dataclass
class Frame:
    """A deduplicated function identity at a source location within a context."""
    id: int
    function_name: str
    location: SourceLocation
    context_id: str
    marker: Optional[Marker] = None
    display_name: str = ""
    script_id: str = ""

    def __post_init__(self):
        if not self.display_name:
            self.display_name = self.function_name

    @property
    def key(self) -> FrameKey:
        return FrameKey(
            context_id=self.context_id,
            function_name=self.function_name,
            file=self.location.file,
            line=self.location.line,
            col=self.location.col,
        )

    @property
    def url(self) -> str:
        return self.location.file

    def call_frame(self) -> Dict[str, Any]:
        """Render the .cpuprofile callFrame object."""
        return {
            "functionName": self.display_name,
            "scriptId": self.script_id,
            "url": self.url,
            "lineNumber": self.location.line,
            "columnNumber": self.location.col,
        }


@dataclass
class ProfileNode:
    """A frame plus its hit count, scoped to one profile."""
    frame: Frame
    hit_count: int = 0

    @property
    def id(self) -> int:
        return self.frame.id

    def to_dict(self) -> Dict[str, Any]:
        node: Dict[str, Any] = {
            "id": self.frame.id,
            "callFrame": self.frame.call_frame(),
            "hitCount": self.hit_count,
        }
        if self.frame.marker is not None:
            node["marker"] = self.frame.marker.to_dict()
        return node


# === Raw telemetry ===

@dataclass(frozen=True)
class TelemetryRecord:
    """A discrete function start/end measurement from instrumentation."""
    context_id: str
    function_name: str
    start_time: float
    end_time: float
    call_stack: Tuple[str, ...] = ()
    memory_before: Optional[int] = None
    memory_after: Optional[int] = None
    marker: Optional[Marker] = None

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def is_inverted(self) -> bool:
        return self.end_time < self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contextId": self.context_id,
            "functionName": self.function_name,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
            "callStack": list(self.call_stack),
            "memoryBefore": self.memory_before,
            "memoryAfter": self.memory_after,
            "marker": self.marker.to_dict() if self.marker else None,
        }

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        context_id: Optional[str] = None,
    ) -> "TelemetryRecord":
        """
        Build a record from a mapping.

        Raises ValueError or TypeError when a required field is missing or
        not numeric; callers at the ingestion edge turn that into a drop.
        """
        function_name = _pick(data, "functionName", "function_name")
        if not function_name:
            raise ValueError("record has no function name")

        raw_marker = data.get("marker")
        marker = None
        if isinstance(raw_marker, Marker):
            marker = raw_marker
        elif isinstance(raw_marker, Mapping):
            marker = Marker.from_dict(raw_marker, function_name=str(function_name))

        memory_before = _pick(data, "memoryBefore", "memory_before")
        memory_after = _pick(data, "memoryAfter", "memory_after")

        return cls(
            context_id=str(_pick(
                data, "contextId", "context_id", "workerId", "worker_id",
                default=context_id or "unknown",
            )),
            function_name=str(function_name),
            start_time=float(_pick(data, "startTime", "start_time")),
            end_time=float(_pick(data, "endTime", "end_time")),
            call_stack=tuple(str(name) for name in _pick(data, "callStack", "call_stack", default=())),
            memory_before=int(memory_before) if memory_before is not None else None,
            memory_after=int(memory_after) if memory_after is not None else None,
            marker=marker,
        )


@dataclass(frozen=True)
class TraceFrame:
    """A frame entry of a sampled trace."""
    name: str = ""
    resource_id: Optional[int] = None
    line: Optional[int] = None
    column: Optional[int] = None


@dataclass(frozen=True)
class TraceStack:
    """A stack entry: a frame and its parent stack."""
    frame_id: Optional[int]
    parent_id: Optional[int] = None


@dataclass(frozen=True)
class TraceSample:
    """A sample; a missing stack id marks an idle sample."""
    timestamp: float
    stack_id: Optional[int] = None


@dataclass
class SampledTrace:
    """A stack-sampling capture for exactly one context."""
    frames: List[TraceFrame] = field(default_factory=list)
    stacks: List[TraceStack] = field(default_factory=list)
    samples: List[TraceSample] = field(default_factory=list)
    resources: List[str] = field(default_factory=list)

    @property
    def has_samples(self) -> bool:
        return bool(self.samples) and bool(self.stacks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resources": list(self.resources),
            "frames": [
                {k: v for k, v in (
                    ("name", f.name),
                    ("resourceId", f.resource_id),
                    ("line", f.line),
                    ("column", f.column),
                ) if v is not None}
                for f in self.frames
            ],
            "stacks": [
                {"frameId": s.frame_id, **({"parentId": s.parent_id} if s.parent_id is not None else {})}
                for s in self.stacks
            ],
            "samples": [
                {"timestamp": s.timestamp, **({"stackId": s.stack_id} if s.stack_id is not None else {})}
                for s in self.samples
            ],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SampledTrace":
        """Build from the JS Self-Profiling trace shape."""
        frames = [
            TraceFrame(
                name=str(_pick(f, "name", default="")),
                resource_id=_opt_int(_pick(f, "resourceId", "resource_id")),
                line=_opt_int(f.get("line")),
                column=_opt_int(_pick(f, "column", "col")),
            )
            for f in data.get("frames") or []
        ]
        stacks = [
            TraceStack(
                frame_id=_opt_int(_pick(s, "frameId", "frame_id")),
                parent_id=_opt_int(_pick(s, "parentId", "parent_id")),
            )
            for s in data.get("stacks") or []
        ]
        samples = [
            TraceSample(
                timestamp=float(s["timestamp"]),
                stack_id=_opt_int(_pick(s, "stackId", "stack_id")),
            )
            for s in data.get("samples") or []
        ]
        return cls(
            frames=frames,
            stacks=stacks,
            samples=samples,
            resources=[str(r) for r in data.get("resources") or []],
        )


# === Context inputs ===

class InputKind(str, Enum):
    """Telemetry shapes a context can produce."""
    SAMPLED = "sampled"
    INSTRUMENTED = "instrumented"


@dataclass(frozen=True)
class SampledInput:
    """A context whose telemetry is a sampled call-stack trace."""
    context_id: str
    trace: Optional[SampledTrace] = None

    kind: ClassVar[InputKind] = InputKind.SAMPLED


@dataclass(frozen=True)
class InstrumentedInput:
    """A context whose telemetry is a sequence of start/end records."""
    context_id: str
    records: Tuple[TelemetryRecord, ...] = ()

    kind: ClassVar[InputKind] = InputKind.INSTRUMENTED

    def __post_init__(self):
        object.__setattr__(self, "records", tuple(self.records))


ContextInput = Union[SampledInput, InstrumentedInput]


# === Profiles ===

@dataclass
class Profile:
    """Per-context intermediate representation."""
    nodes: List[ProfileNode] = field(default_factory=list)
    samples: List[int] = field(default_factory=list)
    time_deltas: List[float] = field(default_factory=list)
    start_time: float = 0.0
    end_time: float = 0.0
    context_id: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.nodes and not self.samples

    @property
    def sample_count(self) -> int:
        return len(self.samples)


@dataclass
class MergedProfile(Profile):
    """Profiles from several contexts on one time base with unique node ids."""
    sources: List[str] = field(default_factory=list)

    @classmethod
    def from_profile(cls, profile: Profile) -> "MergedProfile":
        return cls(
            nodes=list(profile.nodes),
            samples=list(profile.samples),
            time_deltas=list(profile.time_deltas),
            start_time=profile.start_time,
            end_time=profile.end_time,
            context_id=profile.context_id,
            sources=[profile.context_id] if profile.context_id else [],
        )


# === Exported artifacts ===

@dataclass
class CallTree:
    """The .cpuprofile artifact."""
    nodes: List[ProfileNode] = field(default_factory=list)
    samples: List[int] = field(default_factory=list)
    time_deltas: List[float] = field(default_factory=list)
    start_time: float = 0.0
    end_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "samples": list(self.samples),
            "timeDeltas": list(self.time_deltas),
            "startTime": self.start_time,
            "endTime": self.end_time,
        }

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)


@dataclass(frozen=True)
class SharedFrame:
    """An entry of the flame chart's shared frame table."""
    name: str
    file: str = "(unknown)"
    line: int = 0
    col: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "file": self.file, "line": self.line, "col": self.col}


class EventType(str, Enum):
    """Evented track event kinds."""
    OPEN = "O"
    CLOSE = "C"


@dataclass(frozen=True)
class FlameEvent:
    """An open or close event on an evented track."""
    type: EventType
    at: float
    frame: int

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "at": self.at, "frame": self.frame}


@dataclass
class SampledTrack:
    """A track of weighted samples."""
    name: str
    start_value: float = 0.0
    end_value: float = 1.0
    samples: List[int] = field(default_factory=list)
    weights: List[float] = field(default_factory=list)
    unit: str = TIME_UNIT

    type: ClassVar[str] = "sampled"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "unit": self.unit,
            "startValue": self.start_value,
            "endValue": self.end_value,
            "samples": list(self.samples),
            "weights": list(self.weights),
        }


@dataclass
class EventedTrack:
    """A track of open/close events."""
    name: str
    start_value: float = 0.0
    end_value: float = 0.0
    events: List[FlameEvent] = field(default_factory=list)
    unit: str = TIME_UNIT

    type: ClassVar[str] = "evented"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "unit": self.unit,
            "startValue": self.start_value,
            "endValue": self.end_value,
            "events": [event.to_dict() for event in self.events],
        }


Track = Union[SampledTrack, EventedTrack]


@dataclass
class FlameChart:
    """The multi-track speedscope artifact."""
    frames: List[SharedFrame] = field(default_factory=list)
    tracks: List[Track] = field(default_factory=list)
    name: str = "Performance Profile"

    def track(self, name: str) -> Optional[Track]:
        for track in self.tracks:
            if track.name == name:
                return track
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "$schema": SPEEDSCOPE_SCHEMA,
            "shared": {"frames": [frame.to_dict() for frame in self.frames]},
            "profiles": [track.to_dict() for track in self.tracks],
            "name": self.name,
        }

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)
