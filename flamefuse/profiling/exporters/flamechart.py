"""
flamefuse Flame-Chart Exporter

Builds the multi-track speedscope artifact:
- One shared frame table, deduplicated by frame identity across contexts
- A sampled track for the main context
- An evented track per worker context, built from raw records when
  available and derived from samples otherwise
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from flamefuse.core.config import ExportConfig
from flamefuse.profiling.types import (
    EventType,
    EventedTrack,
    FlameChart,
    FlameEvent,
    FrameKey,
    Profile,
    SampledTrack,
    SharedFrame,
    TelemetryRecord,
)

logger = structlog.get_logger(__name__)

WORKER_ID_PREFIX = "worker-"

# (open_at, close_at, frame)
Interval = Tuple[float, float, int]


class SharedFrameTable:
    """Frame table shared by every track of one flame chart."""

    def __init__(self):
        self.frames: List[SharedFrame] = []
        self._by_key: Dict[FrameKey, int] = {}

    def intern(self, key: FrameKey, name: str) -> int:
        index = self._by_key.get(key)
        if index is None:
            index = len(self.frames)
            self.frames.append(SharedFrame(
                name=name,
                file=key.file or "(unknown)",
                line=key.line,
                col=key.col,
            ))
            self._by_key[key] = index
        return index

    def add_profile(self, profile: Profile) -> Dict[int, int]:
        """Intern every node of a profile. Returns node id -> frame index."""
        return {
            node.id: self.intern(node.frame.key, node.frame.display_name)
            for node in profile.nodes
        }


def events_from_intervals(intervals: Sequence[Interval]) -> List[FlameEvent]:
    """
    Turn open/close intervals into events sorted by time.

    At equal times, closes come before opens and close in reverse opening
    order; a zero-length interval keeps its open right before its close.
    """
    keyed = []
    for seq, (open_at, close_at, frame) in enumerate(intervals):
        keyed.append(((open_at, 1, seq, 0), FlameEvent(EventType.OPEN, open_at, frame)))
        if close_at == open_at:
            keyed.append(((close_at, 1, seq, 1), FlameEvent(EventType.CLOSE, close_at, frame)))
        else:
            keyed.append(((close_at, 0, -seq, 0), FlameEvent(EventType.CLOSE, close_at, frame)))
    keyed.sort(key=lambda item: item[0])
    return [event for _, event in keyed]


class FlameChartExporter:
    """Exports per-context profiles as a FlameChart artifact."""

    def __init__(self, config: Optional[ExportConfig] = None):
        self.config = config or ExportConfig()

    def worker_track_name(self, context_id: str) -> str:
        """Deterministic track name for a worker context."""
        index = context_id[len(WORKER_ID_PREFIX):] if context_id.startswith(WORKER_ID_PREFIX) else context_id
        return f"{self.config.worker_track_prefix}{index}"

    def export(
        self,
        main: Optional[Profile],
        workers: Mapping[str, Profile],
        records: Optional[Mapping[str, Sequence[TelemetryRecord]]] = None,
        base_start_time: Optional[float] = None,
    ) -> FlameChart:
        """
        Build the flame chart.

        With neither main nor worker data the result has an empty frame
        table and no tracks; it is never None.
        """
        records = records or {}
        table = SharedFrameTable()

        main_frames = table.add_profile(main) if main is not None else {}
        worker_frames = {context_id: table.add_profile(p) for context_id, p in workers.items()}

        tracks = []
        if main is not None:
            tracks.append(self._sampled_track(main, main_frames))

        global_start = self._global_start(base_start_time, records)

        context_ids = list(workers)
        context_ids.extend(c for c in records if c not in workers)

        for context_id in context_ids:
            context_records = records.get(context_id)
            if context_records:
                track = self._evented_from_records(
                    context_id,
                    context_records,
                    workers.get(context_id),
                    table,
                    global_start,
                )
            elif context_id in workers:
                track = self._evented_from_samples(
                    context_id,
                    workers[context_id],
                    worker_frames[context_id],
                )
            else:
                continue

            if track.events:
                tracks.append(track)
            else:
                logger.warning("No events for worker track, skipping", context_id=context_id)

        chart = FlameChart(frames=table.frames, tracks=tracks, name=self.config.artifact_name)
        self._finalize(chart)

        logger.debug(
            "Exported flame chart",
            frames=len(chart.frames),
            tracks=len(chart.tracks),
            global_start=global_start,
        )
        return chart

    def _sampled_track(self, profile: Profile, frame_map: Dict[int, int]) -> SampledTrack:
        samples: List[int] = []
        weights: List[float] = []
        last = 0.0
        for index, node_id in enumerate(profile.samples):
            frame = frame_map.get(node_id)
            if frame is None:
                continue
            current = profile.time_deltas[index] if index < len(profile.time_deltas) else last
            samples.append(frame)
            weights.append(max(current - last, self.config.min_weight_us))
            last = current

        if samples:
            end_value = max(profile.time_deltas) or 1
        else:
            end_value = max((profile.end_time - profile.start_time) * 1000, 1)

        return SampledTrack(
            name=self.config.main_track_name,
            start_value=0,
            end_value=end_value,
            samples=samples,
            weights=weights,
        )

    def _evented_from_records(
        self,
        context_id: str,
        records: Sequence[TelemetryRecord],
        profile: Optional[Profile],
        table: SharedFrameTable,
        global_start: float,
    ) -> EventedTrack:
        by_function: Dict[str, int] = {}
        if profile is not None:
            for node in profile.nodes:
                by_function.setdefault(
                    node.frame.function_name,
                    table.intern(node.frame.key, node.frame.display_name),
                )

        intervals: List[Interval] = []
        for record in sorted(records, key=lambda r: (r.start_time, -r.end_time)):
            frame = by_function.get(record.function_name)
            if frame is None:
                logger.warning(
                    "No frame for record, synthesizing one",
                    context_id=context_id,
                    function=record.function_name,
                )
                frame = table.intern(
                    FrameKey(
                        context_id=context_id,
                        function_name=record.function_name,
                        file=f"{context_id}://{record.function_name}",
                    ),
                    f"[{context_id}] {record.function_name}",
                )
                by_function[record.function_name] = frame

            open_at = (record.start_time - global_start) * 1000
            close_at = (record.end_time - global_start) * 1000
            if open_at < 0 or close_at < 0 or close_at < open_at:
                logger.warning(
                    "Dropping record with invalid event times",
                    context_id=context_id,
                    function=record.function_name,
                    open_at=open_at,
                    close_at=close_at,
                )
                continue
            intervals.append((open_at, close_at, frame))

        return self._evented_track(context_id, events_from_intervals(intervals))

    def _evented_from_samples(
        self,
        context_id: str,
        profile: Profile,
        frame_map: Dict[int, int],
    ) -> EventedTrack:
        """
        Derive events for a worker that sent no raw records.

        Each sample opens at its delta and lasts nominal_event_duration_us,
        capped at the next sample so consecutive events never overlap.
        """
        logger.info("Deriving worker events from samples", context_id=context_id)

        points = [
            (profile.time_deltas[i] if i < len(profile.time_deltas) else 0, frame_map[node_id])
            for i, node_id in enumerate(profile.samples)
            if node_id in frame_map
        ]

        intervals: List[Interval] = []
        for index, (at, frame) in enumerate(points):
            close_at = at + self.config.nominal_event_duration_us
            if index + 1 < len(points):
                close_at = max(min(close_at, points[index + 1][0]), at)
            intervals.append((at, close_at, frame))

        return self._evented_track(context_id, events_from_intervals(intervals))

    def _evented_track(self, context_id: str, events: List[FlameEvent]) -> EventedTrack:
        times = [event.at for event in events]
        return EventedTrack(
            name=self.worker_track_name(context_id),
            start_value=min(times) if times else 0,
            end_value=max(times) if times else 0,
            events=events,
        )

    @staticmethod
    def _global_start(
        base_start_time: Optional[float],
        records: Mapping[str, Sequence[TelemetryRecord]],
    ) -> float:
        """Earliest of the session start and every record start."""
        starts = [r.start_time for context_records in records.values() for r in context_records]
        if base_start_time is not None:
            starts.append(base_start_time)
        return min(starts) if starts else 0.0

    @staticmethod
    def _finalize(chart: FlameChart) -> None:
        """Last structural pass so the artifact is always well formed."""
        for track in chart.tracks:
            if isinstance(track, SampledTrack):
                if len(track.samples) != len(track.weights):
                    length = min(len(track.samples), len(track.weights))
                    logger.warning(
                        "Sample and weight counts differ, truncating",
                        track=track.name,
                        samples=len(track.samples),
                        weights=len(track.weights),
                    )
                    track.samples = track.samples[:length]
                    track.weights = track.weights[:length]
            if track.end_value < track.start_value:
                track.end_value = track.start_value
