"""
flamefuse Profiling Session

Owns the collection lifecycle (idle -> collecting -> stopped), gathers
each context's telemetry, and drives build -> merge -> export.

Usage:
    session = ProfilingSession(sampler=StackSampler())
    await session.start()
    ...
    await session.stop()
    await session.pull_telemetry(worker_recorder)
    call_tree = session.generate_call_tree()
    flame_chart = session.generate_flame_chart()
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from flamefuse.core.config import FlameFuseConfig, get_config
from flamefuse.profiling.builder import ProfileBuilder
from flamefuse.profiling.collectors import SamplingCollaborator, TelemetryCollaborator, now_ms
from flamefuse.profiling.errors import SessionStateError
from flamefuse.profiling.exporters.calltree import CallTreeExporter
from flamefuse.profiling.exporters.flamechart import FlameChartExporter
from flamefuse.profiling.ingest import normalize_records, normalize_trace
from flamefuse.profiling.markers import MarkerRegistry, get_marker_registry
from flamefuse.profiling.merger import ProfileMerger
from flamefuse.profiling.types import (
    CallTree,
    FlameChart,
    InstrumentedInput,
    Profile,
    SampledInput,
    SampledTrace,
    TelemetryRecord,
)

logger = structlog.get_logger(__name__)


class SessionState(str, Enum):
    """Lifecycle states of a profiling session."""
    IDLE = "idle"
    COLLECTING = "collecting"
    STOPPED = "stopped"


class ProfilingSession:
    """
    Collects telemetry from a main context and any number of workers and
    turns it into profiling artifacts.

    Generation is synchronous and idempotent: every generate_* call
    reprocesses the buffers collected so far.
    """

    def __init__(
        self,
        config: Optional[FlameFuseConfig] = None,
        sampler: Optional[SamplingCollaborator] = None,
        markers: Optional[MarkerRegistry] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or get_config()
        self.sampler = sampler
        self.markers = markers if markers is not None else get_marker_registry()
        self._clock = clock or now_ms

        self.state = SessionState.IDLE
        self.start_time = 0.0
        self.end_time = 0.0

        self._trace: Optional[SampledTrace] = None
        self._sampling_active = False
        self._records: Dict[str, List[TelemetryRecord]] = {}

        self._builder = ProfileBuilder(
            markers=self.markers,
            main_context_id=self.config.export.main_context_id,
        )
        self._merger = ProfileMerger()
        self._call_tree_exporter = CallTreeExporter()
        self._flame_chart_exporter = FlameChartExporter(self.config.export)

    @property
    def main_context_id(self) -> str:
        return self.config.export.main_context_id

    @property
    def trace(self) -> Optional[SampledTrace]:
        return self._trace

    @property
    def sampling_active(self) -> bool:
        return self._sampling_active

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start collecting. A sampler that fails to start only degrades the session."""
        if self.state is SessionState.COLLECTING:
            raise SessionStateError("start", self.state.value, SessionState.IDLE.value)

        self.start_time = self._clock()
        self.end_time = self.start_time
        self._trace = None
        self._records = {}
        self._sampling_active = False
        self.state = SessionState.COLLECTING

        if self.sampler is not None and self.config.sampling.enabled:
            try:
                self._sampling_active = bool(await self.sampler.start())
            except Exception as e:
                logger.warning("Sampler raised on start", error=str(e))

            if not self._sampling_active:
                logger.warning("Sampling unavailable, continuing with instrumentation only")

        logger.info(
            "Profiling session started",
            start_time=self.start_time,
            sampling=self._sampling_active,
        )

    async def stop(self) -> None:
        """Stop collecting and keep the sampler's trace, if any."""
        if self.state is not SessionState.COLLECTING:
            raise SessionStateError("stop", self.state.value, SessionState.COLLECTING.value)

        self.end_time = self._clock()

        if self._sampling_active:
            try:
                self._trace = normalize_trace(await self.sampler.stop())
            except Exception as e:
                logger.warning("Sampler raised on stop, discarding trace", error=str(e))
                self._trace = None
        self._sampling_active = False

        self.state = SessionState.STOPPED
        logger.info(
            "Profiling session stopped",
            duration_ms=self.end_time - self.start_time,
            has_trace=self._trace is not None,
            contexts=len(self._records),
        )

    # -------------------------------------------------------------------------
    # Telemetry intake
    # -------------------------------------------------------------------------

    def add_records(self, records: Iterable[Any], context_id: Optional[str] = None) -> int:
        """
        Buffer records for generation.

        With a context_id every record is attributed to that context;
        otherwise each record keeps its own. Returns how many were kept.
        """
        if self.state is SessionState.IDLE:
            raise SessionStateError("add records", self.state.value, SessionState.COLLECTING.value)

        kept = 0
        for record in normalize_records(records, context_id=context_id):
            if context_id is not None and record.context_id != context_id:
                record = replace(record, context_id=context_id)
            self._records.setdefault(record.context_id, []).append(record)
            kept += 1
        return kept

    async def pull_telemetry(
        self,
        collaborator: TelemetryCollaborator,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Retrieve a context's buffered telemetry, bounded by a timeout.

        On timeout or retrieval error the context contributes nothing and
        0 is returned; the session carries on with the other contexts.
        """
        if self.state is SessionState.IDLE:
            raise SessionStateError("pull telemetry", self.state.value, SessionState.STOPPED.value)

        timeout = self.config.retrieval_timeout if timeout is None else timeout
        context_id = self._collaborator_context_id(collaborator)
        fetch = collaborator.get_all_telemetry

        try:
            if inspect.iscoroutinefunction(fetch):
                raw = await asyncio.wait_for(fetch(), timeout)
            else:
                raw = await asyncio.wait_for(asyncio.to_thread(fetch), timeout)
                if inspect.isawaitable(raw):
                    raw = await asyncio.wait_for(raw, timeout)
        except asyncio.TimeoutError:
            logger.warning("Telemetry retrieval timed out, skipping context", context_id=context_id, timeout=timeout)
            return 0
        except Exception as e:
            logger.warning("Telemetry retrieval failed, skipping context", context_id=context_id, error=str(e))
            return 0

        kept = self.add_records(raw or [], context_id=context_id)
        logger.debug("Pulled telemetry", context_id=context_id, records=kept)
        return kept

    @staticmethod
    def _collaborator_context_id(collaborator: Any) -> Optional[str]:
        for attr in ("get_context_id", "get_worker_id"):
            getter = getattr(collaborator, attr, None)
            if callable(getter):
                value = getter()
                if value:
                    return str(value)
        return None

    def records(self, context_id: Optional[str] = None) -> List[TelemetryRecord]:
        """Buffered records, for one context or all of them."""
        if context_id is not None:
            return list(self._records.get(context_id, []))
        return [record for records in self._records.values() for record in records]

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate(self) -> Optional[CallTree]:
        """Alias of generate_call_tree()."""
        return self.generate_call_tree()

    def generate_call_tree(self) -> Optional[CallTree]:
        """
        Build, merge, and export every context as one call tree.

        Returns None when no context produced anything to profile.
        """
        self._require_stopped("generate a call tree")

        profiles: List[Profile] = []
        main = self._main_profile()
        if main is not None:
            profiles.append(main)
        profiles.extend(self._worker_profiles().values())

        if not profiles:
            logger.info("Nothing to profile")
            return None

        merged = profiles[0] if len(profiles) == 1 else self._merger.merge(profiles)
        return self._call_tree_exporter.export(merged)

    def generate_flame_chart(self) -> Optional[FlameChart]:
        """
        Export every context as one multi-track flame chart.

        Returns None when no context produced anything to profile.
        """
        self._require_stopped("generate a flame chart")

        main = self._main_profile()
        workers = self._worker_profiles()
        if main is None and not workers:
            logger.info("Nothing to profile")
            return None

        return self._flame_chart_exporter.export(
            main,
            workers,
            self._worker_records(workers),
            base_start_time=self.start_time,
        )

    def generate_context_flame_charts(self) -> Optional[List[Tuple[str, FlameChart]]]:
        """One flame chart per context, main context first."""
        self._require_stopped("generate flame charts")

        charts: List[Tuple[str, FlameChart]] = []
        main = self._main_profile()
        if main is not None:
            charts.append((
                self.main_context_id,
                self._flame_chart_exporter.export(main, {}, base_start_time=self.start_time),
            ))

        workers = self._worker_profiles()
        records = self._worker_records(workers)
        for context_id, profile in workers.items():
            chart = self._flame_chart_exporter.export(
                None,
                {context_id: profile},
                {context_id: records.get(context_id, [])},
                base_start_time=self.start_time,
            )
            if chart.tracks:
                charts.append((context_id, chart))

        return charts or None

    def _require_stopped(self, operation: str) -> None:
        if self.state is not SessionState.STOPPED:
            raise SessionStateError(operation, self.state.value, SessionState.STOPPED.value)

    def _main_profile(self) -> Optional[Profile]:
        main: Optional[Profile] = None
        if self._trace is not None:
            main = self._builder.build(
                SampledInput(self.main_context_id, self._trace),
                self.start_time,
                self.end_time,
            )

        main_records = self._records.get(self.main_context_id)
        if main_records:
            instrumented = self._builder.build(
                InstrumentedInput(self.main_context_id, main_records),
                self.start_time,
                self.end_time,
            )
            if main is None:
                main = instrumented
            else:
                main = self._merger.merge([main, instrumented])
                main.context_id = self.main_context_id

        return main

    def _worker_profiles(self) -> Dict[str, Profile]:
        profiles: Dict[str, Profile] = {}
        for context_id, records in self._records.items():
            if context_id == self.main_context_id:
                continue
            profile = self._builder.build(
                InstrumentedInput(context_id, records),
                self.start_time,
                self.end_time,
            )
            if not profile.is_empty:
                profiles[context_id] = profile
        return profiles

    def _worker_records(self, workers: Dict[str, Profile]) -> Dict[str, List[TelemetryRecord]]:
        return {context_id: list(self._records[context_id]) for context_id in workers}

    def get_stats(self) -> Dict[str, Any]:
        """Get session statistics."""
        return {
            "state": self.state.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "sampler_configured": self.sampler is not None,
            "sampling_active": self._sampling_active,
            "trace_samples": len(self._trace.samples) if self._trace else 0,
            "records": {context_id: len(records) for context_id, records in self._records.items()},
        }
