"""
flamefuse Telemetry Collaborators

Contracts the session consumes, plus small in-process implementations:
- ContextRecorder: instrumentation records for one context
- StackSampler: low-overhead stack sampling of one thread
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import sys
import threading
import time
import tracemalloc
from contextlib import contextmanager
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
    runtime_checkable,
)

import structlog

from flamefuse.core.config import SamplingConfig
from flamefuse.profiling.markers import MarkerRegistry
from flamefuse.profiling.types import (
    SampledTrace,
    TelemetryRecord,
    TraceFrame,
    TraceSample,
    TraceStack,
)

logger = structlog.get_logger(__name__)


def now_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.perf_counter() * 1000


# =============================================================================
# Contracts
# =============================================================================

@runtime_checkable
class TelemetryCollaborator(Protocol):
    """
    A context's buffered telemetry.

    get_all_telemetry() may be sync or async and must be repeatable: it
    returns the same history until clear() is called. Collaborators may
    also expose get_context_id() or get_worker_id().
    """

    def get_all_telemetry(self) -> Union[Sequence[Any], Awaitable[Sequence[Any]]]:
        ...

    def clear(self) -> Any:
        ...


@runtime_checkable
class SamplingCollaborator(Protocol):
    """A stack sampler. start() returns False when unavailable and never raises."""

    async def start(self) -> bool:
        ...

    async def stop(self) -> Optional[SampledTrace]:
        ...


# =============================================================================
# Instrumentation
# =============================================================================

class ContextRecorder:
    """
    Records function start/end telemetry for one execution context.

    Usage:
        recorder = ContextRecorder("worker-0")

        @recorder.instrument()
        def decode_image(data):
            ...

        with recorder.span("fetch_image"):
            ...
    """

    def __init__(
        self,
        context_id: Optional[str] = None,
        markers: Optional[MarkerRegistry] = None,
        track_memory: bool = False,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._clock = clock or now_ms
        self.context_id = context_id or f"worker-{int(time.time() * 1000)}"
        self.markers = markers
        self.track_memory = track_memory

        self._records: List[TelemetryRecord] = []
        self._call_stack: List[str] = []
        self._lock = threading.Lock()

    def get_context_id(self) -> str:
        return self.context_id

    def start_function(self, function_name: str) -> Callable[[], TelemetryRecord]:
        """Start timing a function. Call the returned function when it ends."""
        start_time = self._clock()
        memory_before = self._memory()
        with self._lock:
            self._call_stack.append(function_name)

        def finish() -> TelemetryRecord:
            end_time = self._clock()
            memory_after = self._memory()
            with self._lock:
                self._pop_call(function_name)
                call_stack = tuple(self._call_stack)
            return self._append(TelemetryRecord(
                context_id=self.context_id,
                function_name=function_name,
                start_time=start_time,
                end_time=end_time,
                call_stack=call_stack,
                memory_before=memory_before,
                memory_after=memory_after,
                marker=self._marker(function_name),
            ))

        return finish

    def record(
        self,
        function_name: str,
        start_time: float,
        end_time: float,
        call_stack: Optional[Sequence[str]] = None,
        memory_before: Optional[int] = None,
        memory_after: Optional[int] = None,
    ) -> TelemetryRecord:
        """Record an already-measured call, e.g. an async operation."""
        if call_stack is None:
            with self._lock:
                call_stack = list(self._call_stack)
        return self._append(TelemetryRecord(
            context_id=self.context_id,
            function_name=function_name,
            start_time=start_time,
            end_time=end_time,
            call_stack=tuple(call_stack),
            memory_before=memory_before,
            memory_after=memory_after,
            marker=self._marker(function_name),
        ))

    @contextmanager
    def span(self, function_name: str) -> Iterator[None]:
        """Time the body of a with-block."""
        finish = self.start_function(function_name)
        try:
            yield
        finally:
            finish()

    def instrument(self, name: Optional[str] = None) -> Callable:
        """Decorator timing every call of a sync or async function."""

        def decorator(func: Callable) -> Callable:
            function_name = name or func.__qualname__

            @functools.wraps(func)
            def wrapper(*args, **kwargs):
                finish = self.start_function(function_name)
                try:
                    return func(*args, **kwargs)
                finally:
                    finish()

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                finish = self.start_function(function_name)
                try:
                    return await func(*args, **kwargs)
                finally:
                    finish()

            if inspect.iscoroutinefunction(func):
                return async_wrapper
            return wrapper

        return decorator

    def get_all_telemetry(self) -> List[TelemetryRecord]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._call_stack.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _append(self, record: TelemetryRecord) -> TelemetryRecord:
        with self._lock:
            self._records.append(record)
        return record

    def _pop_call(self, function_name: str) -> None:
        # Async calls may finish out of order; drop the latest matching entry.
        for index in range(len(self._call_stack) - 1, -1, -1):
            if self._call_stack[index] == function_name:
                del self._call_stack[index]
                return

    def _marker(self, function_name: str):
        return self.markers.get(function_name) if self.markers is not None else None

    def _memory(self) -> Optional[int]:
        if self.track_memory and tracemalloc.is_tracing():
            return tracemalloc.get_traced_memory()[0]
        return None


# =============================================================================
# Sampling
# =============================================================================

class StackSampler:
    """
    Samples the Python stack of one thread at a fixed interval.

    Runs a daemon thread reading sys._current_frames() and produces a
    SampledTrace. Frames are keyed by function definition site.
    """

    def __init__(
        self,
        thread_id: Optional[int] = None,
        interval_ms: float = 10.0,
        max_buffer_size: int = 18000,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.thread_id = thread_id
        self.interval_ms = interval_ms
        self.max_buffer_size = max_buffer_size
        self._clock = clock or now_ms

        self._running = False
        self._sample_thread: Optional[threading.Thread] = None
        self._target: Optional[int] = None
        self._lock = threading.Lock()
        self._reset()

    @classmethod
    def from_config(
        cls,
        config: SamplingConfig,
        thread_id: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> "StackSampler":
        """Build a sampler from the sampling section of the configuration."""
        return cls(
            thread_id=thread_id,
            interval_ms=config.interval_ms,
            max_buffer_size=config.max_buffer_size,
            clock=clock,
        )

    def is_supported(self) -> bool:
        return hasattr(sys, "_current_frames")

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        """Start sampling. Returns False instead of raising when unavailable."""
        if not self.is_supported():
            logger.warning("Stack sampling is not supported on this interpreter")
            return False

        if self._running:
            return True

        try:
            self._reset()
            self._target = self.thread_id or threading.main_thread().ident
            self._running = True
            self._sample_thread = threading.Thread(
                target=self._sampling_loop,
                daemon=True,
                name="flamefuse-StackSampler",
            )
            self._sample_thread.start()
        except RuntimeError as e:
            self._running = False
            logger.warning("Failed to start stack sampler", error=str(e))
            return False

        logger.info("Stack sampler started", thread_id=self._target, interval_ms=self.interval_ms)
        return True

    async def stop(self) -> Optional[SampledTrace]:
        """Stop sampling and return the trace, or None if not running."""
        if not self._running:
            return None

        self._running = False
        if self._sample_thread:
            await asyncio.to_thread(self._sample_thread.join, 2.0)
            self._sample_thread = None

        with self._lock:
            trace = SampledTrace(
                frames=list(self._frames),
                stacks=list(self._stacks),
                samples=list(self._samples),
                resources=list(self._resources),
            )

        logger.info(
            "Stack sampler stopped",
            samples=len(trace.samples),
            frames=len(trace.frames),
            dropped=self._dropped,
        )
        return trace

    def _reset(self) -> None:
        with self._lock:
            self._resources: List[str] = []
            self._frames: List[TraceFrame] = []
            self._stacks: List[TraceStack] = []
            self._samples: List[TraceSample] = []
            self._resource_index: Dict[str, int] = {}
            self._frame_index: Dict[Tuple[str, int, int], int] = {}
            self._stack_index: Dict[Tuple[int, Optional[int]], int] = {}
            self._dropped = 0

    def _sampling_loop(self) -> None:
        """Background thread for collecting samples."""
        interval = self.interval_ms / 1000

        while self._running:
            try:
                self._collect_sample()
            except Exception as e:
                logger.error("Stack sampling error", error=str(e))

            time.sleep(interval)

    def _collect_sample(self) -> None:
        timestamp = self._clock()
        frame = sys._current_frames().get(self._target)
        if frame is None:
            return

        chain = []
        while frame is not None:
            code = frame.f_code
            chain.append((code.co_name, code.co_filename, code.co_firstlineno))
            frame = frame.f_back

        with self._lock:
            if len(self._samples) >= self.max_buffer_size:
                self._dropped += 1
                return

            parent: Optional[int] = None
            for name, filename, line in reversed(chain):
                frame_id = self._intern_frame(name, filename, line)
                parent = self._intern_stack(frame_id, parent)

            self._samples.append(TraceSample(timestamp=timestamp, stack_id=parent))

    def _intern_frame(self, name: str, filename: str, line: int) -> int:
        resource_id = self._resource_index.get(filename)
        if resource_id is None:
            resource_id = len(self._resources)
            self._resources.append(filename)
            self._resource_index[filename] = resource_id

        key = (name, resource_id, line)
        frame_id = self._frame_index.get(key)
        if frame_id is None:
            frame_id = len(self._frames)
            self._frames.append(TraceFrame(name=name, resource_id=resource_id, line=line, column=0))
            self._frame_index[key] = frame_id
        return frame_id

    def _intern_stack(self, frame_id: int, parent_id: Optional[int]) -> int:
        key = (frame_id, parent_id)
        stack_id = self._stack_index.get(key)
        if stack_id is None:
            stack_id = len(self._stacks)
            self._stacks.append(TraceStack(frame_id=frame_id, parent_id=parent_id))
            self._stack_index[key] = stack_id
        return stack_id
