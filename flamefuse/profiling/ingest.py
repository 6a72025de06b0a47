"""
flamefuse Telemetry Ingestion

The single validation pass between collaborators and the engine. Raw
records and traces arrive loosely shaped (dataclasses, dicts decoded from
JSON, camelCase or snake_case); everything past this module can assume
well-typed, finite values.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog

from flamefuse.profiling.types import SampledTrace, TelemetryRecord

logger = structlog.get_logger(__name__)

UNKNOWN_CONTEXT = "unknown"

RawRecord = Union[TelemetryRecord, Mapping]


def _is_finite(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def normalize_record(
    raw: RawRecord,
    context_id: Optional[str] = None,
) -> Optional[TelemetryRecord]:
    """Validate one record. Returns None (after logging) when unusable."""
    if isinstance(raw, TelemetryRecord):
        record = raw
    elif isinstance(raw, Mapping):
        try:
            record = TelemetryRecord.from_dict(raw, context_id=context_id)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Dropping malformed telemetry record", reason=str(e), context_id=context_id)
            return None
    else:
        logger.warning(
            "Dropping telemetry record of unsupported type",
            record_type=type(raw).__name__,
            context_id=context_id,
        )
        return None

    if not record.function_name:
        logger.warning("Dropping telemetry record without function name", context_id=record.context_id)
        return None

    if not (_is_finite(record.start_time) and _is_finite(record.end_time)):
        logger.warning(
            "Dropping telemetry record with non-finite times",
            function=record.function_name,
            context_id=record.context_id,
        )
        return None

    if record.is_inverted:
        # Kept: the call tree only uses the start time. The flame chart
        # drops the open/close pair.
        logger.warning(
            "Telemetry record ends before it starts",
            function=record.function_name,
            context_id=record.context_id,
            start_time=record.start_time,
            end_time=record.end_time,
        )

    return record


def normalize_records(
    raw_records: Optional[Iterable[RawRecord]],
    context_id: Optional[str] = None,
) -> List[TelemetryRecord]:
    """Validate a batch of records, keeping their order."""
    if raw_records is None:
        return []

    records = []
    for raw in raw_records:
        record = normalize_record(raw, context_id=context_id)
        if record is not None:
            records.append(record)
    return records


def normalize_trace(raw: Any) -> Optional[SampledTrace]:
    """Validate a sampled trace. Returns None when absent or unusable."""
    if raw is None:
        return None

    if isinstance(raw, SampledTrace):
        trace = raw
    elif isinstance(raw, Mapping):
        try:
            trace = SampledTrace.from_dict(raw)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding malformed sampled trace", reason=str(e))
            return None
    else:
        logger.warning("Discarding sampled trace of unsupported type", trace_type=type(raw).__name__)
        return None

    finite = [s for s in trace.samples if _is_finite(s.timestamp)]
    if len(finite) != len(trace.samples):
        logger.warning(
            "Dropping trace samples with non-finite timestamps",
            dropped=len(trace.samples) - len(finite),
        )
        trace = SampledTrace(
            frames=trace.frames,
            stacks=trace.stacks,
            samples=finite,
            resources=trace.resources,
        )

    return trace


def group_by_context(records: Iterable[TelemetryRecord]) -> Dict[str, List[TelemetryRecord]]:
    """Group records by context id, keeping first-seen context order."""
    groups: Dict[str, List[TelemetryRecord]] = {}
    for record in records:
        groups.setdefault(record.context_id or UNKNOWN_CONTEXT, []).append(record)
    return groups
