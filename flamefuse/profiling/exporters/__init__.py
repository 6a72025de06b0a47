"""
flamefuse Exporters

Artifact encodings for merged and per-context profiles.
"""

from flamefuse.profiling.exporters.calltree import CallTreeExporter
from flamefuse.profiling.exporters.flamechart import (
    FlameChartExporter,
    SharedFrameTable,
    events_from_intervals,
)

__all__ = [
    "CallTreeExporter",
    "FlameChartExporter",
    "SharedFrameTable",
    "events_from_intervals",
]
