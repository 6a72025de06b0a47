"""
flamefuse Call-Tree Exporter

Flattens a merged profile into the Chrome DevTools .cpuprofile shape.
"""

from __future__ import annotations

import structlog

from flamefuse.profiling.types import CallTree, Profile

logger = structlog.get_logger(__name__)


class CallTreeExporter:
    """Exports profiles as CallTree artifacts."""

    def export(self, merged: Profile) -> CallTree:
        """
        Convert a (merged) profile into a CallTree.

        An empty profile still yields a CallTree with empty arrays and the
        original start/end times.
        """
        if merged.is_empty:
            logger.debug("Exporting empty call tree", start_time=merged.start_time)

        return CallTree(
            nodes=list(merged.nodes),
            samples=list(merged.samples),
            time_deltas=list(merged.time_deltas),
            start_time=merged.start_time,
            end_time=merged.end_time,
        )

