"""
flamefuse Function Markers

Lets applications tag functions by name so viewers can highlight them.
The builder and exporters take a registry value; a process default is
kept only for convenience.
"""

from __future__ import annotations

from typing import Dict, Optional, Union

import structlog

from flamefuse.profiling.types import Marker, MarkerCategory

logger = structlog.get_logger(__name__)


class MarkerRegistry:
    """
    Lookup from function name to marker metadata.

    Last write for a name wins and markers never expire. Reads are not
    isolated from concurrent writes: a name consulted twice during one
    aggregation may resolve differently if application code changes it
    in between.
    """

    def __init__(self):
        self._markers: Dict[str, Marker] = {}

    def mark(
        self,
        function_name: str,
        category: Union[MarkerCategory, str] = MarkerCategory.CUSTOM,
        description: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Marker:
        """Mark a function. Replaces any previous marker for the name."""
        marker = Marker(
            function_name=function_name,
            category=MarkerCategory(category),
            description=description,
            color=color,
        )
        self._markers[function_name] = marker
        logger.debug("Function marked", function=function_name, category=marker.category.value)
        return marker

    def get(self, function_name: str) -> Optional[Marker]:
        return self._markers.get(function_name)

    def is_marked(self, function_name: str) -> bool:
        return function_name in self._markers

    def unmark(self, function_name: str) -> bool:
        return self._markers.pop(function_name, None) is not None

    def all(self) -> Dict[str, Marker]:
        """Copy of every marker, keyed by function name."""
        return dict(self._markers)

    def clear(self) -> None:
        self._markers.clear()

    def __len__(self) -> int:
        return len(self._markers)

    def __contains__(self, function_name: object) -> bool:
        return function_name in self._markers


_default_registry = MarkerRegistry()


def get_marker_registry() -> MarkerRegistry:
    """Get the process-default marker registry."""
    return _default_registry


def mark_function(
    function_name: str,
    category: Union[MarkerCategory, str] = MarkerCategory.CUSTOM,
    description: Optional[str] = None,
    color: Optional[str] = None,
) -> Marker:
    """Mark a function in the process-default registry."""
    return _default_registry.mark(function_name, category, description, color)
